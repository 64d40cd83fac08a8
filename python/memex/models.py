"""
Data Models - Type definitions for the ingestion pipeline and search.

These dataclasses represent the data flowing through the pipeline stages
and out of the search service.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ContentKind(Enum):
    """How a file's content is digested, chosen from its extension."""
    PLAIN_TEXT = "plain_text"               # txt, md, markdown
    PORTABLE_DOCUMENT = "portable_document" # pdf, via the external converter
    WEB_LOCATION = "web_location"           # webloc property list
    OPAQUE = "opaque"                       # no extension, filename only


@dataclass
class Entry:
    """
    Normalized record produced by the extractor.

    The title is never empty. Files digested from disk carry their path
    as archive_loc; web locations carry their URL as loc.
    """
    title: str
    body: Optional[str] = None
    loc: Optional[str] = None
    archive_loc: Optional[str] = None


@dataclass(frozen=True)
class Document:
    """
    A record as stored by the index engine.

    Absent entry fields are stored as empty strings.
    """
    title: str
    body: str = ""
    loc: str = ""
    archive_loc: str = ""

    @classmethod
    def from_entry(cls, entry: Entry) -> "Document":
        return cls(
            title=entry.title,
            body=entry.body or "",
            loc=entry.loc or "",
            archive_loc=entry.archive_loc or "",
        )

    def to_fields(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "body": self.body,
            "loc": self.loc,
            "archive_loc": self.archive_loc,
        }


@dataclass(frozen=True)
class ResultAction:
    """How a launcher should open a result."""
    file: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class SearchResult:
    """A single shaped hit."""
    title: str
    arg: str
    action: ResultAction

    @classmethod
    def from_stored(cls, fields: Dict[str, str]) -> "SearchResult":
        """
        Shape stored document fields into a launcher item.

        The archived location wins over the live one when present. The
        chosen location opens as a file when it is an absolute path and
        as a URL when it carries a scheme.
        """
        archive_loc = fields.get("archive_loc") or ""
        loc = fields.get("loc") or ""
        location = archive_loc if archive_loc else loc
        return cls(
            title=fields.get("title") or "",
            arg=location,
            action=ResultAction(
                file=location if location.startswith("/") else None,
                url=location if "://" in location else None,
            ),
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "arg": self.arg,
            "action": {"file": self.action.file, "url": self.action.url},
        }


@dataclass
class SearchResults:
    """Ranked items for one query plus the total number of matches."""
    items: List[SearchResult] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict:
        return {"items": [item.to_dict() for item in self.items]}


@dataclass
class BuildStats:
    """Statistics from one index build."""
    files_visited: int = 0
    entries_indexed: int = 0
    files_skipped: int = 0
    errors: int = 0
    channel_high_water: int = 0
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Indexed {self.entries_indexed} of {self.files_visited} files "
            f"({self.files_skipped} skipped, "
            f"{self.errors} errors, "
            f"peak backlog {self.channel_high_water}) "
            f"in {self.duration_seconds:.1f}s"
        )
