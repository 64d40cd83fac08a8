"""
Extractor - Turns one file into one index entry.

The handling strategy is picked from the file's extension:

    (none)              -> filename only
    pdf                 -> text via the pdftotext CLI
    txt, md, markdown   -> full file contents
    webloc              -> Name/URL from the property list
    anything else       -> not indexed

PDF conversion writes to a scratch file inside a directory owned by the
extractor; the scratch file is removed on every exit path.
"""

import logging
import os
import plistlib
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional
from xml.parsers.expat import ExpatError

from .config import get_config, MemexConfig
from .errors import (
    PdfToolError, WeblocError, describe_process_failure
)
from .models import ContentKind, Entry


logger = logging.getLogger(__name__)


KINDS_BY_EXTENSION: dict[str, ContentKind] = {
    "pdf": ContentKind.PORTABLE_DOCUMENT,
    "txt": ContentKind.PLAIN_TEXT,
    "markdown": ContentKind.PLAIN_TEXT,
    "md": ContentKind.PLAIN_TEXT,
    "webloc": ContentKind.WEB_LOCATION,
}


def kind_for_path(path: Path) -> Optional[ContentKind]:
    """
    Map a path to its content kind.

    The extension is the case-sensitive text after the last dot of the
    file name. Names without a dot are OPAQUE; unknown extensions map to
    None and are not indexed.
    """
    name = Path(path).name
    if "." not in name:
        return ContentKind.OPAQUE
    extension = name.rsplit(".", 1)[1]
    return KINDS_BY_EXTENSION.get(extension)


def title_for_path(path: Path) -> str:
    """File name without its final extension."""
    return Path(path).stem


# Bytes of the stem kept in scratch file names; mkstemp adds its own suffix
# and names are capped at 255 bytes on common file systems.
SCRATCH_PREFIX_BYTES = 100


def scratch_prefix(stem: str) -> str:
    """Scratch file prefix for a stem, short enough for any file system."""
    # Dropping undecodable bytes also drops a character cut in half
    raw = os.fsencode(stem)[:SCRATCH_PREFIX_BYTES]
    return raw.decode("utf-8", errors="ignore") + "."


class Extractor:
    """
    Per-file content digestion.

    Safe to share between worker threads: the only shared resource is the
    scratch directory, created once under a lock.
    """

    def __init__(self, config: MemexConfig | None = None):
        self.config = config or get_config()
        self._scratch_dir: Path | None = None
        self._lock = threading.Lock()
        self._handlers: dict[ContentKind, Callable[[Path], Entry]] = {
            ContentKind.OPAQUE: self._digest_opaque,
            ContentKind.PLAIN_TEXT: self._digest_text,
            ContentKind.PORTABLE_DOCUMENT: self._digest_pdf,
            ContentKind.WEB_LOCATION: self._digest_webloc,
        }
        self._tool_path = shutil.which(self.config.pdftotext_command)
        if self._tool_path is None:
            if self.config.pdf_fallback:
                logger.warning(
                    f"{self.config.pdftotext_command} not found. "
                    "PDF extraction will use pypdf (slower)."
                )
            else:
                logger.warning(
                    f"{self.config.pdftotext_command} not found. PDF files will be skipped. "
                    "Install with: apt install poppler-utils / brew install poppler"
                )

    def digest(self, path: Path) -> Optional[Entry]:
        """
        Digest the file at path into an entry.

        Returns None for files whose kind is not indexed. Raises on any
        extraction failure so the caller can decide how to report it.
        """
        path = Path(path)
        kind = kind_for_path(path)
        if kind is None:
            return None
        return self._handlers[kind](path)

    def _digest_opaque(self, path: Path) -> Entry:
        return Entry(title=title_for_path(path), archive_loc=str(path))

    def _digest_text(self, path: Path) -> Entry:
        contents = path.read_text(encoding="utf-8")
        return Entry(
            title=title_for_path(path),
            body=contents,
            archive_loc=str(path),
        )

    def _digest_webloc(self, path: Path) -> Entry:
        try:
            with open(path, "rb") as f:
                data = plistlib.load(f)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            raise WeblocError(path, f"invalid property list: {e}") from e

        if not isinstance(data, dict):
            raise WeblocError(path, "property list is not a dictionary")

        url = data.get("URL")
        if not isinstance(url, str):
            raise WeblocError(path, "missing URL")

        name = data.get("Name")
        title = name if isinstance(name, str) and name else title_for_path(path)
        return Entry(title=title, loc=url)

    def _digest_pdf(self, path: Path) -> Entry:
        if self._tool_path is None and self.config.pdf_fallback:
            text = self._extract_pdf_pypdf(path)
        else:
            text = self._extract_pdf_cli(path)
        return Entry(
            title=title_for_path(path),
            body=text,
            archive_loc=str(path),
        )

    def _extract_pdf_cli(self, path: Path) -> str:
        """Run the converter into a scratch file and read the text back."""
        with self.scratch_file(title_for_path(path)) as output:
            try:
                subprocess.run(
                    [self.config.pdftotext_command, str(path), str(output)],
                    check=True,
                    capture_output=True,
                    timeout=self.config.pdf_timeout,
                )
            except FileNotFoundError as e:
                raise PdfToolError(
                    path, f"{self.config.pdftotext_command} is not installed"
                ) from e
            except subprocess.TimeoutExpired as e:
                raise PdfToolError(
                    path, f"timed out after {e.timeout}s"
                ) from e
            except subprocess.CalledProcessError as e:
                raise PdfToolError(path, describe_process_failure(e)) from e

            return output.read_text(encoding="utf-8", errors="replace")

    def _extract_pdf_pypdf(self, path: Path) -> str:
        """Extract PDF text using pypdf (pure Python fallback)."""
        from pypdf import PdfReader
        from pypdf.errors import PyPdfError

        try:
            reader = PdfReader(str(path))
            text_parts = []
            for page in reader.pages:
                if text := page.extract_text():
                    text_parts.append(text)
        except PyPdfError as e:
            raise PdfToolError(path, f"pypdf: {e}") from e
        return "\n".join(text_parts)

    @contextmanager
    def scratch_file(self, stem: str) -> Iterator[Path]:
        """
        Reserve a scratch file named after stem for one conversion.

        The file is deleted when the block exits, however it exits.
        """
        fd, name = tempfile.mkstemp(
            prefix=scratch_prefix(stem), suffix=".txt", dir=self._get_scratch_dir()
        )
        scratch = Path(name)
        try:
            # The converter writes the file itself; release our handle first.
            os.close(fd)
            yield scratch
        finally:
            scratch.unlink(missing_ok=True)

    def _get_scratch_dir(self) -> Path:
        with self._lock:
            if self._scratch_dir is None:
                root = self.config.scratch_root
                if root is not None:
                    root.mkdir(parents=True, exist_ok=True)
                self._scratch_dir = Path(tempfile.mkdtemp(
                    prefix="memex-", dir=str(root) if root else None
                ))
            return self._scratch_dir

    @property
    def scratch_dir(self) -> Path | None:
        return self._scratch_dir

    def close(self):
        """Remove the scratch directory."""
        with self._lock:
            if self._scratch_dir is not None:
                shutil.rmtree(self._scratch_dir, ignore_errors=True)
                self._scratch_dir = None


def digest(path: Path, config: MemexConfig | None = None) -> Optional[Entry]:
    """
    Convenience function to digest a single file.

    Usage:
        entry = digest(Path("notes/todo.md"))
        print(entry.title if entry else "not indexed")
    """
    extractor = Extractor(config)
    try:
        return extractor.digest(path)
    finally:
        extractor.close()
