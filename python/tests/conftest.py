"""
Test Configuration - Shared fixtures for memex tests.

Uses pytest fixtures to create isolated test environments.
"""

import plistlib
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Generator, List, Optional

import pytest

from memex import extractor as extractor_module
from memex.config import MemexConfig, set_config
from memex.index import Index
from memex.models import Document
from memex.schema import document_schema


def write_webloc(path: Path, url: Optional[str], name: Optional[str] = None,
                 fmt=plistlib.FMT_XML) -> Path:
    """Write a .webloc property list."""
    data = {}
    if url is not None:
        data["URL"] = url
    if name is not None:
        data["Name"] = name
    with open(path, "wb") as f:
        plistlib.dump(data, f, fmt=fmt)
    return path


class FakePdfToText:
    """
    Stand-in for subprocess.run when calling pdftotext.

    Modes:
        ok       write "text of <name>" to the output path
        fail     exit non-zero without output
        partial  write some output, then exit non-zero
        missing  the executable does not exist
        timeout  the converter never finishes
    """

    def __init__(self):
        self.mode = "ok"
        self.calls: List[list] = []

    @property
    def outputs(self) -> List[Path]:
        return [Path(args[2]) for args in self.calls]

    def __call__(self, args, check=False, capture_output=False, timeout=None, **kwargs):
        self.calls.append(list(args))
        source, output = Path(args[1]), Path(args[2])

        if self.mode == "missing":
            raise FileNotFoundError(2, "No such file or directory", args[0])
        if self.mode == "timeout":
            raise subprocess.TimeoutExpired(args, timeout)
        if self.mode in {"ok", "partial"}:
            output.write_text(f"text of {source.name}")
        if self.mode in {"fail", "partial"}:
            raise subprocess.CalledProcessError(
                1, args, output=b"", stderr=b"Syntax Error: Couldn't read xref table"
            )
        return subprocess.CompletedProcess(args, 0, b"", b"")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="memex_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> Generator[MemexConfig, None, None]:
    """Create an isolated test configuration."""
    config = MemexConfig(
        threads=4,
        scratch_root=temp_dir / "scratch",
        pdf_timeout=5,
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def fake_pdftotext(monkeypatch) -> FakePdfToText:
    """Replace the pdftotext subprocess with a controllable fake."""
    fake = FakePdfToText()
    monkeypatch.setattr(extractor_module.subprocess, "run", fake)
    return fake


@pytest.fixture
def source_tree(temp_dir: Path) -> dict[str, Path]:
    """Create a tree with one file of every kind."""
    src = temp_dir / "src"
    nested = src / "nested" / "deep"
    nested.mkdir(parents=True)
    files = {}

    files["txt"] = src / "notes.txt"
    files["txt"].write_text("Field notes about zebras and giraffes.")

    files["md"] = src / "readme.md"
    files["md"].write_text("# Readme\n\nInstallation instructions for the toolkit.")

    files["markdown"] = nested / "journal.markdown"
    files["markdown"].write_text("Dear diary, the weather was stormy.")

    files["webloc"] = write_webloc(src / "bookmark.webloc", "http://example.com", "Example")
    files["webloc_unnamed"] = write_webloc(src / "rustdocs.webloc", "https://doc.rust-lang.org")

    files["bare"] = src / "LICENSE"
    files["bare"].write_text("Permission is hereby granted, free of charge")

    files["pdf"] = nested / "report.pdf"
    files["pdf"].write_bytes(b"%PDF-1.4 not really a pdf")

    files["png"] = src / "image.png"
    files["png"].write_bytes(b"\x89PNG\r\n\x1a\n")

    files["csv"] = src / "data.csv"
    files["csv"].write_text("a,b\n1,2\n")

    files["hidden"] = src / ".secret.txt"
    files["hidden"].write_text("hidden zebras")

    hidden_dir = src / ".cache"
    hidden_dir.mkdir()
    files["hidden_nested"] = hidden_dir / "cached.txt"
    files["hidden_nested"].write_text("cached zebras")

    return files


@pytest.fixture
def alpha_beta_index() -> Generator[Index, None, None]:
    """An in-memory index with one archived file and one web location."""
    index = Index.create_in_ram(document_schema())
    writer = index.writer()
    writer.add_document(Document(title="Alpha", archive_loc="/tmp/a.txt").to_fields())
    writer.add_document(Document(title="Beta", loc="http://b").to_fields())
    writer.commit()
    writer.close()
    yield index
    index.close()
