"""
Configuration - Centralized settings for building and serving an index.

Uses environment variables with sensible defaults. Command line arguments
override whatever the environment provides.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class MemexConfig:
    """
    Configuration for the ingestion pipeline and the search server.

    The thread count sizes both the walker pool and the channel feeding
    the writer, so it is also the upper bound on buffered entries.
    """

    # --- Build ---
    threads: int = 8
    follow_symlinks: bool = False
    skip_hidden: bool = True
    read_ignore_files: bool = True  # .ignore, .gitignore, .git/info/exclude

    # --- PDF conversion ---
    pdftotext_command: str = "pdftotext"
    pdf_timeout: Optional[float] = 120.0  # seconds, None waits forever
    pdf_fallback: bool = False            # use pypdf when the tool is missing
    scratch_root: Optional[Path] = None   # parent of the scratch directory

    # --- Server ---
    host: str = "localhost"
    port: int = 3000

    def __post_init__(self):
        """Validate numeric settings and normalize paths."""
        if self.threads < 1:
            raise ValueError(f"threads must be positive, got {self.threads}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.pdf_timeout is not None and self.pdf_timeout <= 0:
            self.pdf_timeout = None
        if self.scratch_root is not None:
            self.scratch_root = Path(self.scratch_root).expanduser().resolve()

    @classmethod
    def from_env(cls) -> "MemexConfig":
        """
        Create config from environment variables.

        Supported env vars:
            INGEST_THREADS: Worker threads for crawling and extraction
            MEMEX_PDFTOTEXT: PDF converter executable
            MEMEX_PDF_TIMEOUT: Converter timeout in seconds (0 disables)
            MEMEX_PDF_FALLBACK: Use pypdf when the converter is missing
            MEMEX_IGNORE_FILES: Honor .ignore / .gitignore files (default on)
            MEMEX_HOST: Listen host
            MEMEX_PORT: Listen port
        """
        config = cls()

        if threads := os.environ.get("INGEST_THREADS"):
            config.threads = int(threads)

        if command := os.environ.get("MEMEX_PDFTOTEXT"):
            config.pdftotext_command = command

        if timeout := os.environ.get("MEMEX_PDF_TIMEOUT"):
            config.pdf_timeout = float(timeout)

        if fallback := os.environ.get("MEMEX_PDF_FALLBACK"):
            config.pdf_fallback = _env_flag(fallback)

        if ignore_files := os.environ.get("MEMEX_IGNORE_FILES"):
            config.read_ignore_files = _env_flag(ignore_files)

        if host := os.environ.get("MEMEX_HOST"):
            config.host = host

        if port := os.environ.get("MEMEX_PORT"):
            config.port = int(port)

        config.__post_init__()
        return config


# Process default config
_default_config: MemexConfig | None = None


def get_config() -> MemexConfig:
    """Get the default configuration (built from the environment once)."""
    global _default_config
    if _default_config is None:
        _default_config = MemexConfig.from_env()
    return _default_config


def set_config(config: MemexConfig | None) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
