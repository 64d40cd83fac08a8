"""
Error Handling - Exceptions and per-file error policies.

Build-phase failures are scoped to one file: the policy table decides how
loudly each failure is logged and the file is skipped. Failures that make
the whole build or a single request unusable are raised as MemexError
subclasses and handled by the caller that owns that scope.
"""

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class MemexError(Exception):
    """Base exception for memex errors."""
    pass


class WalkError(MemexError):
    """The traversal root cannot be walked at all."""
    pass


class ExtractionError(MemexError):
    """A file could not be turned into an entry."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(message)


class PdfToolError(ExtractionError):
    """The external PDF converter is missing, failed or timed out."""
    pass


class WeblocError(ExtractionError):
    """A .webloc property list is malformed or lacks a URL."""
    pass


class SchemaError(MemexError):
    """The index schema is invalid or lacks a required field."""
    pass


class IndexOpenError(MemexError):
    """The index cannot be created or opened."""
    pass


class IndexWriteError(MemexError):
    """Adding a document or committing failed; the build is unusable."""
    pass


class ChannelClosed(MemexError):
    """The writer stopped accepting entries."""
    pass


class QueryParseError(MemexError):
    """The query string is not valid query syntax."""
    pass


class SearchError(MemexError):
    """Retrieval failed inside the index engine."""
    pass


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Skip this item, continue processing
    ABORT = auto()          # Stop the entire pipeline


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


# Error type to policy mapping, most specific first
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    PdfToolError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="PDF conversion failed: {file} - {error}"
    ),
    WeblocError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Malformed webloc: {file} - {error}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}"
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot decode file (binary?): {file}"
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected file, got directory: {file}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading file: {file} - {error}"
    ),
    ChannelClosed: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Writer stopped, abandoning {file}"
    ),
}


def handle_error(
    error: Exception,
    file_path: Optional[Path] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_path: Path to the file being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP or ABORT)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}"
        )

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action


def describe_process_failure(error: subprocess.CalledProcessError) -> str:
    """One-line summary of a failed subprocess, including its stderr."""
    stderr = error.stderr
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    stderr = (stderr or "").strip()
    summary = f"exit status {error.returncode}"
    if stderr:
        summary += f": {stderr.splitlines()[-1]}"
    return summary
