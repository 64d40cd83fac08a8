"""
memex - Desktop file search: crawl, extract, index, serve.

Modules:
    - config: Centralized configuration
    - scanner: Parallel file system traversal
    - extractor: Per-file text extraction (pdftotext CLI, text, webloc)
    - indexer: Bounded channel feeding the single index writer
    - schema / index / query: Document index engine on SQLite FTS5
    - orchestrator: Build entry point and CLI
    - api: Search service and HTTP endpoint

Flow:
    Walk -> Extract -> Channel -> Write -> Commit, then serve read-only

Usage:
    from memex import build_index, SearchService

    index = build_index(Path.home() / "Documents")
    results = SearchService.load(index).search("tax return")
"""

from .api import SearchService, serve
from .orchestrator import Orchestrator, build_index

__all__ = ["Orchestrator", "SearchService", "build_index", "serve"]
