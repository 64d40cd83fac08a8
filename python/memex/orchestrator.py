"""
Orchestrator - Builds an index from a source tree and serves it.

Pipeline:
    Walker (N threads) -> Extractor (on the walker threads)
        -> EntryChannel (capacity N) -> IndexingWriter (1 thread) -> Index

The build returns once the writer has committed and stopped, so the index
is complete and read-only from then on.
"""

import argparse
import logging
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .api import serve
from .config import get_config, MemexConfig
from .errors import ChannelClosed, MemexError, WalkError, handle_error
from .extractor import Extractor, kind_for_path
from .index import Index
from .indexer import EntryChannel, IndexingWriter
from .models import BuildStats
from .scanner import Walker, WalkState
from .schema import document_schema


logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Wires the walker, the extractor and the writer for one build.

    Each worker thread walks, extracts and sends; a single writer thread
    commits. Per-file failures are logged and skipped; an insert or commit
    failure fails the whole build.
    """

    def __init__(self, config: Optional[MemexConfig] = None):
        self.config = config or get_config()
        self.stats = BuildStats()
        self._lock = threading.Lock()

    def build(self, source: Path, destination: Optional[Path] = None) -> Index:
        """
        Build an index of every supported file under source.

        Args:
            source: File or directory to ingest
            destination: Directory for a persistent index, or None to keep
                the index in memory

        Returns:
            The committed index

        Raises:
            WalkError: If source does not exist
            IndexOpenError: If the index cannot be created
            IndexWriteError: If a document insert or the commit failed
        """
        source = Path(source).expanduser()
        if not source.exists():
            raise WalkError(f"Source path not found: {source}")

        start_time = time.monotonic()
        self.stats = BuildStats()
        threads = self.config.threads

        schema = document_schema()
        if destination is None:
            index = Index.create_in_ram(schema)
        else:
            index = Index.open_or_create(Path(destination), schema)

        logger.info(f"Indexing {source} with {threads} threads...")

        channel = EntryChannel(capacity=threads)
        writer = IndexingWriter(channel, index.writer()).start()
        extractor = Extractor(self.config)
        walker = Walker(
            source,
            threads=threads,
            follow_symlinks=self.config.follow_symlinks,
            skip_hidden=self.config.skip_hidden,
            read_ignore_files=self.config.read_ignore_files,
        )

        def visit(path: Path) -> WalkState:
            if kind_for_path(path) is None:
                self._count(files_skipped=1)
                return WalkState.CONTINUE

            try:
                entry = extractor.digest(path)
            except Exception as e:
                handle_error(e, path, "extract")
                self._count(errors=1)
                return WalkState.CONTINUE

            try:
                channel.send(entry)
            except ChannelClosed as e:
                handle_error(e, path, "send")
                return WalkState.QUIT
            return WalkState.CONTINUE

        try:
            try:
                walk_stats = walker.run(visit)
            finally:
                channel.finish()
                try:
                    indexed = writer.join()
                finally:
                    extractor.close()
        except BaseException:
            index.close()
            raise

        self.stats.files_visited = walk_stats.files
        self.stats.entries_indexed = indexed
        self.stats.errors += walk_stats.errors
        self.stats.channel_high_water = channel.high_water
        self.stats.duration_seconds = time.monotonic() - start_time
        logger.info(f"Build complete: {self.stats}")

        return index

    def _count(self, files_skipped: int = 0, errors: int = 0) -> None:
        with self._lock:
            self.stats.files_skipped += files_skipped
            self.stats.errors += errors


def build_index(
    source: Path,
    destination: Optional[Path] = None,
    threads: Optional[int] = None,
    config: Optional[MemexConfig] = None,
) -> Index:
    """
    Convenience function to build an index.

    Usage:
        index = build_index(Path.home() / "Documents", threads=4)
    """
    config = config or get_config()
    if threads is not None and threads != config.threads:
        config = replace(config, threads=threads)
    return Orchestrator(config).build(source, destination)


def build_parser(config: MemexConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memex",
        description="Index a directory tree and serve launcher search results",
    )
    parser.add_argument(
        "-s", "--source", required=True,
        help="Recursively ingest files in the provided directory",
    )
    parser.add_argument(
        "-d", "--destination",
        help="Persist the index to this directory. If not supplied the index remains in RAM",
    )
    parser.add_argument(
        "-t", "--threads", type=int, default=config.threads,
        help="Worker threads for crawling and extraction (env: INGEST_THREADS)",
    )
    parser.add_argument(
        "-l", "--host", default=config.host,
        help="Listen on the following host",
    )
    parser.add_argument(
        "-p", "--port", type=int, default=config.port,
        help="Listen on the following port",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    try:
        env_config = MemexConfig.from_env()
    except ValueError as e:
        print(f"memex: invalid environment setting: {e}", file=sys.stderr)
        return 2

    args = build_parser(env_config).parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    try:
        config = replace(
            env_config, threads=args.threads, host=args.host, port=args.port
        )
    except ValueError as e:
        logger.error(str(e))
        return 2

    start = time.monotonic()
    try:
        index = Orchestrator(config).build(
            Path(args.source),
            Path(args.destination) if args.destination else None,
        )
    except MemexError as e:
        logger.error(f"Failed to build index: {e}")
        return 1
    logger.info(f"Built index in {time.monotonic() - start:.1f} seconds.")

    try:
        serve(index, config.host, config.port)
    except MemexError as e:
        logger.error(f"Failed to serve index: {e}")
        return 1
    except OSError as e:
        logger.error(f"Failed to listen on {config.host}:{config.port}: {e}")
        return 1
    finally:
        index.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
