"""
Scanner - Parallel recursive file system traversal.

Directory scans are fanned out over a thread pool. Every regular file is
handed to a visitor on the worker thread that found it, so extraction runs
with the same parallelism as the crawl.

Standard filters apply by default: hidden entries are skipped, and so is
anything matched by a `.ignore` file, or by a `.gitignore` file or
`.git/info/exclude` inside a git repository.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

import pathspec

from .errors import WalkError, handle_error


logger = logging.getLogger(__name__)


GIT_DIR = ".git"
GIT_EXCLUDE = Path(GIT_DIR) / "info" / "exclude"


class WalkState(Enum):
    """Visitor verdict after handling one file."""
    CONTINUE = auto()
    QUIT = auto()


Visitor = Callable[[Path], Optional[WalkState]]


@dataclass
class WalkStats:
    """Counters from a finished walk."""
    files: int = 0
    directories: int = 0
    errors: int = 0
    quit_early: bool = False


@dataclass(frozen=True)
class IgnoreRules:
    """
    Ignore patterns in effect for one directory.

    Each spec is paired with the directory its patterns are relative to,
    outermost first. Subdirectories extend their parent's rules.
    """
    specs: Tuple[Tuple[Path, pathspec.PathSpec], ...] = ()
    in_git_repo: bool = False

    def is_ignored(self, path: Path, is_dir: bool) -> bool:
        for base, spec in self.specs:
            relative = path.relative_to(base).as_posix()
            if is_dir:
                relative += "/"
            if spec.match_file(relative):
                return True
        return False


def load_ignore_file(path: Path) -> pathspec.PathSpec:
    """Parse one gitignore-style file."""
    with open(path, encoding="utf-8", errors="replace") as f:
        return pathspec.GitIgnoreSpec.from_lines(f)


def inside_git_repo(directory: Path) -> bool:
    """True when directory or one of its parents holds a .git entry."""
    directory = directory.resolve()
    return any((d / GIT_DIR).exists() for d in (directory, *directory.parents))


class Walker:
    """
    Parallel directory walker.

    Yields regular files only. Directories are traversed but never handed
    to the visitor. Symlinked directories are not descended into unless
    follow_symlinks is set; symlinks to regular files are always visited.
    """

    def __init__(
        self,
        root: Path,
        threads: int = 8,
        follow_symlinks: bool = False,
        skip_hidden: bool = True,
        read_ignore_files: bool = True,
    ):
        self.root = Path(root)
        self.threads = max(1, threads)
        self.follow_symlinks = follow_symlinks
        self.skip_hidden = skip_hidden
        self.read_ignore_files = read_ignore_files

        self._executor: ThreadPoolExecutor | None = None
        self._cond = threading.Condition()
        self._pending = 0
        self._quit = threading.Event()
        self._failure: BaseException | None = None
        self._seen: Set[Tuple[int, int]] = set()
        self._stats = WalkStats()

    def run(self, visitor: Visitor) -> WalkStats:
        """
        Walk the tree, calling visitor(path) for every regular file.

        The visitor may return WalkState.QUIT to stop scheduling further
        work. If it raises, traversal stops the same way and the first
        exception is re-raised once in-flight work has finished.

        Raises:
            WalkError: If the root does not exist or is not walkable
        """
        if not self.root.exists():
            raise WalkError(f"Source path not found: {self.root}")

        if self.root.is_file():
            self._visit(visitor, self.root)
            self._raise_failure()
            return self._stats

        if not self.root.is_dir():
            raise WalkError(f"Source path is neither a file nor a directory: {self.root}")

        rules = IgnoreRules()
        if self.read_ignore_files:
            rules = IgnoreRules(in_git_repo=inside_git_repo(self.root))

        self._executor = ThreadPoolExecutor(
            max_workers=self.threads,
            thread_name_prefix="walker"
        )
        try:
            self._schedule(visitor, self.root, rules)
            with self._cond:
                self._cond.wait_for(lambda: self._pending == 0)
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None

        if self._stats.quit_early:
            logger.warning(f"Traversal of {self.root} stopped early")
        self._raise_failure()
        return self._stats

    def _schedule(self, visitor: Visitor, directory: Path, rules: IgnoreRules) -> None:
        # The pool outlives every task because run() waits for _pending.
        with self._cond:
            self._pending += 1
        self._executor.submit(self._scan_directory, visitor, directory, rules)

    def _done(self) -> None:
        with self._cond:
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    def _scan_directory(self, visitor: Visitor, directory: Path, rules: IgnoreRules) -> None:
        try:
            if self._quit.is_set():
                return

            if self.follow_symlinks and not self._first_visit(directory):
                return

            try:
                with os.scandir(directory) as it:
                    entries = list(it)
            except OSError as e:
                self._count_error()
                handle_error(e, directory, "scan_directory")
                return

            with self._cond:
                self._stats.directories += 1

            if self.read_ignore_files:
                rules = self._extend_rules(directory, entries, rules)

            for entry in entries:
                if self._quit.is_set():
                    return
                if self.skip_hidden and entry.name.startswith("."):
                    continue
                path = Path(entry.path)
                try:
                    if entry.is_dir(follow_symlinks=self.follow_symlinks):
                        if not rules.is_ignored(path, is_dir=True):
                            self._schedule(visitor, path, rules)
                    elif entry.is_file():
                        if not rules.is_ignored(path, is_dir=False):
                            self._visit(visitor, path)
                except OSError as e:
                    self._count_error()
                    handle_error(e, path, "scan_entry")
        except Exception as e:
            self._fail(e)
        finally:
            self._done()

    def _extend_rules(
        self, directory: Path, entries: List[os.DirEntry], rules: IgnoreRules
    ) -> IgnoreRules:
        """Add the ignore files found in directory to its parent's rules."""
        names = {entry.name for entry in entries}
        in_git_repo = rules.in_git_repo or GIT_DIR in names

        candidates = []
        if GIT_DIR in names:
            candidates.append(directory / GIT_EXCLUDE)
        if in_git_repo and ".gitignore" in names:
            candidates.append(directory / ".gitignore")
        if ".ignore" in names:
            candidates.append(directory / ".ignore")

        specs = list(rules.specs)
        for candidate in candidates:
            if not candidate.is_file():
                continue
            try:
                specs.append((directory, load_ignore_file(candidate)))
            except OSError as e:
                self._count_error()
                handle_error(e, candidate, "ignore_file")

        return IgnoreRules(specs=tuple(specs), in_git_repo=in_git_repo)

    def _visit(self, visitor: Visitor, path: Path) -> None:
        with self._cond:
            self._stats.files += 1
        try:
            state = visitor(path)
        except Exception as e:
            self._fail(e)
            return
        if state is WalkState.QUIT:
            self._stop()

    def _fail(self, error: Exception) -> None:
        with self._cond:
            if self._failure is None:
                self._failure = error
        self._stop()

    def _first_visit(self, directory: Path) -> bool:
        """Record a directory identity; False when already walked (cycle)."""
        try:
            st = directory.stat()
        except OSError as e:
            self._count_error()
            handle_error(e, directory, "stat")
            return False
        key = (st.st_dev, st.st_ino)
        with self._cond:
            if key in self._seen:
                return False
            self._seen.add(key)
        return True

    def _count_error(self) -> None:
        with self._cond:
            self._stats.errors += 1

    def _stop(self) -> None:
        with self._cond:
            self._stats.quit_early = True
        self._quit.set()

    def _raise_failure(self) -> None:
        if self._failure is not None:
            raise self._failure


def walk(
    root: Path,
    visitor: Visitor,
    threads: int = 8,
    follow_symlinks: bool = False,
) -> WalkStats:
    """
    Convenience function to walk a tree.

    Usage:
        walk(Path.home() / "Documents", lambda p: print(p))
    """
    return Walker(root, threads=threads, follow_symlinks=follow_symlinks).run(visitor)
