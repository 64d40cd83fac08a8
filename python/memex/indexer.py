"""
Indexer - Bounded hand-off from extraction workers to the index writer.

Many workers send entries into an EntryChannel; one IndexingWriter thread
receives them, turns each into a Document and adds it to the index. The
channel holds at most `capacity` entries, so workers block when the writer
falls behind instead of buffering without bound.

When the input is finished and drained the writer commits exactly once.
A failed insert stops the build: nothing is committed, the channel is
closed to further sends and the failure is re-raised by join().
"""

import logging
import queue
import threading
from typing import Iterator, Optional

from .errors import ChannelClosed, IndexWriteError
from .index import IndexWriter
from .models import Document, Entry


logger = logging.getLogger(__name__)


_FINISHED = object()


class EntryChannel:
    """
    Bounded multi-producer, single-consumer queue of entries.

    send() blocks while the channel is full. After close() every send()
    raises ChannelClosed.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._high_water = 0
        self._sent = 0

    def send(self, entry: Entry) -> None:
        if self._closed.is_set():
            raise ChannelClosed("channel is closed")
        self._queue.put(entry)
        with self._lock:
            self._sent += 1
            self._high_water = max(self._high_water, self._queue.qsize())

    def finish(self) -> None:
        """Signal that no more entries will be sent."""
        self._queue.put(_FINISHED)

    def close(self) -> None:
        """Refuse further sends (the receiver has failed)."""
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[Entry]:
        """Receive entries until finish() is seen."""
        while True:
            item = self._queue.get()
            if item is _FINISHED:
                return
            yield item

    @property
    def high_water(self) -> int:
        """Largest backlog observed after a send."""
        with self._lock:
            return self._high_water

    @property
    def sent(self) -> int:
        with self._lock:
            return self._sent

    def __len__(self) -> int:
        return self._queue.qsize()


class IndexingWriter:
    """
    The single consumer of an EntryChannel.

    Runs on its own thread; start() it before producers begin sending and
    join() it after finishing the channel.
    """

    def __init__(self, channel: EntryChannel, index_writer: IndexWriter):
        self.channel = channel
        self.index_writer = index_writer
        self.indexed = 0
        self.error: Optional[IndexWriteError] = None
        self._thread = threading.Thread(
            target=self._run, name="memex-writer", daemon=True
        )

    def start(self) -> "IndexingWriter":
        self._thread.start()
        return self

    def join(self) -> int:
        """
        Wait for the writer to commit and stop.

        Returns:
            Number of documents committed

        Raises:
            IndexWriteError: If an insert or the commit failed
        """
        self._thread.join()
        if self.error is not None:
            raise self.error
        return self.indexed

    def _run(self) -> None:
        try:
            for entry in self.channel:
                if self.error is not None:
                    # Keep draining so blocked senders wake up and see the closed channel.
                    continue
                try:
                    self.index_writer.add_document(Document.from_entry(entry).to_fields())
                    self.indexed += 1
                except IndexWriteError as e:
                    self._fail(e)
                except Exception as e:
                    error = IndexWriteError(f"Failed to insert {entry.title!r}: {e}")
                    error.__cause__ = e
                    self._fail(error)

            if self.error is None:
                try:
                    self.index_writer.commit()
                    logger.info(f"Committed {self.indexed} documents")
                except IndexWriteError as e:
                    self._fail(e)
        finally:
            self.index_writer.close()

    def _fail(self, error: IndexWriteError) -> None:
        if self.error is None:
            logger.error(f"Indexing failed, nothing will be committed: {error}")
            self.error = error
            self.channel.close()
            self.index_writer.rollback()
