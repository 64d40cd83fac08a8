"""
Indexer Tests - Verify the bounded channel and the single writer.

Tests:
- Channel capacity, blocking and closing
- Writer commits exactly once after draining
- Insert and commit failures stop the build without committing
"""

import threading
import time

import pytest

from memex.errors import ChannelClosed, IndexWriteError
from memex.index import Index
from memex.indexer import EntryChannel, IndexingWriter
from memex.models import Entry
from memex.schema import document_schema


class FakeIndexWriter:
    """Records calls instead of touching an index."""

    def __init__(self, fail_on=None, fail_commit=False, delay=0.0):
        self.documents = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.fail_on = fail_on
        self.fail_commit = fail_commit
        self.delay = delay

    def add_document(self, fields):
        if self.delay:
            time.sleep(self.delay)
        if fields["title"] == self.fail_on:
            raise IndexWriteError(f"cannot insert {fields['title']}")
        self.documents.append(fields)
        return len(self.documents)

    def commit(self):
        if self.fail_commit:
            raise IndexWriteError("disk full")
        self.commits += 1
        return len(self.documents)

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


def send_all(channel, titles):
    for title in titles:
        channel.send(Entry(title=title))
    channel.finish()


class TestEntryChannel:
    """Tests for the bounded channel."""

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            EntryChannel(capacity=0)

    def test_receives_in_order_until_finished(self):
        channel = EntryChannel(capacity=4)
        send_all(channel, ["a", "b", "c"])

        assert [e.title for e in channel] == ["a", "b", "c"]
        assert channel.sent == 3

    def test_send_blocks_when_full(self):
        channel = EntryChannel(capacity=2)
        channel.send(Entry(title="1"))
        channel.send(Entry(title="2"))
        sent_third = threading.Event()

        def producer():
            channel.send(Entry(title="3"))
            sent_third.set()

        thread = threading.Thread(target=producer)
        thread.start()

        assert not sent_third.wait(0.2)
        assert len(channel) == 2

        received = iter(channel)
        assert next(received).title == "1"
        assert sent_third.wait(2)
        thread.join()

    def test_high_water_never_exceeds_capacity(self):
        channel = EntryChannel(capacity=3)
        received = []

        def consumer():
            for entry in channel:
                time.sleep(0.001)
                received.append(entry)

        thread = threading.Thread(target=consumer)
        thread.start()
        producers = [
            threading.Thread(target=lambda: [channel.send(Entry(title="x")) for _ in range(50)])
            for _ in range(4)
        ]
        for p in producers:
            p.start()
        for p in producers:
            p.join()
        channel.finish()
        thread.join()

        assert len(received) == 200
        assert channel.high_water <= 3

    def test_send_after_close(self):
        channel = EntryChannel(capacity=1)
        channel.close()

        assert channel.closed
        with pytest.raises(ChannelClosed):
            channel.send(Entry(title="late"))


class TestIndexingWriter:
    """Tests for the single writer thread."""

    def test_adds_every_entry_and_commits_once(self):
        channel = EntryChannel(capacity=2)
        index_writer = FakeIndexWriter()
        writer = IndexingWriter(channel, index_writer).start()

        send_all(channel, ["a", "b", "c", "d", "e"])

        assert writer.join() == 5
        assert [d["title"] for d in index_writer.documents] == ["a", "b", "c", "d", "e"]
        assert index_writer.commits == 1
        assert index_writer.closed

    def test_entries_become_documents(self):
        channel = EntryChannel(capacity=1)
        index_writer = FakeIndexWriter()
        writer = IndexingWriter(channel, index_writer).start()

        channel.send(Entry(title="site", loc="http://example.com"))
        channel.finish()
        writer.join()

        assert index_writer.documents == [
            {"title": "site", "body": "", "loc": "http://example.com", "archive_loc": ""}
        ]

    def test_empty_input_still_commits(self):
        channel = EntryChannel(capacity=1)
        index_writer = FakeIndexWriter()
        writer = IndexingWriter(channel, index_writer).start()

        channel.finish()

        assert writer.join() == 0
        assert index_writer.commits == 1

    def test_insert_failure_fails_the_build(self):
        channel = EntryChannel(capacity=2)
        index_writer = FakeIndexWriter(fail_on="bad")
        writer = IndexingWriter(channel, index_writer).start()

        channel.send(Entry(title="good"))
        channel.send(Entry(title="bad"))
        deadline = time.monotonic() + 5
        while not channel.closed and time.monotonic() < deadline:
            time.sleep(0.01)

        with pytest.raises(ChannelClosed):
            channel.send(Entry(title="after"))
        channel.finish()

        with pytest.raises(IndexWriteError, match="cannot insert bad"):
            writer.join()
        assert index_writer.commits == 0
        assert index_writer.rollbacks == 1
        assert index_writer.closed

    def test_blocked_senders_wake_after_failure(self):
        """Producers stuck on a full channel are released once the writer fails."""
        channel = EntryChannel(capacity=1)
        index_writer = FakeIndexWriter(fail_on="0", delay=0.01)
        writer = IndexingWriter(channel, index_writer).start()
        outcomes = []
        lock = threading.Lock()

        def producer(n):
            for i in range(n):
                try:
                    channel.send(Entry(title=str(i)))
                except ChannelClosed:
                    with lock:
                        outcomes.append("closed")
                    return
            with lock:
                outcomes.append("done")

        producers = [threading.Thread(target=producer, args=(20,)) for _ in range(3)]
        for p in producers:
            p.start()
        for p in producers:
            p.join(timeout=10)
            assert not p.is_alive()
        channel.finish()

        with pytest.raises(IndexWriteError):
            writer.join()
        assert index_writer.commits == 0
        assert len(outcomes) == 3

    def test_commit_failure(self):
        channel = EntryChannel(capacity=1)
        index_writer = FakeIndexWriter(fail_commit=True)
        writer = IndexingWriter(channel, index_writer).start()

        send_all(channel, ["a"])

        with pytest.raises(IndexWriteError, match="disk full"):
            writer.join()
        assert index_writer.rollbacks == 1

    def test_unexpected_error_is_wrapped(self):
        class Broken(FakeIndexWriter):
            def add_document(self, fields):
                raise KeyError("boom")

        channel = EntryChannel(capacity=1)
        writer = IndexingWriter(channel, Broken()).start()
        send_all(channel, ["a"])

        with pytest.raises(IndexWriteError) as exc_info:
            writer.join()
        assert isinstance(exc_info.value.__cause__, KeyError)

    def test_writes_into_real_index(self):
        with Index.create_in_ram(document_schema()) as index:
            channel = EntryChannel(capacity=2)
            writer = IndexingWriter(channel, index.writer()).start()

            send_all(channel, [f"doc {i}" for i in range(10)])

            assert writer.join() == 10
            assert index.reader().num_docs() == 10
