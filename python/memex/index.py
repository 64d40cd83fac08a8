"""
Index - Document index engine on SQLite FTS5.

Layout of one index (a single database, on disk or in memory):

    memex_schema    one row per field, in schema order
    documents       one row per document: stored and exact-match fields
    documents_fts   contentless FTS5 table over the tokenized fields

Tokenized fields that are not stored only live in the FTS index, so their
text cannot be read back. Exact-match fields are plain indexed columns.

One IndexWriter adds documents inside a single transaction and commits
once. Readers hand out searchers, each with its own read-only connection,
so any number of threads can search a finished index without locking.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import IndexOpenError, IndexWriteError, SchemaError, SearchError
from .query import Query
from .schema import FieldSpec, Schema


logger = logging.getLogger(__name__)


DB_FILENAME = "memex.sqlite3"


@dataclass(frozen=True)
class Hit:
    """A matched document with its stored fields."""
    doc_id: int
    score: float
    fields: Dict[str, str]


class Index:
    """
    Handle on one document index.

    In-memory indexes live as long as the Index object is open.
    """

    def __init__(
        self,
        schema: Schema,
        db_path: Optional[Path] = None,
        memory_uri: Optional[str] = None,
        keepalive: Optional[sqlite3.Connection] = None,
    ):
        self.schema = schema
        self.db_path = db_path
        self._memory_uri = memory_uri
        self._keepalive = keepalive

    @classmethod
    def create_in_ram(cls, schema: Schema) -> "Index":
        """Create an index held purely in memory."""
        uri = f"file:memex-{uuid.uuid4().hex}?mode=memory&cache=shared"
        try:
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as e:
            raise IndexOpenError(f"Cannot create in-memory index: {e}") from e
        _create_tables(conn, schema)
        logger.debug("Created in-memory index")
        return cls(schema, memory_uri=uri, keepalive=conn)

    @classmethod
    def open_or_create(cls, directory: Path, schema: Schema) -> "Index":
        """
        Open the index in directory, creating directory and index if needed.

        Raises:
            IndexOpenError: If the directory is unusable or holds an index
                with a different schema
        """
        directory = Path(directory).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IndexOpenError(f"Cannot create index directory {directory}: {e}") from e

        db_path = (directory / DB_FILENAME).resolve()
        if db_path.exists():
            index = cls.open(directory)
            if index.schema != schema:
                raise IndexOpenError(
                    f"Index at {directory} has schema {index.schema}, expected {schema}"
                )
            return index

        try:
            conn = sqlite3.connect(str(db_path))
        except sqlite3.Error as e:
            raise IndexOpenError(f"Cannot create index at {db_path}: {e}") from e
        try:
            _create_tables(conn, schema)
        finally:
            conn.close()
        logger.info(f"Created index at {db_path}")
        return cls(schema, db_path=db_path)

    @classmethod
    def open(cls, directory: Path) -> "Index":
        """Open an existing on-disk index, reading its schema."""
        db_path = (Path(directory).expanduser() / DB_FILENAME).resolve()
        if not db_path.exists():
            raise IndexOpenError(f"No index found at {directory}")
        try:
            conn = sqlite3.connect(f"{db_path.as_uri()}?mode=ro", uri=True)
            try:
                schema = _load_schema(conn)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise IndexOpenError(f"Cannot read index at {db_path}: {e}") from e
        return cls(schema, db_path=db_path)

    @property
    def in_memory(self) -> bool:
        return self._memory_uri is not None

    def _connect(self, readonly: bool = False) -> sqlite3.Connection:
        try:
            if self._memory_uri is not None:
                if self._keepalive is None:
                    raise IndexOpenError("In-memory index has been closed")
                conn = sqlite3.connect(self._memory_uri, uri=True, check_same_thread=False)
            elif readonly:
                conn = sqlite3.connect(
                    f"{self.db_path.as_uri()}?mode=ro", uri=True, check_same_thread=False
                )
            else:
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise IndexOpenError(f"Cannot connect to index: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def writer(self) -> "IndexWriter":
        return IndexWriter(self)

    def reader(self) -> "IndexReader":
        return IndexReader(self)

    def close(self):
        """Release the index. In-memory contents are discarded."""
        if self._keepalive is not None:
            self._keepalive.close()
            self._keepalive = None

    def __enter__(self) -> "Index":
        return self

    def __exit__(self, *exc_info):
        self.close()


class IndexWriter:
    """
    Adds documents and commits them.

    All documents added before commit() become visible together. Owned by
    a single thread at a time.
    """

    def __init__(self, index: Index):
        self.schema = index.schema
        self._conn = index._connect()
        self._columns = [f.name for f in self.schema.column_fields]
        self._fts_columns = [f.name for f in self.schema.tokenized_fields]
        self._pending = 0

        self._insert_document = "INSERT INTO documents ({}) VALUES ({})".format(
            ", ".join(self._columns), ", ".join("?" for _ in self._columns)
        ) if self._columns else "INSERT INTO documents DEFAULT VALUES"
        self._insert_fts = "INSERT INTO documents_fts (rowid, {}) VALUES (?, {})".format(
            ", ".join(self._fts_columns), ", ".join("?" for _ in self._fts_columns)
        )

    def add_document(self, fields: Mapping[str, str]) -> int:
        """
        Add one document. Missing fields are stored as empty strings.

        Returns:
            The new document id

        Raises:
            IndexWriteError: On unknown fields or a failed insert
        """
        unknown = set(fields) - set(self.schema.field_names)
        if unknown:
            raise IndexWriteError(f"Unknown fields: {sorted(unknown)}")

        values = {name: fields.get(name) or "" for name in self.schema.field_names}
        try:
            cursor = self._conn.execute(
                self._insert_document, [values[c] for c in self._columns]
            )
            doc_id = cursor.lastrowid
            if self._fts_columns:
                self._conn.execute(
                    self._insert_fts, [doc_id] + [values[c] for c in self._fts_columns]
                )
        except sqlite3.Error as e:
            raise IndexWriteError(f"Failed to insert document: {e}") from e

        self._pending += 1
        return doc_id

    def commit(self) -> int:
        """Commit every added document. Returns how many were committed."""
        try:
            self._conn.commit()
        except sqlite3.Error as e:
            raise IndexWriteError(f"Failed to commit: {e}") from e
        committed, self._pending = self._pending, 0
        logger.debug(f"Committed {committed} documents")
        return committed

    def rollback(self):
        """Discard every document added since the last commit."""
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")
        self._pending = 0

    def close(self):
        self._conn.close()


class IndexReader:
    """Hands out point-in-time searchers over a committed index."""

    def __init__(self, index: Index):
        self._index = index
        self.schema = index.schema

    def searcher(self) -> "Searcher":
        return Searcher(self._index._connect(readonly=True), self.schema)

    def num_docs(self) -> int:
        with self.searcher() as searcher:
            return searcher.num_docs()


class Searcher:
    """
    Executes queries on one read connection.

    Use as a context manager; the connection closes on exit.
    """

    def __init__(self, conn: sqlite3.Connection, schema: Schema):
        self._conn = conn
        self.schema = schema
        self._stored = [f.name for f in schema.stored_fields]

    def search(self, query: Query, limit: int, offset: int = 0) -> Tuple[List[Hit], int]:
        """
        Top `limit` hits by relevance starting at `offset`, and the total
        number of matching documents.

        Raises:
            SearchError: If the engine fails to run the query
        """
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        if offset < 0:
            raise ValueError(f"offset must not be negative, got {offset}")
        if query.is_empty:
            return [], 0

        source, score, where, params = self._compile(query)
        columns = "".join(f", d.{name}" for name in self._stored)
        hits_sql = (
            f"SELECT d.id AS doc_id, {score} AS score{columns} FROM {source}{where} "
            f"ORDER BY score, d.id LIMIT ? OFFSET ?"
        )
        count_sql = f"SELECT count(*) FROM {source}{where}"

        try:
            rows = self._conn.execute(hits_sql, params + [limit, offset]).fetchall()
            total = self._conn.execute(count_sql, params).fetchone()[0]
        except (sqlite3.Error, OverflowError) as e:
            raise SearchError(f"Search failed: {e}") from e

        hits = [
            Hit(
                doc_id=row["doc_id"],
                # bm25() ranks better matches lower; flip it so higher is better
                score=-row["score"],
                fields={name: row[name] for name in self._stored},
            )
            for row in rows
        ]
        return hits, total

    def _compile(self, query: Query):
        params: list = []
        conditions: List[str] = []

        if query.match is not None:
            source = (
                "(SELECT rowid AS id, bm25(documents_fts) AS score FROM documents_fts "
                "WHERE documents_fts MATCH ?) AS hits JOIN documents AS d ON d.id = hits.id"
            )
            score = "hits.score"
            params.append(query.match)
        else:
            source = "documents AS d"
            score = "0.0"

        for name, value in query.filters:
            self._require_column(name)
            conditions.append(f"d.{name} = ?")
            params.append(value)
        for name, value in query.exclusions:
            self._require_column(name)
            conditions.append(f"d.{name} != ?")
            params.append(value)
        if query.excluded is not None:
            conditions.append(
                "d.id NOT IN (SELECT rowid FROM documents_fts WHERE documents_fts MATCH ?)"
            )
            params.append(query.excluded)

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        return source, score, where, params

    def _require_column(self, name: str):
        spec = self.schema.get_field(name)
        if spec.tokenized and not spec.stored:
            raise SearchError(f"Field {name!r} cannot be filtered by value")

    def doc(self, doc_id: int) -> Dict[str, str]:
        """Stored fields of one document."""
        columns = ", ".join(self._stored) or "id"
        try:
            row = self._conn.execute(
                f"SELECT {columns} FROM documents WHERE id = ?", (doc_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise SearchError(f"Cannot load document {doc_id}: {e}") from e
        if row is None:
            raise SearchError(f"No document with id {doc_id}")
        return {name: row[name] for name in self._stored}

    def num_docs(self) -> int:
        try:
            return self._conn.execute("SELECT count(*) FROM documents").fetchone()[0]
        except sqlite3.Error as e:
            raise SearchError(f"Cannot count documents: {e}") from e

    def close(self):
        self._conn.close()

    def __enter__(self) -> "Searcher":
        return self

    def __exit__(self, *exc_info):
        self.close()


def _create_tables(conn: sqlite3.Connection, schema: Schema):
    """Create the schema, document and FTS tables for a new index."""
    columns = "".join(
        f", {f.name} TEXT NOT NULL DEFAULT ''" for f in schema.column_fields
    )
    statements = [
        """
        CREATE TABLE memex_schema (
            position INTEGER PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            tokenized INTEGER NOT NULL,
            stored INTEGER NOT NULL
        )
        """,
        f"CREATE TABLE documents (id INTEGER PRIMARY KEY{columns})",
    ]
    for f in schema.exact_fields:
        statements.append(f"CREATE INDEX idx_documents_{f.name} ON documents({f.name})")
    if schema.tokenized_fields:
        fts_columns = ", ".join(f.name for f in schema.tokenized_fields)
        statements.append(
            f"CREATE VIRTUAL TABLE documents_fts USING fts5({fts_columns}, content='')"
        )

    try:
        with conn:
            for statement in statements:
                conn.execute(statement)
            conn.executemany(
                "INSERT INTO memex_schema (position, name, tokenized, stored) VALUES (?, ?, ?, ?)",
                [
                    (position, f.name, int(f.tokenized), int(f.stored))
                    for position, f in enumerate(schema)
                ],
            )
    except sqlite3.Error as e:
        raise IndexOpenError(f"Cannot initialize index: {e}") from e


def _load_schema(conn: sqlite3.Connection) -> Schema:
    try:
        rows = conn.execute(
            "SELECT name, tokenized, stored FROM memex_schema ORDER BY position"
        ).fetchall()
    except sqlite3.OperationalError as e:
        raise IndexOpenError(f"Not a memex index: {e}") from e
    try:
        return Schema([
            FieldSpec(name=name, tokenized=bool(tokenized), stored=bool(stored))
            for name, tokenized, stored in rows
        ])
    except SchemaError as e:
        raise IndexOpenError(f"Corrupt index schema: {e}") from e
