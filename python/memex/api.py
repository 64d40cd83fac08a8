"""
Search API - Serves launcher-shaped search results over HTTP.

Endpoint:
    GET /api/?q=<query>&nhits=<int>&offset=<int>

    q       query string (required)
    nhits   number of hits to return (default 10)
    offset  number of top hits to skip (default 0)

For instance, the 20 most relevant hits for "fulmicoton":

    http://localhost:3000/api/?q=fulmicoton&nhits=20

The response is {"items": [{"title", "arg", "action": {"file", "url"}}]}.
"""

import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from .errors import QueryParseError, SchemaError, SearchError
from .index import Index, IndexReader
from .models import SearchResult, SearchResults
from .query import QueryParser
from .schema import Schema


logger = logging.getLogger(__name__)


REQUIRED_FIELDS = ("title", "loc", "archive_loc")
DEFAULT_NHITS = 10
# SQLite binds LIMIT / OFFSET as signed 64-bit integers
MAX_COUNT = 2**63 - 1


class SearchService:
    """
    Read-only search over a finished index.

    Holds the reader, the query parser and the schema. Nothing mutates
    after load(), so one instance serves any number of request threads.
    """

    def __init__(self, reader: IndexReader, query_parser: QueryParser, schema: Schema):
        self.reader = reader
        self.query_parser = query_parser
        self.schema = schema

    @classmethod
    def load(cls, index: Index) -> "SearchService":
        """
        Build the service for an index.

        Free-text queries search every tokenized field; exact-match fields
        are only reachable with an explicit field prefix.

        Raises:
            SchemaError: If the index lacks a field results are built from
        """
        schema = index.schema
        missing = [name for name in REQUIRED_FIELDS if not schema.has_field(name)]
        if missing:
            raise SchemaError(f"Index schema is missing fields: {missing}")
        unstored = [name for name in REQUIRED_FIELDS if not schema.get_field(name).stored]
        if unstored:
            raise SchemaError(f"Index fields are not stored: {unstored}")

        reader = index.reader()
        logger.info(f"Serving {reader.num_docs()} documents")
        return cls(reader, QueryParser.for_schema(schema), schema)

    def search(self, q: str, nhits: int = DEFAULT_NHITS, offset: int = 0) -> SearchResults:
        """
        Run one query and shape its hits.

        Raises:
            QueryParseError: If q is not valid query syntax
            SearchError: If retrieval fails
        """
        query = self.query_parser.parse(q)
        with self.reader.searcher() as searcher:
            hits, total = searcher.search(query, limit=nhits, offset=offset)
        return SearchResults(
            items=[SearchResult.from_stored(hit.fields) for hit in hits],
            total=total,
        )


def _parse_count(values: Optional[List[str]], default: int, minimum: int) -> int:
    """First value as an int between minimum and MAX_COUNT, else default."""
    if not values:
        return default
    try:
        value = int(values[0])
    except ValueError:
        return default
    return value if minimum <= value <= MAX_COUNT else default


class SearchServer(ThreadingHTTPServer):
    """HTTP server carrying the search service its handlers use."""

    daemon_threads = True

    def __init__(self, address, search_service: SearchService):
        self.search_service = search_service
        super().__init__(address, RequestHandler)


class RequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the search API"""

    server: SearchServer

    def log_message(self, format, *args):
        """Override to use our logger"""
        logger.info("%s - %s" % (self.address_string(), format % args))

    def send_json(self, data: dict, status: int = 200):
        """Send a pretty-printed JSON response"""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_text(self, message: str, status: int):
        """Send a plain-text (error) response"""
        body = message.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        """Handle GET requests"""
        url = urlsplit(self.path)
        if url.path not in ("/api", "/api/"):
            self.send_text("Not found", 404)
            return

        try:
            params: Dict[str, List[str]] = parse_qs(
                url.query, keep_blank_values=True, errors="strict"
            )
        except (UnicodeDecodeError, ValueError):
            self.send_text("Failed to decode query string", 400)
            return

        if "q" not in params:
            self.send_text("Parameter q is missing from the query", 400)
            return

        q = params["q"][0]
        nhits = _parse_count(params.get("nhits"), DEFAULT_NHITS, 1)
        offset = _parse_count(params.get("offset"), 0, 0)

        try:
            results = self.server.search_service.search(q, nhits=nhits, offset=offset)
        except QueryParseError as e:
            self.send_text(f"Invalid query: {e}", 400)
            return
        except SearchError as e:
            logger.error(f"Search error for {q!r}: {e}")
            self.send_text("Search failed", 500)
            return

        logger.debug(f"{q!r}: {len(results.items)} of {results.total} hits")
        self.send_json(results.to_dict())


def make_server(index: Index, host: str = "localhost", port: int = 3000) -> SearchServer:
    """
    Create (and bind) a server for an index without starting it.

    Raises:
        SchemaError: If the index cannot back the search service
        OSError: If the address cannot be bound
    """
    return SearchServer((host, port), SearchService.load(index))


def serve(index: Index, host: str = "localhost", port: int = 3000):
    """Serve the index until interrupted"""
    server = make_server(index, host, port)
    bound_host, bound_port = server.server_address[:2]

    logger.info(f"Listening on http://{bound_host}:{bound_port}")
    logger.info("  GET /api/?q=<query>&nhits=<n>&offset=<n>")
    logger.info("Press Ctrl+C to stop")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        server.server_close()
