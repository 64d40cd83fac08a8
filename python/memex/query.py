"""
Query Parser - Turns a user query string into a structured query.

Syntax:

    alpha beta          either term (OR is the default conjunction)
    "new york"          phrase
    title:alpha         term restricted to one tokenized field
    loc:"http://b"      exact match on a whole exact-match field value
    +alpha -beta        required / excluded clause
    alph*               prefix of a term

Free-text clauses without a field search the parser's default fields.
Exact-match fields are never part of the default scope; a clause on one of
them always filters (or, with -, excludes) on the complete stored value.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .errors import QueryParseError, SchemaError
from .schema import Schema


_FIELD_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SEARCHABLE = re.compile(r"[^\W_]")


class Occur(Enum):
    SHOULD = ""
    MUST = "+"
    MUST_NOT = "-"


@dataclass(frozen=True)
class Clause:
    occur: Occur
    field: Optional[str]
    value: str
    prefix: bool = False


@dataclass(frozen=True)
class Query:
    """
    A parsed query, ready for the index engine.

    match is an FTS5 expression that documents must satisfy, excluded an
    FTS5 expression they must not satisfy. filters and exclusions are
    (field, value) pairs compared for equality on exact-match fields.
    """
    match: Optional[str] = None
    excluded: Optional[str] = None
    filters: Tuple[Tuple[str, str], ...] = ()
    exclusions: Tuple[Tuple[str, str], ...] = ()
    clauses: Tuple[Clause, ...] = field(default=(), compare=False)

    @property
    def is_empty(self) -> bool:
        """True when nothing can match (no positive constraint)."""
        return self.match is None and not self.filters


class QueryParser:
    """
    Parses query strings against a schema.

    The default fields must be tokenized fields of the schema.
    """

    def __init__(self, schema: Schema, default_fields: Sequence[str]):
        self.schema = schema
        for name in default_fields:
            if not schema.get_field(name).tokenized:
                raise SchemaError(f"default field {name!r} is not tokenized")
        self.default_fields: List[str] = list(default_fields)

    @classmethod
    def for_schema(cls, schema: Schema) -> "QueryParser":
        """Parser searching every tokenized field by default."""
        return cls(schema, [f.name for f in schema.tokenized_fields])

    def parse(self, text: str) -> Query:
        clauses = list(self._clauses(text))

        musts: List[str] = []
        shoulds: List[str] = []
        negatives: List[str] = []
        filters: List[Tuple[str, str]] = []
        exclusions: List[Tuple[str, str]] = []

        for clause in clauses:
            if clause.field and not self.schema.get_field(clause.field).tokenized:
                pair = (clause.field, clause.value)
                if clause.occur is Occur.MUST_NOT:
                    exclusions.append(pair)
                else:
                    filters.append(pair)
                continue

            if not _SEARCHABLE.search(clause.value):
                continue
            if clause.field is None and not self.default_fields:
                continue
            expression = self._match_expression(clause)
            if clause.occur is Occur.MUST:
                musts.append(expression)
            elif clause.occur is Occur.MUST_NOT:
                negatives.append(expression)
            else:
                shoulds.append(expression)

        match = None
        if musts:
            match = " AND ".join(musts)
        elif shoulds and not filters:
            match = " OR ".join(shoulds)

        if match is None and not filters and (negatives or exclusions):
            raise QueryParseError("Query only contains excluded clauses")

        return Query(
            match=match,
            excluded=" OR ".join(negatives) if negatives else None,
            filters=tuple(filters),
            exclusions=tuple(exclusions),
            clauses=tuple(clauses),
        )

    def _match_expression(self, clause: Clause) -> str:
        columns = [clause.field] if clause.field else self.default_fields
        phrase = '"' + clause.value.replace('"', '""') + '"'
        if clause.prefix:
            phrase += " *"
        return "{" + " ".join(columns) + "} : " + phrase

    def _clauses(self, text: str):
        pos = 0
        length = len(text)
        while pos < length:
            if text[pos].isspace():
                pos += 1
                continue

            occur = Occur.SHOULD
            if text[pos] in "+-":
                occur = Occur(text[pos])
                pos += 1
                if pos >= length or text[pos].isspace():
                    raise QueryParseError(f"Dangling '{occur.value}' at position {pos}")

            field_name = None
            m = _FIELD_NAME.match(text, pos)
            if m and m.end() < length and text[m.end()] == ":":
                field_name = m.group(0)
                if not self.schema.has_field(field_name):
                    raise QueryParseError(f"Field does not exist: '{field_name}'")
                pos = m.end() + 1
                if pos >= length or text[pos].isspace():
                    raise QueryParseError(f"Missing value for field '{field_name}'")

            prefix = False
            if text[pos] == '"':
                end = text.find('"', pos + 1)
                if end == -1:
                    raise QueryParseError(f"Unterminated phrase starting at position {pos}")
                value = text[pos + 1:end]
                pos = end + 1
            else:
                end = pos
                while end < length and not text[end].isspace():
                    end += 1
                value = text[pos:end]
                pos = end
                tokenized = field_name is None or self.schema.get_field(field_name).tokenized
                if tokenized and value.endswith("*") and _SEARCHABLE.search(value):
                    value = value.rstrip("*")
                    prefix = True

            yield Clause(occur=occur, field=field_name, value=value, prefix=prefix)
