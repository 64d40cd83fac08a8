"""
Schema - Field registry for the document index.

A field is either tokenized (full-text searchable) or exact-match (the
whole value is one term), and either stored (returned with hits) or not.
"""

import re
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from .errors import SchemaError


_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    tokenized: bool
    stored: bool


# Option presets, after the usual TEXT / STRING / STORED flags
TEXT = (True, False)
STRING = (False, False)
STORED = (None, True)


class Schema:
    """An ordered, immutable set of named fields."""

    def __init__(self, fields: List[FieldSpec]):
        names = [f.name for f in fields]
        if not fields:
            raise SchemaError("schema has no fields")
        if len(set(names)) != len(names):
            raise SchemaError(f"duplicate field names in {names}")
        for name in names:
            if not _FIELD_NAME.match(name):
                raise SchemaError(f"invalid field name: {name!r}")
        self._fields: Tuple[FieldSpec, ...] = tuple(fields)

    @classmethod
    def builder(cls) -> "SchemaBuilder":
        return SchemaBuilder()

    def __iter__(self) -> Iterator[FieldSpec]:
        return iter(self._fields)

    def __eq__(self, other) -> bool:
        return isinstance(other, Schema) and self._fields == other._fields

    def __hash__(self) -> int:
        return hash(self._fields)

    def __repr__(self) -> str:
        return f"Schema({[f.name for f in self._fields]})"

    def get_field(self, name: str) -> FieldSpec:
        for f in self._fields:
            if f.name == name:
                return f
        raise SchemaError(f"field {name!r} does not exist in the schema")

    def has_field(self, name: str) -> bool:
        return any(f.name == name for f in self._fields)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self._fields]

    @property
    def tokenized_fields(self) -> List[FieldSpec]:
        return [f for f in self._fields if f.tokenized]

    @property
    def exact_fields(self) -> List[FieldSpec]:
        return [f for f in self._fields if not f.tokenized]

    @property
    def stored_fields(self) -> List[FieldSpec]:
        return [f for f in self._fields if f.stored]

    @property
    def column_fields(self) -> List[FieldSpec]:
        """Fields kept as plain columns: stored or exact-match."""
        return [f for f in self._fields if f.stored or not f.tokenized]


class SchemaBuilder:
    def __init__(self):
        self._fields: List[FieldSpec] = []

    def add_text_field(self, name: str, *options: Tuple) -> "SchemaBuilder":
        """
        Add a field. Options combine TEXT or STRING with STORED.

        Usage:
            Schema.builder().add_text_field("title", TEXT, STORED)
        """
        tokenized = None
        stored = False
        for opt_tokenized, opt_stored in options:
            if opt_tokenized is not None:
                tokenized = opt_tokenized
            stored = stored or opt_stored
        if tokenized is None:
            raise SchemaError(f"field {name!r} needs TEXT or STRING")
        self._fields.append(FieldSpec(name=name, tokenized=tokenized, stored=stored))
        return self

    def build(self) -> Schema:
        return Schema(self._fields)


def document_schema() -> Schema:
    """The four-field schema used for launcher documents."""
    return (
        Schema.builder()
        .add_text_field("title", TEXT, STORED)
        .add_text_field("body", TEXT)
        .add_text_field("loc", STRING, STORED)
        .add_text_field("archive_loc", STRING, STORED)
        .build()
    )
