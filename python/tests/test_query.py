"""
Query Tests - Verify query string parsing.
"""

import pytest

from memex.errors import QueryParseError, SchemaError
from memex.query import Occur, QueryParser
from memex.schema import STORED, STRING, TEXT, Schema, document_schema


@pytest.fixture
def parser() -> QueryParser:
    return QueryParser.for_schema(document_schema())


class TestQueryParser:
    """Tests for turning text into engine expressions."""

    def test_default_fields_are_tokenized_fields(self, parser):
        assert parser.default_fields == ["title", "body"]

    def test_single_term(self, parser):
        query = parser.parse("alpha")

        assert query.match == '{title body} : "alpha"'
        assert query.excluded is None
        assert query.filters == ()

    def test_terms_are_or_by_default(self, parser):
        query = parser.parse("alpha beta")
        assert query.match == '{title body} : "alpha" OR {title body} : "beta"'

    def test_phrase(self, parser):
        query = parser.parse('"new york" city')
        assert query.match == '{title body} : "new york" OR {title body} : "city"'

    def test_field_restricted_term(self, parser):
        query = parser.parse("title:alpha")
        assert query.match == '{title} : "alpha"'

    def test_required_terms_replace_optional_ones(self, parser):
        query = parser.parse("+alpha beta")
        assert query.match == '{title body} : "alpha"'

    def test_required_terms_are_anded(self, parser):
        query = parser.parse("+alpha +beta")
        assert query.match == '{title body} : "alpha" AND {title body} : "beta"'

    def test_excluded_term(self, parser):
        query = parser.parse("alpha -beta")

        assert query.match == '{title body} : "alpha"'
        assert query.excluded == '{title body} : "beta"'

    def test_prefix(self, parser):
        query = parser.parse("alph*")

        assert query.match == '{title body} : "alph" *'
        assert query.clauses[0].prefix

    def test_embedded_quotes_are_escaped(self, parser):
        query = parser.parse('say"hi"')
        assert query.match == '{title body} : "say""hi"""'

    def test_punctuation_only_terms_are_ignored(self, parser):
        query = parser.parse("alpha !!! &")
        assert query.match == '{title body} : "alpha"'

    def test_empty_query(self, parser):
        for text in ["", "   ", "***"]:
            assert parser.parse(text).is_empty

    def test_clause_occurrence(self, parser):
        clauses = parser.parse("+a b -c").clauses
        assert [c.occur for c in clauses] == [Occur.MUST, Occur.SHOULD, Occur.MUST_NOT]


class TestExactFields:
    """Tests for clauses on exact-match fields."""

    def test_exact_field_filters(self, parser):
        query = parser.parse('loc:"http://b"')

        assert query.match is None
        assert query.filters == (("loc", "http://b"),)
        assert not query.is_empty

    def test_exact_field_with_unquoted_value(self, parser):
        query = parser.parse("archive_loc:/tmp/a.txt")
        assert query.filters == (("archive_loc", "/tmp/a.txt"),)

    def test_trailing_star_is_literal_on_exact_fields(self, parser):
        query = parser.parse("loc:http://b*")
        assert query.filters == (("loc", "http://b*"),)

    def test_filter_makes_optional_terms_irrelevant(self, parser):
        query = parser.parse('alpha loc:"http://b"')

        assert query.match is None
        assert query.filters == (("loc", "http://b"),)

    def test_filter_combines_with_required_terms(self, parser):
        query = parser.parse('+beta loc:"http://b"')

        assert query.match == '{title body} : "beta"'
        assert query.filters == (("loc", "http://b"),)

    def test_excluded_exact_field(self, parser):
        query = parser.parse('alpha -loc:"http://b"')
        assert query.exclusions == (("loc", "http://b"),)


class TestQueryErrors:
    """Tests for malformed queries."""

    @pytest.mark.parametrize("text, message", [
        ('"unterminated', "Unterminated phrase"),
        ("alpha + beta", "Dangling '\\+'"),
        ("alpha -", "Dangling '-'"),
        ("nosuchfield:alpha", "Field does not exist: 'nosuchfield'"),
        ("title: alpha", "Missing value for field 'title'"),
        ("-alpha", "only contains excluded clauses"),
        ('-loc:"http://b"', "only contains excluded clauses"),
    ])
    def test_invalid(self, parser, text, message):
        with pytest.raises(QueryParseError, match=message):
            parser.parse(text)

    def test_colon_inside_free_text_is_not_a_field(self, parser):
        """Only identifier-shaped prefixes are field names."""
        query = parser.parse("10:30")
        assert query.match == '{title body} : "10:30"'

    def test_default_field_must_be_tokenized(self):
        with pytest.raises(SchemaError):
            QueryParser(document_schema(), ["loc"])

    def test_default_field_must_exist(self):
        with pytest.raises(SchemaError):
            QueryParser(document_schema(), ["missing"])

    def test_unfielded_terms_ignored_without_default_fields(self):
        schema = Schema.builder().add_text_field("url", STRING, STORED).build()
        parser = QueryParser(schema, [])

        query = parser.parse('alpha url:"x"')

        assert query.match is None
        assert query.filters == (("url", "x"),)

    def test_custom_schema_fields(self):
        schema = (
            Schema.builder()
            .add_text_field("name", TEXT, STORED)
            .add_text_field("notes", TEXT)
            .build()
        )
        parser = QueryParser(schema, ["name"])

        assert parser.parse("x").match == '{name} : "x"'
        assert parser.parse("notes:x").match == '{notes} : "x"'
