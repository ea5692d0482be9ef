# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the relational schema parser."""

import pytest

from qapi import (
    SchemaDefinition,
    SchemaMalformedError,
    SchemaParser,
    parse_schema,
    schema_fingerprint,
)
from tests.qapi_helpers import POSTS_SCHEMA


@pytest.fixture
def parser():
    """Create a parser instance."""
    return SchemaParser()


class TestCreateTable:
    """Test CREATE TABLE parsing."""

    def test_posts_schema(self, parser):
        schema = parser.parse(POSTS_SCHEMA)
        assert isinstance(schema, SchemaDefinition)
        assert [t.name for t in schema.tables] == ["posts"]

        posts = schema.tables[0]
        assert posts.column_names == ["id", "block_height", "author", "body", "created_at"]
        assert posts.primary_key == ["id"]
        assert posts.unique_constraints == [["block_height"]]

    def test_column_types_are_canonical(self, parser):
        posts = parser.parse(POSTS_SCHEMA).tables[0]
        assert posts.column("id").data_type.name == "serial"
        assert posts.column("block_height").data_type.name == "bigint"
        assert posts.column("author").data_type.name == "character varying"
        assert posts.column("author").data_type.args == [64]
        assert posts.column("created_at").data_type.name == "timestamp with time zone"

    def test_nullability(self, parser):
        posts = parser.parse(POSTS_SCHEMA).tables[0]
        assert posts.column("id").nullable is False
        assert posts.column("author").nullable is False
        assert posts.column("body").nullable is True

    def test_default_expression(self, parser):
        posts = parser.parse(POSTS_SCHEMA).tables[0]
        assert posts.column("created_at").default == "now()"
        assert posts.column("created_at").has_default
        assert posts.column("id").has_default

    def test_required_insert_columns(self, parser):
        posts = parser.parse(POSTS_SCHEMA).tables[0]
        assert posts.required_insert_columns() == ["block_height", "author"]

    def test_keywords_are_case_insensitive(self, parser):
        schema = parser.parse("create table t (id integer primary key, name text not null)")
        table = schema.tables[0]
        assert table.primary_key == ["id"]
        assert table.column("name").nullable is False

    def test_unquoted_names_are_folded(self, parser):
        table = parser.parse("CREATE TABLE Accounts (AccountId TEXT)").tables[0]
        assert table.name == "accounts"
        assert table.column_names == ["accountid"]

    def test_quoted_names_keep_case(self, parser):
        table = parser.parse('CREATE TABLE "Users" ("userId" text, "say ""hi""" text)').tables[0]
        assert table.name == "Users"
        assert table.column_names == ["userId", 'say "hi"']

    def test_schema_qualified_name(self, parser):
        table = parser.parse("CREATE TABLE IF NOT EXISTS public.accounts (id integer)").tables[0]
        assert table.name == "accounts"
        assert table.schema_name == "public"

    def test_multi_word_types(self, parser):
        table = parser.parse(
            "CREATE TABLE t (a timestamp with time zone, b double precision, c timestamp without time zone)"
        ).tables[0]
        assert table.column("a").data_type.name == "timestamp with time zone"
        assert table.column("b").data_type.name == "double precision"
        assert table.column("c").data_type.name == "timestamp"

    def test_array_types(self, parser):
        table = parser.parse("CREATE TABLE t (tags text[], grid int[][])").tables[0]
        assert table.column("tags").data_type.array_dimensions == 1
        assert table.column("grid").data_type.array_dimensions == 2
        assert str(table.column("grid").data_type) == "integer[][]"

    def test_numeric_arguments_and_negative_default(self, parser):
        table = parser.parse("CREATE TABLE t (balance numeric(20, 2) DEFAULT -1)").tables[0]
        column = table.column("balance")
        assert column.data_type.args == [20, 2]
        assert column.default == "-1"

    def test_cast_default(self, parser):
        table = parser.parse("CREATE TABLE t (status text DEFAULT 'new'::text)").tables[0]
        assert table.column("status").default == "'new'::text"

    def test_table_constraints(self, parser):
        schema = parser.parse(
            """
            CREATE TABLE owners (id integer PRIMARY KEY);
            CREATE TABLE balances (
                owner integer,
                token text,
                amount numeric CHECK (amount >= 0),
                CONSTRAINT balances_pk PRIMARY KEY (owner, token),
                UNIQUE (token, amount),
                FOREIGN KEY (owner) REFERENCES owners (id) ON DELETE CASCADE
            );
            """
        )
        balances = schema.table("balances")
        assert balances.primary_key == ["owner", "token"]
        assert balances.column("owner").nullable is False
        assert balances.column("token").nullable is False
        assert balances.unique_constraints == [["token", "amount"]]
        assert balances.checks == ["(amount >= 0)"]

        fk = balances.foreign_keys[0]
        assert fk.table == "owners"
        assert fk.columns == ["owner"]
        assert fk.referenced_columns == ["id"]
        assert fk.on_delete == "cascade"

    def test_column_check_followed_by_columns(self, parser):
        schema = parser.parse("CREATE TABLE t (a int CHECK (a > 0), b text);")
        table = schema.table("t")
        assert table.column_names == ["a", "b"]
        assert table.checks == ["(a > 0)"]

    def test_nested_check_then_more_constraints(self, parser):
        schema = parser.parse(
            """
            CREATE TABLE t (
                kind text CHECK (kind IN ('a', 'b') AND (length(kind) = 1)) NOT NULL,
                note text
            );
            """
        )
        table = schema.table("t")
        assert table.column("kind").nullable is False
        assert table.checks == ["(kind IN ('a', 'b') AND (length(kind) = 1))"]
        assert table.column("note").nullable is True

    def test_inline_references(self, parser):
        schema = parser.parse(
            "CREATE TABLE a (id integer PRIMARY KEY);"
            "CREATE TABLE b (a_id integer REFERENCES a ON UPDATE SET NULL)"
        )
        column = schema.table("b").column("a_id")
        assert column.references.table == "a"
        assert column.references.columns == ["a_id"]
        assert column.references.on_update == "set null"

    def test_comments_are_ignored(self, parser):
        schema = parser.parse(
            """
            -- the posts table
            CREATE TABLE posts (
                id integer /* surrogate */ PRIMARY KEY
            );
            """
        )
        assert schema.tables[0].primary_key == ["id"]


class TestCreateIndex:
    """Test CREATE INDEX parsing."""

    def test_named_index(self, parser):
        schema = parser.parse(POSTS_SCHEMA)
        assert len(schema.indexes) == 1
        index = schema.indexes[0]
        assert index.name == "posts_author"
        assert index.table == "posts"
        assert index.columns == ["author"]
        assert index.unique is False

    def test_unique_index_with_method(self, parser):
        schema = parser.parse(
            "CREATE TABLE t (a integer, b integer);"
            "CREATE UNIQUE INDEX IF NOT EXISTS t_ab ON t USING btree (a, b DESC);"
        )
        index = schema.indexes[0]
        assert index.unique is True
        assert index.columns == ["a", "b"]

    def test_index_on_unknown_table(self, parser):
        with pytest.raises(SchemaMalformedError, match="unknown table 'missing'"):
            parser.parse("CREATE TABLE t (a integer); CREATE INDEX ON missing (a);")

    def test_index_on_unknown_column(self, parser):
        with pytest.raises(SchemaMalformedError, match="unknown column 'b'"):
            parser.parse("CREATE TABLE t (a integer); CREATE INDEX ON t (b);")


class TestErrors:
    """Test error reporting."""

    def test_empty_schema(self, parser):
        with pytest.raises(SchemaMalformedError, match="no tables"):
            parser.parse("")

    def test_syntax_error_has_location(self, parser):
        with pytest.raises(SchemaMalformedError) as exc_info:
            parser.parse("CREATE TABLE posts (\n  id integer,,\n  name text\n)")
        err = exc_info.value
        assert err.line == 2
        assert "line 2" in str(err)

    def test_unexpected_character(self, parser):
        with pytest.raises(SchemaMalformedError) as exc_info:
            parser.parse("CREATE TABLE posts (id integer) @")
        assert "@" in str(exc_info.value)
        assert exc_info.value.fragment.startswith("@")

    def test_unexpected_end_of_input(self, parser):
        with pytest.raises(SchemaMalformedError, match="end of input"):
            parser.parse("CREATE TABLE posts (id integer")

    def test_duplicate_table(self, parser):
        with pytest.raises(SchemaMalformedError, match="Duplicate table 'a'"):
            parser.parse("CREATE TABLE a (id integer); CREATE TABLE A (id integer);")

    def test_duplicate_column(self, parser):
        with pytest.raises(SchemaMalformedError, match="Duplicate column 'id'") as exc_info:
            parser.parse("CREATE TABLE a (\n  id integer,\n  id text\n)")
        assert exc_info.value.line == 3

    def test_two_primary_key_columns(self, parser):
        with pytest.raises(SchemaMalformedError, match="more than one PRIMARY KEY"):
            parser.parse("CREATE TABLE a (x integer PRIMARY KEY, y integer PRIMARY KEY)")

    def test_constraint_names_unknown_column(self, parser):
        with pytest.raises(SchemaMalformedError, match="unknown column 'nope'"):
            parser.parse("CREATE TABLE a (x integer, PRIMARY KEY (nope))")

    def test_parse_file_missing(self, parser, tmp_path):
        with pytest.raises(FileNotFoundError):
            parser.parse_file(tmp_path / "missing.sql")

    def test_parse_file(self, parser, tmp_path):
        path = tmp_path / "schema.sql"
        path.write_text(POSTS_SCHEMA)
        assert parser.parse_file(path).tables[0].name == "posts"


class TestFingerprint:
    """Test schema fingerprints."""

    def test_formatting_does_not_matter(self):
        a = parse_schema("create table posts (id int primary key, body text)")
        b = parse_schema(
            """
            -- reformatted
            CREATE TABLE Posts (
                ID   INTEGER PRIMARY KEY,
                BODY text
            );
            """
        )
        assert schema_fingerprint(a) == schema_fingerprint(b)

    def test_type_change_matters(self):
        a = parse_schema("CREATE TABLE posts (id integer)")
        b = parse_schema("CREATE TABLE posts (id bigint)")
        assert schema_fingerprint(a) != schema_fingerprint(b)

    def test_constraint_change_matters(self):
        a = parse_schema("CREATE TABLE posts (id integer)")
        b = parse_schema("CREATE TABLE posts (id integer NOT NULL)")
        assert schema_fingerprint(a) != schema_fingerprint(b)

    def test_round_trip_through_dict(self):
        from qapi.ast import TableDefinition

        table = parse_schema(POSTS_SCHEMA).tables[0]
        assert TableDefinition.from_dict(table.to_dict()).to_dict() == table.to_dict()
