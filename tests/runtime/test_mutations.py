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

"""Tests for mutation validation and row helpers."""

import pytest

from qapi.parser import parse_schema, schema_fingerprint
from qapi.runtime.entities import Mutation, ProvisionedSchema
from qapi.runtime.errors import InvalidMutationError
from qapi.runtime.mutations import (
    complete_row,
    key_columns,
    literal_default,
    row_matches,
    validate_filter,
    validate_mutation,
)
from qapi.runtime.types import NamespaceId
from tests.qapi_helpers import POSTS_SCHEMA


@pytest.fixture
def schema():
    parsed = parse_schema(POSTS_SCHEMA)
    return ProvisionedSchema(
        namespace=NamespaceId("ns"),
        tables={t.name: t for t in parsed.tables},
        schema_text=POSTS_SCHEMA,
        fingerprint=schema_fingerprint(parsed),
    )


class TestRowMatches:
    def test_empty_filter(self):
        assert row_matches({"a": 1}, None)
        assert row_matches({"a": 1}, {})

    def test_equality(self):
        assert row_matches({"a": 1, "b": 2}, {"a": 1})
        assert not row_matches({"a": 1}, {"a": 2})
        assert not row_matches({"a": 1}, {"missing": 1})

    def test_list_is_membership(self):
        assert row_matches({"a": 2}, {"a": [1, 2]})
        assert not row_matches({"a": 3}, {"a": [1, 2]})


class TestLiteralDefault:
    @pytest.mark.parametrize(
        "expr, expected",
        [
            ("42", 42),
            ("-1", -1),
            ("1.5", 1.5),
            ("'it''s'", "it's"),
            ("'new'::text", "new"),
            ("(0)", 0),
            ("true", True),
            ("FALSE", False),
            ("null", None),
            ("gen_random_uuid()", None),
        ],
    )
    def test_literals(self, expr, expected):
        assert literal_default(expr) == expected

    def test_now(self):
        value = literal_default("now()")
        assert isinstance(value, str)
        assert "T" in value


class TestCompleteRow:
    def test_serials_and_defaults(self, schema):
        counter = iter(range(1, 100))
        row = complete_row(schema.table("posts"), {"block_height": 5, "author": "a"}, lambda c: next(counter))
        assert row["id"] == 1
        assert row["body"] is None
        assert isinstance(row["created_at"], str)

    def test_explicit_values_win(self, schema):
        row = complete_row(schema.table("posts"), {"id": 9, "block_height": 5, "author": "a"}, lambda c: 1)
        assert row["id"] == 9

    def test_key_columns(self, schema):
        assert key_columns(schema.table("posts")) == [["id"], ["block_height"]]


class TestValidateMutation:
    """Tests for validate_mutation."""

    def test_valid_insert(self, schema):
        mutation = validate_mutation(schema, Mutation("insert", "POSTS", rows=[{"block_height": 1, "author": "a"}]))
        assert mutation.table == "posts"

    def test_unknown_table(self, schema):
        with pytest.raises(InvalidMutationError, match="does not exist"):
            validate_mutation(schema, Mutation("insert", "comments", rows=[{"id": 1}]))

    def test_unknown_operation(self, schema):
        with pytest.raises(InvalidMutationError, match="unknown operation"):
            validate_mutation(schema, Mutation("truncate", "posts"))

    def test_unknown_column(self, schema):
        with pytest.raises(InvalidMutationError, match="unknown row column"):
            validate_mutation(
                schema, Mutation("insert", "posts", rows=[{"block_height": 1, "author": "a", "likes": 3}])
            )

    def test_missing_not_null(self, schema):
        with pytest.raises(InvalidMutationError, match="missing value for NOT NULL column 'author'"):
            validate_mutation(schema, Mutation("insert", "posts", rows=[{"block_height": 1}]))

    def test_null_in_not_null(self, schema):
        with pytest.raises(InvalidMutationError, match="null value"):
            validate_mutation(schema, Mutation("insert", "posts", rows=[{"block_height": 1, "author": None}]))

    def test_insert_requires_rows(self, schema):
        with pytest.raises(InvalidMutationError, match="no rows"):
            validate_mutation(schema, Mutation("insert", "posts"))

    def test_upsert_requires_conflict_columns(self, schema):
        with pytest.raises(InvalidMutationError, match="conflict columns"):
            validate_mutation(schema, Mutation("upsert", "posts", rows=[{"block_height": 1, "author": "a"}]))

    def test_update(self, schema):
        validate_mutation(schema, Mutation("update", "posts", where={"id": 1}, values={"body": "x"}))
        with pytest.raises(InvalidMutationError, match="null value"):
            validate_mutation(schema, Mutation("update", "posts", where={"id": 1}, values={"author": None}))
        with pytest.raises(InvalidMutationError, match="no values"):
            validate_mutation(schema, Mutation("update", "posts", where={"id": 1}))

    def test_delete_filter_columns(self, schema):
        with pytest.raises(InvalidMutationError, match="unknown filter column"):
            validate_mutation(schema, Mutation("delete", "posts", where={"nope": 1}))

    def test_validate_filter(self, schema):
        assert validate_filter(schema, "posts", {"author": "a"}) == "posts"
        with pytest.raises(InvalidMutationError):
            validate_filter(schema, "posts", {"nope": 1})
