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

"""Row-level helpers shared by the stores and the function runner.

Validation of mutations against a provisioned schema, evaluation of
column defaults, and the simple equality filter used for ``where``
clauses.
"""

import datetime
import re
from collections.abc import Callable
from typing import Any

from ..ast import ColumnDefinition, TableDefinition
from .entities import Mutation, MutationOp, ProvisionedSchema
from .errors import InvalidMutationError

_NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")
_CAST = re.compile(r"::.*$")
_NOW_FUNCTIONS = ("now()", "current_timestamp", "localtimestamp", "transaction_timestamp()")

SERIAL_TYPES = ("serial", "bigserial", "smallserial")


def row_matches(row: dict[str, Any], where: dict[str, Any] | None) -> bool:
    """Equality filter; a list value matches any of its elements."""
    if not where:
        return True
    for column, expected in where.items():
        actual = row.get(column)
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def literal_default(expr: str) -> Any:
    """Evaluate a column default expression.

    Literals (strings, numbers, booleans, null) and the current-time
    functions are understood; anything else evaluates to None.
    """
    text = _CAST.sub("", expr.strip()).strip()
    while text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()
    lowered = text.lower()
    if lowered == "null":
        return None
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if len(text) >= 2 and text.startswith("'") and text.endswith("'"):
        return text[1:-1].replace("''", "'")
    if _NUMBER.match(text):
        return float(text) if any(c in text for c in ".eE") else int(text)
    if lowered in _NOW_FUNCTIONS:
        return datetime.datetime.now(datetime.timezone.utc).isoformat()
    if lowered == "current_date":
        return datetime.date.today().isoformat()
    return None


def complete_row(
    table: TableDefinition,
    row: dict[str, Any],
    next_serial: Callable[[str], int],
) -> dict[str, Any]:
    """Return *row* with every column present, defaults applied.

    Args:
        table: Table the row is inserted into
        row: Values supplied by the caller
        next_serial: Returns the next sequence value for a column name
    """
    full: dict[str, Any] = {}
    for column in table.columns:
        if column.name in row:
            full[column.name] = row[column.name]
        elif column.data_type.name in SERIAL_TYPES:
            full[column.name] = next_serial(column.name)
        elif column.default is not None:
            full[column.name] = literal_default(column.default)
        else:
            full[column.name] = None
    return full


def key_columns(table: TableDefinition) -> list[list[str]]:
    """Column sets whose values must be unique: the primary key and each unique constraint."""
    keys: list[list[str]] = []
    if table.primary_key:
        keys.append(list(table.primary_key))
    for columns in table.unique_constraints:
        if columns and columns not in keys:
            keys.append(list(columns))
    return keys


def _check_columns(table: TableDefinition, names, what: str) -> None:
    known = set(table.column_names)
    unknown = sorted(set(names) - known)
    if unknown:
        raise InvalidMutationError(table.name, f"unknown {what} column(s): {', '.join(unknown)}")


def _check_not_null(table: TableDefinition, row: dict[str, Any], *, inserting: bool) -> None:
    for column in table.columns:
        if not _requires_value(column):
            continue
        if inserting and column.name not in row:
            raise InvalidMutationError(table.name, f"missing value for NOT NULL column '{column.name}'")
        if column.name in row and row[column.name] is None:
            raise InvalidMutationError(table.name, f"null value in NOT NULL column '{column.name}'")


def _requires_value(column: ColumnDefinition) -> bool:
    return not column.nullable and not column.has_default


def _check_key_values(table: TableDefinition, row: dict[str, Any]) -> None:
    for columns in key_columns(table):
        for name in columns:
            if isinstance(row.get(name), (dict, list, tuple, set)):
                raise InvalidMutationError(table.name, f"key column '{name}' needs a scalar value")


def validate_mutation(schema: ProvisionedSchema, mutation: Mutation) -> Mutation:
    """Check *mutation* against the provisioned tables.

    Returns the mutation with its table name resolved to the provisioned
    spelling.

    Raises:
        InvalidMutationError: If the table, a column or a required value
            does not fit the schema
    """
    if mutation.op not in MutationOp.ALL:
        raise InvalidMutationError(mutation.table, f"unknown operation '{mutation.op}'")
    table = schema.table(mutation.table)
    if table is None:
        raise InvalidMutationError(mutation.table, "table does not exist in the indexer schema")
    mutation.table = table.name

    if mutation.op in (MutationOp.INSERT, MutationOp.UPSERT):
        if not mutation.rows:
            raise InvalidMutationError(table.name, "no rows given")
        for row in mutation.rows:
            if not isinstance(row, dict):
                raise InvalidMutationError(table.name, "rows must be mappings of column to value")
            _check_columns(table, row, "row")
            _check_not_null(table, row, inserting=True)
            _check_key_values(table, row)
        if mutation.op == MutationOp.UPSERT:
            if not mutation.conflict_columns:
                raise InvalidMutationError(table.name, "upsert requires conflict columns")
            _check_columns(table, mutation.conflict_columns, "conflict")
            _check_columns(table, mutation.update_columns, "update")
    elif mutation.op == MutationOp.UPDATE:
        if not mutation.values:
            raise InvalidMutationError(table.name, "no values given")
        _check_columns(table, mutation.where, "filter")
        _check_columns(table, mutation.values, "value")
        _check_not_null(table, mutation.values, inserting=False)
        _check_key_values(table, mutation.values)
    else:
        _check_columns(table, mutation.where, "filter")
    return mutation


def validate_filter(schema: ProvisionedSchema, table_name: str, where: dict[str, Any] | None) -> str:
    """Resolve *table_name* for a read and check the filter columns."""
    table = schema.table(table_name)
    if table is None:
        raise InvalidMutationError(table_name, "table does not exist in the indexer schema")
    _check_columns(table, where or {}, "filter")
    return table.name
