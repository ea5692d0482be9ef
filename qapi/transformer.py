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

"""Lark Transformer to convert a schema parse tree to the schema AST."""

from dataclasses import dataclass
from typing import NamedTuple

from lark import Token, Transformer, v_args

from .ast import (
    ColumnDefinition,
    DataType,
    ForeignKey,
    IndexDefinition,
    SchemaDefinition,
    SourceLocation,
    TableDefinition,
)

# Aliases folded onto one canonical spelling so that equivalent schemas
# fingerprint identically and map to the same Python type.
TYPE_ALIASES = {
    "int": "integer",
    "int4": "integer",
    "int2": "smallint",
    "int8": "bigint",
    "serial4": "serial",
    "serial8": "bigserial",
    "serial2": "smallserial",
    "float4": "real",
    "float8": "double precision",
    "float": "double precision",
    "bool": "boolean",
    "decimal": "numeric",
    "varchar": "character varying",
    "char": "character",
    "bpchar": "character",
    "timestamptz": "timestamp with time zone",
    "timestamp without time zone": "timestamp",
    "timetz": "time with time zone",
    "time without time zone": "time",
}


def canonical_type_name(name: str) -> str:
    """Fold a (lower-case, space-joined) type name onto its canonical spelling."""
    name = " ".join(name.lower().split())
    return TYPE_ALIASES.get(name, name)


def _get_location(meta) -> SourceLocation | None:
    """Extract source location from Lark meta."""
    if meta and hasattr(meta, "line"):
        return SourceLocation(
            line=meta.line,
            column=meta.column,
            end_line=getattr(meta, "end_line", None),
            end_column=getattr(meta, "end_column", None),
        )
    return None


class _QualifiedName(NamedTuple):
    schema: str | None
    name: str


@dataclass
class _ColumnConstraint:
    """Intermediate result of a single column constraint clause."""

    kind: str
    value: object = None


@dataclass
class _TableConstraint:
    """Intermediate result of a single table constraint clause."""

    kind: str
    columns: list
    value: object = None


class SchemaTransformer(Transformer):
    """Transform a Lark parse tree to a :class:`SchemaDefinition`."""

    # Terminals
    def NAME(self, token: Token) -> str:
        return str(token).lower()

    def QUOTED_NAME(self, token: Token) -> str:
        return str(token)[1:-1].replace('""', '"')

    def NUMBER(self, token: Token) -> int | float:
        text = str(token)
        if "." in text or "e" in text.lower():
            return float(text)
        return int(text)

    def PAREN_TEXT(self, token: Token) -> str:
        return " ".join(str(token).split())

    def DELETE(self, token: Token) -> str:
        return "delete"

    def UPDATE(self, token: Token) -> str:
        return "update"

    # Names
    @v_args(inline=True)
    def identifier(self, name: str) -> str:
        return name

    def qualified_name(self, items: list) -> _QualifiedName:
        if len(items) == 2:
            return _QualifiedName(items[0], items[1])
        return _QualifiedName(None, items[0])

    def column_list(self, items: list) -> list[str]:
        return list(items)

    # Types
    def type_name(self, items: list) -> str:
        return " ".join(items)

    def type_args(self, items: list) -> list:
        return list(items)

    def array_suffix(self, items: list) -> str:
        return "[]"

    @v_args(meta=True)
    def data_type(self, meta, items: list) -> DataType:
        name = canonical_type_name(items[0])
        args: list = []
        dims = 0
        for item in items[1:]:
            if isinstance(item, list):
                args = item
            else:
                dims += 1
        return DataType(name=name, args=args, array_dimensions=dims, location=_get_location(meta))

    # Default expressions (rendered back to normalized SQL text)
    @v_args(inline=True)
    def string_literal(self, token: Token) -> str:
        return str(token)

    @v_args(inline=True)
    def number_literal(self, value) -> str:
        return str(value)

    @v_args(inline=True)
    def negative_literal(self, value) -> str:
        return f"-{value}"

    def null_literal(self, items: list) -> str:
        return "null"

    @v_args(inline=True)
    def name_literal(self, name: str) -> str:
        return name

    def function_call(self, items: list) -> str:
        name, args = items[0], items[1:]
        return f"{name}({', '.join(args)})"

    @v_args(inline=True)
    def grouped(self, expr: str) -> str:
        return f"({expr})"

    def default_expr(self, items: list) -> str:
        text = items[0]
        for cast in items[1:]:
            text += f"::{cast}"
        return text

    def check_expr(self, items: list) -> str:
        return "(" + "".join(items) + ")"

    nested_paren = check_expr

    # Column constraints
    def constraint_name(self, items: list) -> str:
        return items[0]

    def not_null(self, items: list) -> _ColumnConstraint:
        return _ColumnConstraint("not_null")

    def null(self, items: list) -> _ColumnConstraint:
        return _ColumnConstraint("null")

    def primary_key(self, items: list) -> _ColumnConstraint:
        return _ColumnConstraint("primary_key")

    def unique(self, items: list) -> _ColumnConstraint:
        return _ColumnConstraint("unique")

    @v_args(inline=True)
    def default(self, expr: str) -> _ColumnConstraint:
        return _ColumnConstraint("default", expr)

    @v_args(inline=True)
    def column_references(self, fk: ForeignKey) -> _ColumnConstraint:
        return _ColumnConstraint("references", fk)

    @v_args(inline=True)
    def check(self, expr: str) -> _ColumnConstraint:
        return _ColumnConstraint("check", expr)

    def column_constraint(self, items: list) -> _ColumnConstraint:
        # Optional constraint name is dropped; only the body matters.
        return items[-1]

    # References
    def ref_event(self, items: list) -> str:
        return items[0]

    def cascade(self, items: list) -> str:
        return "cascade"

    def restrict(self, items: list) -> str:
        return "restrict"

    def set_null(self, items: list) -> str:
        return "set null"

    def set_default(self, items: list) -> str:
        return "set default"

    def no_action(self, items: list) -> str:
        return "no action"

    @v_args(inline=True)
    def referential_action(self, event: str, action: str) -> tuple[str, str]:
        return event, action

    @v_args(meta=True)
    def references(self, meta, items: list) -> ForeignKey:
        _schema, table = items[0]
        fk = ForeignKey(table=table, location=_get_location(meta))
        for item in items[1:]:
            if isinstance(item, list):
                fk.referenced_columns = item
            elif item[0] == "delete":
                fk.on_delete = item[1]
            else:
                fk.on_update = item[1]
        return fk

    # Columns
    @v_args(meta=True)
    def column_def(self, meta, items: list) -> ColumnDefinition:
        name, data_type, constraints = items[0], items[1], items[2:]
        column = ColumnDefinition(name=name, data_type=data_type, location=_get_location(meta))
        for constraint in constraints:
            kind = constraint.kind
            if kind == "not_null":
                column.nullable = False
            elif kind == "null":
                column.nullable = True
            elif kind == "primary_key":
                column.primary_key = True
                column.nullable = False
            elif kind == "unique":
                column.unique = True
            elif kind == "default":
                column.default = constraint.value
            elif kind == "references":
                fk = constraint.value
                fk.columns = [name]
                column.references = fk
            elif kind == "check":
                column.checks.append(constraint.value)
        return column

    # Table constraints
    @v_args(inline=True)
    def table_primary_key(self, columns: list[str]) -> _TableConstraint:
        return _TableConstraint("primary_key", columns)

    @v_args(inline=True)
    def table_unique(self, columns: list[str]) -> _TableConstraint:
        return _TableConstraint("unique", columns)

    @v_args(inline=True)
    def table_foreign_key(self, columns: list[str], fk: ForeignKey) -> _TableConstraint:
        fk.columns = columns
        return _TableConstraint("foreign_key", columns, fk)

    @v_args(inline=True)
    def table_check(self, expr: str) -> _TableConstraint:
        return _TableConstraint("check", [], expr)

    def table_constraint(self, items: list) -> _TableConstraint:
        return items[-1]

    # Statements
    def if_not_exists(self, items: list) -> bool:
        return True

    @v_args(meta=True)
    def create_table(self, meta, items: list) -> TableDefinition:
        items = [i for i in items if i is not True]
        schema_name, name = items[0]
        table = TableDefinition(name=name, schema_name=schema_name, location=_get_location(meta))
        for element in items[1:]:
            if isinstance(element, ColumnDefinition):
                table.columns.append(element)
                if element.primary_key:
                    table.primary_key.append(element.name)
                if element.unique:
                    table.unique_constraints.append([element.name])
                if element.references is not None:
                    table.foreign_keys.append(element.references)
                table.checks.extend(element.checks)
            elif element.kind == "primary_key":
                table.primary_key = list(element.columns)
            elif element.kind == "unique":
                table.unique_constraints.append(list(element.columns))
            elif element.kind == "foreign_key":
                table.foreign_keys.append(element.value)
            elif element.kind == "check":
                table.checks.append(element.value)
        return table

    def index_unique(self, items: list) -> str:
        return "unique"

    @v_args(inline=True)
    def index_method(self, method: str) -> tuple[str, str]:
        return "using", method

    def index_element(self, items: list) -> dict:
        return {"column": items[0]}

    @v_args(meta=True)
    def create_index(self, meta, items: list) -> IndexDefinition:
        index = IndexDefinition(table="", location=_get_location(meta))
        for item in items:
            if item is True:
                continue
            if item == "unique":
                index.unique = True
            elif isinstance(item, _QualifiedName):
                index.table = item.name
            elif isinstance(item, tuple):
                continue
            elif isinstance(item, dict):
                index.columns.append(item["column"])
            else:
                index.name = item
        return index

    @v_args(meta=True)
    def start(self, meta, items: list) -> SchemaDefinition:
        schema = SchemaDefinition(location=_get_location(meta))
        for item in items:
            if isinstance(item, TableDefinition):
                schema.tables.append(item)
            elif isinstance(item, IndexDefinition):
                schema.indexes.append(item)
        return schema
