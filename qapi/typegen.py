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

"""Typed interface generation for indexer schemas.

Turns schema text into a :class:`TypeDescriptor` describing the row shape
of every table. Editor tooling renders it as a ``.pyi`` stub of
``TypedDict`` classes; the HTTP surface returns ``to_dict()``.

Generation is pure: it parses the text and never touches storage.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from .ast import ColumnDefinition, SchemaDefinition, TableDefinition
from .parser import SchemaParser

# SQL type name -> Python annotation
PYTHON_TYPES = {
    "smallint": "int",
    "integer": "int",
    "bigint": "int",
    "serial": "int",
    "bigserial": "int",
    "smallserial": "int",
    "real": "float",
    "double precision": "float",
    "numeric": "float",
    "money": "str",
    "text": "str",
    "character varying": "str",
    "character": "str",
    "citext": "str",
    "uuid": "str",
    "boolean": "bool",
    "json": "Any",
    "jsonb": "Any",
    "bytea": "bytes",
    "date": "str",
    "time": "str",
    "time with time zone": "str",
    "timestamp": "str",
    "timestamp with time zone": "str",
    "interval": "str",
}

_WORD = re.compile(r"[a-z0-9]+", re.IGNORECASE)


def python_type(column: ColumnDefinition) -> str:
    """Python annotation for a column's values, ignoring nullability."""
    base = PYTHON_TYPES.get(column.data_type.name, "Any")
    for _ in range(column.data_type.array_dimensions):
        base = f"list[{base}]"
    return base


def class_name(table_name: str) -> str:
    """``user_stats`` -> ``UserStats``."""
    words = _WORD.findall(table_name)
    name = "".join(w[:1].upper() + w[1:] for w in words) or "Table"
    if name[0].isdigit():
        name = f"T{name}"
    return name


@dataclass
class FieldDescriptor:
    """One column as seen by user code."""

    name: str
    python_type: str
    sql_type: str
    nullable: bool
    optional_on_insert: bool
    primary_key: bool = False

    @property
    def annotation(self) -> str:
        if self.nullable:
            return f"{self.python_type} | None"
        return self.python_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pythonType": self.annotation,
            "sqlType": self.sql_type,
            "nullable": self.nullable,
            "optionalOnInsert": self.optional_on_insert,
            "primaryKey": self.primary_key,
        }


@dataclass
class TableDescriptor:
    """Row shape of one table."""

    name: str
    class_name: str
    fields: list[FieldDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "className": self.class_name,
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass
class TypeDescriptor:
    """Typed interface description for a whole schema."""

    tables: list[TableDescriptor] = field(default_factory=list)

    def table(self, name: str) -> TableDescriptor | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"tables": [t.to_dict() for t in self.tables]}

    def render(self) -> str:
        """Render a ``.pyi`` stub with a row and an insert ``TypedDict`` per table."""
        lines = [
            "# Generated from the indexer schema. Do not edit.",
            "from typing import Any, Literal, NotRequired, TypedDict",
            "",
        ]
        for table in self.tables:
            row = ", ".join(f"{f.name!r}: {f.annotation}" for f in table.fields)
            insert = ", ".join(
                f"{f.name!r}: NotRequired[{f.annotation}]" if f.optional_on_insert else f"{f.name!r}: {f.annotation}"
                for f in table.fields
            )
            lines.append(f"{table.class_name}Row = TypedDict(\"{table.class_name}Row\", {{{row}}})")
            lines.append(f"{table.class_name}Insert = TypedDict(\"{table.class_name}Insert\", {{{insert}}})")
            lines.append("")
        names = ", ".join(repr(t.name) for t in self.tables)
        lines.append("")
        lines.append(f"TableName = Literal[{names}]")
        return "\n".join(lines) + "\n"


def describe_table(table: TableDefinition) -> TableDescriptor:
    """Build the descriptor for one parsed table."""
    descriptor = TableDescriptor(name=table.name, class_name=class_name(table.name))
    for column in table.columns:
        descriptor.fields.append(
            FieldDescriptor(
                name=column.name,
                python_type=python_type(column),
                sql_type=str(column.data_type),
                nullable=column.nullable,
                optional_on_insert=column.nullable or column.has_default,
                primary_key=column.name in table.primary_key,
            )
        )
    return descriptor


def describe_schema(schema: SchemaDefinition) -> TypeDescriptor:
    """Build the descriptor for a parsed schema."""
    return TypeDescriptor(tables=[describe_table(t) for t in schema.tables])


def generate_type_descriptor(schema_text: str) -> TypeDescriptor:
    """Parse *schema_text* and describe its tables.

    Raises:
        SchemaMalformedError: If the schema cannot be parsed
    """
    return describe_schema(SchemaParser().parse(schema_text))


generate_types = generate_type_descriptor
