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

"""Relational schema AST node definitions using dataclasses."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SourceLocation:
    """Source code location for error reporting."""

    line: int
    column: int
    end_line: int | None = None
    end_column: int | None = None


@dataclass
class ASTNode:
    """Base class for all AST nodes."""

    location: SourceLocation | None = field(default=None, compare=False, repr=False, kw_only=True)


@dataclass
class DataType(ASTNode):
    """Column data type: ``varchar(255)``, ``timestamp with time zone``, ``int[]``."""

    name: str
    args: list[int | float] = field(default_factory=list)
    array_dimensions: int = 0

    def __str__(self) -> str:
        text = self.name
        if self.args:
            text += "(" + ", ".join(str(a) for a in self.args) + ")"
        return text + "[]" * self.array_dimensions


@dataclass
class ForeignKey(ASTNode):
    """``REFERENCES table (columns)`` with optional referential actions."""

    table: str
    columns: list[str] = field(default_factory=list)
    referenced_columns: list[str] = field(default_factory=list)
    on_delete: str | None = None
    on_update: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "columns": list(self.columns),
            "referenced_columns": list(self.referenced_columns),
            "on_delete": self.on_delete,
            "on_update": self.on_update,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForeignKey":
        return cls(
            table=data["table"],
            columns=list(data.get("columns", [])),
            referenced_columns=list(data.get("referenced_columns", [])),
            on_delete=data.get("on_delete"),
            on_update=data.get("on_update"),
        )


@dataclass
class ColumnDefinition(ASTNode):
    """A single table column."""

    name: str
    data_type: DataType
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False
    unique: bool = False
    references: ForeignKey | None = None
    checks: list[str] = field(default_factory=list)

    @property
    def has_default(self) -> bool:
        """Whether the database fills the column when an insert omits it."""
        return self.default is not None or self.data_type.name in ("serial", "bigserial", "smallserial")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.data_type.name,
            "args": list(self.data_type.args),
            "array_dimensions": self.data_type.array_dimensions,
            "nullable": self.nullable,
            "default": self.default,
            "primary_key": self.primary_key,
            "unique": self.unique,
            "references": self.references.to_dict() if self.references else None,
            "checks": list(self.checks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ColumnDefinition":
        refs = data.get("references")
        return cls(
            name=data["name"],
            data_type=DataType(
                name=data["type"],
                args=list(data.get("args", [])),
                array_dimensions=data.get("array_dimensions", 0),
            ),
            nullable=data.get("nullable", True),
            default=data.get("default"),
            primary_key=data.get("primary_key", False),
            unique=data.get("unique", False),
            references=ForeignKey.from_dict(refs) if refs else None,
            checks=list(data.get("checks", [])),
        )


@dataclass
class TableDefinition(ASTNode):
    """A ``CREATE TABLE`` statement."""

    name: str
    columns: list[ColumnDefinition] = field(default_factory=list)
    primary_key: list[str] = field(default_factory=list)
    unique_constraints: list[list[str]] = field(default_factory=list)
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    checks: list[str] = field(default_factory=list)
    schema_name: str | None = None

    def column(self, name: str) -> ColumnDefinition | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    def required_insert_columns(self) -> list[str]:
        """Columns an insert must supply: NOT NULL without a default."""
        return [
            col.name
            for col in self.columns
            if not col.nullable and not col.has_default
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": [col.to_dict() for col in self.columns],
            "primary_key": list(self.primary_key),
            "unique_constraints": [list(u) for u in self.unique_constraints],
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "checks": list(self.checks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TableDefinition":
        return cls(
            name=data["name"],
            columns=[ColumnDefinition.from_dict(c) for c in data.get("columns", [])],
            primary_key=list(data.get("primary_key", [])),
            unique_constraints=[list(u) for u in data.get("unique_constraints", [])],
            foreign_keys=[ForeignKey.from_dict(fk) for fk in data.get("foreign_keys", [])],
            checks=list(data.get("checks", [])),
        )


@dataclass
class IndexDefinition(ASTNode):
    """A ``CREATE INDEX`` statement."""

    table: str
    columns: list[str] = field(default_factory=list)
    name: str | None = None
    unique: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "columns": list(self.columns),
            "name": self.name,
            "unique": self.unique,
        }


@dataclass
class SchemaDefinition(ASTNode):
    """Root node: every table and index declared in a schema text."""

    tables: list[TableDefinition] = field(default_factory=list)
    indexes: list[IndexDefinition] = field(default_factory=list)

    def table(self, name: str) -> TableDefinition | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": [t.to_dict() for t in self.tables],
            "indexes": [i.to_dict() for i in self.indexes],
        }
