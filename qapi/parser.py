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

"""Relational schema parser using Lark."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from lark import Lark
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, UnexpectedToken, VisitError

from .ast import SchemaDefinition, SourceLocation
from .runtime.errors import SchemaMalformedError
from .transformer import SchemaTransformer

_GRAMMAR_PATH = Path(__file__).parent / "grammar" / "schema.lark"

# Characters of source shown around a syntax error.
_FRAGMENT_WIDTH = 40


def _fragment(source: str, pos: int | None) -> str:
    """Return the source text starting at *pos*, up to the end of its line."""
    if pos is None or pos < 0 or pos >= len(source):
        return ""
    end = source.find("\n", pos)
    if end == -1:
        end = len(source)
    return source[pos : min(end, pos + _FRAGMENT_WIDTH)].strip()


class SchemaParser:
    """Relational schema parser.

    Uses Lark with LALR mode and propagate_positions for error reporting.
    The Lark instance is shared across all SchemaParser instances since the
    grammar is immutable at runtime, which also makes ``parse`` safe to call
    concurrently.
    """

    _lark: Lark | None = None

    @classmethod
    def _get_lark(cls) -> Lark:
        """Return the shared Lark parser, creating it on first use."""
        if cls._lark is None:
            with open(_GRAMMAR_PATH) as f:
                grammar = f.read()
            cls._lark = Lark(
                grammar,
                parser="lalr",
                propagate_positions=True,
                maybe_placeholders=False,
            )
        return cls._lark

    def __init__(self) -> None:
        self._parser = self._get_lark()

    def parse(self, source: str) -> SchemaDefinition:
        """Parse schema text and return an AST.

        Args:
            source: Schema definition (``CREATE TABLE`` / ``CREATE INDEX``)

        Returns:
            SchemaDefinition AST node

        Raises:
            SchemaMalformedError: If the text contains syntax errors or
                declares an inconsistent schema
        """
        try:
            tree = self._parser.parse(source)
            schema = SchemaTransformer().transform(tree)
        except UnexpectedCharacters as e:
            raise SchemaMalformedError(
                f"Unexpected character '{e.char}'",
                fragment=_fragment(source, e.pos_in_stream),
                line=e.line,
                column=e.column,
            ) from e
        except UnexpectedToken as e:
            expected = ", ".join(sorted(e.expected)) if e.expected else "unknown"
            token = e.token
            if token.type == "$END":
                message = f"Unexpected end of input. Expected one of: {expected}"
            else:
                message = f"Unexpected token '{token}'. Expected one of: {expected}"
            raise SchemaMalformedError(
                message,
                fragment=_fragment(source, getattr(token, "start_pos", None)),
                line=e.line if e.line != -1 else None,
                column=e.column if e.column != -1 else None,
            ) from e
        except UnexpectedInput as e:
            raise SchemaMalformedError(
                "Syntax error",
                line=getattr(e, "line", None),
                column=getattr(e, "column", None),
            ) from e
        except VisitError as e:
            raise SchemaMalformedError(str(e.orig_exc)) from e

        self._check(schema, source)
        return schema

    def parse_file(self, filepath: str | Path) -> SchemaDefinition:
        """Parse a schema file and return an AST.

        Raises:
            SchemaMalformedError: If the file contains syntax errors
            FileNotFoundError: If the file doesn't exist
        """
        return self.parse(Path(filepath).read_text())

    def _check(self, schema: SchemaDefinition, source: str) -> None:
        """Semantic checks the grammar cannot express."""
        if not schema.tables:
            raise SchemaMalformedError("Schema declares no tables", fragment=_fragment(source, 0))

        seen_tables: set[str] = set()
        for table in schema.tables:
            if table.name in seen_tables:
                raise self._error(f"Duplicate table '{table.name}'", table.name, table.location)
            seen_tables.add(table.name)

            seen_columns: set[str] = set()
            for column in table.columns:
                if column.name in seen_columns:
                    raise self._error(
                        f"Duplicate column '{column.name}' in table '{table.name}'",
                        column.name,
                        column.location,
                    )
                seen_columns.add(column.name)

            if not table.columns:
                raise self._error(f"Table '{table.name}' declares no columns", table.name, table.location)

            declared_pk = [c.name for c in table.columns if c.primary_key]
            if len(declared_pk) > 1:
                raise self._error(
                    f"Table '{table.name}' declares more than one PRIMARY KEY column",
                    declared_pk[1],
                    table.location,
                )

            constrained = [table.primary_key, *table.unique_constraints]
            constrained.extend(fk.columns for fk in table.foreign_keys)
            for columns in constrained:
                for name in columns:
                    if name not in seen_columns:
                        raise self._error(
                            f"Constraint on table '{table.name}' names unknown column '{name}'",
                            name,
                            table.location,
                        )

            # Table-level primary keys imply NOT NULL on their columns.
            for name in table.primary_key:
                col = table.column(name)
                if col is not None:
                    col.nullable = False

        for index in schema.indexes:
            table = schema.table(index.table)
            if table is None:
                raise self._error(f"Index on unknown table '{index.table}'", index.table, index.location)
            for name in index.columns:
                if table.column(name) is None:
                    raise self._error(
                        f"Index on table '{index.table}' names unknown column '{name}'",
                        name,
                        index.location,
                    )

    @staticmethod
    def _error(message: str, fragment: str, location: SourceLocation | None) -> SchemaMalformedError:
        return SchemaMalformedError(
            message,
            fragment=fragment,
            line=location.line if location else None,
            column=location.column if location else None,
        )


def parse_schema(source: str) -> SchemaDefinition:
    """Parse schema text with a shared parser."""
    return SchemaParser().parse(source)


def schema_fingerprint(schema: SchemaDefinition) -> str:
    """Stable digest of a parsed schema.

    Formatting, comments and keyword case do not affect the fingerprint;
    any change to tables, columns, types or constraints does.
    """
    canonical = json.dumps(schema.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
