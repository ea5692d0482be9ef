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

"""QAPI indexer execution engine."""

# The runtime package must load before the parser, which imports its errors.
from .runtime import (
    ExecutionService,
    FunctionRunner,
    IndexerFunctionSpec,
    SchemaConflictError,
    SchemaError,
    SchemaMalformedError,
    SchemaProvisioner,
    namespace_for,
)
from .ast import (
    ColumnDefinition,
    DataType,
    ForeignKey,
    IndexDefinition,
    SchemaDefinition,
    SourceLocation,
    TableDefinition,
)
from .config import BlocksConfig, DebugConfig, MongoDBConfig, QAPIConfig, RunnerConfig, load_config
from .parser import SchemaParser, parse_schema, schema_fingerprint
from .typegen import TypeDescriptor, generate_type_descriptor, generate_types

__version__ = "0.1.0"

__all__ = [
    # AST
    "ColumnDefinition",
    "DataType",
    "ForeignKey",
    "IndexDefinition",
    "SchemaDefinition",
    "SourceLocation",
    "TableDefinition",
    # Parser
    "SchemaParser",
    "parse_schema",
    "schema_fingerprint",
    # Type generation
    "TypeDescriptor",
    "generate_type_descriptor",
    "generate_types",
    # Config
    "BlocksConfig",
    "DebugConfig",
    "MongoDBConfig",
    "QAPIConfig",
    "RunnerConfig",
    "load_config",
    # Runtime
    "ExecutionService",
    "FunctionRunner",
    "IndexerFunctionSpec",
    "SchemaProvisioner",
    "namespace_for",
    # Errors
    "SchemaError",
    "SchemaConflictError",
    "SchemaMalformedError",
]
