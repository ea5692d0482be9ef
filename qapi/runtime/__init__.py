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

"""QAPI runtime package.

Executes indexer functions against blockchain blocks: block sources,
schema provisioning, sandboxed function runs, per-indexer execution
loops and debug sessions.
"""

# Errors first: the schema parser imports them while this package loads.
from .errors import (
    AlreadyRunningError,
    BlockFetchError,
    ConstraintViolationError,
    CoordinatorError,
    DataError,
    ExecutionError,
    ExecutionTimeoutError,
    InvalidMutationError,
    InvalidTransitionError,
    MalformedMessageError,
    NoProgressError,
    NotRunningError,
    ProvisioningFailedError,
    QAPIError,
    QueueError,
    SchemaConflictError,
    SchemaError,
    SchemaMalformedError,
    StorageUnavailableError,
    TransientFetchFailureError,
    UserCodeFailedError,
)
from .types import IndexerKey, NamespaceId, SessionId, generate_id, namespace_for
from .entities import (
    Backfill,
    BlockPayload,
    DebugList,
    ExecutionMode,
    ExecutionOutcome,
    FromInterruption,
    IndexerFunctionSpec,
    IndexerRunState,
    MessageState,
    Mutation,
    MutationOp,
    ProvisionedSchema,
    QueueMessage,
    RealTime,
    RunStatus,
    StartBlock,
    mode_from_dict,
)
from .persistence import PersistenceAPI
from .memory_store import MemoryStore
from .mongo_store import MongoStore
from .provisioner import SchemaProvisioner
from .sandbox import Sandbox, SandboxResult
from .telemetry import Telemetry
from .function_runner import FunctionRunner
from .fetcher import BlockFetcher, HttpBlockFetcher, MemoryBlockFetcher
from .filters import scope_block
from .sources import (
    END_OF_STREAM,
    BlockSource,
    BlockSourceFactory,
    ListBlockSource,
    QueueBlockSource,
    RangeBlockSource,
)
from .coordinator import CoordinatorConfig, ExecutionCoordinator
from .service import ExecutionService
from .debug import DebugLogEntry, DebugOption, DebugSessionManager, LogBuffer, SessionHandle

__all__ = [
    # Types
    "IndexerKey",
    "NamespaceId",
    "SessionId",
    "generate_id",
    "namespace_for",
    # Entities
    "Backfill",
    "BlockPayload",
    "DebugList",
    "ExecutionMode",
    "ExecutionOutcome",
    "FromInterruption",
    "IndexerFunctionSpec",
    "IndexerRunState",
    "MessageState",
    "Mutation",
    "MutationOp",
    "ProvisionedSchema",
    "QueueMessage",
    "RealTime",
    "RunStatus",
    "StartBlock",
    "mode_from_dict",
    # Persistence
    "PersistenceAPI",
    "MemoryStore",
    "MongoStore",
    # Execution
    "SchemaProvisioner",
    "Sandbox",
    "SandboxResult",
    "FunctionRunner",
    "Telemetry",
    # Blocks
    "BlockFetcher",
    "HttpBlockFetcher",
    "MemoryBlockFetcher",
    "scope_block",
    "END_OF_STREAM",
    "BlockSource",
    "BlockSourceFactory",
    "ListBlockSource",
    "QueueBlockSource",
    "RangeBlockSource",
    # Coordination
    "CoordinatorConfig",
    "ExecutionCoordinator",
    "ExecutionService",
    # Debug
    "DebugLogEntry",
    "DebugOption",
    "DebugSessionManager",
    "LogBuffer",
    "SessionHandle",
    # Errors
    "QAPIError",
    "SchemaError",
    "SchemaMalformedError",
    "SchemaConflictError",
    "ExecutionError",
    "ProvisioningFailedError",
    "ExecutionTimeoutError",
    "UserCodeFailedError",
    "StorageUnavailableError",
    "QueueError",
    "MalformedMessageError",
    "TransientFetchFailureError",
    "BlockFetchError",
    "CoordinatorError",
    "AlreadyRunningError",
    "NotRunningError",
    "InvalidTransitionError",
    "NoProgressError",
    "DataError",
    "InvalidMutationError",
    "ConstraintViolationError",
]
