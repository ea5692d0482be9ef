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

"""Entity dataclasses for the QAPI runtime.

These dataclasses represent the documents stored by the persistence layer
and the values passed between block sources, the function runner and the
execution coordinator. All timestamps are int (milliseconds since Unix
epoch).
"""

from dataclasses import dataclass, field
from typing import Any

from ..ast import TableDefinition
from .errors import ExecutionError
from .types import IndexerKey, NamespaceId

# =============================================================================
# Indexer function definitions
# =============================================================================


class StartBlock:
    """Registration start-block constants."""

    LATEST = "latest"
    CONTINUE = "continue"


@dataclass(frozen=True)
class IndexerFunctionSpec:
    """One registered version of an indexer function.

    Instances are immutable; registering new code or schema produces a new
    spec with a higher ``version``.
    """

    account_id: str
    function_name: str
    code: str
    schema: str
    filter: str | None = None
    version: int = 0
    created_at_block_height: int | None = None
    updated_at_block_height: int | None = None
    start_block: str | int = StartBlock.LATEST

    @property
    def key(self) -> IndexerKey:
        return IndexerKey(self.account_id, self.function_name)

    @property
    def full_name(self) -> str:
        return self.key.full_name

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the camelCase wire names."""
        return {
            "accountId": self.account_id,
            "functionName": self.function_name,
            "code": self.code,
            "schema": self.schema,
            "filter": self.filter,
            "version": self.version,
            "createdAtBlockHeight": self.created_at_block_height,
            "updatedAtBlockHeight": self.updated_at_block_height,
            "startBlock": self.start_block,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexerFunctionSpec":
        """Create from a dictionary.

        Keys may use either snake_case (``account_id``) or camelCase
        (``accountId``).

        Raises:
            KeyError: If the identity, code or schema is missing
        """

        def pick(snake: str, camel: str, default: Any = None) -> Any:
            if snake in data:
                return data[snake]
            return data.get(camel, default)

        account_id = pick("account_id", "accountId")
        function_name = pick("function_name", "functionName")
        code = pick("code", "code")
        if account_id is None or function_name is None or code is None:
            raise KeyError("indexer function requires accountId, functionName and code")

        created = pick("created_at_block_height", "createdAtBlockHeight")
        updated = pick("updated_at_block_height", "updatedAtBlockHeight")
        version = pick("version", "version")
        if version is None:
            version = updated if updated is not None else (created or 0)

        return cls(
            account_id=str(account_id),
            function_name=str(function_name),
            code=str(code),
            schema=str(pick("schema", "schema", "") or ""),
            filter=pick("filter", "contractFilter"),
            version=int(version),
            created_at_block_height=created,
            updated_at_block_height=updated,
            start_block=pick("start_block", "startBlock", StartBlock.LATEST),
        )

    @classmethod
    def from_registration(
        cls, account_id: str, payload: dict[str, Any]
    ) -> "IndexerFunctionSpec":
        """Build a spec from a registration request.

        The payload carries ``indexerName``, ``code``, ``schema``,
        ``blockHeight`` and ``contractFilter``. Spaces in the indexer name
        become underscores.
        """
        name = str(payload["indexerName"]).strip().replace(" ", "_")
        height = payload.get("blockHeight")
        return cls(
            account_id=account_id,
            function_name=name,
            code=payload["code"],
            schema=payload.get("schema", ""),
            filter=payload.get("contractFilter"),
            version=int(height) if height is not None else 0,
            created_at_block_height=height,
            start_block=int(height) if height is not None else StartBlock.LATEST,
        )


# =============================================================================
# Execution modes
# =============================================================================


@dataclass(frozen=True)
class RealTime:
    """Consume the shared real-time queue."""

    kind = "realtime"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class Backfill:
    """Sequential forward scan from ``start_height``.

    Without ``end_height`` the scan follows the chain head indefinitely.
    """

    start_height: int
    end_height: int | None = None

    kind = "backfill"

    def __post_init__(self) -> None:
        if self.start_height < 0:
            raise ValueError("start_height must be non-negative")
        if self.end_height is not None and self.end_height < self.start_height:
            raise ValueError("end_height must not be below start_height")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "start_height": self.start_height,
            "end_height": self.end_height,
        }


@dataclass(frozen=True)
class DebugList:
    """Replay an explicit list of heights."""

    heights: tuple[int, ...]

    kind = "debug_list"

    def __init__(self, heights) -> None:
        object.__setattr__(self, "heights", tuple(int(h) for h in heights))

    def ordered_heights(self) -> list[int]:
        """Heights deduplicated and in ascending order."""
        return sorted(set(self.heights))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "heights": list(self.heights)}


@dataclass(frozen=True)
class FromInterruption:
    """Resume the previously recorded mode after the last persisted height."""

    kind = "from_interruption"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


ExecutionMode = RealTime | Backfill | DebugList | FromInterruption


def mode_from_dict(data: dict[str, Any] | None) -> ExecutionMode | None:
    """Rebuild an execution mode persisted with ``to_dict()``."""
    if not data:
        return None
    kind = data.get("kind")
    if kind == RealTime.kind:
        return RealTime()
    if kind == Backfill.kind:
        return Backfill(data["start_height"], data.get("end_height"))
    if kind == DebugList.kind:
        return DebugList(data.get("heights", []))
    if kind == FromInterruption.kind:
        return FromInterruption()
    raise ValueError(f"Unknown execution mode: {kind!r}")


# =============================================================================
# Run state
# =============================================================================


class RunStatus:
    """Indexer run status constants."""

    STOPPED = "stopped"
    RUNNING = "running"
    INTERRUPTED = "interrupted"


@dataclass
class IndexerRunState:
    """Persistent per-indexer execution state.

    Mutated only by the execution coordinator. ``last_processed_height`` is
    the sole source of truth for resuming after an interruption; ``spec``
    holds the serialized function definition last started, so a resume
    after a process restart does not need it resubmitted.
    """

    account_id: str
    function_name: str
    status: str = RunStatus.STOPPED
    last_processed_height: int | None = None
    mode: dict[str, Any] = field(default_factory=dict)
    spec_version: int = 0
    error: str | None = None
    started: int = 0
    updated: int = 0
    spec: dict[str, Any] | None = None

    @property
    def key(self) -> IndexerKey:
        return IndexerKey(self.account_id, self.function_name)


# =============================================================================
# Blocks
# =============================================================================


@dataclass(frozen=True)
class BlockPayload:
    """Per-height data handed to one function invocation.

    Receipts, transactions and state changes are already scoped by the
    indexer's contract filter.
    """

    height: int
    receipts: tuple[dict, ...] = ()
    transactions: tuple[dict, ...] = ()
    state_changes: tuple[dict, ...] = ()
    is_historical: bool = False
    hash: str | None = None
    timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-compatible view handed to user code."""
        return {
            "height": self.height,
            "hash": self.hash,
            "timestamp": self.timestamp,
            "is_historical": self.is_historical,
            "receipts": [dict(r) for r in self.receipts],
            "transactions": [dict(t) for t in self.transactions],
            "state_changes": [dict(s) for s in self.state_changes],
        }


# =============================================================================
# Queue
# =============================================================================


class MessageState:
    """Queue message state constants."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class QueueMessage:
    """A message on the shared real-time queue.

    ``body`` is kept exactly as produced so that malformed messages can be
    claimed, logged and dropped. ``account_id``/``function_name`` are
    extracted on enqueue for routing and are empty when the body lacks them.
    """

    uuid: str
    body: dict[str, Any]
    account_id: str = ""
    function_name: str = ""
    state: str = MessageState.PENDING
    lease_expires: int = 0
    attempts: int = 0
    created: int = 0
    updated: int = 0


# =============================================================================
# Schemas and mutations
# =============================================================================


@dataclass
class ProvisionedSchema:
    """The set of tables provisioned for one indexer's namespace."""

    namespace: NamespaceId
    tables: dict[str, TableDefinition]
    schema_text: str
    fingerprint: str
    account_id: str = ""
    function_name: str = ""
    created: int = 0

    def table(self, name: str) -> TableDefinition | None:
        """Look up a table by name (case-insensitive for unquoted names)."""
        return self.tables.get(name) or self.tables.get(name.lower())


class MutationOp:
    """Mutation operation constants."""

    INSERT = "insert"
    UPSERT = "upsert"
    UPDATE = "update"
    DELETE = "delete"

    ALL = (INSERT, UPSERT, UPDATE, DELETE)


@dataclass
class Mutation:
    """A single relational change to a namespace table."""

    op: str
    table: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    where: dict[str, Any] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    conflict_columns: list[str] = field(default_factory=list)
    update_columns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "table": self.table,
            "rows": self.rows,
            "where": self.where,
            "values": self.values,
            "conflict_columns": self.conflict_columns,
            "update_columns": self.update_columns,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Mutation":
        return cls(
            op=data["op"],
            table=data["table"],
            rows=list(data.get("rows") or []),
            where=dict(data.get("where") or {}),
            values=dict(data.get("values") or {}),
            conflict_columns=list(data.get("conflict_columns") or []),
            update_columns=list(data.get("update_columns") or []),
        )


@dataclass
class ExecutionOutcome:
    """Result of running one function against one block.

    Declarative runs carry the captured ``mutations``; imperative runs
    report whether any action was applied. ``error`` is set on failure.
    ``duplicate`` marks a height whose mutations had already been committed.
    """

    height: int
    imperative: bool = False
    mutations: list[Mutation] = field(default_factory=list)
    actions_performed: bool = False
    committed: bool = False
    duplicate: bool = False
    error: ExecutionError | None = None
    logs: list[str] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        """One-line human readable description."""
        if self.error is not None:
            return f"{self.error.kind}: {self.error}"
        if self.imperative:
            return "actions performed" if self.actions_performed else "no actions"
        if self.duplicate:
            return "already committed"
        count = len(self.mutations)
        return f"{count} mutation{'s' if count != 1 else ''} committed"


def routing_identity(body: dict[str, Any]) -> tuple[str, str]:
    """Extract ``(account_id, function_name)`` from a queue message body.

    Both camelCase and snake_case keys are accepted; missing parts are
    returned as empty strings.
    """
    function = body.get("indexerFunction") or body.get("indexer_function") or {}
    if not isinstance(function, dict):
        return "", ""
    account = function.get("accountId", function.get("account_id", ""))
    name = function.get("functionName", function.get("function_name", ""))
    return str(account or ""), str(name or "")
