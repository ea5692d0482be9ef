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

"""QAPI error types.

Errors fall into four families:

- ``SchemaError``: the user schema cannot be parsed or provisioned.
- ``ExecutionError``: a single function invocation failed. These are
  carried as data on :class:`~qapi.runtime.entities.ExecutionOutcome`
  rather than raised into the execution loop.
- ``QueueError``: a block could not be obtained from its source.
- ``CoordinatorError``: an invalid control request for an indexer loop.
"""

from dataclasses import dataclass


class QAPIError(Exception):
    """Base class for all QAPI errors."""

    pass


# =============================================================================
# Schema errors
# =============================================================================


class SchemaError(QAPIError):
    """Base class for schema errors."""

    pass


@dataclass
class SchemaMalformedError(SchemaError):
    """Raised when a schema definition cannot be parsed."""

    message: str
    fragment: str = ""
    line: int | None = None
    column: int | None = None

    def __str__(self) -> str:
        location = ""
        if self.line is not None:
            location = f" at line {self.line}"
            if self.column is not None:
                location += f", column {self.column}"
        near = f" near {self.fragment!r}" if self.fragment else ""
        return f"Malformed schema{location}: {self.message}{near}"


@dataclass
class SchemaConflictError(SchemaError):
    """Raised when a changed schema targets a namespace that cannot take it."""

    namespace: str
    message: str

    def __str__(self) -> str:
        return f"Schema conflict for namespace {self.namespace}: {self.message}"


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionError(QAPIError):
    """Base class for per-invocation failures."""

    #: Short machine-readable kind used in logs and the HTTP surface.
    kind = "execution"


@dataclass
class ProvisioningFailedError(ExecutionError):
    """The namespace could not be provisioned before execution."""

    namespace: str
    cause: SchemaError | Exception

    kind = "provisioning_failed"

    def __str__(self) -> str:
        return f"Provisioning failed for namespace {self.namespace}: {self.cause}"


@dataclass
class ExecutionTimeoutError(ExecutionError):
    """User code did not return within the configured budget."""

    height: int
    timeout: float

    kind = "timeout"

    def __str__(self) -> str:
        return f"Execution of block {self.height} timed out after {self.timeout}s"


@dataclass
class UserCodeFailedError(ExecutionError):
    """User code raised, failed to compile, or issued an invalid call."""

    message: str

    kind = "user_code_failed"

    def __str__(self) -> str:
        return self.message


@dataclass
class StorageUnavailableError(ExecutionError):
    """The storage layer rejected or failed a write."""

    message: str

    kind = "storage_unavailable"

    def __str__(self) -> str:
        return f"Storage unavailable: {self.message}"


# =============================================================================
# Queue / block source errors
# =============================================================================


class QueueError(QAPIError):
    """Base class for block source errors."""

    pass


@dataclass
class MalformedMessageError(QueueError):
    """A queue message could not be decoded."""

    message_id: str
    message: str

    def __str__(self) -> str:
        return f"Malformed queue message {self.message_id}: {self.message}"


@dataclass
class TransientFetchFailureError(QueueError):
    """Block data could not be fetched."""

    height: int
    message: str

    def __str__(self) -> str:
        return f"Failed to fetch block {self.height}: {self.message}"


class BlockFetchError(TransientFetchFailureError):
    """Fetch failure that terminates a range or list run."""

    pass


# =============================================================================
# Coordinator errors
# =============================================================================


class CoordinatorError(QAPIError):
    """Base class for coordinator control errors."""

    pass


@dataclass
class AlreadyRunningError(CoordinatorError):
    """A loop is already running for the indexer."""

    indexer: str

    def __str__(self) -> str:
        return f"Indexer {self.indexer} is already running"


@dataclass
class NotRunningError(CoordinatorError):
    """Stop was requested for an indexer with no running loop."""

    indexer: str

    def __str__(self) -> str:
        return f"Indexer {self.indexer} is not running"


@dataclass
class InvalidTransitionError(CoordinatorError):
    """The requested state change is not allowed from the current state."""

    indexer: str
    from_state: str
    to_state: str
    reason: str = ""

    def __str__(self) -> str:
        suffix = f" ({self.reason})" if self.reason else ""
        return (
            f"Invalid transition for indexer {self.indexer}: "
            f"cannot transition from '{self.from_state}' to '{self.to_state}'{suffix}"
        )


@dataclass
class NoProgressError(CoordinatorError):
    """Resume was requested but no progress has ever been persisted."""

    indexer: str

    def __str__(self) -> str:
        return f"Indexer {self.indexer} has no last processed height to resume from"


# =============================================================================
# Data errors (invalid context calls from user code)
# =============================================================================


class DataError(QAPIError):
    """Base class for rejected reads or writes against a namespace table.

    Raised back into user code as a ``ContextError``; uncaught, it fails
    the invocation like any other user exception.
    """

    pass


@dataclass
class InvalidMutationError(DataError):
    """The mutation does not fit the provisioned schema."""

    table: str
    message: str

    def __str__(self) -> str:
        return f"Invalid mutation on table '{self.table}': {self.message}"


@dataclass
class ConstraintViolationError(DataError):
    """A write violated a primary key or unique constraint."""

    table: str
    message: str

    def __str__(self) -> str:
        return f"Constraint violation on table '{self.table}': {self.message}"
