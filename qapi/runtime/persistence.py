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

"""QAPI runtime persistence abstraction.

The coordinator, block sources, provisioner and function runner MUST NOT
directly access the database. All persistence operations are performed
through this API.
"""

from abc import abstractmethod
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from .entities import IndexerRunState, Mutation, ProvisionedSchema, QueueMessage
from .types import IndexerKey


@runtime_checkable
class PersistenceAPI(Protocol):
    """Protocol defining the persistence abstraction boundary.

    Implementations handle:
    - Atomic run claims and queue leases
    - Monotonic progress writes
    - Per-height transactional commits with a dedup ledger
    - Database-specific details
    """

    # =========================================================================
    # Run state operations
    # =========================================================================

    @abstractmethod
    def get_run_state(self, key: IndexerKey) -> IndexerRunState | None:
        """Fetch the run state of an indexer, if one was ever created."""
        ...

    @abstractmethod
    def save_run_state(self, state: IndexerRunState) -> None:
        """Insert or replace a run state."""
        ...

    @abstractmethod
    def claim_run(
        self,
        key: IndexerKey,
        mode: dict[str, Any],
        spec_version: int,
        expected: Sequence[str],
    ) -> IndexerRunState | None:
        """Atomically move an indexer to ``running``.

        The transition happens only if the current status is one of
        *expected*; a missing state counts as ``stopped`` and is created.

        Returns:
            The updated state, or None if the current status did not match
        """
        ...

    @abstractmethod
    def save_progress(self, key: IndexerKey, height: int) -> bool:
        """Durably record *height* as the last processed height.

        Progress only moves forward: a height at or below the stored value
        is ignored.

        Returns:
            True if the stored height advanced
        """
        ...

    @abstractmethod
    def set_run_status(self, key: IndexerKey, status: str, error: str | None = None) -> None:
        """Set the status (and error text) of an existing run state."""
        ...

    @abstractmethod
    def list_run_states(self, status: str | None = None) -> Sequence[IndexerRunState]:
        """List run states, optionally filtered by status."""
        ...

    @abstractmethod
    def interrupt_running(self) -> list[IndexerKey]:
        """Mark every ``running`` state ``interrupted``.

        Returns:
            Keys of the indexers that were marked
        """
        ...

    @abstractmethod
    def delete_run_state(self, key: IndexerKey) -> bool:
        """Remove a run state. Returns True if one existed."""
        ...

    # =========================================================================
    # Queue operations
    # =========================================================================

    @abstractmethod
    def enqueue(
        self,
        body: dict[str, Any],
        account_id: str | None = None,
        function_name: str | None = None,
    ) -> QueueMessage:
        """Append a message to the shared real-time queue.

        The routing identity is taken from ``body["indexerFunction"]``
        unless given explicitly.
        """
        ...

    @abstractmethod
    def claim_message(self, key: IndexerKey, lease_ms: int) -> QueueMessage | None:
        """Lease the oldest available message for an indexer.

        A message is available when pending or when its previous lease
        expired. Claiming is atomic across consumers.
        """
        ...

    @abstractmethod
    def ack_message(self, message_id: str) -> bool:
        """Mark a claimed message completed."""
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> QueueMessage | None:
        """Fetch a queue message by ID."""
        ...

    @abstractmethod
    def list_messages(self, key: IndexerKey | None = None, state: str | None = None) -> Sequence[QueueMessage]:
        """List queue messages, optionally filtered by indexer and state."""
        ...

    # =========================================================================
    # Namespace operations
    # =========================================================================

    @abstractmethod
    def get_namespace(self, namespace: str) -> ProvisionedSchema | None:
        """Fetch a provisioned namespace."""
        ...

    @abstractmethod
    def save_namespace(self, schema: ProvisionedSchema) -> None:
        """Create the namespace's tables and record its schema."""
        ...

    @abstractmethod
    def drop_namespace(self, namespace: str) -> None:
        """Remove a namespace with all its rows and its commit ledger."""
        ...

    @abstractmethod
    def namespace_has_data(self, namespace: str) -> bool:
        """Whether any table of the namespace holds rows."""
        ...

    # =========================================================================
    # Row operations
    # =========================================================================

    @abstractmethod
    def select_rows(
        self,
        namespace: str,
        table: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read rows matching an equality filter, in insertion order."""
        ...

    @abstractmethod
    def apply_mutation(self, namespace: str, mutation: Mutation) -> int:
        """Apply one mutation immediately.

        Returns:
            Number of rows affected

        Raises:
            ConstraintViolationError: If a key constraint is violated
        """
        ...

    @abstractmethod
    def commit_block(self, namespace: str, height: int, mutations: Sequence[Mutation]) -> bool:
        """Apply all mutations for one height atomically.

        Either every mutation is applied and the height is recorded in the
        namespace's commit ledger, or nothing changes.

        Returns:
            False if the height was already committed (nothing applied)
        """
        ...

    @abstractmethod
    def is_committed(self, namespace: str, height: int) -> bool:
        """Whether *height* is in the namespace's commit ledger."""
        ...
