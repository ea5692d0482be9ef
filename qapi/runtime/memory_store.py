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

"""In-memory implementation of PersistenceAPI.

Used for testing and for debug sessions, whose run state and namespace
rows are scratch data that must never reach the durable store.
"""

import copy
import threading
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from ..ast import TableDefinition
from .entities import (
    IndexerRunState,
    MessageState,
    Mutation,
    MutationOp,
    ProvisionedSchema,
    QueueMessage,
    RunStatus,
    routing_identity,
)
from .errors import ConstraintViolationError, InvalidMutationError
from .mutations import complete_row, key_columns, row_matches
from .persistence import PersistenceAPI
from .types import IndexerKey, current_time_ms, generate_id


class MemoryStore(PersistenceAPI):
    """In-memory implementation of the persistence API.

    All data is stored in dictionaries and cleared on restart. Every
    operation runs under a single re-entrant lock, which makes claims,
    progress writes and block commits atomic.
    """

    def __init__(self):
        """Initialize empty stores."""
        self._run_states: dict[IndexerKey, IndexerRunState] = {}
        self._messages: dict[str, QueueMessage] = {}
        self._namespaces: dict[str, ProvisionedSchema] = {}

        # (namespace, table) -> rows in insertion order
        self._rows: dict[tuple[str, str], list[dict[str, Any]]] = defaultdict(list)
        # (namespace, table, column) -> last serial value
        self._sequences: dict[tuple[str, str, str], int] = defaultdict(int)
        # namespace -> committed heights
        self._commits: dict[str, set[int]] = defaultdict(set)

        self._lock = threading.RLock()

    # =========================================================================
    # Run State Operations
    # =========================================================================

    def get_run_state(self, key: IndexerKey) -> IndexerRunState | None:
        with self._lock:
            state = self._run_states.get(key)
            return replace(state, mode=dict(state.mode)) if state else None

    def save_run_state(self, state: IndexerRunState) -> None:
        with self._lock:
            state.updated = current_time_ms()
            self._run_states[state.key] = replace(state, mode=dict(state.mode))

    def claim_run(
        self,
        key: IndexerKey,
        mode: dict[str, Any],
        spec_version: int,
        expected: Sequence[str],
    ) -> IndexerRunState | None:
        """Atomically transition a run state to running."""
        with self._lock:
            now = current_time_ms()
            state = self._run_states.get(key)
            if state is None:
                if RunStatus.STOPPED not in expected:
                    return None
                state = IndexerRunState(key.account_id, key.function_name)
                self._run_states[key] = state
            elif state.status not in expected:
                return None
            state.status = RunStatus.RUNNING
            state.mode = dict(mode)
            state.spec_version = spec_version
            state.error = None
            state.started = now
            state.updated = now
            return replace(state, mode=dict(state.mode))

    def save_progress(self, key: IndexerKey, height: int) -> bool:
        with self._lock:
            state = self._run_states.get(key)
            if state is None:
                return False
            last = state.last_processed_height
            if last is not None and height <= last:
                return False
            state.last_processed_height = height
            state.updated = current_time_ms()
            return True

    def set_run_status(self, key: IndexerKey, status: str, error: str | None = None) -> None:
        with self._lock:
            state = self._run_states.get(key)
            if state is None:
                return
            state.status = status
            state.error = error
            state.updated = current_time_ms()

    def list_run_states(self, status: str | None = None) -> Sequence[IndexerRunState]:
        with self._lock:
            return [
                replace(s, mode=dict(s.mode))
                for s in sorted(self._run_states.values(), key=lambda s: s.key)
                if status is None or s.status == status
            ]

    def interrupt_running(self) -> list[IndexerKey]:
        with self._lock:
            marked = []
            for state in self._run_states.values():
                if state.status == RunStatus.RUNNING:
                    state.status = RunStatus.INTERRUPTED
                    state.updated = current_time_ms()
                    marked.append(state.key)
            return sorted(marked)

    def delete_run_state(self, key: IndexerKey) -> bool:
        with self._lock:
            return self._run_states.pop(key, None) is not None

    # =========================================================================
    # Queue Operations
    # =========================================================================

    def enqueue(
        self,
        body: dict[str, Any],
        account_id: str | None = None,
        function_name: str | None = None,
    ) -> QueueMessage:
        account, name = routing_identity(body)
        now = current_time_ms()
        message = QueueMessage(
            uuid=generate_id(),
            body=copy.deepcopy(body),
            account_id=account_id if account_id is not None else account,
            function_name=function_name if function_name is not None else name,
            created=now,
            updated=now,
        )
        with self._lock:
            self._messages[message.uuid] = message
        return replace(message)

    def claim_message(self, key: IndexerKey, lease_ms: int) -> QueueMessage | None:
        """Lease the oldest available message for *key*."""
        with self._lock:
            now = current_time_ms()
            for message in self._messages.values():
                if message.account_id != key.account_id or message.function_name != key.function_name:
                    continue
                available = message.state == MessageState.PENDING or (
                    message.state == MessageState.RUNNING and message.lease_expires < now
                )
                if available:
                    message.state = MessageState.RUNNING
                    message.lease_expires = now + lease_ms
                    message.attempts += 1
                    message.updated = now
                    return replace(message, body=copy.deepcopy(message.body))
            return None

    def ack_message(self, message_id: str) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            message.state = MessageState.COMPLETED
            message.updated = current_time_ms()
            return True

    def get_message(self, message_id: str) -> QueueMessage | None:
        with self._lock:
            message = self._messages.get(message_id)
            return replace(message, body=copy.deepcopy(message.body)) if message else None

    def list_messages(self, key: IndexerKey | None = None, state: str | None = None) -> Sequence[QueueMessage]:
        with self._lock:
            return [
                replace(m, body=copy.deepcopy(m.body))
                for m in self._messages.values()
                if (key is None or (m.account_id, m.function_name) == (key.account_id, key.function_name))
                and (state is None or m.state == state)
            ]

    # =========================================================================
    # Namespace Operations
    # =========================================================================

    def get_namespace(self, namespace: str) -> ProvisionedSchema | None:
        with self._lock:
            return self._namespaces.get(namespace)

    def save_namespace(self, schema: ProvisionedSchema) -> None:
        with self._lock:
            if not schema.created:
                schema.created = current_time_ms()
            self._namespaces[schema.namespace] = schema
            for table in schema.tables:
                self._rows.setdefault((schema.namespace, table), [])

    def drop_namespace(self, namespace: str) -> None:
        with self._lock:
            self._namespaces.pop(namespace, None)
            for key in [k for k in self._rows if k[0] == namespace]:
                del self._rows[key]
            for key in [k for k in self._sequences if k[0] == namespace]:
                del self._sequences[key]
            self._commits.pop(namespace, None)

    def namespace_has_data(self, namespace: str) -> bool:
        with self._lock:
            return any(rows for (ns, _), rows in self._rows.items() if ns == namespace)

    # =========================================================================
    # Row Operations
    # =========================================================================

    def select_rows(
        self,
        namespace: str,
        table: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            matched = [dict(r) for r in self._rows.get((namespace, table), []) if row_matches(r, where)]
        if limit is not None:
            matched = matched[: max(limit, 0)]
        return copy.deepcopy(matched)

    def apply_mutation(self, namespace: str, mutation: Mutation) -> int:
        with self._lock:
            return self._apply(namespace, mutation)

    def commit_block(self, namespace: str, height: int, mutations: Sequence[Mutation]) -> bool:
        """Apply *mutations* atomically and record *height* in the ledger."""
        with self._lock:
            if height in self._commits[namespace]:
                return False
            rows_snapshot = {k: copy.deepcopy(v) for k, v in self._rows.items() if k[0] == namespace}
            seq_snapshot = {k: v for k, v in self._sequences.items() if k[0] == namespace}
            try:
                for mutation in mutations:
                    self._apply(namespace, mutation)
            except Exception:
                for key in [k for k in self._rows if k[0] == namespace]:
                    del self._rows[key]
                self._rows.update(rows_snapshot)
                for key in [k for k in self._sequences if k[0] == namespace]:
                    del self._sequences[key]
                self._sequences.update(seq_snapshot)
                raise
            self._commits[namespace].add(height)
            return True

    def is_committed(self, namespace: str, height: int) -> bool:
        with self._lock:
            return height in self._commits.get(namespace, set())

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._run_states.clear()
            self._messages.clear()
            self._namespaces.clear()
            self._rows.clear()
            self._sequences.clear()
            self._commits.clear()

    # =========================================================================
    # Internal
    # =========================================================================

    def _table(self, namespace: str, table: str) -> TableDefinition:
        schema = self._namespaces.get(namespace)
        definition = schema.table(table) if schema else None
        if definition is None:
            raise InvalidMutationError(table, f"table does not exist in namespace {namespace}")
        return definition

    def _apply(self, namespace: str, mutation: Mutation) -> int:
        definition = self._table(namespace, mutation.table)
        rows = self._rows[(namespace, definition.name)]

        def next_serial(column: str) -> int:
            key = (namespace, definition.name, column)
            self._sequences[key] += 1
            return self._sequences[key]

        if mutation.op == MutationOp.INSERT:
            pending = [complete_row(definition, r, next_serial) for r in mutation.rows]
            self._check_keys(definition, rows, pending)
            rows.extend(pending)
            return len(pending)

        if mutation.op == MutationOp.UPSERT:
            count = 0
            for row in mutation.rows:
                where = {c: row.get(c) for c in mutation.conflict_columns}
                existing = next((r for r in rows if row_matches(r, where)), None)
                if existing is None:
                    full = complete_row(definition, row, next_serial)
                    self._check_keys(definition, rows, [full])
                    rows.append(full)
                else:
                    columns = mutation.update_columns or [c for c in row if c not in mutation.conflict_columns]
                    existing.update({c: row[c] for c in columns if c in row})
                count += 1
            return count

        if mutation.op == MutationOp.UPDATE:
            matched = [r for r in rows if row_matches(r, mutation.where)]
            if not matched:
                return 0
            others = [r for r in rows if not row_matches(r, mutation.where)]
            updated = [{**r, **mutation.values} for r in matched]
            self._check_keys(definition, others, updated)
            for row in matched:
                row.update(mutation.values)
            return len(matched)

        if mutation.op == MutationOp.DELETE:
            kept = [r for r in rows if not row_matches(r, mutation.where)]
            removed = len(rows) - len(kept)
            rows[:] = kept
            return removed

        raise InvalidMutationError(mutation.table, f"unknown operation '{mutation.op}'")

    @staticmethod
    def _check_keys(
        definition: TableDefinition,
        existing: list[dict[str, Any]],
        incoming: list[dict[str, Any]],
    ) -> None:
        """Reject rows that duplicate a key among themselves or with *existing*."""
        for columns in key_columns(definition):
            seen = {
                tuple(r.get(c) for c in columns)
                for r in existing
            }
            for row in incoming:
                value = tuple(row.get(c) for c in columns)
                if None in value:
                    continue
                if value in seen:
                    raise ConstraintViolationError(
                        definition.name,
                        f"duplicate key ({', '.join(columns)})=({', '.join(map(str, value))})",
                    )
                seen.add(value)
