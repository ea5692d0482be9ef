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

"""Debug sessions: interactive replays of an indexer function.

A session runs the same execution coordinator as production loops, but
against its own scratch :class:`MemoryStore`, so neither the persistent
run state nor the production namespace of the function is touched.
Sessions are ephemeral and are not recovered after a restart.

Per-height log entries are pushed into a bounded buffer, which is read
with :meth:`SessionHandle.drain` or fed to an optional sink callable::

    manager = DebugSessionManager(fetcher)
    handle = manager.run("debugList", code, schema, "my_indexer", heights=[100, 101])
    handle.wait()
    for entry in handle.drain():
        print(entry.height, entry.summary)
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..config import DebugConfig, RunnerConfig
from .coordinator import CoordinatorConfig, ExecutionCoordinator
from .entities import Backfill, DebugList, ExecutionMode, ExecutionOutcome, IndexerFunctionSpec, RunStatus
from .errors import NotRunningError
from .fetcher import BlockFetcher
from .function_runner import FunctionRunner
from .memory_store import MemoryStore
from .sources import BlockSourceFactory
from .types import NamespaceId, SessionId, current_time_ms, namespace_for, session_id

logger = logging.getLogger(__name__)

# Upper bound on how long a sink waits for entries already buffered
_DELIVERY_POLL_SECONDS = 0.1


class DebugOption:
    """Replay options offered to interactive tooling."""

    DEBUG_LIST = "debugList"
    SPECIFIC = "specific"
    LATEST = "latest"

    ALL = (DEBUG_LIST, SPECIFIC, LATEST)


class LogStatus:
    OK = "ok"
    ERROR = "error"
    TRUNCATED = "truncated"


@dataclass
class DebugLogEntry:
    """One log entry of a debug session."""

    height: int | None
    status: str
    summary: str
    elapsed_ms: int = 0
    logs: list[str] = field(default_factory=list)
    error: str | None = None
    timestamp: int = field(default_factory=current_time_ms)

    @classmethod
    def from_outcome(cls, outcome: ExecutionOutcome) -> "DebugLogEntry":
        return cls(
            height=outcome.height,
            status=LogStatus.OK if outcome.success else LogStatus.ERROR,
            summary=outcome.summary(),
            elapsed_ms=outcome.elapsed_ms,
            logs=list(outcome.logs),
            error=str(outcome.error) if outcome.error is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "height": self.height,
            "status": self.status,
            "summary": self.summary,
            "elapsedMs": self.elapsed_ms,
            "logs": self.logs,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class LogBuffer:
    """Bounded FIFO of log entries.

    When full, the oldest entry is dropped. A single "logs truncated"
    marker reporting the number of dropped entries is returned at the head
    of the next :meth:`drain`.
    """

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: deque[DebugLogEntry] = deque()
        self._dropped = 0
        self._lock = threading.Lock()

    def push(self, entry: DebugLogEntry) -> None:
        with self._lock:
            if len(self._entries) >= self.capacity:
                self._entries.popleft()
                self._dropped += 1
            self._entries.append(entry)

    def drain(self) -> list[DebugLogEntry]:
        """Remove and return all buffered entries."""
        with self._lock:
            entries = self._with_marker()
            self._entries.clear()
            self._dropped = 0
            return entries

    def snapshot(self) -> list[DebugLogEntry]:
        """Return the buffered entries without removing them."""
        with self._lock:
            return self._with_marker()

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        return len(self._entries)

    def _with_marker(self) -> list[DebugLogEntry]:
        entries = list(self._entries)
        if self._dropped:
            marker = DebugLogEntry(
                height=None,
                status=LogStatus.TRUNCATED,
                summary=f"logs truncated: {self._dropped} older entries dropped",
            )
            entries.insert(0, marker)
        return entries


Sink = Callable[[DebugLogEntry], None]


class SessionHandle:
    """A running or finished debug session.

    Entries are pushed into the bounded buffer on the execution thread.
    When a sink is attached, a separate delivery thread drains the buffer
    into it, so a slow sink only causes the oldest entries to be dropped.
    """

    def __init__(
        self,
        session: SessionId,
        spec: IndexerFunctionSpec,
        mode: ExecutionMode,
        store: MemoryStore,
        buffer: LogBuffer,
        sink: Sink | None = None,
    ):
        self.session_id = session
        self.spec = spec
        self.mode = mode
        self.store = store
        self.buffer = buffer
        self.sink = sink
        self.namespace: NamespaceId = namespace_for(spec.account_id, spec.function_name)
        self.created = current_time_ms()
        self.coordinator: ExecutionCoordinator | None = None
        self._pending = threading.Event()
        self._delivery: threading.Thread | None = None

    def record(self, outcome: ExecutionOutcome) -> None:
        """Buffer the log entry for one processed height."""
        self.buffer.push(DebugLogEntry.from_outcome(outcome))
        self._pending.set()

    def start_delivery(self) -> None:
        """Start feeding buffered entries to the sink, if there is one."""
        if self.sink is None or self._delivery is not None:
            return
        self._delivery = threading.Thread(
            target=self._deliver,
            name=f"qapi-debug-{self.session_id}",
            daemon=True,
        )
        self._delivery.start()

    def _deliver(self) -> None:
        while True:
            finished = not self.is_running
            self._pending.clear()
            for entry in self.buffer.drain():
                try:
                    self.sink(entry)
                except Exception:
                    logger.exception("Debug sink failed for session %s at height %s", self.session_id, entry.height)
            if finished:
                return
            self._pending.wait(_DELIVERY_POLL_SECONDS)

    @property
    def is_running(self) -> bool:
        return self.coordinator is not None and self.coordinator.is_running

    @property
    def status(self) -> str:
        state = self.store.get_run_state(self.spec.key)
        return state.status if state else RunStatus.STOPPED

    @property
    def error(self) -> str | None:
        state = self.store.get_run_state(self.spec.key)
        return state.error if state else None

    @property
    def last_processed_height(self) -> int | None:
        state = self.store.get_run_state(self.spec.key)
        return state.last_processed_height if state else None

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the session and its sink deliveries to finish; returns True if they have."""
        deadline = None if timeout is None else time.monotonic() + timeout
        if self.coordinator is not None and not self.coordinator.join(timeout):
            return False
        delivery = self._delivery
        if delivery is None:
            return True
        delivery.join(None if deadline is None else max(deadline - time.monotonic(), 0.0))
        return not delivery.is_alive()

    def drain(self) -> list[DebugLogEntry]:
        """Remove and return buffered entries; with a sink attached the sink receives them instead."""
        return self.buffer.drain()

    def rows(self, table: str, where: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Read rows written by the session."""
        return self.store.select_rows(self.namespace, table, where)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "accountId": self.spec.account_id,
            "functionName": self.spec.function_name,
            "namespace": self.namespace,
            "mode": self.mode.to_dict(),
            "status": self.status,
            "running": self.is_running,
            "lastProcessedHeight": self.last_processed_height,
            "error": self.error,
            "bufferedLogs": len(self.buffer),
            "created": self.created,
        }


def _request_stop(handle: SessionHandle) -> bool:
    if not handle.is_running:
        return False
    try:
        handle.coordinator.stop()
    except NotRunningError:
        # The loop finished between the check and the request.
        return False
    return True


class DebugSessionManager:
    """Launches and tracks debug sessions."""

    def __init__(
        self,
        fetcher: BlockFetcher,
        config: DebugConfig | None = None,
        runner_config: RunnerConfig | None = None,
    ):
        self._fetcher = fetcher
        self._config = config or DebugConfig()
        self._runner_config = runner_config or RunnerConfig()
        self._sessions: dict[str, SessionHandle] = {}
        self._lock = threading.Lock()

    def start_session(
        self,
        spec: IndexerFunctionSpec,
        heights: Iterable[int] | None = None,
        start_height: int | None = None,
        end_height: int | None = None,
        sink: Sink | None = None,
        imperative: bool = False,
    ) -> SessionHandle:
        """Start a replay of *spec*.

        Either *heights* (replayed deduplicated and ascending) or
        *start_height* (with an optional *end_height*) must be given.

        Raises:
            ValueError: If neither or both are given
        """
        if (heights is None) == (start_height is None):
            raise ValueError("give either heights or start_height")
        mode: ExecutionMode = (
            DebugList(heights) if heights is not None else Backfill(start_height, end_height)
        )

        store = MemoryStore()
        handle = SessionHandle(session_id(), spec, mode, store, LogBuffer(self._config.buffer_size), sink)
        runner = FunctionRunner(store, timeout=self._runner_config.timeout)
        factory = BlockSourceFactory(
            store,
            self._fetcher,
            lease_ms=self._runner_config.lease_ms,
            legacy_marker=self._runner_config.legacy_marker,
        )
        handle.coordinator = ExecutionCoordinator(
            spec.key,
            store,
            runner,
            factory,
            config=CoordinatorConfig(
                poll_interval_ms=self._runner_config.poll_interval_ms,
                max_provision_attempts=self._runner_config.max_provision_attempts,
                imperative=imperative,
            ),
            on_outcome=handle.record,
        )
        with self._lock:
            self._sessions[handle.session_id] = handle
        handle.coordinator.start(spec, mode)
        handle.start_delivery()
        logger.info("Started debug session %s for %s (%s)", handle.session_id, spec.full_name, mode.kind)
        return handle

    def run(
        self,
        option: str,
        code: str,
        schema: str,
        namespace_id: str,
        starting_height: int | None = None,
        heights: Iterable[int] | None = None,
        account_id: str = "debug",
        function_name: str | None = None,
        contract_filter: str | None = None,
        sink: Sink | None = None,
    ) -> SessionHandle:
        """Start a session from an interactive replay request.

        Options:
            ``debugList``: replay *heights*
            ``specific``: follow the chain from *starting_height*
            ``latest``: follow the chain from a few blocks below the head

        Raises:
            ValueError: If the option is unknown or lacks its heights
        """
        spec = IndexerFunctionSpec(
            account_id=account_id,
            function_name=function_name or namespace_id,
            code=code,
            schema=schema,
            filter=contract_filter,
        )
        if option == DebugOption.DEBUG_LIST:
            if not heights:
                raise ValueError("debugList requires heights")
            return self.start_session(spec, heights=heights, sink=sink)
        if option == DebugOption.SPECIFIC:
            if starting_height is None:
                raise ValueError("specific requires a starting height")
            return self.start_session(spec, start_height=starting_height, sink=sink)
        if option == DebugOption.LATEST:
            start = max(self._fetcher.latest_height() - self._config.latest_offset, 0)
            return self.start_session(spec, start_height=start, sink=sink)
        raise ValueError(f"unknown debug option {option!r}; expected one of {', '.join(DebugOption.ALL)}")

    def get(self, session: str) -> SessionHandle | None:
        with self._lock:
            return self._sessions.get(session)

    def list_sessions(self) -> list[SessionHandle]:
        with self._lock:
            return list(self._sessions.values())

    def stop(self, handle: SessionHandle | str) -> bool:
        """Stop a session before its next height; returns False if it had finished."""
        if isinstance(handle, str):
            found = self.get(handle)
            if found is None:
                raise KeyError(f"no debug session {handle}")
            handle = found
        if not _request_stop(handle):
            return False
        logger.info("Stopping debug session %s", handle.session_id)
        return True

    def remove(self, session: str, timeout: float | None = None) -> bool:
        """Stop (if needed) and forget a session."""
        with self._lock:
            handle = self._sessions.pop(session, None)
        if handle is None:
            return False
        if _request_stop(handle):
            handle.wait(timeout)
        return True

    def shutdown(self, timeout: float | None = None) -> None:
        for handle in self.list_sessions():
            _request_stop(handle)
        for handle in self.list_sessions():
            handle.wait(timeout)
