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

"""Execution coordinator: the per-indexer state machine.

One coordinator owns the execution loop of one (account, function). The
loop pulls blocks from a source, runs the function, applies the mode's
failure policy, persists ``last_processed_height`` and only then
acknowledges the block::

    coordinator = ExecutionCoordinator(key, store, runner, BlockSourceFactory(store, fetcher))
    coordinator.start(spec, Backfill(start_height=100, end_height=200))
    coordinator.join()

States::

    stopped ──start──> running ──stop / end of stream──> stopped
                          │
                          └──fatal failure──> interrupted ──resume──> running
                                                   └──stop──> stopped
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .entities import (
    BlockPayload,
    DebugList,
    ExecutionMode,
    ExecutionOutcome,
    FromInterruption,
    IndexerFunctionSpec,
    RealTime,
    RunStatus,
    mode_from_dict,
)
from .errors import (
    AlreadyRunningError,
    ExecutionTimeoutError,
    InvalidTransitionError,
    NoProgressError,
    NotRunningError,
    ProvisioningFailedError,
    QueueError,
    SchemaConflictError,
    UserCodeFailedError,
)
from .function_runner import FunctionRunner
from .persistence import PersistenceAPI
from .sources import END_OF_STREAM, BlockSource
from .telemetry import Telemetry
from .types import IndexerKey

logger = logging.getLogger(__name__)

# (spec, mode, resume_after) -> source
SourceFactory = Callable[[IndexerFunctionSpec, ExecutionMode, int | None], BlockSource]
OutcomeCallback = Callable[[ExecutionOutcome], None]


@dataclass
class CoordinatorConfig:
    """Configuration for an execution coordinator."""

    poll_interval_ms: int = 1000
    max_provision_attempts: int = 3
    provision_retry_delay_ms: int = 500
    imperative: bool = False


class _Decision:
    ADVANCE = "advance"
    RETRY = "retry"
    HALT = "halt"


def _tolerates(policy: str, outcome: ExecutionOutcome) -> bool:
    """Whether a failed invocation may be skipped under *policy*."""
    error = outcome.error
    if isinstance(error, UserCodeFailedError):
        return True
    if isinstance(error, ExecutionTimeoutError):
        return policy in (RealTime.kind, DebugList.kind)
    return False


class ExecutionCoordinator:
    """Runs and controls the execution loop of one indexer.

    The coordinator is the only writer of the indexer's run state. A
    ``running`` status is claimed atomically in the store, so at most one
    loop per indexer runs even across coordinator instances.
    """

    def __init__(
        self,
        key: IndexerKey,
        store: PersistenceAPI,
        runner: FunctionRunner,
        source_factory: SourceFactory,
        config: CoordinatorConfig | None = None,
        telemetry: Telemetry | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        self.key = key
        self._store = store
        self._runner = runner
        self._source_factory = source_factory
        self._config = config or CoordinatorConfig()
        self._telemetry = telemetry
        self._on_outcome = on_outcome

        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._spec: IndexerFunctionSpec | None = None
        self._current_height: int | None = None

    @property
    def is_running(self) -> bool:
        """Check if the loop thread is alive."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def spec(self) -> IndexerFunctionSpec | None:
        """The function definition the loop is currently executing."""
        return self._spec

    @property
    def current_height(self) -> int | None:
        """Height of the in-flight invocation, if any."""
        return self._current_height

    # =========================================================================
    # Control
    # =========================================================================

    def start(self, spec: IndexerFunctionSpec, mode: ExecutionMode) -> None:
        """Start the execution loop in *mode*.

        Raises:
            AlreadyRunningError: If a loop is running for this indexer
            InvalidTransitionError: If the indexer is interrupted and *mode*
                is not ``FromInterruption``
            NoProgressError: If resuming without any persisted progress
        """
        if spec.key != self.key:
            raise ValueError(f"spec {spec.full_name} does not belong to {self.key}")

        with self._lock:
            if self.is_running:
                raise AlreadyRunningError(str(self.key))

            state = self._store.get_run_state(self.key)
            if state is not None and state.status == RunStatus.RUNNING:
                raise AlreadyRunningError(str(self.key))

            resume_after = None
            if isinstance(mode, FromInterruption):
                if state is None or state.last_processed_height is None:
                    raise NoProgressError(str(self.key))
                effective = mode_from_dict(state.mode)
                if effective is None or isinstance(effective, FromInterruption):
                    raise InvalidTransitionError(
                        str(self.key), state.status, RunStatus.RUNNING, "no recorded mode to resume"
                    )
                resume_after = state.last_processed_height
                if state.spec_version != spec.version:
                    logger.warning(
                        "Indexer %s resumes with version %d; it was interrupted at version %d",
                        self.key,
                        spec.version,
                        state.spec_version,
                    )
                expected = (RunStatus.STOPPED, RunStatus.INTERRUPTED)
            else:
                if state is not None and state.status == RunStatus.INTERRUPTED:
                    raise InvalidTransitionError(
                        str(self.key),
                        RunStatus.INTERRUPTED,
                        RunStatus.RUNNING,
                        "resume with FromInterruption or stop first",
                    )
                effective = mode
                expected = (RunStatus.STOPPED,)

            source = self._source_factory(spec, effective, resume_after)
            claimed = self._store.claim_run(self.key, effective.to_dict(), spec.version, expected)
            if claimed is None:
                source.close()
                current = self._store.get_run_state(self.key)
                status = current.status if current else RunStatus.STOPPED
                if status == RunStatus.RUNNING:
                    raise AlreadyRunningError(str(self.key))
                raise InvalidTransitionError(str(self.key), status, RunStatus.RUNNING)

            if resume_after is None:
                # A fresh start begins a new progress sequence.
                claimed.last_processed_height = None
            claimed.spec = spec.to_dict()
            self._store.save_run_state(claimed)

            previous = state.status if state else RunStatus.STOPPED
            logger.info(
                "Starting indexer %s (version %d) in %s mode%s",
                self.key,
                spec.version,
                effective.kind,
                f" after height {resume_after}" if resume_after is not None else "",
            )
            if self._telemetry is not None:
                self._telemetry.log_state_transition(str(self.key), previous, RunStatus.RUNNING)
                self._telemetry.log_run_start(str(self.key), effective.to_dict(), spec.version)

            self._spec = spec
            self._stopping.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(source, effective.kind),
                name=f"qapi-{self.key.full_name}",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        """Request cooperative cancellation.

        The in-flight invocation finishes and its progress is persisted
        before the loop exits. Stopping an interrupted indexer marks it
        stopped.

        Raises:
            NotRunningError: If there is nothing to stop
        """
        with self._lock:
            if self.is_running:
                logger.info("Stopping indexer %s", self.key)
                self._stopping.set()
                return
            state = self._store.get_run_state(self.key)
            if state is not None and state.status == RunStatus.INTERRUPTED:
                self._store.set_run_status(self.key, RunStatus.STOPPED, state.error)
                if self._telemetry is not None:
                    self._telemetry.log_state_transition(str(self.key), RunStatus.INTERRUPTED, RunStatus.STOPPED)
                return
            raise NotRunningError(str(self.key))

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop to exit; returns True if it has."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # =========================================================================
    # Loop
    # =========================================================================

    def _run_loop(self, source: BlockSource, policy: str) -> None:
        status = RunStatus.STOPPED
        error: str | None = None
        pending: BlockPayload | None = None
        attempts = 0
        poll_seconds = self._config.poll_interval_ms / 1000.0

        try:
            while not self._stopping.is_set():
                if pending is None:
                    item = source.next()
                    if item is END_OF_STREAM:
                        logger.info("Indexer %s reached the end of its block stream", self.key)
                        break
                    if item is None:
                        self._stopping.wait(poll_seconds)
                        continue
                    pending = item
                    self._track_spec(source.spec)

                self._current_height = pending.height
                outcome = self._runner.run(
                    self._spec,
                    pending,
                    imperative=self._config.imperative,
                )
                self._current_height = None
                self._emit(outcome)

                decision, reason = self._decide(policy, outcome, attempts)
                if decision == _Decision.RETRY:
                    attempts += 1
                    logger.warning(
                        "Retrying block %d for %s (attempt %d of %d): %s",
                        pending.height,
                        self.key,
                        attempts + 1,
                        self._config.max_provision_attempts,
                        outcome.error,
                    )
                    self._stopping.wait(self._config.provision_retry_delay_ms / 1000.0)
                    continue
                if decision == _Decision.HALT:
                    status, error = RunStatus.INTERRUPTED, reason
                    logger.error("Indexer %s halted at block %d: %s", self.key, pending.height, reason)
                    break

                if not self._store.save_progress(self.key, pending.height):
                    logger.debug("Progress for %s already at or past %d", self.key, pending.height)
                source.ack(pending)
                pending = None
                attempts = 0
        except QueueError as e:
            status, error = RunStatus.INTERRUPTED, str(e)
            logger.error("Indexer %s interrupted: %s", self.key, e)
        except Exception as e:
            status, error = RunStatus.INTERRUPTED, f"{type(e).__name__}: {e}"
            logger.exception("Indexer %s interrupted by an unexpected error", self.key)
        finally:
            self._current_height = None
            self._finish(source, status, error)

    def _decide(self, policy: str, outcome: ExecutionOutcome, attempts: int) -> tuple[str, str | None]:
        error = outcome.error
        if error is None:
            return _Decision.ADVANCE, None
        if isinstance(error, ProvisioningFailedError):
            if isinstance(error.cause, SchemaConflictError):
                return _Decision.HALT, str(error)
            if attempts + 1 < self._config.max_provision_attempts:
                return _Decision.RETRY, None
            return _Decision.HALT, f"{error} (after {attempts + 1} attempts)"
        if _tolerates(policy, outcome):
            return _Decision.ADVANCE, None
        return _Decision.HALT, str(error)

    def _track_spec(self, spec: IndexerFunctionSpec) -> None:
        if self._spec is None or spec.version == self._spec.version:
            return
        logger.info("Indexer %s now runs version %d", self.key, spec.version)
        self._spec = spec
        state = self._store.get_run_state(self.key)
        if state is not None:
            state.spec_version = spec.version
            state.spec = spec.to_dict()
            self._store.save_run_state(state)

    def _emit(self, outcome: ExecutionOutcome) -> None:
        if self._on_outcome is None:
            return
        try:
            self._on_outcome(outcome)
        except Exception:
            logger.exception("Outcome callback failed for %s at block %d", self.key, outcome.height)

    def _finish(self, source: BlockSource, status: str, error: str | None) -> None:
        try:
            source.close()
        finally:
            try:
                self._store.set_run_status(self.key, status, error)
            except Exception:
                logger.exception("Could not record %s status for %s", status, self.key)
            logger.info("Indexer %s %s", self.key, status)
            if self._telemetry is not None:
                self._telemetry.log_state_transition(str(self.key), RunStatus.RUNNING, status)
                self._telemetry.log_run_end(str(self.key), status, error)
