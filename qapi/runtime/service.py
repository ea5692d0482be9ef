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

"""Execution service: hosts the coordinators of every indexer.

Example usage::

    from qapi.config import load_config
    from qapi.runtime import ExecutionService, HttpBlockFetcher, MongoStore

    config = load_config()
    store = MongoStore.from_config(config.mongodb)
    service = ExecutionService(store, HttpBlockFetcher(config.blocks.url), config)
    service.recover()
    service.start(spec, RealTime())
"""

import logging
import threading
from typing import Any

from ..config import QAPIConfig
from .coordinator import CoordinatorConfig, ExecutionCoordinator
from .entities import ExecutionMode, FromInterruption, IndexerFunctionSpec, IndexerRunState
from .fetcher import BlockFetcher
from .function_runner import FunctionRunner
from .persistence import PersistenceAPI
from .provisioner import SchemaProvisioner
from .sources import BlockSourceFactory
from .telemetry import Telemetry
from .types import IndexerKey, namespace_for

logger = logging.getLogger(__name__)


class ExecutionService:
    """Starts, stops and tracks indexer execution loops.

    One coordinator exists per indexer; failures of one indexer's loop are
    recorded in its run state and never affect the others.
    """

    def __init__(
        self,
        store: PersistenceAPI,
        fetcher: BlockFetcher,
        config: QAPIConfig | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._config = config or QAPIConfig()
        self._telemetry = telemetry or Telemetry()

        runner_config = self._config.runner
        self._runner = FunctionRunner(
            store,
            provisioner=SchemaProvisioner(store),
            timeout=runner_config.timeout,
            telemetry=self._telemetry,
        )
        self._source_factory = BlockSourceFactory(
            store,
            fetcher,
            lease_ms=runner_config.lease_ms,
            legacy_marker=runner_config.legacy_marker,
            telemetry=self._telemetry,
        )
        self._coordinator_config = CoordinatorConfig(
            poll_interval_ms=runner_config.poll_interval_ms,
            max_provision_attempts=runner_config.max_provision_attempts,
        )

        self._coordinators: dict[IndexerKey, ExecutionCoordinator] = {}
        self._specs: dict[IndexerKey, IndexerFunctionSpec] = {}
        self._lock = threading.Lock()

    @property
    def store(self) -> PersistenceAPI:
        return self._store

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def recover(self) -> list[IndexerKey]:
        """Mark every indexer left running by a previous process interrupted.

        Interrupted indexers are not restarted; they must be resumed
        explicitly.
        """
        keys = self._store.interrupt_running()
        for key in keys:
            logger.warning("Indexer %s was running at shutdown; marked interrupted", key)
        return keys

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every running loop and wait for them to exit."""
        with self._lock:
            coordinators = list(self._coordinators.values())
        for coordinator in coordinators:
            if coordinator.is_running:
                coordinator.stop()
        for coordinator in coordinators:
            coordinator.join(timeout)

    # =========================================================================
    # Control
    # =========================================================================

    def register(self, spec: IndexerFunctionSpec) -> IndexerFunctionSpec:
        """Record *spec* unless a higher version is already known."""
        with self._lock:
            current = self._specs.get(spec.key)
            if current is None or spec.version >= current.version:
                self._specs[spec.key] = spec
                return spec
            return current

    def get_spec(self, key: IndexerKey) -> IndexerFunctionSpec | None:
        with self._lock:
            return self._specs.get(key)

    def _stored_spec(self, key: IndexerKey) -> IndexerFunctionSpec | None:
        state = self._store.get_run_state(key)
        if state is None or not state.spec:
            return None
        logger.info("Loaded function definition of %s from its run state", key)
        return self.register(IndexerFunctionSpec.from_dict(state.spec))

    def start(self, spec: IndexerFunctionSpec, mode: ExecutionMode) -> ExecutionCoordinator:
        """Start *spec* in *mode*; see :meth:`ExecutionCoordinator.start`."""
        spec = self.register(spec)
        coordinator = self._coordinator(spec.key)
        coordinator.start(spec, mode)
        return coordinator

    def resume(self, key: IndexerKey, spec: IndexerFunctionSpec | None = None) -> ExecutionCoordinator:
        """Resume an interrupted or stopped indexer after its last persisted height.

        Without *spec*, the registered function is used, falling back to the
        definition stored with the run state (e.g. after a restart).

        Raises:
            KeyError: If no spec is known for *key*
        """
        if spec is not None:
            spec = self.register(spec)
        else:
            spec = self.get_spec(key) or self._stored_spec(key)
            if spec is None:
                raise KeyError(f"no registered function for {key}")
        coordinator = self._coordinator(key)
        coordinator.start(spec, FromInterruption())
        return coordinator

    def stop(self, key: IndexerKey, wait: bool = False, timeout: float | None = None) -> None:
        """Request a cooperative stop; optionally wait for the loop to exit."""
        coordinator = self._coordinator(key)
        coordinator.stop()
        if wait:
            coordinator.join(timeout)

    def join(self, key: IndexerKey, timeout: float | None = None) -> bool:
        with self._lock:
            coordinator = self._coordinators.get(key)
        return coordinator.join(timeout) if coordinator else True

    def delete(self, key: IndexerKey, drop_namespace: bool = True, timeout: float | None = None) -> bool:
        """Stop the indexer and remove its run state and (optionally) its namespace.

        Returns:
            True if a run state existed
        """
        with self._lock:
            coordinator = self._coordinators.pop(key, None)
            self._specs.pop(key, None)
        if coordinator is not None and coordinator.is_running:
            coordinator.stop()
            coordinator.join(timeout)

        existed = self._store.delete_run_state(key)
        if drop_namespace:
            namespace = namespace_for(key.account_id, key.function_name)
            self._store.drop_namespace(namespace)
            self._runner.forget(namespace)
        logger.info("Deleted indexer %s", key)
        return existed

    # =========================================================================
    # Queries
    # =========================================================================

    def status(self, key: IndexerKey) -> dict[str, Any] | None:
        """Describe one indexer, or None if it has never run."""
        state = self._store.get_run_state(key)
        if state is None:
            return None
        return self._describe(state)

    def list(self, status: str | None = None) -> list[dict[str, Any]]:
        """Describe every indexer with a run state."""
        return [self._describe(s) for s in self._store.list_run_states(status)]

    def _describe(self, state: IndexerRunState) -> dict[str, Any]:
        with self._lock:
            coordinator = self._coordinators.get(state.key)
        return {
            "accountId": state.account_id,
            "functionName": state.function_name,
            "namespace": namespace_for(state.account_id, state.function_name),
            "status": state.status,
            "lastProcessedHeight": state.last_processed_height,
            "mode": state.mode,
            "specVersion": state.spec_version,
            "error": state.error,
            "started": state.started,
            "updated": state.updated,
            "loopAlive": bool(coordinator and coordinator.is_running),
            "currentHeight": coordinator.current_height if coordinator else None,
        }

    def _coordinator(self, key: IndexerKey) -> ExecutionCoordinator:
        with self._lock:
            coordinator = self._coordinators.get(key)
            if coordinator is None:
                coordinator = ExecutionCoordinator(
                    key,
                    self._store,
                    self._runner,
                    self._source_factory,
                    config=self._coordinator_config,
                    telemetry=self._telemetry,
                )
                self._coordinators[key] = coordinator
            return coordinator
