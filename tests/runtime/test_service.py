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

"""Tests for the execution service."""

import pytest

from qapi.config import QAPIConfig, RunnerConfig
from qapi.runtime.entities import Backfill, DebugList, IndexerRunState, RunStatus
from qapi.runtime.errors import NoProgressError
from qapi.runtime.fetcher import MemoryBlockFetcher
from qapi.runtime.memory_store import MemoryStore
from qapi.runtime.service import ExecutionService
from qapi.runtime.types import IndexerKey, namespace_for
from tests.qapi_helpers import make_block, make_spec

KEY = IndexerKey("alice.near", "posts")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store):
    fetcher = MemoryBlockFetcher({h: make_block(h) for h in range(1, 21)})
    config = QAPIConfig(runner=RunnerConfig(timeout=10.0, poll_interval_ms=10))
    service = ExecutionService(store, fetcher, config)
    yield service
    service.shutdown(timeout=10)


class TestLifecycle:
    def test_recover_marks_interrupted(self, service, store):
        store.save_run_state(IndexerRunState("alice.near", "posts", status=RunStatus.RUNNING))
        store.save_run_state(IndexerRunState("bob.near", "feed", status=RunStatus.STOPPED))
        assert service.recover() == [KEY]
        assert store.get_run_state(KEY).status == RunStatus.INTERRUPTED
        assert store.get_run_state(IndexerKey("bob.near", "feed")).status == RunStatus.STOPPED

    def test_start_and_status(self, service):
        service.start(make_spec(), DebugList([3, 1]))
        assert service.join(KEY, 10)
        status = service.status(KEY)
        assert status["status"] == RunStatus.STOPPED
        assert status["lastProcessedHeight"] == 3
        assert status["namespace"] == namespace_for("alice.near", "posts")
        assert status["loopAlive"] is False
        assert status["mode"] == {"kind": "debug_list", "heights": [3, 1]}

    def test_status_unknown(self, service):
        assert service.status(KEY) is None

    def test_list_filters_by_status(self, service, store):
        store.save_run_state(IndexerRunState("bob.near", "feed", status=RunStatus.INTERRUPTED))
        service.start(make_spec(), DebugList([1]))
        service.join(KEY, 10)
        assert sorted(s["functionName"] for s in service.list()) == ["feed", "posts"]
        assert [s["accountId"] for s in service.list(RunStatus.INTERRUPTED)] == ["bob.near"]


class TestControl:
    def test_register_keeps_highest_version(self, service):
        service.register(make_spec(version=3))
        assert service.register(make_spec(version=2)).version == 3
        assert service.get_spec(KEY).version == 3

    def test_resume_requires_known_spec(self, service):
        with pytest.raises(KeyError):
            service.resume(KEY)

    def test_resume_requires_progress(self, service):
        with pytest.raises(NoProgressError):
            service.resume(KEY, make_spec())

    def test_resume_after_stop(self, service, store):
        service.start(make_spec(), Backfill(1, 5))
        service.join(KEY, 10)
        service.resume(KEY)
        assert service.join(KEY, 10)
        status = service.status(KEY)
        assert status["status"] == RunStatus.STOPPED
        assert status["lastProcessedHeight"] == 5
        assert len(store.select_rows(namespace_for("alice.near", "posts"), "posts")) == 5

    def test_delete_drops_namespace(self, service, store):
        namespace = namespace_for("alice.near", "posts")
        service.start(make_spec(), DebugList([1]))
        service.join(KEY, 10)
        assert store.select_rows(namespace, "posts")
        assert service.delete(KEY) is True
        assert store.get_run_state(KEY) is None
        assert store.get_namespace(namespace) is None
        assert service.get_spec(KEY) is None

    def test_delete_can_keep_namespace(self, service, store):
        service.start(make_spec(), DebugList([1]))
        service.join(KEY, 10)
        service.delete(KEY, drop_namespace=False)
        assert store.get_namespace(namespace_for("alice.near", "posts")) is not None

    def test_telemetry_is_shared(self, service):
        service.start(make_spec(), DebugList([1]))
        service.join(KEY, 10)
        assert service.telemetry.get_events("run.start")
        assert service.telemetry.get_events("block.processed")
