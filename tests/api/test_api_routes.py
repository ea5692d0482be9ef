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

"""Tests for the QAPI HTTP routes."""

from unittest.mock import MagicMock

import pytest

try:
    from fastapi.testclient import TestClient

    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False

from qapi.config import QAPIConfig, RunnerConfig
from qapi.runtime.entities import IndexerRunState, RunStatus
from qapi.runtime.errors import StorageUnavailableError
from qapi.runtime.fetcher import MemoryBlockFetcher
from qapi.runtime.memory_store import MemoryStore
from qapi.runtime.types import IndexerKey, namespace_for
from tests.qapi_helpers import INSERT_HEIGHT_CODE, POSTS_SCHEMA, make_block, make_spec

pytestmark = pytest.mark.skipif(not FASTAPI_AVAILABLE, reason="fastapi not installed")

KEY = IndexerKey("alice.near", "posts")
INDEXER_URL = "/api/indexers/alice.near/posts"


@pytest.fixture
def fetcher():
    return MemoryBlockFetcher({h: make_block(h) for h in range(95, 106)})


@pytest.fixture
def client(fetcher):
    """Create a test client backed by in-memory service and debug manager."""
    from qapi.api import dependencies as deps
    from qapi.api.app import create_app
    from qapi.runtime.debug import DebugSessionManager
    from qapi.runtime.service import ExecutionService

    store = MemoryStore()
    config = QAPIConfig(runner=RunnerConfig(timeout=10.0, poll_interval_ms=10))
    service = ExecutionService(store, fetcher, config)
    manager = DebugSessionManager(fetcher, config.debug, config.runner)

    app = create_app()
    app.dependency_overrides[deps.get_service] = lambda: service
    app.dependency_overrides[deps.get_debug_manager] = lambda: manager

    with TestClient(app) as tc:
        yield tc, service, manager

    service.shutdown(timeout=10)
    manager.shutdown(timeout=10)


def _start_body(**mode):
    return {"code": INSERT_HEIGHT_CODE, "schema": POSTS_SCHEMA, "version": 1, "mode": mode}


class TestTypes:
    def test_descriptor_and_stub(self, client):
        tc, _, _ = client
        resp = tc.post("/api/types", json={"schema": POSTS_SCHEMA})
        assert resp.status_code == 200
        data = resp.json()
        assert data["tables"][0]["className"] == "Posts"
        assert "PostsInsert" in data["stub"]
        assert "TableName = Literal['posts']" in data["stub"]

    def test_malformed_schema_is_422(self, client):
        tc, _, _ = client
        resp = tc.post("/api/types", json={"schema": "CREATE TABLE posts (id INT,, body TEXT);"})
        assert resp.status_code == 422
        assert resp.json()["errorType"] == "SchemaMalformedError"
        assert resp.json()["line"] == 1

    def test_missing_schema_is_400(self, client):
        tc, _, _ = client
        assert tc.post("/api/types", json={}).status_code == 400


class TestIndexers:
    def test_start_and_detail(self, client):
        tc, service, _ = client
        resp = tc.post(f"{INDEXER_URL}/start", json=_start_body(kind="debug_list", heights=[100, 101]))
        assert resp.status_code == 202
        assert service.join(KEY, 10)

        detail = tc.get(INDEXER_URL).json()
        assert detail["status"] == RunStatus.STOPPED
        assert detail["lastProcessedHeight"] == 101
        assert [i["functionName"] for i in tc.get("/api/indexers").json()] == ["posts"]
        assert tc.get("/api/indexers", params={"status": "running"}).json() == []

    def test_detail_not_found(self, client):
        tc, _, _ = client
        assert tc.get(INDEXER_URL).status_code == 404

    def test_invalid_start_is_400(self, client):
        tc, _, _ = client
        assert tc.post(f"{INDEXER_URL}/start", json={"schema": POSTS_SCHEMA}).status_code == 400
        resp = tc.post(f"{INDEXER_URL}/start", json=_start_body(kind="someday"))
        assert resp.status_code == 400

    def test_already_running_is_409(self, client):
        tc, service, _ = client
        assert tc.post(f"{INDEXER_URL}/start", json=_start_body(kind="realtime")).status_code == 202
        resp = tc.post(f"{INDEXER_URL}/start", json=_start_body(kind="realtime"))
        assert resp.status_code == 409
        assert resp.json()["errorType"] == "AlreadyRunningError"
        assert tc.post(f"{INDEXER_URL}/stop").status_code == 200
        assert service.join(KEY, 10)

    def test_resume_unknown_is_404(self, client):
        tc, _, _ = client
        assert tc.post(f"{INDEXER_URL}/resume").status_code == 404

    def test_resume_after_restart_uses_stored_definition(self, fetcher):
        from qapi.api import dependencies as deps
        from qapi.api.app import create_app
        from qapi.runtime.service import ExecutionService

        store = MemoryStore()
        store.save_run_state(
            IndexerRunState(
                "alice.near",
                "posts",
                status=RunStatus.RUNNING,
                last_processed_height=100,
                mode={"kind": "debug_list", "heights": [100, 101, 102]},
                spec_version=1,
                spec=make_spec().to_dict(),
            )
        )
        # A fresh service over the same store stands for the restarted process.
        service = ExecutionService(store, fetcher, QAPIConfig(runner=RunnerConfig(timeout=10.0, poll_interval_ms=10)))
        assert service.recover() == [KEY]

        app = create_app()
        app.dependency_overrides[deps.get_service] = lambda: service
        with TestClient(app) as tc:
            assert tc.get(INDEXER_URL).json()["status"] == RunStatus.INTERRUPTED
            assert tc.post(f"{INDEXER_URL}/resume").status_code == 202
            assert service.join(KEY, 10)
            detail = tc.get(INDEXER_URL).json()
        service.shutdown(timeout=10)

        assert detail["status"] == RunStatus.STOPPED
        assert detail["lastProcessedHeight"] == 102
        assert [r["block_height"] for r in store.select_rows(namespace_for("alice.near", "posts"), "posts")] == [101, 102]

    def test_resume_with_new_definition(self, client):
        tc, service, _ = client
        service.store.save_run_state(
            IndexerRunState(
                "alice.near",
                "posts",
                status=RunStatus.INTERRUPTED,
                last_processed_height=100,
                mode={"kind": "debug_list", "heights": [100, 101]},
                spec_version=1,
            )
        )
        body = {"code": INSERT_HEIGHT_CODE, "schema": POSTS_SCHEMA, "version": 2}
        assert tc.post(f"{INDEXER_URL}/resume", json=body).status_code == 202
        assert service.join(KEY, 10)
        detail = tc.get(INDEXER_URL).json()
        assert detail["specVersion"] == 2
        assert detail["lastProcessedHeight"] == 101

    def test_resume_without_progress_is_409(self, client):
        tc, service, _ = client
        service.register(make_spec())
        resp = tc.post(f"{INDEXER_URL}/resume")
        assert resp.status_code == 409
        assert resp.json()["errorType"] == "NoProgressError"

    def test_stop_not_running_is_409(self, client):
        tc, _, _ = client
        assert tc.post(f"{INDEXER_URL}/stop").status_code == 409

    def test_stop_interrupted(self, client):
        tc, service, _ = client
        service.store.save_run_state(IndexerRunState("alice.near", "posts", status=RunStatus.INTERRUPTED))
        resp = tc.post(f"{INDEXER_URL}/stop")
        assert resp.status_code == 200
        assert resp.json()["status"] == RunStatus.STOPPED

    def test_delete(self, client):
        tc, service, _ = client
        tc.post(f"{INDEXER_URL}/start", json=_start_body(kind="debug_list", heights=[100]))
        service.join(KEY, 10)
        assert tc.delete(INDEXER_URL).json()["deleted"] is True
        assert tc.delete(INDEXER_URL).status_code == 404

    def test_storage_unavailable_is_503(self, fetcher):
        from qapi.api import dependencies as deps
        from qapi.api.app import create_app

        service = MagicMock()
        service.list.side_effect = StorageUnavailableError("connection refused")
        app = create_app()
        app.dependency_overrides[deps.get_service] = lambda: service
        with TestClient(app) as tc:
            resp = tc.get("/api/indexers")
        assert resp.status_code == 503
        assert "connection refused" in resp.json()["error"]


class TestDebugSessions:
    def _start(self, tc, **extra):
        body = {
            "option": "debugList",
            "code": INSERT_HEIGHT_CODE,
            "schema": POSTS_SCHEMA,
            "namespaceId": "scratch",
            "heights": [100, 100, 101],
        }
        body.update(extra)
        return tc.post("/api/debug/sessions", json=body)

    def test_replay_logs_and_rows(self, client):
        tc, _, manager = client
        resp = self._start(tc)
        assert resp.status_code == 201
        session_id = resp.json()["sessionId"]
        assert manager.get(session_id).wait(10)

        logs = tc.get(f"/api/debug/sessions/{session_id}/logs").json()
        assert [e["height"] for e in logs["entries"]] == [100, 101]
        assert logs["entries"][0]["logs"] == ["indexed 100"]
        assert tc.get(f"/api/debug/sessions/{session_id}/logs").json()["entries"] == []

        rows = tc.get(f"/api/debug/sessions/{session_id}/rows/posts").json()
        assert [r["block_height"] for r in rows] == [100, 101]

    def test_snapshot_keeps_logs(self, client):
        tc, _, manager = client
        session_id = self._start(tc).json()["sessionId"]
        manager.get(session_id).wait(10)
        url = f"/api/debug/sessions/{session_id}/logs"
        assert len(tc.get(url, params={"drain": "false"}).json()["entries"]) == 2
        assert len(tc.get(url).json()["entries"]) == 2

    def test_list_detail_stop_delete(self, client):
        tc, _, manager = client
        session_id = self._start(tc).json()["sessionId"]
        manager.get(session_id).wait(10)
        assert [s["sessionId"] for s in tc.get("/api/debug/sessions").json()] == [session_id]
        assert tc.get(f"/api/debug/sessions/{session_id}").json()["namespace"]
        assert tc.post(f"/api/debug/sessions/{session_id}/stop").json()["stopped"] is False
        assert tc.delete(f"/api/debug/sessions/{session_id}").json()["deleted"] is True
        assert tc.get(f"/api/debug/sessions/{session_id}").status_code == 404

    def test_missing_fields(self, client):
        tc, _, _ = client
        resp = tc.post("/api/debug/sessions", json={"option": "debugList"})
        assert resp.status_code == 400
        assert "namespaceId" in resp.json()["error"]

    def test_invalid_option(self, client):
        tc, _, _ = client
        assert self._start(tc, option="sometime").status_code == 400
        assert self._start(tc, heights=[]).status_code == 400

    def test_unknown_session(self, client):
        tc, _, _ = client
        for url in ("/api/debug/sessions/x", "/api/debug/sessions/x/logs", "/api/debug/sessions/x/rows/posts"):
            assert tc.get(url).status_code == 404
        assert tc.post("/api/debug/sessions/x/stop").status_code == 404
        assert tc.delete("/api/debug/sessions/x").status_code == 404
