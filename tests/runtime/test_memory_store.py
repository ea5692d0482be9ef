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

"""Tests for in-memory persistence implementation."""

import pytest

from qapi.runtime import MemoryStore, SchemaProvisioner
from qapi.runtime.entities import IndexerRunState, MessageState, Mutation, RunStatus
from qapi.runtime.errors import ConstraintViolationError, InvalidMutationError
from qapi.runtime.types import IndexerKey, namespace_for
from tests.qapi_helpers import POSTS_SCHEMA

KEY = IndexerKey("alice.near", "posts")


def _insert(height: int, author: str = "alice.near") -> Mutation:
    return Mutation("insert", "posts", rows=[{"block_height": height, "author": author}])


class TestRunStates:
    """Tests for run state operations."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    def test_get_missing(self, store):
        assert store.get_run_state(KEY) is None

    def test_claim_creates_state(self, store):
        state = store.claim_run(KEY, {"kind": "realtime"}, 3, [RunStatus.STOPPED])
        assert state.status == RunStatus.RUNNING
        assert state.spec_version == 3
        assert state.mode == {"kind": "realtime"}
        assert store.get_run_state(KEY).status == RunStatus.RUNNING

    def test_claim_is_exclusive(self, store):
        assert store.claim_run(KEY, {"kind": "realtime"}, 1, [RunStatus.STOPPED]) is not None
        assert store.claim_run(KEY, {"kind": "realtime"}, 1, [RunStatus.STOPPED]) is None

    def test_claim_new_state_requires_stopped(self, store):
        assert store.claim_run(KEY, {"kind": "realtime"}, 1, [RunStatus.INTERRUPTED]) is None

    def test_claim_clears_error(self, store):
        store.save_run_state(IndexerRunState("alice.near", "posts", status=RunStatus.INTERRUPTED, error="boom"))
        state = store.claim_run(KEY, {"kind": "backfill"}, 1, [RunStatus.INTERRUPTED])
        assert state.error is None

    def test_progress_is_monotonic(self, store):
        store.claim_run(KEY, {}, 1, [RunStatus.STOPPED])
        assert store.save_progress(KEY, 10) is True
        assert store.save_progress(KEY, 10) is False
        assert store.save_progress(KEY, 9) is False
        assert store.save_progress(KEY, 11) is True
        assert store.get_run_state(KEY).last_processed_height == 11

    def test_progress_without_state(self, store):
        assert store.save_progress(KEY, 1) is False

    def test_returned_state_is_a_copy(self, store):
        store.claim_run(KEY, {"kind": "realtime"}, 1, [RunStatus.STOPPED])
        state = store.get_run_state(KEY)
        state.mode["kind"] = "changed"
        state.status = RunStatus.STOPPED
        assert store.get_run_state(KEY).mode == {"kind": "realtime"}
        assert store.get_run_state(KEY).status == RunStatus.RUNNING

    def test_interrupt_running(self, store):
        other = IndexerKey("bob.near", "feed")
        store.claim_run(KEY, {}, 1, [RunStatus.STOPPED])
        store.save_run_state(IndexerRunState("bob.near", "feed"))
        assert store.interrupt_running() == [KEY]
        assert store.get_run_state(KEY).status == RunStatus.INTERRUPTED
        assert store.get_run_state(other).status == RunStatus.STOPPED

    def test_list_by_status(self, store):
        store.claim_run(KEY, {}, 1, [RunStatus.STOPPED])
        store.save_run_state(IndexerRunState("bob.near", "feed"))
        assert [s.key for s in store.list_run_states()] == [KEY, IndexerKey("bob.near", "feed")]
        assert [s.key for s in store.list_run_states(RunStatus.STOPPED)] == [IndexerKey("bob.near", "feed")]

    def test_delete(self, store):
        store.save_run_state(IndexerRunState("alice.near", "posts"))
        assert store.delete_run_state(KEY) is True
        assert store.delete_run_state(KEY) is False


class TestQueue:
    """Tests for queue operations."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    def _body(self, height, account="alice.near", function="posts"):
        return {"height": height, "indexerFunction": {"accountId": account, "functionName": function}}

    def test_enqueue_routes_by_body(self, store):
        message = store.enqueue(self._body(1))
        assert (message.account_id, message.function_name) == ("alice.near", "posts")
        assert message.state == MessageState.PENDING

    def test_claim_oldest_for_key(self, store):
        store.enqueue(self._body(1, function="other"))
        first = store.enqueue(self._body(2))
        store.enqueue(self._body(3))
        claimed = store.claim_message(KEY, 60_000)
        assert claimed.uuid == first.uuid
        assert claimed.state == MessageState.RUNNING
        assert claimed.attempts == 1

    def test_leased_message_is_not_reclaimed(self, store):
        store.enqueue(self._body(1))
        assert store.claim_message(KEY, 60_000) is not None
        assert store.claim_message(KEY, 60_000) is None

    def test_expired_lease_is_reclaimed(self, store):
        store.enqueue(self._body(1))
        first = store.claim_message(KEY, -1)
        again = store.claim_message(KEY, 60_000)
        assert again.uuid == first.uuid
        assert again.attempts == 2

    def test_ack(self, store):
        message = store.enqueue(self._body(1))
        store.claim_message(KEY, 60_000)
        assert store.ack_message(message.uuid) is True
        assert store.get_message(message.uuid).state == MessageState.COMPLETED
        assert store.claim_message(KEY, -1) is None
        assert store.ack_message("missing") is False

    def test_list_messages(self, store):
        store.enqueue(self._body(1))
        store.enqueue(self._body(2, function="other"))
        assert len(store.list_messages()) == 2
        assert len(store.list_messages(KEY)) == 1
        assert store.list_messages(KEY, MessageState.COMPLETED) == []


class TestNamespaceRows:
    """Tests for namespace and row operations."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    @pytest.fixture
    def namespace(self, store):
        namespace = namespace_for("alice.near", "posts")
        SchemaProvisioner(store).provision(POSTS_SCHEMA, namespace, "alice.near", "posts")
        return namespace

    def test_insert_assigns_serials_and_defaults(self, store, namespace):
        assert store.apply_mutation(namespace, _insert(1)) == 1
        assert store.apply_mutation(namespace, _insert(2)) == 1
        rows = store.select_rows(namespace, "posts")
        assert [r["id"] for r in rows] == [1, 2]
        assert rows[0]["body"] is None
        assert rows[0]["created_at"] is not None

    def test_select_filter_and_limit(self, store, namespace):
        for height in range(5):
            store.apply_mutation(namespace, _insert(height, author="a" if height % 2 else "b"))
        assert len(store.select_rows(namespace, "posts", {"author": "a"})) == 2
        assert len(store.select_rows(namespace, "posts", limit=3)) == 3

    def test_unique_violation(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        with pytest.raises(ConstraintViolationError, match="block_height"):
            store.apply_mutation(namespace, _insert(1))

    def test_upsert(self, store, namespace):
        upsert = Mutation(
            "upsert",
            "posts",
            rows=[{"block_height": 1, "author": "a", "body": "first"}],
            conflict_columns=["block_height"],
        )
        store.apply_mutation(namespace, upsert)
        upsert.rows = [{"block_height": 1, "author": "a", "body": "second"}]
        store.apply_mutation(namespace, upsert)
        rows = store.select_rows(namespace, "posts")
        assert len(rows) == 1
        assert rows[0]["body"] == "second"

    def test_upsert_update_columns(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        store.apply_mutation(
            namespace,
            Mutation(
                "upsert",
                "posts",
                rows=[{"block_height": 1, "author": "b", "body": "x"}],
                conflict_columns=["block_height"],
                update_columns=["body"],
            ),
        )
        row = store.select_rows(namespace, "posts")[0]
        assert (row["author"], row["body"]) == ("alice.near", "x")

    def test_update_and_delete(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        store.apply_mutation(namespace, _insert(2))
        assert store.apply_mutation(namespace, Mutation("update", "posts", where={"block_height": 1}, values={"body": "hi"})) == 1
        assert store.select_rows(namespace, "posts", {"block_height": 1})[0]["body"] == "hi"
        assert store.apply_mutation(namespace, Mutation("delete", "posts", where={"block_height": [1, 2]})) == 2
        assert store.select_rows(namespace, "posts") == []

    def test_update_into_duplicate_key(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        store.apply_mutation(namespace, _insert(2))
        with pytest.raises(ConstraintViolationError):
            store.apply_mutation(namespace, Mutation("update", "posts", where={"block_height": 2}, values={"block_height": 1}))

    def test_unknown_table(self, store, namespace):
        with pytest.raises(InvalidMutationError):
            store.apply_mutation(namespace, Mutation("insert", "comments", rows=[{"id": 1}]))

    def test_commit_block_is_recorded_once(self, store, namespace):
        assert store.commit_block(namespace, 100, [_insert(100)]) is True
        assert store.is_committed(namespace, 100)
        assert store.commit_block(namespace, 100, [_insert(101)]) is False
        assert [r["block_height"] for r in store.select_rows(namespace, "posts")] == [100]

    def test_commit_block_is_atomic(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        with pytest.raises(ConstraintViolationError):
            store.commit_block(namespace, 100, [_insert(100), _insert(1)])
        assert not store.is_committed(namespace, 100)
        assert [r["block_height"] for r in store.select_rows(namespace, "posts")] == [1]
        # The rolled back serial is handed out again.
        store.commit_block(namespace, 101, [_insert(101)])
        assert store.select_rows(namespace, "posts", {"block_height": 101})[0]["id"] == 2

    def test_namespace_isolation(self, store):
        provisioner = SchemaProvisioner(store)
        first = namespace_for("a.b", "f")
        second = namespace_for("a_b", "f")
        provisioner.provision(POSTS_SCHEMA, first, "a.b", "f")
        provisioner.provision(POSTS_SCHEMA, second, "a_b", "f")
        store.apply_mutation(first, _insert(1))
        assert store.select_rows(second, "posts") == []
        assert store.namespace_has_data(first)
        assert not store.namespace_has_data(second)

    def test_drop_namespace(self, store, namespace):
        store.commit_block(namespace, 1, [_insert(1)])
        store.drop_namespace(namespace)
        assert store.get_namespace(namespace) is None
        assert not store.is_committed(namespace, 1)
        assert store.select_rows(namespace, "posts") == []

    def test_clear(self, store, namespace):
        store.apply_mutation(namespace, _insert(1))
        store.clear()
        assert store.get_namespace(namespace) is None
        assert store.list_run_states() == []
