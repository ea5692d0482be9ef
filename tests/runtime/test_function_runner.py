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

"""Tests for the function runner."""

import pytest

from qapi.runtime.entities import Mutation
from qapi.runtime.errors import (
    ExecutionTimeoutError,
    ProvisioningFailedError,
    SchemaConflictError,
    StorageUnavailableError,
    UserCodeFailedError,
)
from qapi.runtime.filters import scope_block
from qapi.runtime.function_runner import MAX_SELECT_ROWS, FunctionRunner
from qapi.runtime.memory_store import MemoryStore
from qapi.runtime.sandbox import Sandbox
from qapi.runtime.telemetry import Telemetry
from qapi.runtime.types import namespace_for
from tests.qapi_helpers import POSTS_SCHEMA, make_block, make_spec

NAMESPACE = namespace_for("alice.near", "posts")


def _block(height, **extra):
    return scope_block(make_block(height, **extra), None)


class UnavailableStore(MemoryStore):
    def commit_block(self, namespace, height, mutations):
        raise StorageUnavailableError("connection refused")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runner(store):
    return FunctionRunner(store, timeout=10.0)


class TestDeclarative:
    def test_commits_mutations(self, runner, store):
        outcome = runner.run(make_spec(), _block(100))
        assert outcome.success
        assert outcome.committed
        assert outcome.logs == ["indexed 100"]
        assert outcome.summary() == "1 mutation committed"
        rows = store.select_rows(NAMESPACE, "posts")
        assert [(r["id"], r["block_height"]) for r in rows] == [(1, 100)]
        assert store.is_committed(NAMESPACE, 100)

    def test_duplicate_height_is_skipped(self, runner, store):
        runner.run(make_spec(), _block(100))
        outcome = runner.run(make_spec(), _block(100))
        assert outcome.success
        assert outcome.duplicate
        assert outcome.summary() == "already committed"
        assert len(store.select_rows(NAMESPACE, "posts")) == 1

    def test_no_mutations_still_records_height(self, runner, store):
        outcome = runner.run(make_spec(code="pass"), _block(5))
        assert outcome.success
        assert outcome.summary() == "0 mutations committed"
        assert store.is_committed(NAMESPACE, 5)

    def test_failure_commits_nothing(self, runner, store):
        code = "context.insert('posts', {'block_height': 1, 'author': 'a'})\nraise ValueError('bad block')"
        outcome = runner.run(make_spec(code=code), _block(1))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "bad block" in str(outcome.error)
        assert store.select_rows(NAMESPACE, "posts") == []
        assert not store.is_committed(NAMESPACE, 1)

    def test_invalid_mutation_is_raised_in_user_code(self, runner, store):
        code = "context.insert('posts', {'nope': 1})"
        outcome = runner.run(make_spec(code=code), _block(1))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "ContextError" in str(outcome.error)

    def test_constraint_violation_rolls_back(self, runner, store):
        code = (
            "context.insert('posts', {'block_height': 1, 'author': 'a'})\n"
            "context.insert('posts', {'block_height': 1, 'author': 'b'})"
        )
        outcome = runner.run(make_spec(code=code), _block(1))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "duplicate key" in str(outcome.error)
        assert store.select_rows(NAMESPACE, "posts") == []

    def test_select_sees_committed_rows(self, runner):
        runner.run(make_spec(), _block(1))
        code = "context.log([r['block_height'] for r in context.select('posts', {'author': 'alice.near'})])"
        outcome = runner.run(make_spec(code=code), _block(2))
        assert outcome.logs == ["[1]"]

    def test_storage_unavailable(self):
        store = UnavailableStore()
        outcome = FunctionRunner(store, timeout=10.0).run(make_spec(), _block(1))
        assert isinstance(outcome.error, StorageUnavailableError)


class TestImperative:
    def test_applies_immediately(self, runner, store):
        outcome = runner.run(make_spec(), _block(100), imperative=True)
        assert outcome.success
        assert outcome.actions_performed
        assert outcome.summary() == "actions performed"
        assert len(store.select_rows(NAMESPACE, "posts")) == 1

    def test_no_actions(self, runner):
        outcome = runner.run(make_spec(code="context.log('nothing')"), _block(1), imperative=True)
        assert outcome.summary() == "no actions"


class TestProvisioning:
    def test_malformed_schema(self, runner):
        outcome = runner.run(make_spec(schema="CREATE TABLE ("), _block(1))
        assert isinstance(outcome.error, ProvisioningFailedError)
        assert outcome.error.kind == ProvisioningFailedError.kind

    def test_conflict_cause(self, runner, store):
        runner.run(make_spec(), _block(1))
        changed = POSTS_SCHEMA.replace("body TEXT,", "body TEXT, likes INT,")
        outcome = FunctionRunner(store, timeout=10.0).run(make_spec(schema=changed), _block(2))
        assert isinstance(outcome.error, ProvisioningFailedError)
        assert isinstance(outcome.error.cause, SchemaConflictError)

    def test_without_provisioning(self, runner):
        outcome = runner.run(make_spec(), _block(1), provision=False)
        assert isinstance(outcome.error, ProvisioningFailedError)
        assert "not provisioned" in str(outcome.error)

    def test_forget_reprovisions(self, runner, store):
        runner.run(make_spec(), _block(1))
        store.drop_namespace(NAMESPACE)
        runner.forget(NAMESPACE)
        outcome = runner.run(make_spec(), _block(2))
        assert outcome.success
        assert store.get_namespace(NAMESPACE) is not None


class TestLimits:
    def test_timeout(self, store):
        runner = FunctionRunner(store, sandbox=Sandbox(timeout=0.5))
        outcome = runner.run(make_spec(code="while True:\n    pass"), _block(9))
        assert isinstance(outcome.error, ExecutionTimeoutError)
        assert outcome.error.height == 9
        assert not store.is_committed(NAMESPACE, 9)

    def test_select_is_capped(self, runner, store):
        runner.run(make_spec(code="pass"), _block(1))
        rows = [{"block_height": h, "author": "a"} for h in range(MAX_SELECT_ROWS + 5)]
        store.apply_mutation(NAMESPACE, Mutation("insert", "posts", rows=rows))
        outcome = runner.run(make_spec(code="context.log(len(context.select('posts', limit=5000)))"), _block(2))
        assert outcome.logs == [str(MAX_SELECT_ROWS)]

    def test_non_integer_limit_is_rejected(self, runner, store):
        outcome = runner.run(make_spec(code="context.select('posts', limit='x')"), _block(3))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "limit must be a non-negative integer" in str(outcome.error)

    def test_list_key_value_is_rejected(self, runner, store):
        code = "context.insert('posts', {'block_height': [1, 2], 'author': 'a'})"
        outcome = runner.run(make_spec(code=code), _block(4))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "needs a scalar value" in str(outcome.error)
        assert not store.is_committed(NAMESPACE, 4)

    def test_unexpected_handler_error_fails_the_invocation(self):
        class BrokenSelectStore(MemoryStore):
            def select_rows(self, namespace, table, where=None, limit=None):
                raise RuntimeError("index corrupted")

        store = BrokenSelectStore()
        outcome = FunctionRunner(store, timeout=10.0).run(make_spec(code="context.select('posts')"), _block(5))
        assert isinstance(outcome.error, UserCodeFailedError)
        assert "RuntimeError: index corrupted" in str(outcome.error)
        assert not store.is_committed(NAMESPACE, 5)


class TestTelemetry:
    def test_block_processed_is_counted(self, store):
        telemetry = Telemetry()
        runner = FunctionRunner(store, timeout=10.0, telemetry=telemetry)
        runner.run(make_spec(), _block(1))
        runner.run(make_spec(code="raise ValueError('x')"), _block(2))
        assert [e["height"] for e in telemetry.get_events("block.processed")] == [1]
        failed = telemetry.get_events("block.failed")
        assert failed[0]["details"]["errorType"] == UserCodeFailedError.kind
