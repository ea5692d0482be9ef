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

"""Function runner: one indexer function against one block.

Declarative runs capture every mutation the code requests, validate it
against the provisioned schema and commit the whole set for the height in
one transaction, only if the code succeeded. Imperative runs apply each
mutation as it is requested.

Per-invocation failures are returned on the :class:`ExecutionOutcome`;
they never propagate to the caller.
"""

import hashlib
import logging
import threading
import time
from typing import Any

from .entities import BlockPayload, ExecutionOutcome, IndexerFunctionSpec, Mutation, MutationOp, ProvisionedSchema
from .errors import (
    DataError,
    ExecutionTimeoutError,
    ProvisioningFailedError,
    SchemaError,
    StorageUnavailableError,
    UserCodeFailedError,
)
from .mutations import validate_filter, validate_mutation
from .persistence import PersistenceAPI
from .provisioner import SchemaProvisioner
from .sandbox import ContextCallError, Sandbox
from .telemetry import Telemetry
from .types import namespace_for

logger = logging.getLogger(__name__)

# Upper bound on rows returned by a single context.select call
MAX_SELECT_ROWS = 1000


def _schema_digest(schema_text: str) -> str:
    return hashlib.sha256(schema_text.encode("utf-8")).hexdigest()


class FunctionRunner:
    """Runs indexer functions in the sandbox against a persistence store.

    Attributes:
        store: Store holding the namespaces
        sandbox: Sandbox enforcing the execution budget
    """

    def __init__(
        self,
        store: PersistenceAPI,
        provisioner: SchemaProvisioner | None = None,
        sandbox: Sandbox | None = None,
        timeout: float = 5.0,
        telemetry: Telemetry | None = None,
    ):
        self.store = store
        self.provisioner = provisioner or SchemaProvisioner(store)
        self.sandbox = sandbox or Sandbox(timeout=timeout)
        self.telemetry = telemetry
        # (namespace, schema digest) -> schema verified by this runner
        self._verified: dict[tuple[str, str], ProvisionedSchema] = {}
        self._verified_lock = threading.Lock()

    def run(
        self,
        spec: IndexerFunctionSpec,
        block: BlockPayload,
        imperative: bool = False,
        provision: bool = True,
    ) -> ExecutionOutcome:
        """Execute *spec* against *block*.

        Args:
            spec: The indexer function to run
            block: Block payload (already scoped by the function's filter)
            imperative: Apply mutations immediately instead of capturing them
            provision: Provision the namespace first if it is missing or
                its schema is unverified

        Returns:
            ExecutionOutcome; ``error`` is set on failure
        """
        started = time.monotonic()
        outcome = ExecutionOutcome(height=block.height, imperative=imperative)
        namespace = namespace_for(spec.account_id, spec.function_name)

        schema = self._resolve_schema(spec, namespace, provision, outcome)
        if schema is None:
            return self._finish(spec, outcome, started)

        if self.store.is_committed(namespace, block.height):
            logger.info(
                "Block %d already committed for %s; skipping",
                block.height,
                spec.full_name,
            )
            outcome.duplicate = True
            return self._finish(spec, outcome, started)

        handler = _ContextHandler(self.store, schema, imperative, outcome)
        try:
            result = self.sandbox.execute(spec.code, block.to_dict(), handler)
        except StorageUnavailableError as e:
            outcome.error = e
            return self._finish(spec, outcome, started)
        except Exception as e:
            # Unexpected failure answering a context call; fails this invocation only.
            outcome.error = UserCodeFailedError(f"{type(e).__name__}: {e}")
            logger.exception("Context call failed for %s on block %d", spec.full_name, block.height)
            return self._finish(spec, outcome, started)

        if result.timed_out:
            outcome.error = ExecutionTimeoutError(block.height, self.sandbox.timeout)
            logger.warning("Indexer %s timed out on block %d", spec.full_name, block.height)
            return self._finish(spec, outcome, started)

        if not result.success:
            outcome.error = UserCodeFailedError(result.error or "unknown error")
            logger.warning(
                "Indexer %s failed on block %d: %s",
                spec.full_name,
                block.height,
                result.error,
            )
            return self._finish(spec, outcome, started)

        mutations = [] if imperative else outcome.mutations
        try:
            committed = self.store.commit_block(namespace, block.height, mutations)
        except DataError as e:
            outcome.error = UserCodeFailedError(str(e))
            logger.warning("Commit of block %d rejected for %s: %s", block.height, spec.full_name, e)
            return self._finish(spec, outcome, started)
        except StorageUnavailableError as e:
            outcome.error = e
            logger.error("Commit of block %d failed for %s: %s", block.height, spec.full_name, e)
            return self._finish(spec, outcome, started)

        outcome.committed = committed
        outcome.duplicate = not committed
        return self._finish(spec, outcome, started)

    def _resolve_schema(
        self,
        spec: IndexerFunctionSpec,
        namespace: str,
        provision: bool,
        outcome: ExecutionOutcome,
    ) -> ProvisionedSchema | None:
        key = (namespace, _schema_digest(spec.schema))
        with self._verified_lock:
            cached = self._verified.get(key)
        if cached is not None:
            return cached

        try:
            if provision:
                schema = self.provisioner.provision(
                    spec.schema, namespace, spec.account_id, spec.function_name
                )
            else:
                schema = self.store.get_namespace(namespace)
                if schema is None:
                    raise SchemaError(f"namespace {namespace} is not provisioned")
        except (SchemaError, StorageUnavailableError) as e:
            outcome.error = ProvisioningFailedError(namespace, e)
            logger.error("Provisioning failed for %s: %s", spec.full_name, e)
            return None

        with self._verified_lock:
            self._verified[key] = schema
        return schema

    def forget(self, namespace: str) -> None:
        """Drop cached verification for *namespace* (e.g. after it was dropped)."""
        with self._verified_lock:
            for key in [k for k in self._verified if k[0] == namespace]:
                del self._verified[key]

    def _finish(self, spec: IndexerFunctionSpec, outcome: ExecutionOutcome, started: float) -> ExecutionOutcome:
        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        if self.telemetry is not None:
            self.telemetry.log_block_processed(spec.full_name, outcome)
        return outcome


class _ContextHandler:
    """Answers context calls made by one invocation."""

    def __init__(
        self,
        store: PersistenceAPI,
        schema: ProvisionedSchema,
        imperative: bool,
        outcome: ExecutionOutcome,
    ):
        self._store = store
        self._schema = schema
        self._imperative = imperative
        self._outcome = outcome

    def __call__(self, op: str, args: dict[str, Any]) -> Any:
        if op == "log":
            message = str(args.get("message", ""))
            self._outcome.logs.append(message)
            logger.debug("[block %d] %s", self._outcome.height, message)
            return None

        try:
            if op == "select":
                return self._select(args)
            mutation = validate_mutation(self._schema, self._mutation(op, args))
            if not self._imperative:
                self._outcome.mutations.append(mutation)
                return len(mutation.rows) if mutation.rows else None
            count = self._store.apply_mutation(self._schema.namespace, mutation)
            self._outcome.mutations.append(mutation)
            self._outcome.actions_performed = True
            return count
        except DataError as e:
            raise ContextCallError(str(e)) from e

    def _select(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        where = args.get("where") or {}
        if not isinstance(where, dict):
            raise ContextCallError("where must be a mapping of column to value")
        table = validate_filter(self._schema, str(args.get("table", "")), where)
        limit = args.get("limit")
        if limit is None:
            limit = MAX_SELECT_ROWS
        elif isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ContextCallError("limit must be a non-negative integer")
        else:
            limit = min(limit, MAX_SELECT_ROWS)
        return self._store.select_rows(self._schema.namespace, table, where, limit)

    @staticmethod
    def _mutation(op: str, args: dict[str, Any]) -> Mutation:
        if op not in MutationOp.ALL:
            raise ContextCallError(f"unknown context operation '{op}'")
        for name in ("where", "values"):
            if name in args and args[name] is not None and not isinstance(args[name], dict):
                raise ContextCallError(f"{name} must be a mapping of column to value")
        return Mutation.from_dict({**args, "op": op, "table": str(args.get("table", ""))})
