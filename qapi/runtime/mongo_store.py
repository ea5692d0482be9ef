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

"""MongoDB implementation of PersistenceAPI.

This module provides a MongoDB-backed persistence layer for the QAPI
runtime. It requires the pymongo package to be installed.

Collections:
    run_states   one document per indexer (``_id`` = ``account/function``)
    queue        shared real-time queue messages
    namespaces   provisioned schemas (``_id`` = namespace)
    commits      per-namespace ledger of committed heights
    sequences    serial column counters
    ns.<namespace>.<table>   rows of one namespace table
"""

import hashlib
import logging
import re
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

try:
    from pymongo import ASCENDING, MongoClient, ReturnDocument
    from pymongo.database import Database
    from pymongo.errors import DuplicateKeyError, PyMongoError

    PYMONGO_AVAILABLE = True
except ImportError:
    PYMONGO_AVAILABLE = False

if TYPE_CHECKING:
    from ..config import MongoDBConfig

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
from .errors import ConstraintViolationError, InvalidMutationError, StorageUnavailableError
from .mutations import complete_row, key_columns
from .persistence import PersistenceAPI
from .types import IndexerKey, NamespaceId, current_time_ms, generate_id

logger = logging.getLogger(__name__)

_UNSAFE_COLLECTION_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _mongo_filter(where: dict[str, Any] | None) -> dict[str, Any]:
    """Translate an equality filter; list values become ``$in``."""
    if not where:
        return {}
    return {k: {"$in": v} if isinstance(v, list) else v for k, v in where.items()}


def _strip_id(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_id"}


class MongoStore(PersistenceAPI):
    """MongoDB implementation of the persistence API.

    Block commits run inside a multi-document transaction when the server
    supports it (replica set or mongos). Standalone servers and mongomock
    fall back to sequential writes with compensating undo on failure.

    Usage:
        store = MongoStore("mongodb://localhost:27017", "qapi")

        # Or create from a QAPIConfig / MongoDBConfig:
        from qapi.config import load_config
        config = load_config()
        store = MongoStore.from_config(config.mongodb)
    """

    def __init__(
        self,
        connection_string: str = "",
        database_name: str = "qapi",
        create_indexes: bool = True,
        client: Any = None,
        use_transactions: bool = True,
    ):
        """Initialize the MongoDB store.

        Args:
            connection_string: MongoDB connection string
            database_name: Database name (default: "qapi")
            create_indexes: Whether to create indexes on initialization
            client: Optional pre-built MongoClient (e.g. mongomock.MongoClient for testing)
            use_transactions: Attempt multi-document transactions for block commits
        """
        if client is not None:
            self._client = client
        else:
            if not PYMONGO_AVAILABLE:
                raise ImportError(
                    "pymongo is required for MongoStore. Install it with: pip install pymongo"
                )
            self._client: MongoClient = MongoClient(connection_string)

        self._db: Database = self._client[database_name]
        self._use_transactions = use_transactions

        if create_indexes:
            self._ensure_indexes()

    @classmethod
    def from_config(
        cls,
        config: "MongoDBConfig",
        create_indexes: bool = True,
    ) -> "MongoStore":
        """Create a MongoStore from a MongoDBConfig instance."""
        return cls(
            connection_string=config.connection_string(),
            database_name=config.database,
            create_indexes=create_indexes,
            use_transactions=config.transactions,
        )

    def _ensure_indexes(self) -> None:
        """Create indexes on all fixed collections."""
        run_states = self._db.run_states
        run_states.create_index("status", name="run_state_status_index")

        queue = self._db.queue
        queue.create_index("uuid", unique=True, name="queue_uuid_index")
        queue.create_index(
            [("account_id", ASCENDING), ("function_name", ASCENDING), ("state", ASCENDING)],
            name="queue_routing_index",
        )

        commits = self._db.commits
        commits.create_index(
            [("namespace", ASCENDING), ("height", ASCENDING)],
            unique=True,
            name="commit_namespace_height_index",
        )

        self._db.sequences.create_index("namespace", name="sequence_namespace_index")

    @contextmanager
    def _storage_errors(self, table: str = "") -> Iterator[None]:
        """Map driver errors onto QAPI errors."""
        try:
            yield
        except DuplicateKeyError as e:
            raise ConstraintViolationError(table, str(e)) from e
        except PyMongoError as e:
            raise StorageUnavailableError(str(e)) from e

    # =========================================================================
    # Run State Operations
    # =========================================================================

    def get_run_state(self, key: IndexerKey) -> IndexerRunState | None:
        with self._storage_errors():
            doc = self._db.run_states.find_one({"_id": key.full_name})
        return self._doc_to_run_state(doc) if doc else None

    def save_run_state(self, state: IndexerRunState) -> None:
        state.updated = current_time_ms()
        doc = self._run_state_to_doc(state)
        with self._storage_errors():
            self._db.run_states.replace_one({"_id": doc["_id"]}, doc, upsert=True)

    def claim_run(
        self,
        key: IndexerKey,
        mode: dict[str, Any],
        spec_version: int,
        expected: Sequence[str],
    ) -> IndexerRunState | None:
        """Atomically transition a run state to running.

        Uses find_one_and_update for the status check-and-set; a missing
        state is created by an insert that loses to a concurrent creator on
        the ``_id`` uniqueness.
        """
        now = current_time_ms()
        updates = {
            "status": RunStatus.RUNNING,
            "mode": dict(mode),
            "spec_version": spec_version,
            "error": None,
            "started": now,
            "updated": now,
        }
        with self._storage_errors():
            doc = self._db.run_states.find_one_and_update(
                {"_id": key.full_name, "status": {"$in": list(expected)}},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                return self._doc_to_run_state(doc)
            if RunStatus.STOPPED not in expected:
                return None
            if self._db.run_states.find_one({"_id": key.full_name}) is not None:
                return None
            state = IndexerRunState(key.account_id, key.function_name, **updates)
            try:
                self._db.run_states.insert_one(self._run_state_to_doc(state))
            except DuplicateKeyError:
                return None
            return state

    def save_progress(self, key: IndexerKey, height: int) -> bool:
        with self._storage_errors():
            result = self._db.run_states.update_one(
                {
                    "_id": key.full_name,
                    "$or": [
                        {"last_processed_height": None},
                        {"last_processed_height": {"$lt": height}},
                    ],
                },
                {"$set": {"last_processed_height": height, "updated": current_time_ms()}},
            )
        return result.modified_count > 0

    def set_run_status(self, key: IndexerKey, status: str, error: str | None = None) -> None:
        with self._storage_errors():
            self._db.run_states.update_one(
                {"_id": key.full_name},
                {"$set": {"status": status, "error": error, "updated": current_time_ms()}},
            )

    def list_run_states(self, status: str | None = None) -> Sequence[IndexerRunState]:
        query = {"status": status} if status else {}
        with self._storage_errors():
            docs = list(self._db.run_states.find(query).sort("_id", ASCENDING))
        return [self._doc_to_run_state(doc) for doc in docs]

    def interrupt_running(self) -> list[IndexerKey]:
        marked = []
        with self._storage_errors():
            for doc in list(self._db.run_states.find({"status": RunStatus.RUNNING})):
                result = self._db.run_states.update_one(
                    {"_id": doc["_id"], "status": RunStatus.RUNNING},
                    {"$set": {"status": RunStatus.INTERRUPTED, "updated": current_time_ms()}},
                )
                if result.modified_count:
                    marked.append(IndexerKey(doc["account_id"], doc["function_name"]))
        return sorted(marked)

    def delete_run_state(self, key: IndexerKey) -> bool:
        with self._storage_errors():
            result = self._db.run_states.delete_one({"_id": key.full_name})
        return result.deleted_count > 0

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
            body=dict(body),
            account_id=account_id if account_id is not None else account,
            function_name=function_name if function_name is not None else name,
            created=now,
            updated=now,
        )
        with self._storage_errors():
            self._db.queue.insert_one(self._message_to_doc(message))
        return message

    def claim_message(self, key: IndexerKey, lease_ms: int) -> QueueMessage | None:
        """Lease the oldest available message for *key*.

        Uses find_one_and_update for the atomic PENDING -> RUNNING
        transition; a RUNNING message whose lease expired is claimable
        again.
        """
        now = current_time_ms()
        with self._storage_errors():
            doc = self._db.queue.find_one_and_update(
                {
                    "account_id": key.account_id,
                    "function_name": key.function_name,
                    "$or": [
                        {"state": MessageState.PENDING},
                        {"state": MessageState.RUNNING, "lease_expires": {"$lt": now}},
                    ],
                },
                {
                    "$set": {
                        "state": MessageState.RUNNING,
                        "lease_expires": now + lease_ms,
                        "updated": now,
                    },
                    "$inc": {"attempts": 1},
                },
                sort=[("created", ASCENDING), ("_id", ASCENDING)],
                return_document=ReturnDocument.AFTER,
            )
        return self._doc_to_message(doc) if doc else None

    def ack_message(self, message_id: str) -> bool:
        with self._storage_errors():
            result = self._db.queue.update_one(
                {"uuid": message_id},
                {"$set": {"state": MessageState.COMPLETED, "updated": current_time_ms()}},
            )
        return result.matched_count > 0

    def get_message(self, message_id: str) -> QueueMessage | None:
        with self._storage_errors():
            doc = self._db.queue.find_one({"uuid": message_id})
        return self._doc_to_message(doc) if doc else None

    def list_messages(self, key: IndexerKey | None = None, state: str | None = None) -> Sequence[QueueMessage]:
        query: dict[str, Any] = {}
        if key is not None:
            query["account_id"] = key.account_id
            query["function_name"] = key.function_name
        if state is not None:
            query["state"] = state
        with self._storage_errors():
            docs = list(self._db.queue.find(query).sort([("created", ASCENDING), ("_id", ASCENDING)]))
        return [self._doc_to_message(doc) for doc in docs]

    # =========================================================================
    # Namespace Operations
    # =========================================================================

    def get_namespace(self, namespace: str) -> ProvisionedSchema | None:
        with self._storage_errors():
            doc = self._db.namespaces.find_one({"_id": namespace})
        return self._doc_to_namespace(doc) if doc else None

    def save_namespace(self, schema: ProvisionedSchema) -> None:
        """Record the schema and create unique indexes for table keys."""
        if not schema.created:
            schema.created = current_time_ms()
        with self._storage_errors():
            for table in schema.tables.values():
                self._ensure_table(schema.namespace, table)
            doc = self._namespace_to_doc(schema)
            self._db.namespaces.replace_one({"_id": doc["_id"]}, doc, upsert=True)

    def drop_namespace(self, namespace: str) -> None:
        with self._storage_errors():
            doc = self._db.namespaces.find_one({"_id": namespace})
            if doc is not None:
                for table in doc.get("tables", []):
                    self._table_collection(namespace, table["name"]).drop()
            self._db.namespaces.delete_one({"_id": namespace})
            self._db.commits.delete_many({"namespace": namespace})
            self._db.sequences.delete_many({"namespace": namespace})

    def namespace_has_data(self, namespace: str) -> bool:
        with self._storage_errors():
            doc = self._db.namespaces.find_one({"_id": namespace})
            if doc is None:
                return False
            return any(
                self._table_collection(namespace, table["name"]).count_documents({}, limit=1) > 0
                for table in doc.get("tables", [])
            )

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
        with self._storage_errors(table):
            cursor = self._table_collection(namespace, table).find(_mongo_filter(where)).sort("_id", ASCENDING)
            if limit is not None:
                if limit <= 0:
                    return []
                cursor = cursor.limit(limit)
            return [_strip_id(doc) for doc in cursor]

    def apply_mutation(self, namespace: str, mutation: Mutation) -> int:
        definition = self._table(namespace, mutation.table)
        with self._storage_errors(definition.name):
            return self._apply(namespace, definition, mutation, session=None, undo=None)

    def commit_block(self, namespace: str, height: int, mutations: Sequence[Mutation]) -> bool:
        """Atomically apply *mutations* and record *height* in the ledger.

        Uses a MongoDB transaction when the server supports it. Falls back to
        sequential writes with compensating undo for standalone servers and
        mongomock.
        """
        definitions = {m.table: self._table(namespace, m.table) for m in mutations}

        if self._use_transactions:
            try:
                session = self._client.start_session()
            except Exception:
                # mongomock raises NotImplementedError;
                # standalone servers may raise ConfigurationError
                session = None

            if session is not None:
                try:
                    with session:
                        with session.start_transaction():
                            return self._commit(namespace, height, mutations, definitions, session, None)
                except (ConstraintViolationError, StorageUnavailableError):
                    raise
                except Exception as exc:
                    # Standalone MongoDB raises OperationFailure (code 20) for
                    # transactions. Fall back to non-transactional writes.
                    exc_msg = str(exc).lower()
                    if "transaction" not in exc_msg and "replica set" not in exc_msg:
                        raise

        undo: list[Callable[[], None]] = []
        try:
            return self._commit(namespace, height, mutations, definitions, None, undo)
        except Exception:
            for step in reversed(undo):
                try:
                    step()
                except PyMongoError:
                    logger.exception("Failed to undo partial commit of block %d in %s", height, namespace)
            raise

    def is_committed(self, namespace: str, height: int) -> bool:
        with self._storage_errors():
            return self._db.commits.count_documents({"namespace": namespace, "height": height}, limit=1) > 0

    # =========================================================================
    # Internal
    # =========================================================================

    def _commit(
        self,
        namespace: str,
        height: int,
        mutations: Sequence[Mutation],
        definitions: dict[str, TableDefinition],
        session: Any,
        undo: list[Callable[[], None]] | None,
    ) -> bool:
        kwargs = self._session_kwargs(session)
        with self._storage_errors():
            try:
                self._db.commits.insert_one(
                    {"namespace": namespace, "height": height, "committed": current_time_ms(),
                     "mutations": len(mutations)},
                    **kwargs,
                )
            except DuplicateKeyError:
                return False
        if undo is not None:
            undo.append(lambda: self._db.commits.delete_one({"namespace": namespace, "height": height}))

        for mutation in mutations:
            definition = definitions[mutation.table]
            with self._storage_errors(definition.name):
                self._apply(namespace, definition, mutation, session=session, undo=undo)
        return True

    @staticmethod
    def _session_kwargs(session: Any) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if session is not None:
            kwargs["session"] = session
        return kwargs

    def _table(self, namespace: str, table: str) -> TableDefinition:
        schema = self.get_namespace(namespace)
        definition = schema.table(table) if schema else None
        if definition is None:
            raise InvalidMutationError(table, f"table does not exist in namespace {namespace}")
        return definition

    def _table_collection(self, namespace: str, table: str):
        name = _UNSAFE_COLLECTION_CHARS.sub("_", table)
        if name != table:
            name += "_" + hashlib.sha256(table.encode("utf-8")).hexdigest()[:6]
        return self._db[f"ns.{namespace}.{name}"]

    def _ensure_table(self, namespace: str, table: TableDefinition) -> None:
        collection = self._table_collection(namespace, table.name)
        for columns in key_columns(table):
            # Mongo treats missing/null as a value, so only keys over NOT NULL
            # columns get a unique index.
            if all(not (table.column(c) and table.column(c).nullable) for c in columns):
                collection.create_index(
                    [(c, ASCENDING) for c in columns],
                    unique=True,
                    name="uq_" + "_".join(columns),
                )

    def _next_serial(self, namespace: str, table: str, column: str, session: Any) -> int:
        doc = self._db.sequences.find_one_and_update(
            {"_id": f"{namespace}.{table}.{column}"},
            {"$inc": {"value": 1}, "$setOnInsert": {"namespace": namespace}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            **self._session_kwargs(session),
        )
        return doc["value"]

    def _apply(
        self,
        namespace: str,
        definition: TableDefinition,
        mutation: Mutation,
        session: Any,
        undo: list[Callable[[], None]] | None,
    ) -> int:
        collection = self._table_collection(namespace, definition.name)
        kwargs = self._session_kwargs(session)

        def next_serial(column: str) -> int:
            return self._next_serial(namespace, definition.name, column, session)

        def insert(row: dict[str, Any]) -> None:
            doc = complete_row(definition, row, next_serial)
            inserted_id = collection.insert_one(doc, **kwargs).inserted_id
            if undo is not None:
                undo.append(lambda: collection.delete_one({"_id": inserted_id}))

        def remember(docs: list[dict[str, Any]]) -> None:
            if undo is None:
                return
            for doc in docs:
                undo.append(lambda d=doc: collection.replace_one({"_id": d["_id"]}, d, upsert=True))

        if mutation.op == MutationOp.INSERT:
            for row in mutation.rows:
                insert(row)
            return len(mutation.rows)

        if mutation.op == MutationOp.UPSERT:
            for row in mutation.rows:
                where = {c: row.get(c) for c in mutation.conflict_columns}
                existing = collection.find_one(where, **kwargs)
                if existing is None:
                    insert(row)
                    continue
                columns = mutation.update_columns or [c for c in row if c not in mutation.conflict_columns]
                values = {c: row[c] for c in columns if c in row}
                if values:
                    remember([existing])
                    collection.update_one({"_id": existing["_id"]}, {"$set": values}, **kwargs)
            return len(mutation.rows)

        query = _mongo_filter(mutation.where)
        if mutation.op == MutationOp.UPDATE:
            before = list(collection.find(query, **kwargs))
            remember(before)
            result = collection.update_many(query, {"$set": dict(mutation.values)}, **kwargs)
            return result.matched_count

        if mutation.op == MutationOp.DELETE:
            before = list(collection.find(query, **kwargs))
            result = collection.delete_many(query, **kwargs)
            if undo is not None and before:
                undo.append(lambda: collection.insert_many(before))
            return result.deleted_count

        raise InvalidMutationError(mutation.table, f"unknown operation '{mutation.op}'")

    # =========================================================================
    # Serialization Helpers
    # =========================================================================

    def _run_state_to_doc(self, state: IndexerRunState) -> dict:
        return {
            "_id": state.key.full_name,
            "account_id": state.account_id,
            "function_name": state.function_name,
            "status": state.status,
            "last_processed_height": state.last_processed_height,
            "mode": dict(state.mode),
            "spec_version": state.spec_version,
            "error": state.error,
            "started": state.started,
            "updated": state.updated,
            "spec": dict(state.spec) if state.spec else None,
        }

    def _doc_to_run_state(self, doc: dict) -> IndexerRunState:
        return IndexerRunState(
            account_id=doc["account_id"],
            function_name=doc["function_name"],
            status=doc.get("status", RunStatus.STOPPED),
            last_processed_height=doc.get("last_processed_height"),
            mode=dict(doc.get("mode") or {}),
            spec_version=doc.get("spec_version", 0),
            error=doc.get("error"),
            started=doc.get("started", 0),
            updated=doc.get("updated", 0),
            spec=doc.get("spec"),
        )

    def _message_to_doc(self, message: QueueMessage) -> dict:
        return {
            "uuid": message.uuid,
            "body": message.body,
            "account_id": message.account_id,
            "function_name": message.function_name,
            "state": message.state,
            "lease_expires": message.lease_expires,
            "attempts": message.attempts,
            "created": message.created,
            "updated": message.updated,
        }

    def _doc_to_message(self, doc: dict) -> QueueMessage:
        return QueueMessage(
            uuid=doc["uuid"],
            body=doc.get("body") or {},
            account_id=doc.get("account_id", ""),
            function_name=doc.get("function_name", ""),
            state=doc.get("state", MessageState.PENDING),
            lease_expires=doc.get("lease_expires", 0),
            attempts=doc.get("attempts", 0),
            created=doc.get("created", 0),
            updated=doc.get("updated", 0),
        )

    def _namespace_to_doc(self, schema: ProvisionedSchema) -> dict:
        return {
            "_id": schema.namespace,
            "account_id": schema.account_id,
            "function_name": schema.function_name,
            "schema_text": schema.schema_text,
            "fingerprint": schema.fingerprint,
            "tables": [t.to_dict() for t in schema.tables.values()],
            "created": schema.created,
        }

    def _doc_to_namespace(self, doc: dict) -> ProvisionedSchema:
        tables = [TableDefinition.from_dict(t) for t in doc.get("tables", [])]
        return ProvisionedSchema(
            namespace=NamespaceId(doc["_id"]),
            tables={t.name: t for t in tables},
            schema_text=doc.get("schema_text", ""),
            fingerprint=doc.get("fingerprint", ""),
            account_id=doc.get("account_id", ""),
            function_name=doc.get("function_name", ""),
            created=doc.get("created", 0),
        )

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def close(self) -> None:
        """Close the MongoDB connection."""
        self._client.close()

    def drop_database(self) -> None:
        """Drop the entire database. Use with caution!"""
        self._client.drop_database(self._db.name)
