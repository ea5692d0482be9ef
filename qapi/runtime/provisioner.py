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

"""Schema provisioning for indexer namespaces.

Creates or verifies the isolated storage namespace of one indexer from its
schema text. Provisioning is idempotent and serialized per namespace.
"""

import logging
import threading

from ..parser import SchemaParser, schema_fingerprint
from .entities import ProvisionedSchema
from .errors import SchemaConflictError
from .persistence import PersistenceAPI
from .types import NamespaceId, current_time_ms

logger = logging.getLogger(__name__)


class SchemaProvisioner:
    """Provisions namespaces in a persistence store.

    Outcomes of :meth:`provision`:

    - namespace missing: tables are created
    - same schema fingerprint: no-op, the existing schema is returned
    - changed schema, namespace empty: tables are replaced
    - changed schema, namespace holds data: ``SchemaConflictError``
    - namespace owned by another indexer: ``SchemaConflictError``
    """

    def __init__(self, store: PersistenceAPI, parser: SchemaParser | None = None):
        self._store = store
        self._parser = parser or SchemaParser()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _namespace_lock(self, namespace: str) -> threading.Lock:
        with self._locks_guard:
            if namespace not in self._locks:
                self._locks[namespace] = threading.Lock()
            return self._locks[namespace]

    def provision(
        self,
        schema_text: str,
        namespace: NamespaceId | str,
        account_id: str | None = None,
        function_name: str | None = None,
    ) -> ProvisionedSchema:
        """Create or verify *namespace* for *schema_text*.

        Raises:
            SchemaMalformedError: If the schema cannot be parsed
            SchemaConflictError: If the namespace cannot take the schema
        """
        schema = self._parser.parse(schema_text)
        fingerprint = schema_fingerprint(schema)

        with self._namespace_lock(namespace):
            existing = self._store.get_namespace(namespace)
            if existing is not None:
                self._check_owner(existing, account_id, function_name)
                if existing.fingerprint == fingerprint:
                    logger.debug("Namespace %s already provisioned", namespace)
                    return existing
                if self._store.namespace_has_data(namespace):
                    raise SchemaConflictError(
                        namespace,
                        "schema changed but the namespace already holds data; "
                        "migration is not supported",
                    )
                logger.info("Replacing schema of empty namespace %s", namespace)
                self._store.drop_namespace(namespace)

            provisioned = ProvisionedSchema(
                namespace=NamespaceId(namespace),
                tables={t.name: t for t in schema.tables},
                schema_text=schema_text,
                fingerprint=fingerprint,
                account_id=account_id or "",
                function_name=function_name or "",
                created=current_time_ms(),
            )
            self._store.save_namespace(provisioned)
            logger.info(
                "Provisioned namespace %s with tables: %s",
                namespace,
                ", ".join(provisioned.tables),
            )
            return provisioned

    @staticmethod
    def _check_owner(
        existing: ProvisionedSchema,
        account_id: str | None,
        function_name: str | None,
    ) -> None:
        if not existing.account_id or account_id is None:
            return
        if (existing.account_id, existing.function_name) != (account_id, function_name):
            raise SchemaConflictError(
                existing.namespace,
                f"namespace belongs to {existing.account_id}/{existing.function_name}",
            )
