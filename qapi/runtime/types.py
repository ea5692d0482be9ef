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

"""QAPI runtime core type definitions."""

import hashlib
import re
import time
import uuid
from dataclasses import dataclass
from typing import NewType

NamespaceId = NewType("NamespaceId", str)
SessionId = NewType("SessionId", str)

# PostgreSQL identifier limit; namespaces are reused by the API gateway.
MAX_NAMESPACE_LENGTH = 63

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SUFFIX_LENGTH = 8


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def session_id() -> SessionId:
    """Generate a new SessionId."""
    return SessionId(generate_id())


def current_time_ms() -> int:
    """Get current time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True, order=True)
class IndexerKey:
    """Identity of an indexer function: owning account plus function name."""

    account_id: str
    function_name: str

    @property
    def full_name(self) -> str:
        return f"{self.account_id}/{self.function_name}"

    @classmethod
    def parse(cls, full_name: str) -> "IndexerKey":
        """Parse an ``account/function`` string."""
        account_id, sep, function_name = full_name.partition("/")
        if not sep or not account_id or not function_name:
            raise ValueError(f"Invalid indexer name: {full_name!r}")
        return cls(account_id, function_name)

    def __str__(self) -> str:
        return self.full_name


def normalize_identifier(value: str) -> str:
    """Lower-case *value* and collapse every non-alphanumeric run to ``_``."""
    return _NON_ALNUM.sub("_", value.lower()).strip("_")


def namespace_for(account_id: str, function_name: str) -> NamespaceId:
    """Derive the storage namespace for an indexer.

    The readable part follows the familiar ``account_function`` shape with
    separators normalized. A short digest of the raw identity is appended
    so that identities which normalize to the same text (``a.b`` and
    ``a_b``) still get distinct namespaces. The result is deterministic, a
    valid identifier and at most ``MAX_NAMESPACE_LENGTH`` characters.
    """
    raw = f"{account_id}/{function_name}"
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_SUFFIX_LENGTH]
    readable = normalize_identifier(f"{account_id}_{function_name}") or "indexer"
    if readable[0].isdigit():
        readable = f"n_{readable}"
    readable = readable[: MAX_NAMESPACE_LENGTH - _SUFFIX_LENGTH - 1].rstrip("_")
    return NamespaceId(f"{readable}_{digest}")
