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

"""QAPI configuration management.

Provides configuration dataclasses for the store, the function runner,
the block store and debug sessions, and a loader that reads from config
files or environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus, urlsplit, urlunsplit


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def _pick(data: dict[str, Any], snake: str, camel: str, default: Any) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


@dataclass
class MongoDBConfig:
    """MongoDB connection configuration.

    Attributes:
        url: MongoDB connection URL
        username: Authentication username
        password: Authentication password
        auth_source: Authentication database name
        database: Target database name (e.g. "qapi", "qapi_test")
        transactions: Use multi-document transactions for block commits
            (requires a replica set; the store falls back when unsupported)
    """

    url: str = "mongodb://localhost:27017"
    username: str = ""
    password: str = ""
    auth_source: str = "admin"
    database: str = "qapi"
    transactions: bool = True

    def connection_string(self) -> str:
        """Build the effective connection string.

        When a username is configured and the URL carries no credentials,
        the username, password and auth_source are added to the URL.

        Returns:
            A MongoDB connection URI.
        """
        if not self.username:
            return self.url
        parts = urlsplit(self.url)
        if "@" in parts.netloc:
            return self.url
        credentials = quote_plus(self.username)
        if self.password:
            credentials += ":" + quote_plus(self.password)
        query = parts.query
        if "authSource=" not in query:
            query = f"{query}&authSource={self.auth_source}" if query else f"authSource={self.auth_source}"
        path = parts.path or "/"
        return urlunsplit((parts.scheme, f"{credentials}@{parts.netloc}", path, query, parts.fragment))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MongoDBConfig:
        """Create from a dictionary.

        Keys may use either snake_case (``auth_source``) or
        camelCase (``authSource``).
        """
        return cls(
            url=data.get("url", cls.url),
            username=data.get("username", cls.username),
            password=data.get("password", cls.password),
            auth_source=_pick(data, "auth_source", "authSource", cls.auth_source),
            database=data.get("database", cls.database),
            transactions=bool(data.get("transactions", cls.transactions)),
        )

    @classmethod
    def from_env(cls) -> MongoDBConfig:
        """Create from environment variables.

        Recognised variables (all optional – defaults apply for missing vars):
            QAPI_MONGODB_URL
            QAPI_MONGODB_USERNAME
            QAPI_MONGODB_PASSWORD
            QAPI_MONGODB_AUTH_SOURCE
            QAPI_MONGODB_DATABASE
            QAPI_MONGODB_TRANSACTIONS  ("false"/"0" to disable)
        """
        defaults = cls()
        return cls(
            url=os.environ.get("QAPI_MONGODB_URL", defaults.url),
            username=os.environ.get("QAPI_MONGODB_USERNAME", defaults.username),
            password=os.environ.get("QAPI_MONGODB_PASSWORD", defaults.password),
            auth_source=os.environ.get("QAPI_MONGODB_AUTH_SOURCE", defaults.auth_source),
            database=os.environ.get("QAPI_MONGODB_DATABASE", defaults.database),
            transactions=_env_bool("QAPI_MONGODB_TRANSACTIONS", defaults.transactions),
        )


@dataclass
class RunnerConfig:
    """Function runner and execution loop configuration.

    Attributes:
        timeout: Execution budget per block, in seconds
        max_provision_attempts: Attempts at one height before a provisioning
            failure interrupts the loop
        poll_interval_ms: Idle time when no block is available
        lease_ms: Lease of a claimed queue message
        legacy_marker: Code containing this marker is skipped by the queue
            consumer
    """

    timeout: float = 5.0
    max_provision_attempts: int = 3
    poll_interval_ms: int = 1000
    lease_ms: int = 60000
    legacy_marker: str = "context.db"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerConfig:
        """Create from a dictionary."""
        return cls(
            timeout=float(data.get("timeout", cls.timeout)),
            max_provision_attempts=int(
                _pick(data, "max_provision_attempts", "maxProvisionAttempts", cls.max_provision_attempts)
            ),
            poll_interval_ms=int(_pick(data, "poll_interval_ms", "pollIntervalMs", cls.poll_interval_ms)),
            lease_ms=int(_pick(data, "lease_ms", "leaseMs", cls.lease_ms)),
            legacy_marker=_pick(data, "legacy_marker", "legacyMarker", cls.legacy_marker),
        )

    @classmethod
    def from_env(cls) -> RunnerConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            QAPI_RUNNER_TIMEOUT
            QAPI_RUNNER_MAX_PROVISION_ATTEMPTS
            QAPI_RUNNER_POLL_INTERVAL_MS
            QAPI_RUNNER_LEASE_MS
            QAPI_RUNNER_LEGACY_MARKER
        """
        defaults = cls()
        return cls(
            timeout=float(os.environ.get("QAPI_RUNNER_TIMEOUT", defaults.timeout)),
            max_provision_attempts=int(
                os.environ.get("QAPI_RUNNER_MAX_PROVISION_ATTEMPTS", defaults.max_provision_attempts)
            ),
            poll_interval_ms=int(os.environ.get("QAPI_RUNNER_POLL_INTERVAL_MS", defaults.poll_interval_ms)),
            lease_ms=int(os.environ.get("QAPI_RUNNER_LEASE_MS", defaults.lease_ms)),
            legacy_marker=os.environ.get("QAPI_RUNNER_LEGACY_MARKER", defaults.legacy_marker),
        )


@dataclass
class BlocksConfig:
    """Block store connection configuration.

    Attributes:
        url: Base URL of the HTTP block store
        request_timeout: Per-request timeout in seconds
    """

    url: str = "http://localhost:3030"
    request_timeout: float = 10.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlocksConfig:
        """Create from a dictionary."""
        return cls(
            url=data.get("url", cls.url),
            request_timeout=float(_pick(data, "request_timeout", "requestTimeout", cls.request_timeout)),
        )

    @classmethod
    def from_env(cls) -> BlocksConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            QAPI_BLOCKS_URL
            QAPI_BLOCKS_REQUEST_TIMEOUT
        """
        defaults = cls()
        return cls(
            url=os.environ.get("QAPI_BLOCKS_URL", defaults.url),
            request_timeout=float(os.environ.get("QAPI_BLOCKS_REQUEST_TIMEOUT", defaults.request_timeout)),
        )


@dataclass
class DebugConfig:
    """Debug session configuration.

    Attributes:
        buffer_size: Log entries buffered per session before the oldest are
            dropped
        latest_offset: The "latest" option starts this many blocks below
            the chain head
    """

    buffer_size: int = 500
    latest_offset: int = 10

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DebugConfig:
        """Create from a dictionary."""
        return cls(
            buffer_size=int(_pick(data, "buffer_size", "bufferSize", cls.buffer_size)),
            latest_offset=int(_pick(data, "latest_offset", "latestOffset", cls.latest_offset)),
        )

    @classmethod
    def from_env(cls) -> DebugConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            QAPI_DEBUG_BUFFER_SIZE
            QAPI_DEBUG_LATEST_OFFSET
        """
        defaults = cls()
        return cls(
            buffer_size=int(os.environ.get("QAPI_DEBUG_BUFFER_SIZE", defaults.buffer_size)),
            latest_offset=int(os.environ.get("QAPI_DEBUG_LATEST_OFFSET", defaults.latest_offset)),
        )


@dataclass
class QAPIConfig:
    """Top-level QAPI configuration.

    Attributes:
        mongodb: MongoDB connection settings
        runner: Function runner and loop settings
        blocks: Block store settings
        debug: Debug session settings
    """

    mongodb: MongoDBConfig = field(default_factory=MongoDBConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    blocks: BlocksConfig = field(default_factory=BlocksConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "mongodb": self.mongodb.to_dict(),
            "runner": self.runner.to_dict(),
            "blocks": self.blocks.to_dict(),
            "debug": self.debug.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QAPIConfig:
        """Create from a dictionary (e.g. parsed JSON)."""
        return cls(
            mongodb=MongoDBConfig.from_dict(data.get("mongodb", {})),
            runner=RunnerConfig.from_dict(data.get("runner", {})),
            blocks=BlocksConfig.from_dict(data.get("blocks", {})),
            debug=DebugConfig.from_dict(data.get("debug", {})),
        )

    @classmethod
    def from_env(cls) -> QAPIConfig:
        """Create from environment variables."""
        return cls(
            mongodb=MongoDBConfig.from_env(),
            runner=RunnerConfig.from_env(),
            blocks=BlocksConfig.from_env(),
            debug=DebugConfig.from_env(),
        )


# -- Config file loading -----------------------------------------------------

DEFAULT_CONFIG_FILENAME = "qapi.config.json"

_SEARCH_PATHS = [
    Path.cwd,  # current directory
    lambda: Path.home() / ".qapi",  # user home
    lambda: Path("/etc/qapi"),  # system-wide
]


def _find_config_file(filename: str = DEFAULT_CONFIG_FILENAME) -> Path | None:
    """Search well-known locations for a config file.

    Search order:
        1. ``$QAPI_CONFIG`` environment variable (explicit path)
        2. Current working directory
        3. ``~/.qapi/``
        4. ``/etc/qapi/``

    Returns:
        Path to the first config file found, or ``None``.
    """
    explicit = os.environ.get("QAPI_CONFIG")
    if explicit:
        path = Path(explicit)
        if path.is_file():
            return path
        return None

    for path_fn in _SEARCH_PATHS:
        candidate = path_fn() / filename
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> QAPIConfig:
    """Load QAPI configuration.

    Resolution order:
        1. Explicit *path* argument
        2. Config file found via :func:`_find_config_file`
        3. Environment variables (``QAPI_*``)
        4. Built-in defaults

    Args:
        path: Optional explicit path to a JSON config file.

    Returns:
        Populated :class:`QAPIConfig` instance.
    """
    config_path: Path | None = Path(path) if path else _find_config_file()

    if config_path and config_path.is_file():
        data = json.loads(config_path.read_text())
        return QAPIConfig.from_dict(data)

    return QAPIConfig.from_env()
