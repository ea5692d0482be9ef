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

"""FastAPI dependency providers for the QAPI HTTP surface.

Both providers are process-wide singletons built from the configuration
file the app was created with; tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from qapi.runtime.debug import DebugSessionManager
    from qapi.runtime.service import ExecutionService


@lru_cache(maxsize=1)
def _get_service(config_path: str | None = None) -> ExecutionService:
    """Create the singleton ExecutionService and recover interrupted indexers."""
    from qapi.config import load_config
    from qapi.runtime.fetcher import HttpBlockFetcher
    from qapi.runtime.mongo_store import MongoStore
    from qapi.runtime.service import ExecutionService

    config = load_config(config_path)
    store = MongoStore.from_config(config.mongodb)
    fetcher = HttpBlockFetcher(config.blocks.url, timeout=config.blocks.request_timeout)
    service = ExecutionService(store, fetcher, config)
    service.recover()
    return service


@lru_cache(maxsize=1)
def _get_debug_manager(config_path: str | None = None) -> DebugSessionManager:
    """Create the singleton DebugSessionManager."""
    from qapi.config import load_config
    from qapi.runtime.debug import DebugSessionManager
    from qapi.runtime.fetcher import HttpBlockFetcher

    config = load_config(config_path)
    fetcher = HttpBlockFetcher(config.blocks.url, timeout=config.blocks.request_timeout)
    return DebugSessionManager(fetcher, config.debug, config.runner)


def get_service(request: Request) -> ExecutionService:
    """FastAPI dependency: the execution service."""
    return _get_service(getattr(request.app.state, "config_path", None))


def get_debug_manager(request: Request) -> DebugSessionManager:
    """FastAPI dependency: the debug session manager."""
    return _get_debug_manager(getattr(request.app.state, "config_path", None))
