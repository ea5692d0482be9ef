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

"""Block data fetchers.

Block retrieval and storage are external; the engine only needs the raw
block document for a height and the current chain head.
"""

import logging
import threading
from typing import Any, Protocol, runtime_checkable

import requests

from .errors import TransientFetchFailureError

logger = logging.getLogger(__name__)

USER_AGENT = "qapi-indexer/0.1"


@runtime_checkable
class BlockFetcher(Protocol):
    """Source of raw block documents."""

    def fetch(self, height: int) -> dict[str, Any] | None:
        """Return the block at *height*, or None if it does not exist yet.

        Raises:
            TransientFetchFailureError: If the block store cannot be reached
        """
        ...

    def latest_height(self) -> int:
        """Return the height of the chain head."""
        ...


class HttpBlockFetcher:
    """Fetches blocks from an HTTP block store.

    Endpoints:
        ``GET {base_url}/blocks/{height}`` returns the block JSON (404 when
        the block is not available) and ``GET {base_url}/blocks/latest``
        returns ``{"height": n}``.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    def fetch(self, height: int) -> dict[str, Any] | None:
        url = f"{self.base_url}/blocks/{height}"
        try:
            response = self._session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientFetchFailureError(height, str(e)) from e

    def latest_height(self) -> int:
        url = f"{self.base_url}/blocks/latest"
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            return int(data["height"] if isinstance(data, dict) else data)
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise TransientFetchFailureError(-1, f"cannot read chain head: {e}") from e

    def close(self) -> None:
        self._session.close()


class MemoryBlockFetcher:
    """Dict-backed fetcher for tests and offline replay."""

    def __init__(self, blocks: dict[int, dict[str, Any]] | None = None):
        self._blocks: dict[int, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.fetched: list[int] = []
        for height, block in (blocks or {}).items():
            self.add({"height": height, **block})

    def add(self, block: dict[str, Any]) -> None:
        """Add a block; the document must carry its ``height``."""
        with self._lock:
            self._blocks[int(block["height"])] = dict(block)

    def fetch(self, height: int) -> dict[str, Any] | None:
        with self._lock:
            self.fetched.append(height)
            block = self._blocks.get(height)
            return dict(block) if block is not None else None

    def latest_height(self) -> int:
        with self._lock:
            return max(self._blocks) if self._blocks else 0
