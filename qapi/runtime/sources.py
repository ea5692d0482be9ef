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

"""Block sources for the execution coordinator.

A source yields filtered :class:`BlockPayload` values in height order for
one indexer. ``next()`` returns a payload, ``END_OF_STREAM`` when the
source is exhausted, or ``None`` when nothing is available yet and the
caller should idle for its poll interval. ``ack()`` is called once the
payload was processed and progress was persisted.
"""

import logging
from typing import Any, Protocol

from .entities import (
    Backfill,
    BlockPayload,
    DebugList,
    ExecutionMode,
    IndexerFunctionSpec,
    QueueMessage,
    RealTime,
)
from .errors import BlockFetchError, MalformedMessageError, TransientFetchFailureError
from .fetcher import BlockFetcher
from .filters import scope_block
from .persistence import PersistenceAPI
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

# Substring marking code written against the retired database API
LEGACY_MARKER = "context.db"

DEFAULT_LEASE_MS = 60_000


class _EndOfStream:
    """Sentinel returned by exhausted sources."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


class BlockSource(Protocol):
    """Ordered stream of block payloads for one indexer."""

    spec: IndexerFunctionSpec

    def next(self) -> BlockPayload | _EndOfStream | None: ...

    def ack(self, block: BlockPayload) -> None: ...

    def close(self) -> None: ...


def _fetch_or_fail(fetcher: BlockFetcher, height: int) -> dict[str, Any] | None:
    try:
        return fetcher.fetch(height)
    except TransientFetchFailureError as e:
        raise BlockFetchError(height, e.message) from e


# =============================================================================
# Real-time queue
# =============================================================================


class QueueBlockSource:
    """Consumes an indexer's messages from the shared real-time queue.

    Claims are lease based: a message that is never acknowledged becomes
    claimable again when its lease expires, so delivery is at-least-once.
    Messages are acknowledged without being returned when they are
    malformed, when their block cannot be fetched, when they carry legacy
    code, or when their height was already processed.
    """

    def __init__(
        self,
        store: PersistenceAPI,
        fetcher: BlockFetcher,
        spec: IndexerFunctionSpec,
        lease_ms: int = DEFAULT_LEASE_MS,
        legacy_marker: str = LEGACY_MARKER,
        last_processed_height: int | None = None,
        telemetry: Telemetry | None = None,
    ):
        self.spec = spec
        self._store = store
        self._fetcher = fetcher
        self._lease_ms = lease_ms
        self._legacy_marker = legacy_marker
        self._last_processed = last_processed_height
        self._telemetry = telemetry
        self._pending: dict[int, str] = {}

    def next(self) -> BlockPayload | None:
        while True:
            message = self._store.claim_message(self.spec.key, self._lease_ms)
            if message is None:
                return None
            block = self._accept(message)
            if block is not None:
                return block

    def ack(self, block: BlockPayload) -> None:
        message_id = self._pending.pop(block.height, None)
        if message_id is not None:
            self._store.ack_message(message_id)
        if self._last_processed is None or block.height > self._last_processed:
            self._last_processed = block.height

    def close(self) -> None:
        # Unacknowledged claims are released by lease expiry.
        self._pending.clear()

    def _accept(self, message: QueueMessage) -> BlockPayload | None:
        try:
            height, spec, is_historical = self._decode(message)
        except MalformedMessageError as e:
            logger.warning("Dropping queue message: %s", e)
            self._skip(message, None, "malformed")
            return None

        if self._legacy_marker and self._legacy_marker in spec.code:
            logger.info(
                "Skipping block %d for %s: code uses the legacy %r API",
                height,
                spec.full_name,
                self._legacy_marker,
            )
            self._skip(message, height, "legacy")
            return None

        if self._last_processed is not None and height <= self._last_processed:
            logger.debug("Acknowledging duplicate message for block %d", height)
            self._skip(message, height, "duplicate")
            return None

        if spec.version > self.spec.version:
            logger.info(
                "Indexer %s updated to version %d (was %d)",
                spec.full_name,
                spec.version,
                self.spec.version,
            )
            self.spec = spec

        try:
            raw = self._fetcher.fetch(height)
        except TransientFetchFailureError as e:
            logger.warning("Dropping queue message %s: %s", message.uuid, e)
            self._skip(message, height, "fetch_failed")
            return None
        if raw is None:
            logger.warning("Dropping queue message %s: block %d not found", message.uuid, height)
            self._skip(message, height, "fetch_failed")
            return None

        try:
            block = scope_block(raw, self.spec.filter, is_historical)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping queue message %s: bad block %d: %s", message.uuid, height, e)
            self._skip(message, height, "malformed")
            return None

        self._pending[block.height] = message.uuid
        return block

    def _decode(self, message: QueueMessage) -> tuple[int, IndexerFunctionSpec, bool]:
        """Return ``(height, spec, is_historical)`` for a message body.

        Raises:
            MalformedMessageError: If the body cannot be decoded
        """
        body = message.body
        if not isinstance(body, dict):
            raise MalformedMessageError(message.uuid, "body is not an object")

        height = body.get("height", body.get("block_height", body.get("blockHeight")))
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise MalformedMessageError(message.uuid, f"invalid block height {height!r}")

        function = body.get("indexerFunction", body.get("indexer_function"))
        if function is None:
            spec = self.spec
        elif not isinstance(function, dict):
            raise MalformedMessageError(message.uuid, "indexerFunction is not an object")
        else:
            try:
                spec = IndexerFunctionSpec.from_dict(function)
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedMessageError(message.uuid, f"invalid indexerFunction: {e}") from e
            if spec.key != self.spec.key:
                raise MalformedMessageError(message.uuid, f"routed to {self.spec.full_name} but names {spec.full_name}")

        is_historical = bool(body.get("isHistorical", body.get("is_historical", False)))
        return height, spec, is_historical

    def _skip(self, message: QueueMessage, height: int | None, reason: str) -> None:
        self._store.ack_message(message.uuid)
        if self._telemetry is not None:
            self._telemetry.log_block_skipped(self.spec.full_name, height, reason)


# =============================================================================
# Explicit list
# =============================================================================


class ListBlockSource:
    """Replays an explicit list of heights, deduplicated and ascending."""

    def __init__(self, fetcher: BlockFetcher, spec: IndexerFunctionSpec, heights, is_historical: bool = True):
        self.spec = spec
        self._fetcher = fetcher
        self._heights = sorted(set(int(h) for h in heights))
        self._index = 0
        self._is_historical = is_historical

    @property
    def remaining(self) -> list[int]:
        return self._heights[self._index :]

    def next(self) -> BlockPayload | _EndOfStream:
        """Return the next block.

        Raises:
            BlockFetchError: If a listed block is missing or cannot be fetched
        """
        if self._index >= len(self._heights):
            return END_OF_STREAM
        height = self._heights[self._index]
        raw = _fetch_or_fail(self._fetcher, height)
        if raw is None:
            raise BlockFetchError(height, "block not found")
        self._index += 1
        return scope_block(raw, self.spec.filter, self._is_historical)

    def ack(self, block: BlockPayload) -> None:
        pass

    def close(self) -> None:
        pass


# =============================================================================
# Height range
# =============================================================================


class RangeBlockSource:
    """Ascending scan from ``start_height``.

    With ``end_height`` the source ends after that height; without it the
    scan follows the chain head and idles until the next block exists.
    """

    def __init__(
        self,
        fetcher: BlockFetcher,
        spec: IndexerFunctionSpec,
        start_height: int,
        end_height: int | None = None,
        is_historical: bool = True,
    ):
        self.spec = spec
        self._fetcher = fetcher
        self._cursor = start_height
        self._end = end_height
        self._is_historical = is_historical

    @property
    def cursor(self) -> int:
        return self._cursor

    def next(self) -> BlockPayload | _EndOfStream | None:
        """Return the next block, or None while it is beyond the chain head.

        Raises:
            BlockFetchError: If a block at or below the head is missing or
                the block store cannot be reached
        """
        if self._end is not None and self._cursor > self._end:
            return END_OF_STREAM
        height = self._cursor
        raw = _fetch_or_fail(self._fetcher, height)
        if raw is None:
            try:
                head = self._fetcher.latest_height()
            except TransientFetchFailureError as e:
                raise BlockFetchError(height, e.message) from e
            if height <= head:
                raise BlockFetchError(height, "block not found")
            return None
        self._cursor += 1
        return scope_block(raw, self.spec.filter, self._is_historical)

    def ack(self, block: BlockPayload) -> None:
        pass

    def close(self) -> None:
        pass


# =============================================================================
# Factory
# =============================================================================


class BlockSourceFactory:
    """Builds the source for an execution mode.

    ``resume_after`` is the last persisted height of an interrupted run;
    the new source starts strictly after it.
    """

    def __init__(
        self,
        store: PersistenceAPI,
        fetcher: BlockFetcher,
        lease_ms: int = DEFAULT_LEASE_MS,
        legacy_marker: str = LEGACY_MARKER,
        telemetry: Telemetry | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.lease_ms = lease_ms
        self.legacy_marker = legacy_marker
        self.telemetry = telemetry

    def __call__(
        self,
        spec: IndexerFunctionSpec,
        mode: ExecutionMode,
        resume_after: int | None = None,
    ) -> BlockSource:
        if isinstance(mode, RealTime):
            return QueueBlockSource(
                self.store,
                self.fetcher,
                spec,
                lease_ms=self.lease_ms,
                legacy_marker=self.legacy_marker,
                last_processed_height=resume_after,
                telemetry=self.telemetry,
            )
        if isinstance(mode, Backfill):
            start = mode.start_height
            if resume_after is not None:
                start = max(start, resume_after + 1)
            return RangeBlockSource(self.fetcher, spec, start, mode.end_height)
        if isinstance(mode, DebugList):
            heights = mode.ordered_heights()
            if resume_after is not None:
                heights = [h for h in heights if h > resume_after]
            return ListBlockSource(self.fetcher, spec, heights)
        raise ValueError(f"No block source for mode {mode!r}")
