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

"""QAPI runtime telemetry.

Structured events for indexer execution.
Telemetry MUST NOT affect execution semantics.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .entities import ExecutionOutcome


@dataclass
class TelemetryEvent:
    """A single telemetry event."""

    timestamp: str
    event_type: str
    indexer: str | None = None
    height: int | None = None
    state: str | None = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {
            "timestamp": self.timestamp,
            "eventType": self.event_type,
        }
        if self.indexer:
            result["indexer"] = self.indexer
        if self.height is not None:
            result["height"] = self.height
        if self.state:
            result["state"] = self.state
        if self.details:
            result["details"] = self.details
        return result


class Telemetry:
    """Telemetry collector for indexer execution.

    Collects structured telemetry for:
    - Run start and stop
    - Blocks processed and failed
    - Run state transitions
    - Messages skipped by block sources
    """

    def __init__(self, enabled: bool = True, max_events: int = 10000):
        """Initialize telemetry.

        Args:
            enabled: Whether telemetry is enabled
            max_events: Oldest events are discarded past this count
        """
        self.enabled = enabled
        self.max_events = max_events
        self.events: list[TelemetryEvent] = []
        self._lock = threading.Lock()

    def _now(self) -> str:
        """Get current timestamp."""
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _log(
        self,
        event_type: str,
        indexer: str | None = None,
        height: int | None = None,
        state: str | None = None,
        **details: Any,
    ) -> None:
        """Log a telemetry event."""
        if not self.enabled:
            return

        event = TelemetryEvent(
            timestamp=self._now(),
            event_type=event_type,
            indexer=indexer,
            height=height,
            state=state,
            details=details,
        )
        with self._lock:
            self.events.append(event)
            overflow = len(self.events) - self.max_events
            if overflow > 0:
                del self.events[:overflow]

    def log_run_start(self, indexer: str, mode: dict, version: int) -> None:
        """Log start of an execution loop."""
        self._log("run.start", indexer=indexer, mode=mode, version=version)

    def log_run_end(self, indexer: str, status: str, error: str | None = None) -> None:
        """Log end of an execution loop."""
        if error:
            self._log("run.end", indexer=indexer, state=status, error=error)
        else:
            self._log("run.end", indexer=indexer, state=status)

    def log_block_processed(self, indexer: str, outcome: "ExecutionOutcome") -> None:
        """Log one function invocation."""
        if outcome.error is not None:
            self._log(
                "block.failed",
                indexer=indexer,
                height=outcome.height,
                error=str(outcome.error),
                errorType=outcome.error.kind,
                elapsedMs=outcome.elapsed_ms,
            )
            return
        self._log(
            "block.processed",
            indexer=indexer,
            height=outcome.height,
            mutations=len(outcome.mutations),
            duplicate=outcome.duplicate,
            elapsedMs=outcome.elapsed_ms,
        )

    def log_block_skipped(self, indexer: str, height: int | None, reason: str) -> None:
        """Log a block or queue message skipped without invoking the function."""
        self._log("block.skipped", indexer=indexer, height=height, reason=reason)

    def log_state_transition(self, indexer: str, from_state: str, to_state: str) -> None:
        """Log run state transition."""
        self._log(
            "state.transition",
            indexer=indexer,
            fromState=from_state,
            toState=to_state,
        )

    def clear(self) -> None:
        """Clear all events."""
        with self._lock:
            self.events.clear()

    def get_events(self, event_type: str | None = None) -> list[dict]:
        """Get all events as dictionaries."""
        with self._lock:
            return [e.to_dict() for e in self.events if event_type is None or e.event_type == event_type]

    def to_json(self, indent: int = 2) -> str:
        """Export events as JSON."""
        return json.dumps(self.get_events(), indent=indent)
