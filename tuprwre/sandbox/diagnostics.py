# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Run I/O lifecycle diagnostics.

When enabled, one event is written per lifecycle transition of a run:
``create``, ``attach``, ``wait-registered``, ``start``, ``wait-exit``,
``stream-eof`` and ``cleanup``. Two formats can be active at once and
share one sink:

* text: ``[tuprwre][debug-io] +12ms start``
* JSON: one object per line with timestamp, run id, event name, elapsed
  milliseconds, container id and optional details.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import IO, Any


logger = logging.getLogger(__name__)

#: Lifecycle events in the order a complete run emits them.
LIFECYCLE_EVENTS = (
    "create",
    "attach",
    "wait-registered",
    "start",
    "wait-exit",
    "stream-eof",
    "cleanup",
)

_TEXT_PREFIX = "[tuprwre][debug-io]"


@dataclass(frozen=True)
class DiagnosticEvent:
    """A single lifecycle event."""

    timestamp: str
    run_id: str
    event: str
    elapsed_ms: int
    container_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize as one JSON line, omitting empty optional fields."""
        payload = asdict(self)
        if not payload["container_id"]:
            del payload["container_id"]
        if not payload["details"]:
            del payload["details"]
        return json.dumps(payload)


class RunDiagnostics:
    """Writes lifecycle events for one run.

    Events come from the controlling thread and the drain thread, so
    writes are serialized.

    Thread Safety: Thread-safe.
    """

    def __init__(
        self,
        *,
        text_enabled: bool = False,
        json_enabled: bool = False,
        writer: IO[bytes] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.text_enabled = text_enabled
        self.json_enabled = json_enabled
        self.run_id = run_id or str(uuid.uuid4())
        self.container_id = ""
        self._writer = writer
        self._start = time.monotonic()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return (self.text_enabled or self.json_enabled) and (
            self._writer is not None
        )

    def event(self, name: str, details: dict[str, Any] | None = None) -> None:
        """Emit ``name`` in every enabled format."""
        if not self.enabled:
            return

        elapsed_ms = int((time.monotonic() - self._start) * 1000)
        lines: list[str] = []
        if self.text_enabled:
            lines.append(f"{_TEXT_PREFIX} +{elapsed_ms}ms {name}")
        if self.json_enabled:
            lines.append(
                DiagnosticEvent(
                    timestamp=datetime.now(UTC).isoformat(),
                    run_id=self.run_id,
                    event=name,
                    elapsed_ms=elapsed_ms,
                    container_id=self.container_id,
                    details=dict(details or {}),
                ).to_json()
            )

        with self._lock:
            assert self._writer is not None
            try:
                for line in lines:
                    self._writer.write(line.encode() + b"\n")
                self._writer.flush()
            except (OSError, ValueError) as e:
                logger.debug("Failed to write diagnostic event %s: %s", name, e)
