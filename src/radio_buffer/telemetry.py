"""Error reporting and breadcrumb trail.

Captured exceptions and messages are written to the structured log
together with the most recent breadcrumbs, so a single log line carries
the context leading up to a failure.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import structlog

log = structlog.get_logger()

MAX_BREADCRUMBS = 100
LEVELS = ("debug", "info", "warning", "error", "fatal")


@dataclass(frozen=True)
class Breadcrumb:
    """One step on the trail leading up to a reported event."""

    category: str
    message: str
    level: str = "info"
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Telemetry:
    """Collects breadcrumbs and reports exceptions and messages."""

    def __init__(self, service: str = "radio-buffer", max_breadcrumbs: int = MAX_BREADCRUMBS):
        self.service = service
        self._breadcrumbs: deque[Breadcrumb] = deque(maxlen=max_breadcrumbs)
        self.captured: int = 0

    @property
    def breadcrumbs(self) -> list[Breadcrumb]:
        """Read-only access to breadcrumbs (returns a copy)."""
        return list(self._breadcrumbs)

    def add_breadcrumb(
        self,
        category: str,
        message: str,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record a breadcrumb."""
        self._breadcrumbs.append(
            Breadcrumb(category=category, message=message, level=level, data=dict(data or {}))
        )

    def capture_exception(
        self,
        error: BaseException,
        tags: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Report an exception with its context."""
        self.captured += 1
        log.error(
            "exception_captured",
            service=self.service,
            error=str(error),
            error_type=type(error).__name__,
            tags=tags or {},
            extra=extra or {},
            breadcrumbs=self._trail(),
        )

    def capture_message(
        self,
        message: str,
        level: str = "info",
        tags: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Report a message at the given level."""
        if level not in LEVELS:
            raise ValueError(f"Unknown level: {level!r}. Valid levels: {list(LEVELS)}")
        self.captured += 1
        method = "critical" if level == "fatal" else level
        getattr(log, method)(
            "message_captured",
            service=self.service,
            message=message,
            tags=tags or {},
            extra=extra or {},
            breadcrumbs=self._trail(),
        )

    def _trail(self) -> list[dict[str, Any]]:
        return [asdict(b) for b in self._breadcrumbs]


def report_task_failure(
    telemetry: Telemetry,
    component: str,
    on_failure: Callable[[BaseException], None] | None = None,
) -> Callable[[asyncio.Task], None]:
    """Build a done-callback that reports a background task dying with an error.

    Cancelled tasks are not failures and are ignored.
    """

    def callback(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        telemetry.capture_exception(
            error,
            tags={"component": component, "event": "task_failed"},
            extra={"task": task.get_name()},
        )
        if on_failure is not None:
            on_failure(error)

    return callback


_telemetry: Telemetry | None = None


def get_telemetry() -> Telemetry:
    """Return the process-wide telemetry instance, creating it on first use."""
    global _telemetry
    if _telemetry is None:
        _telemetry = Telemetry()
    return _telemetry
