"""Health reporting and buffer threshold alerting.

HealthMonitor only reads from the buffer, playback and scheduler. Each
sample also feeds the threshold edge detector: reaching 80% arms it,
and falling below 20% while armed raises an alert and disarms it. A
cold start (never armed) therefore never alerts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from radio_buffer import logging as console
from radio_buffer.ringbuffer import BufferHealth, RingBuffer
from radio_buffer.telemetry import Telemetry, get_telemetry

if TYPE_CHECKING:
    from radio_buffer.playback import PacedConsumer
    from radio_buffer.scheduler import RebuildScheduler

log = structlog.get_logger()

ARM_PERCENTAGE = 80.0
ALERT_PERCENTAGE = 20.0
DEGRADED_PERCENTAGE = 30.0


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def classify(health: BufferHealth) -> HealthStatus:
    """Map buffer health to a status."""
    if health.is_healthy:
        return HealthStatus.HEALTHY
    if health.percentage >= DEGRADED_PERCENTAGE:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


class ThresholdArm:
    """Edge detector for 'buffer dropped after being healthy'."""

    def __init__(self, arm_at: float = ARM_PERCENTAGE, alert_below: float = ALERT_PERCENTAGE):
        self.arm_at = arm_at
        self.alert_below = alert_below
        self.armed = False

    def update(self, percentage: float) -> str:
        """Feed one sample.

        Returns:
            "armed" on reaching the arm level, "alert" on dropping below the
            alert level while armed, else "noop"
        """
        if percentage >= self.arm_at:
            if not self.armed:
                self.armed = True
                return "armed"
            return "noop"
        if self.armed and percentage < self.alert_below:
            self.armed = False
            return "alert"
        return "noop"


@dataclass(frozen=True)
class HealthReport:
    """One health sample, as served by the health endpoint."""

    status: HealthStatus
    buffer: BufferHealth
    playback: str
    next_rebuild: datetime

    @property
    def http_status(self) -> int:
        return 503 if self.status is HealthStatus.UNHEALTHY else 200

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "buffer": {
                "sizeMB": round(self.buffer.current_size / 1024 / 1024, 2),
                "targetMB": round(self.buffer.target_size / 1024 / 1024, 2),
                "percentage": self.buffer.percentage,
                "minutes": round(self.buffer.estimated_minutes),
            },
            "playback": self.playback,
            "nextRebuild": self.next_rebuild.isoformat(),
        }


class HealthMonitor:
    """Samples component state and raises buffer threshold alerts."""

    def __init__(
        self,
        buffer: RingBuffer,
        playback: PacedConsumer,
        scheduler: RebuildScheduler,
        *,
        sample_interval: float = 30.0,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.buffer = buffer
        self.playback = playback
        self.scheduler = scheduler
        self.sample_interval = sample_interval
        self.telemetry = telemetry or get_telemetry()
        self.threshold = ThresholdArm()
        self._task: asyncio.Task | None = None

    def snapshot(self) -> HealthReport:
        """Sample current health and update the threshold detector."""
        health = self.buffer.health()
        state = self.playback.state.value
        next_rebuild = self.scheduler.next_rebuild()

        self._update_threshold(health, state, next_rebuild)

        return HealthReport(
            status=classify(health),
            buffer=health,
            playback=state,
            next_rebuild=next_rebuild,
        )

    def _update_threshold(self, health: BufferHealth, state: str, next_rebuild: datetime) -> None:
        action = self.threshold.update(health.percentage)

        if action == "armed":
            log.info("buffer_threshold_armed", percentage=health.percentage)
            self.telemetry.add_breadcrumb(
                "buffer",
                "Buffer healthy threshold reached",
                level="info",
                data={"percentage": health.percentage},
            )
        elif action == "alert":
            log.error("buffer_threshold_alert", percentage=health.percentage)
            console.buffer_alert(health.percentage)
            self.telemetry.add_breadcrumb(
                "buffer",
                "Buffer health dropped below threshold",
                level="error",
                data={"percentage": health.percentage},
            )
            self.telemetry.capture_exception(
                RuntimeError("Buffer health dropped below 20% after being healthy"),
                tags={"component": "health", "event": "buffer_threshold"},
                extra={
                    "percentage": health.percentage,
                    "current_size": health.current_size,
                    "target_size": health.target_size,
                    "estimated_minutes": health.estimated_minutes,
                    "playback_state": state,
                    "next_rebuild": next_rebuild.isoformat(),
                },
            )

    async def _sample_loop(self) -> None:
        while True:
            try:
                report = self.snapshot()
                log.debug(
                    "health_sample",
                    status=report.status.value,
                    percentage=report.buffer.percentage,
                    playback=report.playback,
                )
            except Exception as e:
                log.error("health_sample_failed", error=str(e))
            await asyncio.sleep(self.sample_interval)

    def start(self) -> None:
        """Start the periodic sampler. No-op if already running."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sample_loop(), name="health-sampler")

    async def stop(self) -> None:
        """Cancel the periodic sampler."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
