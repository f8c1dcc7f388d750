"""Tests for telemetry breadcrumbs and failure reporting."""

import asyncio

import pytest
from structlog.testing import capture_logs

from radio_buffer.telemetry import Telemetry, get_telemetry, report_task_failure


def test_breadcrumbs_are_recorded_in_order():
    telemetry = Telemetry()
    telemetry.add_breadcrumb("playback", "Player starting")
    telemetry.add_breadcrumb("buffer", "Buffer low", level="warning", data={"buf_size": 10})

    crumbs = telemetry.breadcrumbs
    assert [c.message for c in crumbs] == ["Player starting", "Buffer low"]
    assert crumbs[1].level == "warning"
    assert crumbs[1].data == {"buf_size": 10}


def test_breadcrumbs_are_bounded():
    """Only the newest max_breadcrumbs are kept."""
    telemetry = Telemetry(max_breadcrumbs=3)
    for i in range(5):
        telemetry.add_breadcrumb("test", f"crumb {i}")

    assert [c.message for c in telemetry.breadcrumbs] == ["crumb 2", "crumb 3", "crumb 4"]


def test_breadcrumbs_property_returns_copy():
    telemetry = Telemetry()
    telemetry.add_breadcrumb("test", "one")
    telemetry.breadcrumbs.clear()
    assert len(telemetry.breadcrumbs) == 1


def test_capture_exception_logs_with_trail():
    """Captured exceptions carry tags, extra and breadcrumbs."""
    telemetry = Telemetry()
    telemetry.add_breadcrumb("playback", "Player starting")

    with capture_logs() as logs:
        telemetry.capture_exception(
            ValueError("boom"), tags={"component": "playback"}, extra={"state": "playing"}
        )

    assert telemetry.captured == 1
    entry = logs[0]
    assert entry["event"] == "exception_captured"
    assert entry["log_level"] == "error"
    assert entry["error"] == "boom"
    assert entry["error_type"] == "ValueError"
    assert entry["tags"] == {"component": "playback"}
    assert entry["extra"] == {"state": "playing"}
    assert entry["breadcrumbs"][0]["message"] == "Player starting"


def test_capture_message_levels():
    """fatal maps to critical; unknown levels are rejected."""
    telemetry = Telemetry()

    with capture_logs() as logs:
        telemetry.capture_message("Stream connect failed", "warning")
        telemetry.capture_message("Everything is on fire", "fatal")

    assert [e["log_level"] for e in logs] == ["warning", "critical"]
    assert logs[0]["message"] == "Stream connect failed"

    with pytest.raises(ValueError, match="Unknown level"):
        telemetry.capture_message("nope", "loud")


def test_get_telemetry_is_shared():
    assert get_telemetry() is get_telemetry()


@pytest.mark.asyncio
async def test_report_task_failure_reports_errors():
    """A task dying with an error is captured and forwarded."""
    telemetry = Telemetry()
    failures = []

    async def explode():
        raise RuntimeError("task died")

    task = asyncio.create_task(explode(), name="exploder")
    task.add_done_callback(report_task_failure(telemetry, "test", failures.append))
    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert telemetry.captured == 1
    assert len(failures) == 1
    assert str(failures[0]) == "task died"


@pytest.mark.asyncio
async def test_report_task_failure_ignores_cancel_and_success():
    telemetry = Telemetry()
    failures = []

    async def forever():
        await asyncio.Event().wait()

    async def fine():
        return 1

    cancelled = asyncio.create_task(forever())
    cancelled.add_done_callback(report_task_failure(telemetry, "test", failures.append))
    done = asyncio.create_task(fine())
    done.add_done_callback(report_task_failure(telemetry, "test", failures.append))

    await done
    cancelled.cancel()
    with pytest.raises(asyncio.CancelledError):
        await cancelled
    await asyncio.sleep(0)

    assert telemetry.captured == 0
    assert failures == []
