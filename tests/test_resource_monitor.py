"""
Resource monitor: admission stages, in-flight peak sampling, restart policy.
"""
import asyncio
import logging

import pytest

from errors import AdmissionRejection
from resource_monitor import ResourceMonitor


def test_pre_check_rejects_over_limit(monitor, memory):
    memory.mb = 401
    with pytest.raises(AdmissionRejection) as ei:
        monitor.check_admission(active_jobs=0, max_jobs=1)
    assert ei.value.stage == "pre-check"
    assert ei.value.to_json() == {
        "error": "Worker overloaded", "stage": "pre-check", "ramUsage": 401, "ramLimit": 400,
    }


def test_concurrency_rejects_when_full(monitor):
    with pytest.raises(AdmissionRejection) as ei:
        monitor.check_admission(active_jobs=1, max_jobs=1)
    assert ei.value.stage == "concurrency"
    assert ei.value.details == {"activeJobs": 1, "maxJobs": 1}


def test_memory_is_checked_before_concurrency(monitor, memory):
    memory.mb = 999
    with pytest.raises(AdmissionRejection) as ei:
        monitor.check_admission(active_jobs=5, max_jobs=1)
    assert ei.value.stage == "pre-check"


def test_admits_and_returns_reading(monitor):
    assert monitor.check_admission(active_jobs=0, max_jobs=1) == 100


async def test_sampler_tracks_peak_and_stops(monitor, memory):
    sampler = monitor.start_sampling()
    await asyncio.sleep(0.02)
    memory.mb = 520
    await asyncio.sleep(0.02)
    memory.mb = 110
    await asyncio.sleep(0.02)

    peak = await sampler.stop()
    assert peak == 520
    assert not sampler.running

    calls = memory.calls
    await asyncio.sleep(0.03)
    assert memory.calls == calls


async def test_sampler_survives_failing_reads(memory):
    state = {"broken": False}

    def flaky():
        if state["broken"]:
            raise OSError("rss unavailable")
        return memory()

    monitor = ResourceMonitor(limit_mb=400, sample=flaky, sample_interval=0.005)
    sampler = monitor.start_sampling()
    memory.mb = 480
    await asyncio.sleep(0.02)
    state["broken"] = True
    await asyncio.sleep(0.02)

    assert sampler.running
    assert await sampler.stop() == 480


async def test_peak_over_limit_restarts_exactly_once(monitor, exits, caplog):
    with caplog.at_level(logging.WARNING, logger="monitor"):
        assert await monitor.after_job(900) is True
        assert await monitor.after_job(950) is False
        await asyncio.sleep(0.01)

    assert exits.codes == [1]
    assert monitor.restart_scheduled
    assert "Scheduling restart" in caplog.text
    assert "900MB" in caplog.text


async def test_peak_under_limit_does_nothing(monitor, exits):
    assert await monitor.after_job(400) is False
    await asyncio.sleep(0.01)
    assert exits.codes == []


async def test_grace_delay_precedes_exit(memory, exits):
    mon = ResourceMonitor(limit_mb=400, sample=memory, grace=0.05, terminate=exits)
    await mon.after_job(800)
    await asyncio.sleep(0.01)
    assert exits.codes == []
    await asyncio.sleep(0.08)
    assert exits.codes == [1]


async def test_periodic_check_catches_slow_leak(memory, exits):
    mon = ResourceMonitor(limit_mb=400, sample=memory, check_interval=0.01, grace=0, terminate=exits)
    mon.start_periodic()
    await asyncio.sleep(0.03)
    assert exits.codes == []

    memory.mb = 700
    await asyncio.sleep(0.05)
    await mon.stop_periodic()
    assert exits.codes == [1]
    assert "periodic" in str(mon.restart_reason)


async def test_check_now_under_limit(monitor):
    assert await monitor.check_now() is False
    assert not monitor.restart_scheduled
