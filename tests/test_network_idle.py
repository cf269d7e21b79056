"""Tests for the network idle detector, driven by a pyee emitter standing in for a page."""

import asyncio

import pytest
from pyee import EventEmitter

from network_idle import (
    IdleState,
    NetworkIdleTimeout,
    NetworkIdleWatcher,
    default_navigation_timeout,
    wait_for_network_idle,
)

EVENTS = ("request", "requestfinished", "requestfailed")


class FakePage(EventEmitter):
    default_navigation_timeout = 1000


def listener_count(page) -> int:
    return sum(len(page.listeners(event)) for event in EVENTS)


def now() -> float:
    return asyncio.get_running_loop().time()


@pytest.mark.asyncio
async def test_no_traffic_resolves_after_idle_time():
    page = FakePage()
    start = now()

    await wait_for_network_idle(page, idle_time=50, timeout=1000)

    elapsed = now() - start
    assert 0.045 <= elapsed < 0.5
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_quiet_timer_rearmed_after_last_request_finishes():
    """started at 0, finished at 10ms, 50ms quiet period -> idle at ~60ms."""
    page = FakePage()
    loop = asyncio.get_running_loop()
    start = now()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=50, timeout=300))
    await asyncio.sleep(0)
    page.emit("request", object())
    loop.call_later(0.01, page.emit, "requestfinished", object())

    await task

    elapsed = now() - start
    assert 0.055 <= elapsed < 0.3
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_busy_network_times_out():
    """Two requests that never finish keep the page busy until the deadline."""
    page = FakePage()
    loop = asyncio.get_running_loop()
    start = now()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=50, timeout=100))
    await asyncio.sleep(0)
    page.emit("request", object())
    loop.call_later(0.02, page.emit, "request", object())

    with pytest.raises(NetworkIdleTimeout, match="Waiting for network idle timed out"):
        await task

    assert now() - start >= 0.095
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_failed_requests_count_as_done():
    page = FakePage()
    loop = asyncio.get_running_loop()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=30, timeout=500))
    await asyncio.sleep(0)
    page.emit("request", object())
    page.emit("request", object())
    loop.call_later(0.01, page.emit, "requestfailed", object())
    loop.call_later(0.02, page.emit, "requestfinished", object())

    await task
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_finish_without_inflight_is_ignored():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=50, timeout=1000)

    task = asyncio.ensure_future(watcher.wait())
    await asyncio.sleep(0)
    quiet_handle = watcher._quiet_handle
    assert quiet_handle is not None

    page.emit("requestfinished", object())
    page.emit("requestfailed", object())

    assert watcher.in_flight == 0
    assert watcher._quiet_handle is quiet_handle
    assert watcher.state is IdleState.QUIET

    await task


@pytest.mark.asyncio
async def test_threshold_crossing_cancels_and_rearms_quiet_timer():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=50, max_inflight=1, timeout=1000)

    task = asyncio.ensure_future(watcher.wait())
    await asyncio.sleep(0)
    initial = watcher._quiet_handle

    # Within the threshold: the running quiet timer is untouched.
    page.emit("request", object())
    assert watcher.in_flight == 1
    assert watcher._quiet_handle is initial
    assert watcher.state is IdleState.QUIET

    page.emit("request", object())
    assert watcher.in_flight == 2
    assert watcher._quiet_handle is None
    assert watcher.state is IdleState.BUSY

    # Still busy on further starts.
    page.emit("request", object())
    assert watcher.state is IdleState.BUSY

    page.emit("requestfinished", object())
    assert watcher.state is IdleState.BUSY
    page.emit("requestfinished", object())
    assert watcher.in_flight == 1
    assert watcher.state is IdleState.QUIET
    assert watcher._quiet_handle is not None
    assert watcher._quiet_handle is not initial
    assert initial.cancelled()

    # Already at or below the threshold: the fresh timer keeps running.
    rearmed = watcher._quiet_handle
    page.emit("requestfinished", object())
    assert watcher.in_flight == 0
    assert watcher._quiet_handle is rearmed
    assert not rearmed.cancelled()

    await task
    assert watcher.state is IdleState.SETTLED


@pytest.mark.asyncio
async def test_finish_within_threshold_keeps_quiet_timer():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=50, max_inflight=1, timeout=1000)

    task = asyncio.ensure_future(watcher.wait())
    await asyncio.sleep(0)
    initial = watcher._quiet_handle

    page.emit("request", object())
    page.emit("requestfinished", object())

    assert watcher.in_flight == 0
    assert watcher._quiet_handle is initial
    assert not initial.cancelled()

    await task


@pytest.mark.asyncio
async def test_request_finishing_within_threshold_does_not_delay_idle():
    """max_inflight=1: a request at 0 finishing at 45ms must not push idle past ~50ms."""
    page = FakePage()
    loop = asyncio.get_running_loop()
    start = now()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=50, max_inflight=1, timeout=1000))
    await asyncio.sleep(0)
    page.emit("request", object())
    loop.call_later(0.045, page.emit, "requestfinished", object())

    await task

    elapsed = now() - start
    assert 0.045 <= elapsed < 0.085


@pytest.mark.asyncio
async def test_background_polling_within_threshold_reaches_idle():
    """One poll every 15ms, each finishing 5ms later, never exceeds max_inflight=1."""
    page = FakePage()
    loop = asyncio.get_running_loop()
    for i in range(40):
        loop.call_later(i * 0.015, page.emit, "request", object())
        loop.call_later(i * 0.015 + 0.005, page.emit, "requestfinished", object())

    await wait_for_network_idle(page, idle_time=50, max_inflight=1, timeout=300)

    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_trailing_requests_within_threshold_are_idle():
    page = FakePage()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=30, max_inflight=2, timeout=500))
    await asyncio.sleep(0)
    page.emit("request", object())
    page.emit("request", object())

    await task
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_late_events_after_settlement_have_no_effect():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=20, timeout=500)

    await watcher.wait()
    page.emit("request", object())
    page.emit("requestfinished", object())

    assert watcher.in_flight == 0
    assert watcher.state is IdleState.SETTLED
    assert listener_count(page) == 0


@pytest.mark.asyncio
async def test_cancellation_releases_listeners_and_timers():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=50, timeout=1000)

    task = asyncio.ensure_future(watcher.wait())
    await asyncio.sleep(0)
    page.emit("request", object())
    assert listener_count(page) == 3
    deadline = watcher._deadline_handle

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert listener_count(page) == 0
    assert deadline.cancelled()
    assert watcher.state is IdleState.SETTLED


@pytest.mark.asyncio
async def test_watcher_is_single_use():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=10, timeout=500)
    await watcher.wait()

    with pytest.raises(RuntimeError):
        await watcher.wait()


@pytest.mark.asyncio
async def test_default_timeout_comes_from_page():
    page = FakePage()
    page.default_navigation_timeout = 60
    start = now()

    task = asyncio.ensure_future(wait_for_network_idle(page, idle_time=50))
    await asyncio.sleep(0)
    page.emit("request", object())

    with pytest.raises(NetworkIdleTimeout):
        await task
    assert 0.055 <= now() - start < 0.5


@pytest.mark.asyncio
async def test_zero_timeout_disables_deadline():
    page = FakePage()
    watcher = NetworkIdleWatcher(page, idle_time=10, timeout=0)

    await watcher.wait()
    assert watcher._deadline_handle is None


def test_default_navigation_timeout_fallback():
    assert default_navigation_timeout(object()) == 30000
    assert default_navigation_timeout(FakePage()) == 1000


def test_timeout_error_is_a_timeout():
    assert isinstance(NetworkIdleTimeout(), TimeoutError)
