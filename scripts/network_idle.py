"""
Network idle detection for Playwright pages.

Waits until the number of in-flight requests on a page has stayed at or below
`max_inflight` for `idle_time` milliseconds, or fails once `timeout` elapses.

Unlike Playwright's built-in `wait_until="networkidle"`, this can be awaited at
any point (e.g. together with a click that triggers XHRs), and tolerates a few
long-running background requests via `max_inflight`.
"""

import asyncio
import contextlib
from enum import Enum

DEFAULT_IDLE_TIME = 500  # ms
DEFAULT_NAVIGATION_TIMEOUT = 30000  # ms, Playwright's own default

REQUEST_STARTED = "request"
REQUEST_FINISHED = "requestfinished"
REQUEST_FAILED = "requestfailed"


class NetworkIdleTimeout(TimeoutError):
    """Raised when the page did not become idle before the deadline."""

    def __init__(self, message: str = "Waiting for network idle timed out"):
        super().__init__(message)


class IdleState(Enum):
    QUIET = "quiet"      # quiet timer armed, counter <= max_inflight
    BUSY = "busy"        # counter > max_inflight, no quiet timer
    SETTLED = "settled"  # outcome delivered, everything released


def default_navigation_timeout(page) -> float:
    """Return the page's default navigation timeout in ms.

    Playwright does not expose a public getter, so this reads its timeout
    settings and falls back to Playwright's documented default.
    """
    value = getattr(page, "default_navigation_timeout", None)
    if value is not None:
        return value
    try:
        return page._impl_obj._timeout_settings.navigation_timeout()
    except Exception:
        return DEFAULT_NAVIGATION_TIMEOUT


class NetworkIdleWatcher:
    """Single-use network idle detector bound to one page.

    The page only needs `on(event, fn)` and `remove_listener(event, fn)`,
    which both Playwright pages and `pyee` emitters provide.
    """

    def __init__(self, page, idle_time: float = DEFAULT_IDLE_TIME, max_inflight: int = 0,
                 timeout: float | None = None):
        self._page = page
        self._idle_time = idle_time
        self._max_inflight = max_inflight
        self._timeout = default_navigation_timeout(page) if timeout is None else timeout

        self._in_flight = 0
        self._state = IdleState.QUIET
        self._loop: asyncio.AbstractEventLoop | None = None
        self._done: asyncio.Future | None = None
        self._quiet_handle: asyncio.TimerHandle | None = None
        self._deadline_handle: asyncio.TimerHandle | None = None
        self._cleanup = contextlib.ExitStack()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def state(self) -> IdleState:
        return self._state

    async def wait(self) -> None:
        """Block until the page is idle; raise NetworkIdleTimeout on deadline."""
        if self._done is not None:
            raise RuntimeError("NetworkIdleWatcher can only be awaited once")

        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()
        try:
            self._start()
            await self._done
        finally:
            # Also covers cancellation of the awaiting task.
            self._release()

    def _start(self) -> None:
        if self._timeout:
            self._deadline_handle = self._loop.call_later(self._timeout / 1000, self._on_deadline)
            self._cleanup.callback(self._deadline_handle.cancel)

        self._arm_quiet()
        self._cleanup.callback(self._cancel_quiet)

        for event, handler in (
            (REQUEST_STARTED, self._on_request),
            (REQUEST_FINISHED, self._on_request_done),
            (REQUEST_FAILED, self._on_request_done),
        ):
            self._page.on(event, handler)
            self._cleanup.callback(self._page.remove_listener, event, handler)

    def _arm_quiet(self) -> None:
        self._cancel_quiet()
        self._quiet_handle = self._loop.call_later(self._idle_time / 1000, self._on_quiet)
        self._state = IdleState.QUIET

    def _cancel_quiet(self) -> None:
        if self._quiet_handle is not None:
            self._quiet_handle.cancel()
            self._quiet_handle = None

    def _on_request(self, *_args) -> None:
        self._in_flight += 1
        if self._in_flight == self._max_inflight + 1:
            self._cancel_quiet()
            self._state = IdleState.BUSY

    def _on_request_done(self, *_args) -> None:
        # Late or duplicate finish/fail callbacks are tolerated.
        if self._in_flight == 0:
            return
        self._in_flight -= 1
        # Only the drop back from max_inflight + 1 restarts the quiet period.
        if self._in_flight == self._max_inflight:
            self._arm_quiet()

    def _on_quiet(self) -> None:
        self._quiet_handle = None
        self._settle(None)

    def _on_deadline(self) -> None:
        self._settle(NetworkIdleTimeout())

    def _settle(self, error: Exception | None) -> None:
        if self._state is IdleState.SETTLED:
            return
        self._release()
        if self._done.done():
            return
        if error is None:
            self._done.set_result(None)
        else:
            self._done.set_exception(error)

    def _release(self) -> None:
        self._state = IdleState.SETTLED
        self._cleanup.close()


async def wait_for_network_idle(page, *, idle_time: float = DEFAULT_IDLE_TIME, max_inflight: int = 0,
                                timeout: float | None = None) -> None:
    """Wait until `page` has had at most `max_inflight` requests in flight for `idle_time` ms.

    Args:
        page: Playwright page (or any emitter of request/requestfinished/requestfailed)
        idle_time: Quiet period in ms
        max_inflight: In-flight requests still considered idle
        timeout: Overall deadline in ms; None uses the page's default navigation
            timeout, 0 disables the deadline

    Raises:
        NetworkIdleTimeout: if the deadline elapses first
    """
    watcher = NetworkIdleWatcher(page, idle_time=idle_time, max_inflight=max_inflight, timeout=timeout)
    await watcher.wait()
