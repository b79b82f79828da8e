"""
Connection status poll loop.

ConnectionStatusMonitor is an explicit state machine driven by an injected
scheduler, so tests advance time deterministically:

    IDLE -> POLLING -> WAITING -> POLLING -> ...      (healthy)
                    -> BACKOFF -> POLLING -> ...      (error or 429)
    any -> SUSPENDED while hidden or offline
    any -> STOPPED after stop()

The scheduler must provide ``now()`` (epoch seconds) and
``call_later(delay, callback)`` returning a handle with ``cancel()``.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import requests

from accounting_sync.api.accounting_api import NetworkTransientError, parse_retry_after

DEFAULT_BASE_INTERVAL = 300.0
DEFAULT_JITTER_FACTOR = 0.2
DEFAULT_MIN_BACKOFF = 10.0
DEFAULT_MAX_BACKOFF = 1800.0

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    WAITING = "waiting"
    BACKOFF = "backoff"
    SUSPENDED = "suspended"
    STOPPED = "stopped"


@dataclass
class StatusResponse:
    """One answer from the status endpoint."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    payload: Optional[dict[str, Any]] = None


class ThreadingTimerScheduler:
    """Scheduler backed by threading.Timer for real use."""

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class HttpStatusFetcher:
    """
    Fetch connection status from an HTTP endpoint with requests.

    Network failures surface as NetworkTransientError; an unreadable body
    yields a response without payload.
    """

    def __init__(
        self,
        url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        headers: Optional[dict[str, str]] = None,
    ):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = headers or {}

    def __call__(self) -> StatusResponse:
        try:
            response = self.session.get(
                self.url, headers=self.headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NetworkTransientError(f"Status request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None
        return StatusResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            payload=payload if isinstance(payload, dict) else None,
        )


class ConnectionStatusMonitor:
    """
    Polls connection status with jitter, error backoff and Retry-After.

    on_change(connected, payload) is called once per connected/disconnected
    transition. The first observation only establishes the baseline.

    Usage:
        monitor = ConnectionStatusMonitor(fetcher, ThreadingTimerScheduler(),
                                          on_change=notify)
        monitor.start()
        monitor.set_visibility(False)   # suspends
        monitor.set_visibility(True)    # polls again right away
        monitor.stop()
    """

    def __init__(
        self,
        fetch_status: Callable[[], StatusResponse],
        scheduler: Any,
        on_change: Optional[Callable[[bool, Optional[dict[str, Any]]], None]] = None,
        rng: Callable[[], float] = random.random,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        jitter_factor: float = DEFAULT_JITTER_FACTOR,
        min_backoff: float = DEFAULT_MIN_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
    ):
        self.fetch_status = fetch_status
        self.scheduler = scheduler
        self.on_change = on_change
        self.rng = rng
        self.base_interval = base_interval
        self.jitter_factor = jitter_factor
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff

        self.state = MonitorState.IDLE
        self.connected: Optional[bool] = None
        self.last_payload: Optional[dict[str, Any]] = None
        self.backoff = 0.0
        self.retry_after_until: Optional[float] = None
        self.visible = True
        self.online = True
        self.disposed = False
        self._timer: Any = None
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Any, fetch_status, scheduler, on_change=None):
        """Build a monitor from MonitorSettings."""
        return cls(
            fetch_status,
            scheduler,
            on_change=on_change,
            base_interval=settings.base_interval,
            jitter_factor=settings.jitter_factor,
            min_backoff=settings.min_backoff,
            max_backoff=settings.max_backoff,
        )

    @property
    def is_active(self) -> bool:
        return self.visible and self.online

    def start(self) -> None:
        """Poll right away, or suspend if the client is hidden or offline."""
        with self._lock:
            if self.disposed:
                raise RuntimeError("Monitor has been stopped")
            if self.state != MonitorState.IDLE:
                return
            if not self.is_active:
                self.state = MonitorState.SUSPENDED
                return
            self.state = MonitorState.WAITING
            self._schedule(0.0)

    def stop(self) -> None:
        """Cancel the pending timer. No callback fires afterwards."""
        with self._lock:
            self._cancel_timer()
            self.disposed = True
            self.state = MonitorState.STOPPED

    def set_visibility(self, visible: bool) -> None:
        with self._lock:
            self.visible = visible
            self._environment_changed()

    def set_online(self, online: bool) -> None:
        with self._lock:
            self.online = online
            self._environment_changed()

    def poll_delay(self) -> float:
        """Base interval plus up to jitter_factor of random jitter."""
        return self.base_interval + self.base_interval * self.jitter_factor * self.rng()

    def next_backoff(self) -> float:
        return min(self.max_backoff, max(self.backoff, self.min_backoff) * 2)

    def _environment_changed(self) -> None:
        if self.disposed or self.state == MonitorState.IDLE:
            return
        if not self.is_active:
            if self.state != MonitorState.SUSPENDED:
                logger.debug("Status polling suspended")
            self._cancel_timer()
            self.state = MonitorState.SUSPENDED
            return
        if self.state == MonitorState.SUSPENDED:
            delay = 0.0
            if self.retry_after_until is not None:
                delay = max(0.0, self.retry_after_until - self.scheduler.now())
            logger.debug(f"Status polling resumed (next poll in {delay:.0f}s)")
            self.state = MonitorState.BACKOFF if delay > 0 else MonitorState.WAITING
            self._schedule(delay)

    def _schedule(self, delay: float) -> None:
        self._cancel_timer()
        self._timer = self.scheduler.call_later(delay, self._tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        with self._lock:
            self._timer = None
            if self.disposed:
                return
            if not self.is_active:
                self.state = MonitorState.SUSPENDED
                return
            self.state = MonitorState.POLLING

            try:
                response = self.fetch_status()
            except NetworkTransientError as e:
                logger.warning(f"Status poll failed: {e}")
                self._handle_error()
                return

            # stop() or a visibility change may have run inside the fetch
            if self.disposed or self.state != MonitorState.POLLING:
                return

            if response.status_code == 429:
                self._handle_rate_limit(response)
            elif response.status_code >= 400 or response.payload is None:
                logger.warning(f"Status poll returned HTTP {response.status_code}")
                self._handle_error()
            else:
                self._handle_success(response.payload)

    def _handle_success(self, payload: dict[str, Any]) -> None:
        self.backoff = 0.0
        self.retry_after_until = None
        self.last_payload = payload
        connected = bool(payload.get("connected"))
        previous = self.connected
        self.connected = connected

        self.state = MonitorState.WAITING
        self._schedule(self.poll_delay())

        if previous is not None and previous != connected and self.on_change:
            logger.info(
                "Connection " + ("restored" if connected else "lost")
                + (f": {payload.get('reason')}" if payload.get("reason") else "")
            )
            self.on_change(connected, payload)

    def _handle_error(self) -> None:
        self.backoff = self.next_backoff()
        self.state = MonitorState.BACKOFF
        self._schedule(self.backoff)

    def _handle_rate_limit(self, response: StatusResponse) -> None:
        header = next(
            (v for k, v in response.headers.items() if k.lower() == "retry-after"),
            None,
        )
        now = self.scheduler.now()
        retry_after = parse_retry_after(
            header, now=datetime.fromtimestamp(now, timezone.utc)
        )
        if retry_after is None:
            self._handle_error()
            return
        logger.info(f"Status endpoint rate limited, retrying in {retry_after:.0f}s")
        self.retry_after_until = now + retry_after
        self.state = MonitorState.BACKOFF
        self._schedule(retry_after)
