"""
accounting_sync.monitor - Connection status poll loop

Reports connection health with jitter, backoff and visibility awareness.
"""

from accounting_sync.monitor.status import (
    ConnectionStatusMonitor,
    HttpStatusFetcher,
    MonitorState,
    StatusResponse,
    ThreadingTimerScheduler,
)

__all__ = [
    "ConnectionStatusMonitor",
    "HttpStatusFetcher",
    "MonitorState",
    "StatusResponse",
    "ThreadingTimerScheduler",
]
