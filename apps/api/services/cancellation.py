"""
Cooperative cancellation for generation jobs.

Two tiers:
- CancellationMonitor.check() is called between units of work.
- CancellationWatcher polls the same check on a background thread while a
  completion call is in flight and trips a CancellationToken, which closes
  the provider's HTTP stream.

The report row (status + active_job_id) is the only source of truth.
"""
import logging
import threading
from typing import Callable, List, Optional

from core.exceptions import GenerationCancelled
from models import ReportStatus

logger = logging.getLogger(__name__)

REASON_REPORT_MISSING = "report_missing"
REASON_STATUS_CHANGED = "status_changed"
REASON_SUPERSEDED = "superseded"


class CancellationToken:
    """Thread-safe cancel flag. Close callbacks run once, on the first cancel."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = REASON_STATUS_CHANGED) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_close_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason or REASON_STATUS_CHANGED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            # Closing an already-finished stream commonly raises; nothing to do
            logger.debug(f"Cancellation close callback failed: {e}")


class CancellationMonitor:
    """Reads persisted report state and raises GenerationCancelled when the job is no longer wanted."""

    def __init__(self, store, publisher=None):
        self.store = store
        self.publisher = publisher

    def check(self, report_id, user_id: str, job_id: Optional[str]) -> None:
        state = self.store.get_state(report_id)
        if state is None:
            raise GenerationCancelled(REASON_REPORT_MISSING, f"Report {report_id} no longer exists")

        if state.status != ReportStatus.PROCESSING:
            if self.publisher is not None:
                from services.event_channel import EVENT_AI_STREAM
                self.publisher.publish(user_id, EVENT_AI_STREAM, {
                    "reportId": str(report_id),
                    "chunk": f"\nProcess stopped (status: {state.status}). Aborting job.\n",
                })
            raise GenerationCancelled(REASON_STATUS_CHANGED, f"Report status is {state.status}")

        # An empty active_job_id means nobody claimed the report; not a takeover
        if job_id and state.active_job_id and str(state.active_job_id) != str(job_id):
            logger.warning(f"Job {job_id} superseded by {state.active_job_id} for report {report_id}")
            raise GenerationCancelled(REASON_SUPERSEDED, f"Job {job_id} was superseded by {state.active_job_id}")


class CancellationWatcher:
    """
    Polls the monitor on a daemon thread for the lifetime of a ``with`` block.

    Usage:
        with CancellationWatcher(monitor, report_id, user_id, job_id, interval) as token:
            service.complete(request, cancel_token=token)
    """

    def __init__(
        self,
        monitor: CancellationMonitor,
        report_id,
        user_id: str,
        job_id: Optional[str],
        interval_s: float,
        token: Optional[CancellationToken] = None,
    ):
        self.monitor = monitor
        self.report_id = report_id
        self.user_id = user_id
        self.job_id = job_id
        self.interval_s = interval_s
        self.token = token or CancellationToken()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> CancellationToken:
        self._thread = threading.Thread(
            target=self._poll,
            name=f"cancel-watch-{self.job_id}",
            daemon=True,
        )
        self._thread.start()
        return self.token

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_s + 1.0)
        return False

    def _poll(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.monitor.check(self.report_id, self.user_id, self.job_id)
            except GenerationCancelled as e:
                logger.info(f"Cancellation detected for report {self.report_id} ({e.reason}); aborting completion")
                self.token.cancel(e.reason)
                return
            except Exception as e:
                logger.warning(f"Cancellation poll failed for report {self.report_id}: {e}")
