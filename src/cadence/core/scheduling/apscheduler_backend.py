"""APScheduler-based timer backend.

Wraps APScheduler 3.x ``BackgroundScheduler`` to provide the
``TimerBackend`` protocol.  Each armed trigger becomes a one-shot ``date``
job executed on a bounded worker pool, instead of one thread per trigger.

Requires the ``[apscheduler]`` extra::

    pip install cadence[apscheduler]

.. note::

    For most use cases the zero-dependency ``ThreadTimerBackend`` is
    sufficient.  Use this backend when many schedules are enabled at once
    and a fixed pool of worker threads is preferable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from cadence.core.logging import get_logger

from .models import utc_now
from .protocol import BackendHealth, TimerCallback

logger = get_logger(__name__)


def _require_apscheduler():
    """Validate that apscheduler is installed."""
    try:
        from apscheduler.executors.pool import ThreadPoolExecutor
        from apscheduler.schedulers.background import BackgroundScheduler

        return BackgroundScheduler, ThreadPoolExecutor
    except ImportError:
        raise ImportError(
            "APScheduler is required for APSchedulerTimerBackend. "
            "Install it with: pip install cadence[apscheduler]"
        ) from None


class APSchedulerTimerHandle:
    """Cancellation handle for one APScheduler date job."""

    def __init__(self, backend: APSchedulerTimerBackend, job_id: str) -> None:
        self._backend = backend
        self.job_id = job_id

    def cancel(self) -> None:
        self._backend._remove_job(self.job_id)


class APSchedulerTimerBackend:
    """APScheduler-based timer backend.

    Example::

        >>> backend = APSchedulerTimerBackend(max_workers=4)
        >>> handle = backend.schedule(fire_at, callback, name="schedule-id")
        >>> handle.cancel()
        >>> backend.shutdown()
    """

    name: str = "apscheduler"

    def __init__(self, max_workers: int = 10) -> None:
        BackgroundScheduler, ThreadPoolExecutor = _require_apscheduler()  # noqa: N806
        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": False, "max_instances": 1, "misfire_grace_time": None},
            timezone="UTC",
        )
        self._max_workers = max_workers
        self._fired_count: int = 0
        self._last_fired: datetime | None = None

    def _ensure_started(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("apscheduler_backend_started", max_workers=self._max_workers)

    # ------------------------------------------------------------------
    # TimerBackend protocol
    # ------------------------------------------------------------------

    def schedule(
        self,
        fire_at: datetime,
        callback: TimerCallback,
        name: str | None = None,
    ) -> APSchedulerTimerHandle:
        """Add a one-shot ``date`` job running *callback* at *fire_at*."""
        job_id = f"cadence-{name or 'timer'}-{uuid4().hex[:12]}"

        def _fire() -> None:
            self._fired_count += 1
            self._last_fired = utc_now()
            try:
                callback()
            except Exception:
                logger.exception("timer_callback_failed", timer=name, job_id=job_id)

        self._ensure_started()
        self._scheduler.add_job(
            _fire,
            "date",
            run_date=max(fire_at, utc_now()),
            id=job_id,
            replace_existing=True,
        )
        return APSchedulerTimerHandle(self, job_id)

    def _remove_job(self, job_id: str) -> None:
        # Imported lazily with the rest of apscheduler.
        from apscheduler.jobstores.base import JobLookupError

        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass  # already fired or removed

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler, waiting for running jobs if *wait*."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("apscheduler_backend_stopped")

    def health(self) -> dict[str, Any]:
        """Return backend health status."""
        running = self._scheduler.running if hasattr(self._scheduler, "running") else False
        return BackendHealth(
            healthy=True,
            backend=self.name,
            pending=len(self._scheduler.get_jobs()) if running else 0,
            fired_count=self._fired_count,
            last_fired=self._last_fired,
            extra={"running": bool(running), "max_workers": self._max_workers},
        ).to_dict()
