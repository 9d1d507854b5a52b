"""
Background order jobs (fetch / enrich / prefetch), one per named stream.

Starting a job on a stream signals the previous job to stop, waits a short
grace period for it to finish its current group, then hard-cancels it.
Jobs cooperate through ``handle.should_stop`` and report progress through
``handle.update_progress``.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import config
from services.order_models import iso_utc, utcnow

LOGGER = logging.getLogger(__name__)

JobFactory = Callable[["OrderJobHandle"], Awaitable[Any]]


class OrderJobHandle:
    def __init__(self, stream: str):
        self.stream = stream
        self.job_id = uuid.uuid4().hex[:12]
        self.started_at = iso_utc(utcnow())
        self.finished_at: Optional[str] = None
        self.status = "running"
        self.progress: Dict[str, Any] = {"done": 0, "total": 0}
        self.result: Any = None
        self.error: Optional[str] = None
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    def should_stop(self) -> bool:
        return self._stop_requested

    def cancel(self) -> None:
        self._stop_requested = True

    def update_progress(self, done: int, total: int, **extra: Any) -> None:
        self.progress = {"done": done, "total": total, **extra}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait(self, timeout: Optional[float] = None) -> Any:
        """Wait for the job and return its result; raises asyncio.TimeoutError on timeout."""
        if self._task is None:
            return self.result
        await asyncio.wait_for(asyncio.shield(self._task), timeout)
        return self.result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stream": self.stream,
            "jobId": self.job_id,
            "status": self.status,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "progress": dict(self.progress),
            "error": self.error,
            "cancelRequested": self._stop_requested,
        }


class OrderJobManager:
    def __init__(self, grace_seconds: float = config.JOB_CANCEL_GRACE_SECONDS):
        self.grace_seconds = max(0.0, float(grace_seconds))
        self._jobs: Dict[str, OrderJobHandle] = {}

    def get(self, stream: str) -> Optional[OrderJobHandle]:
        return self._jobs.get(stream)

    async def start(self, stream: str, factory: JobFactory) -> OrderJobHandle:
        await self.cancel(stream)
        handle = OrderJobHandle(stream)
        handle._task = asyncio.create_task(self._run(handle, factory), name=f"order-job-{stream}")
        self._jobs[stream] = handle
        LOGGER.info(f"[Jobs] Started {stream} job {handle.job_id}")
        return handle

    async def cancel(self, stream: str) -> bool:
        """Signal the running job on ``stream`` and wait for it to wind down. Returns True if one was running."""
        prior = self._jobs.get(stream)
        if prior is None or not prior.running:
            return False
        prior.cancel()
        done, _pending = await asyncio.wait({prior._task}, timeout=self.grace_seconds)
        if not done:
            LOGGER.warning(f"[Jobs] {stream} job {prior.job_id} ignored stop for {self.grace_seconds}s; cancelling")
            prior._task.cancel()
            await asyncio.wait({prior._task})
        return True

    async def shutdown(self) -> None:
        for stream in list(self._jobs):
            await self.cancel(stream)

    def snapshot(self) -> Dict[str, Any]:
        return {stream: handle.snapshot() for stream, handle in self._jobs.items()}

    async def _run(self, handle: OrderJobHandle, factory: JobFactory) -> None:
        try:
            handle.result = await factory(handle)
            handle.status = "cancelled" if handle.should_stop() else "completed"
        except asyncio.CancelledError:
            handle.status = "cancelled"
            raise
        except Exception as exc:
            handle.status = "failed"
            handle.error = str(exc)
            LOGGER.error(f"[Jobs] {handle.stream} job {handle.job_id} failed: {exc}", exc_info=True)
        finally:
            handle.finished_at = iso_utc(utcnow())
            LOGGER.info(f"[Jobs] {handle.stream} job {handle.job_id} finished with status={handle.status}")
