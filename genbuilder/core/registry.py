from __future__ import annotations
import asyncio
import logging
import signal
import threading
from dataclasses import dataclass, field
from genbuilder.core.errors import JobAlreadyRunningError
from genbuilder.core.logging import job_extra

log = logging.getLogger(__name__)

@dataclass
class ActiveJob:
    job_id: str
    process: asyncio.subprocess.Process | None = None
    cancelled: bool = False
    kill_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

class JobRegistry:
    """Counts running generation/iteration jobs.

    ``register`` is the increment, ``release`` the decrement; releasing a job
    that is not registered is a no-op, so a job can only be counted down once.
    """

    def __init__(self, cancel_grace: float = 3.0):
        self.cancel_grace = cancel_grace
        self._lock = threading.Lock()
        self._jobs: dict[str, ActiveJob] = {}

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def register(self, job_id: str) -> ActiveJob:
        with self._lock:
            if job_id in self._jobs:
                raise JobAlreadyRunningError(f"Job {job_id} is already running")
            job = ActiveJob(job_id)
            self._jobs[job_id] = job
            count = len(self._jobs)
        log.info("Job registered (%d active)", count, extra=job_extra(job_id))
        return job

    def attach(self, job_id: str, process: asyncio.subprocess.Process) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.process = process

    def get(self, job_id: str) -> ActiveJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def release(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            count = len(self._jobs)
        if job is None:
            return False
        if job.kill_timer is not None:
            job.kill_timer.cancel()
        log.info("Job released (%d active)", count, extra=job_extra(job_id))
        return True

    def cancel(self, job_id: str) -> bool:
        """SIGTERM the job's process, SIGKILL after the grace period."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.process is None or job.process.returncode is not None:
                return False
            job.cancelled = True
            process = job.process

        log.info("Cancelling job", extra=job_extra(job_id))
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return True
        job.kill_timer = asyncio.get_running_loop().call_later(self.cancel_grace, _force_kill, process)
        return True

def _force_kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
