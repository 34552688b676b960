import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

Job = Callable[[], Awaitable[object]]


@dataclass
class ScheduledJob:
    name: str
    interval: float
    callback: Job
    next_run: float = 0.0
    running: Optional[asyncio.Task] = None
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_error: str = field(default="")


class TickScheduler:
    """
    One loop for every periodic job. A job that is still running when it
    comes due again is skipped for that round instead of stacking up.
    """

    def __init__(self, resolution_seconds: float = 0.5, clock: Callable[[], float] | None = None):
        self.resolution_seconds = resolution_seconds
        self.clock = clock or time.monotonic
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger("chorus.scheduler")

    def every(self, name: str, interval: float, callback: Job, first_run: float | None = None) -> ScheduledJob:
        if interval <= 0:
            raise ValueError(f"Job {name} needs a positive interval")
        start = self.clock() + interval if first_run is None else first_run
        job = ScheduledJob(name=name, interval=interval, callback=callback, next_run=start)
        self.jobs[name] = job
        return job

    def run_due(self, now: float | None = None) -> List[str]:
        now = self.clock() if now is None else now
        started: List[str] = []
        for job in self.jobs.values():
            if now < job.next_run:
                continue
            job.next_run = now + job.interval
            if job.running is not None and not job.running.done():
                job.skipped += 1
                self.logger.debug("Job %s still running; skipping this round", job.name)
                continue
            job.running = asyncio.create_task(self._run(job), name=f"job:{job.name}")
            started.append(job.name)
        return started

    async def _run(self, job: ScheduledJob) -> None:
        try:
            await job.callback()
            job.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.failures += 1
            job.last_error = str(exc)
            self.logger.exception("Job %s failed: %s", job.name, exc)

    def running_tasks(self) -> List[asyncio.Task]:
        return [job.running for job in self.jobs.values() if job.running is not None and not job.running.done()]

    async def _loop(self) -> None:
        while self.running:
            self.run_due()
            await asyncio.sleep(self.resolution_seconds)

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self.running = True
            self._loop_task = asyncio.create_task(self._loop(), name="tick_scheduler")
        return self._loop_task

    async def stop(self, grace_seconds: float = 10.0) -> int:
        """
        Stop scheduling new runs and wait for running jobs up to the grace
        period. Returns the number of jobs cancelled after it elapsed.
        """
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = self.running_tasks()
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_seconds))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.warning("Cancelled %d jobs still running at shutdown", len(pending))
        return len(pending)
