"""
Memory guard for the render worker.

Image decode/encode is what blows up RSS, so instead of per-job accounting the
worker samples coarse RSS readings and restarts itself once they cross the
limit. A supervisor (docker / pm2 / systemd) is expected to bring it back.

- pre-admission: reject new work while RSS is already over the limit
- in-flight: RamSampler tracks the peak while a job runs
- post-job / periodic: schedule a restart (log, grace delay, exit non-zero)
"""
from __future__ import annotations
import asyncio, logging, os
from typing import Callable, Optional

import psutil

from config import CFG
from errors import AdmissionRejection, ResourceBreach

log = logging.getLogger('monitor')

_PROC = psutil.Process(os.getpid())


def current_mb() -> int:
    """Point read of resident memory, MB."""
    return int(round(_PROC.memory_info().rss / 1024 / 1024))


def _exit_process(code: int) -> None:
    logging.shutdown()
    os._exit(code)


class RamSampler:
    """Ticker + stop signal. Samples until stop() is awaited, keeps the peak."""

    def __init__(self, sample: Callable[[], int], interval: float):
        self._sample = sample
        self._interval = interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.peak = 0
        self.samples = 0

    def _take(self) -> None:
        try:
            cur = self._sample()
        except Exception as e:
            log.warning(f'[monitor] RAM sample failed: {type(e).__name__}: {e}')
            return
        self.samples += 1
        if cur > self.peak:
            self.peak = cur

    def start(self) -> 'RamSampler':
        self._take()
        self._task = asyncio.ensure_future(self._loop())
        return self

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), self._interval)
            except asyncio.TimeoutError:
                self._take()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> int:
        self._stop.set()
        if self._task is not None:
            await self._task
        return self.peak


class ResourceMonitor:
    def __init__(
        self,
        limit_mb: Optional[int] = None,
        sample: Callable[[], int] = current_mb,
        sample_interval: Optional[float] = None,
        check_interval: Optional[float] = None,
        grace: Optional[float] = None,
        exit_code: Optional[int] = None,
        terminate: Callable[[int], None] = _exit_process,
    ):
        self.limit_mb = CFG.RAM_LIMIT_MB if limit_mb is None else int(limit_mb)
        self._sample = sample
        self.sample_interval = CFG.RAM_SAMPLE_INTERVAL_MS / 1000.0 if sample_interval is None else sample_interval
        self.check_interval = CFG.RAM_CHECK_INTERVAL_SEC if check_interval is None else check_interval
        self.grace = CFG.RESTART_GRACE_SEC if grace is None else grace
        self.exit_code = CFG.RESTART_EXIT_CODE if exit_code is None else exit_code
        self._terminate = terminate
        self.restart_reason: Optional[ResourceBreach] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._periodic_stop: Optional[asyncio.Event] = None

    def current_mb(self) -> int:
        return self._sample()

    @property
    def restart_scheduled(self) -> bool:
        return self.restart_reason is not None

    # ---------- admission ----------

    def check_admission(self, active_jobs: int, max_jobs: int) -> int:
        """Raise AdmissionRejection or return the RSS reading taken for the check."""
        ram = self.current_mb()
        if ram > self.limit_mb:
            log.warning(f'[Worker] Rejecting job: RAM {ram}MB > {self.limit_mb}MB')
            raise AdmissionRejection('Worker overloaded', 'pre-check',
                                     {'ramUsage': ram, 'ramLimit': self.limit_mb})
        if active_jobs >= max_jobs:
            log.warning('[Worker] Rejecting job: max concurrency reached')
            raise AdmissionRejection('Worker busy', 'concurrency',
                                     {'activeJobs': active_jobs, 'maxJobs': max_jobs})
        return ram

    # ---------- in-flight ----------

    def start_sampling(self) -> RamSampler:
        return RamSampler(self._sample, self.sample_interval).start()

    async def after_job(self, peak: int) -> bool:
        if peak <= self.limit_mb:
            return False
        log.warning(f'[Worker] RAM exceeded limit during render ({peak}MB > {self.limit_mb}MB)')
        return self.schedule_restart(ResourceBreach('peak RAM during job over limit', peak, self.limit_mb))

    # ---------- restart ----------

    def schedule_restart(self, reason: ResourceBreach) -> bool:
        """Deferred self-termination. Only the first call schedules anything."""
        if self.restart_reason is not None:
            return False
        self.restart_reason = reason
        log.critical(
            f'[Worker] Scheduling restart in {self.grace:.1f}s: {reason} '
            f'(ram={reason.ram_mb}MB limit={reason.limit_mb}MB)'
        )
        self._restart_task = asyncio.ensure_future(self._restart_later(reason))
        return True

    async def _restart_later(self, reason: ResourceBreach) -> None:
        await asyncio.sleep(self.grace)
        log.critical(f'[Worker] Exiting with code {self.exit_code}: {reason}')
        self._terminate(self.exit_code)

    # ---------- periodic ----------

    async def check_now(self) -> bool:
        ram = self.current_mb()
        log.debug(f'[monitor] periodic ram={ram}MB limit={self.limit_mb}MB')
        if ram > self.limit_mb:
            return self.schedule_restart(ResourceBreach('periodic RAM check over limit', ram, self.limit_mb))
        return False

    async def _periodic_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), self.check_interval)
            except asyncio.TimeoutError:
                try:
                    await self.check_now()
                except Exception as e:
                    log.error(f'[monitor] periodic check failed: {type(e).__name__}: {e}', exc_info=True)

    def start_periodic(self) -> None:
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_stop = asyncio.Event()
        self._periodic_task = asyncio.ensure_future(self._periodic_loop(self._periodic_stop))

    async def stop_periodic(self) -> None:
        if self._periodic_stop is not None:
            self._periodic_stop.set()
        if self._periodic_task is not None:
            await self._periodic_task
            self._periodic_task = None
