"""
Service context
===============
Everything the worker mutates for its whole lifetime lives on one object:
active job counter, execution queue, resource monitor, artifact cache, item
reference table and the outbound HTTP client. Tests build their own.
"""
from __future__ import annotations

import gc
import logging
from typing import Optional

import httpx

import rolimons_api
from cache import ArtifactCache
from config import CFG
from http_shared import close_client, make_client
from item_data import ItemStore
from job_queue import ExecutionQueue, Job, JobState
from resource_monitor import ResourceMonitor
from trade_imagegen import Renderer, TradeCard, TradePipeline, render_card

log = logging.getLogger('worker')


class ServiceContext:
    def __init__(
        self,
        *,
        max_jobs: Optional[int] = None,
        queue_concurrency: Optional[int] = None,
        force_gc: Optional[bool] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[ArtifactCache] = None,
        items: Optional[ItemStore] = None,
        monitor: Optional[ResourceMonitor] = None,
        render: Renderer = render_card,
    ):
        self.max_jobs = CFG.MAX_JOBS if max_jobs is None else int(max_jobs)
        self.force_gc = CFG.FORCE_GC if force_gc is None else force_gc
        self.client = client or make_client()
        self.cache = cache or ArtifactCache()
        self.items = items or ItemStore(remote=self._fetch_items)
        self.monitor = monitor or ResourceMonitor()
        self.queue = ExecutionQueue(CFG.QUEUE_CONCURRENCY if queue_concurrency is None else queue_concurrency)
        self.pipeline = TradePipeline(self.cache, self.items, self.client, render=render)
        self.active_jobs = 0

    async def _fetch_items(self):
        return await rolimons_api.fetch_item_details(self.client)

    async def _execute(self, job: Job) -> TradeCard:
        job.state = JobState.RUNNING
        try:
            card = await self.pipeline.generate(job.payload)
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            raise
        job.state = JobState.COMPLETED
        return card

    async def run(self, job: Job) -> TradeCard:
        """Queue the job and wait for its card. Admission is the caller's business."""
        return await self.queue.submit(lambda: self._execute(job))

    def collect_garbage(self) -> None:
        if self.force_gc:
            n = gc.collect()
            log.info(f'[Worker] Forced garbage collection ({n} objects)')

    def health(self) -> dict:
        try:
            ram = self.monitor.current_mb()
        except Exception as e:
            log.warning(f'[Worker] RAM read failed: {type(e).__name__}: {e}')
            ram = None
        return {
            'status': 'healthy',
            'worker': True,
            'ramUsage': ram,
            'ramLimit': self.monitor.limit_mb,
            'activeJobs': self.active_jobs,
            'maxJobs': self.max_jobs,
            'queued': self.queue.pending_count,
            'restartScheduled': self.monitor.restart_scheduled,
        }

    async def startup(self) -> None:
        self.monitor.start_periodic()

    async def shutdown(self) -> None:
        await self.monitor.stop_periodic()
        await close_client(self.client)
