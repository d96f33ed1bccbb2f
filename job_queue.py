from __future__ import annotations
import asyncio, enum, logging, time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, Set, Tuple

log = logging.getLogger('queue')


class JobState(str, enum.Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class Job:
    payload: Any
    accepted_at: float = field(default_factory=time.time)
    state: JobState = JobState.QUEUED
    error: Optional[str] = None


class ExecutionQueue:
    """In-process FIFO that runs at most `max_concurrency` tasks at once.

    submit() never rejects: admission control happens before a job gets here,
    so the pending list has no capacity limit of its own.
    """

    def __init__(self, max_concurrency: int = 1):
        self.max_concurrency = max(1, int(max_concurrency))
        self.active_count = 0
        self._pending: Deque[Tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = deque()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, task: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._pending.append((task, fut))
        self._dispatch()
        return fut

    def _dispatch(self) -> None:
        while self.active_count < self.max_concurrency and self._pending:
            task, fut = self._pending.popleft()
            if fut.cancelled():
                continue
            self.active_count += 1
            t = asyncio.ensure_future(self._run(task, fut))
            self._tasks.add(t)
            t.add_done_callback(self._tasks.discard)

    async def _run(self, task: Callable[[], Awaitable[Any]], fut: asyncio.Future) -> None:
        try:
            result = await task()
        except Exception as e:
            log.debug(f'[queue] task failed: {type(e).__name__}: {e} (pending={len(self._pending)})')
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)
        finally:
            if not fut.done():
                fut.cancel()
            self.active_count -= 1
            self._dispatch()
