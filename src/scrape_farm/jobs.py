from __future__ import annotations

"""
jobs.py — очередь задач с приоритетом + пул воркеров поверх AsyncScrapeEngine.

Порядок: меньший priority раньше; при равном — кто раньше пришёл (FIFO).

Судьба результата:
- ok / постоянная ошибка (not_found, client, blocked) -> handle(job, result), дальше;
- retryable после всех попыток движка -> задача уходит в конец очереди
  (priority + requeue_penalty), не больше max_requeues раз;
- fatal (auth/quota) -> стоп: новые задачи не берём, остаток очереди = skipped.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from .engine import AsyncScrapeEngine, FetchResult
from .logging_setup import get_logger


log = get_logger("jobs")

Handler = Callable[["Job", FetchResult], Awaitable[None]]


@dataclass
class Job:
    url: str
    priority: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    requeues: int = 0


@dataclass
class RunOutcome:
    processed: int = 0
    requeued: int = 0
    skipped: int = 0
    stopped_reason: Optional[str] = None
    skipped_jobs: list[Job] = field(default_factory=list)

    @property
    def stopped(self) -> bool:
        return self.stopped_reason is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "requeued": self.requeued,
            "skipped": self.skipped,
            "stopped_reason": self.stopped_reason,
        }


class JobQueue:
    """asyncio.PriorityQueue + дедуп URL + закрытие."""

    def __init__(self, *, allow_duplicates: bool = False) -> None:
        self._q: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._seen: set[str] = set()
        self.allow_duplicates = bool(allow_duplicates)
        self.closed = False

    def put(self, job: Job, *, force: bool = False) -> bool:
        """False — если очередь закрыта или URL уже был (и не force)."""
        if self.closed:
            return False
        if not (force or self.allow_duplicates):
            if job.url in self._seen:
                return False
        self._seen.add(job.url)
        self._q.put_nowait((int(job.priority), next(self._seq), job))
        return True

    async def get(self) -> Job:
        _prio, _seq, job = await self._q.get()
        return job

    async def join(self) -> None:
        await self._q.join()

    def get_nowait(self) -> Optional[Job]:
        try:
            _prio, _seq, job = self._q.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return job

    def task_done(self) -> None:
        self._q.task_done()

    def qsize(self) -> int:
        return self._q.qsize()

    def empty(self) -> bool:
        return self._q.empty()

    def close(self) -> None:
        self.closed = True

    def drain(self) -> list[Job]:
        out: list[Job] = []
        while True:
            job = self.get_nowait()
            if job is None:
                return out
            self._q.task_done()
            out.append(job)


def as_jobs(urls: Iterable[Any]) -> list[Job]:
    """str | (priority, url) | Job -> Job."""
    out: list[Job] = []
    for u in urls:
        if isinstance(u, Job):
            out.append(u)
        elif isinstance(u, tuple) and len(u) == 2:
            out.append(Job(url=str(u[1]), priority=int(u[0])))
        else:
            out.append(Job(url=str(u)))
    return out


async def run_jobs(
    engine: AsyncScrapeEngine,
    jobs: Iterable[Any],
    handle: Handler,
    *,
    workers: Optional[int] = None,
    max_requeues: int = 1,
    requeue_penalty: int = 10,
    allow_duplicates: bool = False,
) -> RunOutcome:
    """Прогнать задачи через движок. handle вызывается на каждый окончательный результат."""
    queue = JobQueue(allow_duplicates=allow_duplicates)
    for job in as_jobs(jobs):
        queue.put(job)

    n_workers = max(1, int(workers or engine.concurrency))
    outcome = RunOutcome()

    def stop_run(reason: str) -> None:
        if outcome.stopped_reason is not None:
            return
        outcome.stopped_reason = reason
        queue.close()
        # всё, что ещё не взято воркерами, снимаем с очереди: join() дождётся только "в полёте"
        leftover = queue.drain()
        outcome.skipped += len(leftover)
        outcome.skipped_jobs.extend(leftover)
        if leftover:
            engine.metrics.observe_skipped(len(leftover))
            log.warning("jobs_skipped", count=len(leftover), reason=reason)

    async def finish(job: Job, result: FetchResult) -> None:
        outcome.processed += 1
        engine.metrics.observe_result(result)
        await handle(job, result)

    async def worker() -> None:
        while True:
            job = await queue.get()
            try:
                result = await engine.fetch(job.url, meta=job.meta)

                if result.fatal:
                    log.error("run_stopped", reason=result.error_kind, status=result.status, url=job.url)
                    stop_run(str(result.error_kind))
                    await finish(job, result)
                    continue

                if result.retryable and job.requeues < max_requeues:
                    job.requeues += 1
                    job.priority += int(requeue_penalty)
                    if queue.put(job, force=True):
                        outcome.requeued += 1
                        engine.metrics.observe_requeue(result)
                        log.info("job_requeued", url=job.url, kind=result.error_kind, requeues=job.requeues)
                        continue

                await finish(job, result)
            except Exception as e:
                # ошибка handle останавливает прогон; пробрасываем после join
                failures.append(e)
                stop_run("handler_error")
            finally:
                queue.task_done()

    failures: list[Exception] = []
    tasks = [asyncio.ensure_future(worker()) for _ in range(n_workers)]
    try:
        await queue.join()
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if failures:
        raise failures[0]
    return outcome
