from __future__ import annotations

import asyncio

import pytest

from scrape_farm.engine import FetchResult
from scrape_farm.jobs import Job, JobQueue, as_jobs, run_jobs
from scrape_farm.metrics import RunMetrics


class _FakeEngine:
    """Вместо HTTP: по URL отдаёт заранее заданную последовательность видов ошибок (None = ok)."""

    def __init__(self, outcomes=None, concurrency: int = 1):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.concurrency = concurrency
        self.metrics = RunMetrics()
        self.calls = []

    async def fetch(self, url, *, meta=None):
        self.calls.append(url)
        seq = self.outcomes.get(url, [None])
        kind = seq.pop(0) if len(seq) > 1 else seq[0]
        await asyncio.sleep(0)
        return FetchResult(
            url=url,
            ok=kind is None,
            status=200 if kind is None else 503,
            error_kind=kind,
            attempts=1,
            meta=dict(meta or {}),
        )


def _run(engine, jobs, **kw):
    handled = []

    async def handle(job, result):
        handled.append((job.url, result.error_kind))

    outcome = asyncio.run(run_jobs(engine, jobs, handle, **kw))
    return outcome, handled


def test_lower_priority_first_fifo_within_priority():
    eng = _FakeEngine()
    outcome, handled = _run(eng, [(5, "https://a/5"), (1, "https://a/1"), (1, "https://a/1b"), (0, "https://a/0")])
    assert eng.calls == ["https://a/0", "https://a/1", "https://a/1b", "https://a/5"]
    assert [u for u, _ in handled] == eng.calls
    assert outcome.processed == 4
    assert not outcome.stopped


def test_duplicates_are_dropped():
    eng = _FakeEngine()
    outcome, _ = _run(eng, ["https://a/1", "https://a/1", "https://a/2"])
    assert outcome.processed == 2

    eng2 = _FakeEngine()
    outcome2, _ = _run(eng2, ["https://a/1", "https://a/1"], allow_duplicates=True)
    assert outcome2.processed == 2


def test_retryable_failure_is_requeued_after_the_rest():
    eng = _FakeEngine({"https://a/1": ["server", None]})
    outcome, handled = _run(eng, ["https://a/1", "https://a/2", "https://a/3"])
    assert eng.calls == ["https://a/1", "https://a/2", "https://a/3", "https://a/1"]
    assert outcome.requeued == 1
    assert outcome.processed == 3
    assert ("https://a/1", None) in handled
    assert eng.metrics.requeued == 1


def test_requeue_limit_then_failure_is_final():
    eng = _FakeEngine({"https://a/1": ["timeout"]})
    outcome, handled = _run(eng, ["https://a/1", "https://a/2"], max_requeues=1)
    assert eng.calls == ["https://a/1", "https://a/2", "https://a/1"]
    assert outcome.processed == 2
    assert ("https://a/1", "timeout") in handled

    eng0 = _FakeEngine({"https://a/1": ["timeout"]})
    outcome0, _ = _run(eng0, ["https://a/1"], max_requeues=0)
    assert eng0.calls == ["https://a/1"]
    assert outcome0.requeued == 0


def test_fatal_kind_stops_run_and_skips_rest():
    eng = _FakeEngine({"https://a/2": ["quota"]})
    outcome, handled = _run(eng, ["https://a/1", "https://a/2", "https://a/3", "https://a/4"], workers=1)
    assert eng.calls == ["https://a/1", "https://a/2"]
    assert outcome.stopped_reason == "quota"
    assert outcome.processed == 2
    assert outcome.skipped == 2
    assert [j.url for j in outcome.skipped_jobs] == ["https://a/3", "https://a/4"]
    assert handled[-1] == ("https://a/2", "quota")
    assert eng.metrics.skipped == 2
    assert outcome.to_dict() == {"processed": 2, "requeued": 0, "skipped": 2, "stopped_reason": "quota"}


def test_handler_error_propagates():
    eng = _FakeEngine()

    async def handle(job, result):
        if job.url.endswith("/2"):
            raise ValueError("storage broke")

    with pytest.raises(ValueError):
        asyncio.run(run_jobs(eng, ["https://a/1", "https://a/2", "https://a/3"], handle, workers=1))
    assert "https://a/3" not in eng.calls


def test_many_workers_process_everything():
    eng = _FakeEngine(concurrency=4)
    urls = [f"https://a/{i}" for i in range(25)]
    outcome, handled = _run(eng, urls)
    assert outcome.processed == 25
    assert sorted(u for u, _ in handled) == sorted(urls)
    assert eng.metrics.requests == 25


def test_job_queue_basics():
    async def go():
        q = JobQueue()
        assert q.put(Job("https://a/1", priority=3))
        assert not q.put(Job("https://a/1"))
        assert q.put(Job("https://a/1"), force=True)
        assert q.put(Job("https://a/2", priority=1))
        assert q.qsize() == 3
        first = await q.get()
        q.task_done()
        q.close()
        assert not q.put(Job("https://a/3"))
        left = q.drain()
        return first, left, q.empty()

    first, left, empty = asyncio.run(go())
    assert first.url == "https://a/1" and first.priority == 0
    assert [j.url for j in left] == ["https://a/2", "https://a/1"]
    assert empty


def test_as_jobs_accepts_mixed_inputs():
    jobs = as_jobs(["https://a/1", (7, "https://a/2"), Job("https://a/3", priority=2)])
    assert [(j.url, j.priority) for j in jobs] == [("https://a/1", 0), ("https://a/2", 7), ("https://a/3", 2)]
