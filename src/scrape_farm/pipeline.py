from __future__ import annotations

"""
pipeline.py — прогон целиком: preflight -> очередь -> движок -> parse -> storage -> метрики.

Поток:
1) preflight (sync, requests): /account -> кредиты + лимит параллельности ключа
2) run_jobs: воркеры берут URL из приоритетной очереди, движок качает с retry
3) handle: ok -> extract_items -> pages/items; ошибка -> failures
4) в конце: summary метрик -> runs.summary_json + лог run_finished

Ошибки разбора не останавливают прогон: они логируются, считаются
и попадают в failures как kind=parse.
"""

import asyncio
from typing import Any, Iterable, Optional

import requests

from . import errors
from .config import RunConfig
from .engine import AsyncScrapeEngine, FetchResult
from .errors import ParseError, QuotaExceeded
from .jobs import Job, RunOutcome, as_jobs, run_jobs
from .logging_setup import bind_run, clear_run, get_logger
from .metrics import RunMetrics
from .parse import extract_items
from .scraper_api import AccountInfo, ScraperApiConfig, effective_concurrency, fetch_account
from .secret_store import SecretStore
from .storage_jsonl import JsonlWriter
from .storage_sqlite import ResultStore


log = get_logger("pipeline")

RETRY_KINDS: tuple[str, ...] = tuple(k for k in errors.ALL_KINDS if errors.is_retryable(k))


def preflight(
    api: ScraperApiConfig,
    requested: int,
    *,
    urls_count: int = 0,
    session: Optional[requests.Session] = None,
) -> tuple[AccountInfo, int]:
    """
    Проверить ключ до старта. Возвращает (account, concurrency с учётом лимита ключа).
    AuthError — ключ отвергнут; QuotaExceeded — кредитов не хватит даже на один запрос.
    """
    account = fetch_account(api, session=session)
    cost = api.credit_cost()
    if account.request_limit > 0 and account.credits_left < cost:
        raise QuotaExceeded(f"not enough credits: left={account.credits_left}, per request={cost}")

    conc = effective_concurrency(requested, account)
    need = cost * urls_count
    if account.request_limit > 0 and need > account.credits_left:
        log.warning("credits_may_run_out", credits_left=account.credits_left, credits_needed=need)
    if conc < requested:
        log.info("concurrency_capped", requested=requested, allowed=conc)
    log.info(
        "preflight_ok",
        credits_left=account.credits_left,
        concurrency_limit=account.concurrency_limit,
        concurrency=conc,
    )
    return account, conc


async def run_scrape(
    cfg: RunConfig,
    urls: Iterable[Any],
    *,
    store: Optional[ResultStore] = None,
    jsonl: Optional[JsonlWriter] = None,
    metrics: Optional[RunMetrics] = None,
    engine: Optional[AsyncScrapeEngine] = None,
    run_id: Optional[str] = None,
    secrets: Optional[SecretStore] = None,
    concurrency: Optional[int] = None,
    api: Optional[ScraperApiConfig] = None,
) -> dict[str, Any]:
    """Прогнать urls (str | (priority, url) | Job). Возвращает {"run_id","outcome","metrics",...}."""
    jobs: list[Job] = as_jobs(urls)
    spec = cfg.parse_spec()
    run_id = run_id or ResultStore.new_run_id()

    own_engine = engine is None
    if engine is None:
        metrics = metrics if metrics is not None else RunMetrics()
        engine = cfg.build_engine(api=api, secrets=secrets, metrics=metrics, concurrency=concurrency)
    elif metrics is not None:
        engine.metrics = metrics
    metrics = engine.metrics

    if store is not None:
        store.parse_spec = spec
        store.start_run(run_id, name=cfg.name)

    async def handle(job: Job, result: FetchResult) -> None:
        items: list[dict[str, Any]] = []
        parse_error: Optional[str] = None

        if result.ok:
            try:
                items = extract_items(result, spec)
            except ParseError as e:
                parse_error = e.message
                metrics.observe_parse_error()
                log.warning("parse_failed", url=result.url, status=result.status, error=parse_error)
            else:
                metrics.observe_items(len(items))
                log.debug("page_parsed", url=result.url, items=len(items))

        row = result.to_row()
        if parse_error is not None:
            row["parse_error"] = parse_error

        if store is not None:
            store.record_page(run_id, row, items_count=len(items), body=result.body)
            if items:
                store.put_items(run_id, result.url, items)
            if not result.ok:
                store.record_failure(
                    run_id=run_id,
                    url=result.url,
                    kind=str(result.error_kind),
                    status=result.status,
                    error=result.error,
                    attempts=result.attempts,
                    block_hint=result.block_hint,
                    resp_snippet=result.text if result.body else None,
                )
            elif parse_error is not None:
                store.record_failure(
                    run_id=run_id,
                    url=result.url,
                    kind=errors.PARSE,
                    status=result.status,
                    error=parse_error,
                    attempts=result.attempts,
                    resp_snippet=result.text,
                )
            else:
                store.resolve_url(result.url, note=f"ok in run {run_id}")

        if jsonl is not None:
            out = {"run_id": run_id}
            out.update(row)
            jsonl.write(out, items=items)

    bind_run(run_id, run_name=cfg.name)
    log.info(
        "run_started",
        urls=len(jobs),
        concurrency=engine.concurrency,
        mode=engine.api.mode,
        render=engine.api.render,
    )

    outcome: Optional[RunOutcome] = None
    try:
        await engine.start()
        try:
            outcome = await run_jobs(
                engine,
                jobs,
                handle,
                workers=engine.concurrency,
                max_requeues=cfg.max_requeues,
                requeue_penalty=cfg.requeue_penalty,
            )
        finally:
            if own_engine:
                await engine.close()
    finally:
        metrics.finish()
        summary = metrics.summary()
        stopped_reason = outcome.stopped_reason if outcome is not None else "error"
        if store is not None:
            store.finish_run(
                run_id,
                summary={"metrics": summary, "outcome": outcome.to_dict() if outcome is not None else None},
                stopped_reason=stopped_reason,
            )
        if outcome is not None:
            log.info(
                "run_finished",
                processed=outcome.processed,
                successes=summary["successes"],
                failures=summary["failures"],
                skipped=outcome.skipped,
                stopped_reason=stopped_reason,
                elapsed_s=summary["elapsed_s"],
            )
        else:
            log.error("run_aborted", elapsed_s=summary["elapsed_s"])
        clear_run()

    return {
        "run_id": run_id,
        "name": cfg.name,
        "outcome": outcome.to_dict(),
        "metrics": summary,
        "skipped_urls": [j.url for j in outcome.skipped_jobs],
    }


def scrape(cfg: RunConfig, urls: Iterable[Any], **kwargs: Any) -> dict[str, Any]:
    """Синхронная обёртка над run_scrape."""
    return asyncio.run(run_scrape(cfg, urls, **kwargs))


def retry_failed_urls(store: ResultStore, *, run_id: Optional[str] = None) -> list[str]:
    """URL открытых failures с повторяемым видом ошибки (сеть/таймаут/429/5xx)."""
    rid = run_id or store.latest_run_id()
    if rid is None:
        return []
    return store.failed_urls(rid, kinds=list(RETRY_KINDS))
