from __future__ import annotations

"""
cli.py — командная строка фермы (console script: scrape-farm).

Примеры:
  scrape-farm --config books.json run --urls urls.txt --db out/books.db --out out/books.jsonl
  scrape-farm --config books.json account
  scrape-farm stats --db out/books.db
  scrape-farm failures --db out/books.db
  scrape-farm resolve --db out/books.db --id 12 --note "page removed"
  scrape-farm --config books.json retry-failed --db out/books.db

stdout — JSON-отчёт команды, stderr — логи и текстовая сводка метрик.

Коды выхода:
  0 — успех
  1 — resolve: такой открытой failure нет
  2 — ошибка конфигурации/ключа/сети до старта (ScrapeError)
  3 — прогон остановлен фатальной ошибкой (auth/quota)
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from dotenv import load_dotenv

from .config import RunConfig, load_config, read_url_file
from .errors import ConfigError, ScrapeError
from .jobs import Job
from .logging_setup import configure_logging, get_logger
from .metrics import RunMetrics
from .pipeline import preflight, retry_failed_urls, run_scrape
from .scraper_api import fetch_account
from .secret_store import SecretStore
from .storage_jsonl import JsonlWriter
from .storage_sqlite import ResultStore


EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2
EXIT_STOPPED = 3

log = get_logger("cli")


def _pretty(obj: Any, pretty: bool) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=(2 if pretty else None))


def _load_secrets(args: argparse.Namespace) -> Optional[SecretStore]:
    if getattr(args, "secrets", None):
        return SecretStore(args.secrets)
    return SecretStore.from_env()


def _load_cfg(args: argparse.Namespace) -> RunConfig:
    cfg = load_config(args.config, defaults_path=args.defaults)
    if getattr(args, "render", False):
        cfg.api["render"] = True
    if getattr(args, "direct", False):
        cfg.api["mode"] = "direct"
    return cfg


def _execute_run(
    args: argparse.Namespace,
    cfg: RunConfig,
    jobs: list[Job],
    *,
    db: Optional[str],
    out: Optional[str],
) -> int:
    secrets = _load_secrets(args)
    api = cfg.api_config(secrets)

    conc = int(getattr(args, "concurrency", None) or cfg.concurrency)
    if api.api_mode and cfg.preflight and not getattr(args, "no_preflight", False):
        _account, conc = preflight(api, conc, urls_count=len(jobs))

    store = ResultStore(db) if db else None
    jsonl = JsonlWriter(out) if out else None
    metrics = RunMetrics()
    try:
        res = asyncio.run(
            run_scrape(
                cfg,
                jobs,
                store=store,
                jsonl=jsonl,
                metrics=metrics,
                secrets=secrets,
                concurrency=conc,
                api=api,
            )
        )
    finally:
        if jsonl is not None:
            jsonl.close()
        if store is not None:
            store.close()

    print(metrics.format_text(), file=sys.stderr)
    print(_pretty(res, args.pretty))
    return EXIT_STOPPED if res["outcome"]["stopped_reason"] else EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    jobs = read_url_file(args.urls)
    if not jobs:
        raise ConfigError(f"no URLs in {args.urls}")
    db = args.db or cfg.output.get("db")
    out = args.out or cfg.output.get("jsonl")
    return _execute_run(args, cfg, jobs, db=db, out=out)


def cmd_retry_failed(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    with ResultStore(args.db) as store:
        urls = retry_failed_urls(store, run_id=args.run_id)
    if not urls:
        print(_pretty({"retried": 0}, args.pretty))
        return EXIT_OK
    log.info("retry_failed", urls=len(urls), source_run=args.run_id or "latest")
    return _execute_run(args, cfg, [Job(url=u) for u in urls], db=args.db, out=args.out)


def cmd_account(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    api = cfg.api_config(_load_secrets(args))
    acct = fetch_account(api)
    out = acct.to_dict()
    out["credits_per_request"] = api.credit_cost()
    print(_pretty(out, args.pretty))
    return EXIT_OK


def cmd_stats(args: argparse.Namespace) -> int:
    with ResultStore(args.db) as store:
        run_id = args.run_id or store.latest_run_id()
        if run_id is None:
            raise ConfigError(f"no runs in {args.db}")
        summary = store.run_summary(run_id)
        if summary is None:
            raise ConfigError(f"run not found: {run_id}")
        summary["pages"] = store.count_pages(run_id)
        summary["open_failures"] = len(store.list_failures(open_only=True, run_id=run_id))
        summary["items_unique_total"] = store.count_unique()
    print(_pretty(summary, args.pretty))
    return EXIT_OK


def cmd_failures(args: argparse.Namespace) -> int:
    with ResultStore(args.db) as store:
        rows = store.list_failures(open_only=not args.all, run_id=args.run_id, limit=args.limit)
    print(_pretty(rows, args.pretty))
    return EXIT_OK


def cmd_resolve(args: argparse.Namespace) -> int:
    with ResultStore(args.db) as store:
        ok = store.resolve_failure(args.id, note=args.note)
    print(_pretty({"id": args.id, "resolved": ok}, args.pretty))
    return EXIT_OK if ok else EXIT_NOT_FOUND


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="scrape-farm")
    p.add_argument("--pretty", action="store_true", help="pretty JSON output")
    p.add_argument("--config", default=None, help="run config JSON")
    p.add_argument("--defaults", default=None, help="shared defaults JSON merged under --config")
    p.add_argument("--secrets", default=None, help="path to secrets.json (overrides ENV PARSER_SECRETS_PATH)")
    p.add_argument("--log-level", default=None, help="DEBUG | INFO | WARNING (default: ENV LOG_LEVEL or INFO)")
    p.add_argument("--log-json", action="store_true", help="JSON logs (same as LOG_FORMAT=json)")

    sub = p.add_subparsers(dest="cmd", required=True)

    # run
    r = sub.add_parser("run", help="scrape URLs from a file")
    r.add_argument("--urls", required=True, help="text file: one URL per line, optional '<priority>\\t<url>'")
    r.add_argument("--db", default=None, help="SQLite output (default: output.db from config)")
    r.add_argument("--out", default=None, help="JSONL output (default: output.jsonl from config)")
    r.add_argument("--concurrency", type=int, default=None)
    r.add_argument("--render", action="store_true", help="ask the API to render JavaScript")
    r.add_argument("--direct", action="store_true", help="fetch sites directly, without the scraping API")
    r.add_argument("--no-preflight", action="store_true", help="skip the /account check")
    r.set_defaults(fn=cmd_run)

    # account
    a = sub.add_parser("account", help="scraping API account: credits and concurrency limit")
    a.set_defaults(fn=cmd_account)

    # stats
    s = sub.add_parser("stats", help="stored summary of a run")
    s.add_argument("--db", required=True)
    s.add_argument("--run-id", dest="run_id", default=None, help="default: latest run")
    s.set_defaults(fn=cmd_stats)

    # failures
    f = sub.add_parser("failures", help="list failed URLs")
    f.add_argument("--db", required=True)
    f.add_argument("--all", action="store_true", help="include resolved failures")
    f.add_argument("--run-id", dest="run_id", default=None)
    f.add_argument("--limit", type=int, default=1000)
    f.set_defaults(fn=cmd_failures)

    # resolve
    rv = sub.add_parser("resolve", help="mark a failure as resolved")
    rv.add_argument("--db", required=True)
    rv.add_argument("--id", type=int, required=True)
    rv.add_argument("--note", default=None)
    rv.set_defaults(fn=cmd_resolve)

    # retry-failed
    rf = sub.add_parser("retry-failed", help="rerun open retryable failures of a run")
    rf.add_argument("--db", required=True)
    rf.add_argument("--run-id", dest="run_id", default=None, help="default: latest run")
    rf.add_argument("--out", default=None)
    rf.add_argument("--concurrency", type=int, default=None)
    rf.add_argument("--no-preflight", action="store_true")
    rf.set_defaults(fn=cmd_retry_failed)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    p = build_parser()
    args = p.parse_args(argv)
    configure_logging(level=args.log_level, json_output=(True if args.log_json else None))

    try:
        return int(args.fn(args) or 0)
    except ScrapeError as e:
        log.error("command_failed", cmd=args.cmd, kind=e.kind, status=e.status, error=e.message)
        print(str(e), file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
