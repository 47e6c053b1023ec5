"""scrape_farm package.

Concurrent scraping through a third-party scraping API (ScraperAPI-style):
async engine (aiohttp pool + semaphore) + per-domain rate limits + retry/backoff
+ priority job queue + extraction + SQLite/JSONL storage + run metrics.

Entry point: `scrape-farm` (console script).
"""

__all__ = [
    "cli",
    "config",
    "engine",
    "jobs",
    "pipeline",
]
