from __future__ import annotations

"""
config.py — run-конфиг фермы (JSON) + списки URL.

Порядок слияния:
    DEFAULTS -> defaults_path -> extends[0] -> extends[1] -> ... -> сам файл -> ENV

ENV:
- SCRAPER_API_KEY          — ключ scraping API (сильнее api.api_key и api.api_key_ref)
- SCRAPE_FARM_CONCURRENCY  — переопределить http.concurrency
- PARSER_SECRETS_PATH      — путь к secrets.json (см. secret_store.py)

Пример:
{
  "name": "books",
  "api":  {"mode": "api", "render": false, "api_key_ref": "scraperapi_main"},
  "http": {"concurrency": 20, "timeout": 70,
           "limiters": {"*": {"kind": "token_bucket", "rate_per_sec": 5, "capacity": 5}},
           "retries": {"max_attempts": 4}, "requeue": {"max_requeues": 1, "penalty": 10}},
  "parse": {"mode": "html", "items_selector": "article.product_pod",
            "fields": {"title": "h3 a::attr(title)", "price": ".price_color::text"}},
  "output": {"db": "out/books.db", "jsonl": "out/books.jsonl"}
}

Файл URL: один URL в строке, "#" — комментарий, опционально "<priority>\\t<url>".
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from .engine import AsyncScrapeEngine, AuthHook
from .errors import ConfigError
from .jobs import Job
from .limits import build_limiter_factory
from .metrics import RunMetrics
from .parse import ParseSpec
from .retry import RetryPolicy, make_retry_policy_from_cfg
from .scraper_api import ScraperApiConfig
from .secret_store import SecretStore


ENV_API_KEY = "SCRAPER_API_KEY"
ENV_CONCURRENCY = "SCRAPE_FARM_CONCURRENCY"

DEFAULTS: dict[str, Any] = {
    "name": "scrape",
    "preflight": True,
    "api": {"mode": "api", "render": False},
    "http": {
        "concurrency": 10,
        "timeout": 70.0,
        "pool_limit": None,
        "pool_limit_per_host": 0,
        "headers": {},
        "retries": {},
        "requeue": {"max_requeues": 1, "penalty": 10},
    },
    "parse": {"mode": "html"},
    "auth": {},
    "output": {"db": None, "jsonl": None},
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """dict + dict -> рекурсивно, остальное — override заменяет base."""
    out: dict[str, Any] = dict(base)
    for k, v in (override or {}).items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _load_json_dict(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"config is not valid JSON: {path}: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigError(f"config must be a JSON object: {path}")
    return obj


@dataclass
class RunConfig:
    name: str = "scrape"
    preflight: bool = True
    api: dict[str, Any] = field(default_factory=dict)
    http: dict[str, Any] = field(default_factory=dict)
    parse: dict[str, Any] = field(default_factory=dict)
    auth: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Optional[dict[str, Any]]) -> "RunConfig":
        merged = _deep_merge(DEFAULTS, dict(d or {}))

        def section(key: str) -> dict[str, Any]:
            v = merged.get(key)
            if v is None:
                return {}
            if not isinstance(v, dict):
                raise ConfigError(f"config section '{key}' must be an object")
            return dict(v)

        return RunConfig(
            name=str(merged.get("name") or "scrape"),
            preflight=bool(merged.get("preflight", True)),
            api=section("api"),
            http=section("http"),
            parse=section("parse"),
            auth=section("auth"),
            output=section("output"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "preflight": self.preflight,
            "api": dict(self.api),
            "http": dict(self.http),
            "parse": dict(self.parse),
            "auth": dict(self.auth),
            "output": dict(self.output),
        }

    # -----------------
    # derived objects
    # -----------------

    @property
    def concurrency(self) -> int:
        env = os.getenv(ENV_CONCURRENCY, "").strip()
        raw: Any = env if env else self.http.get("concurrency", 10)
        try:
            n = int(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"concurrency must be an integer, got {raw!r}") from e
        if n < 1:
            raise ConfigError(f"concurrency must be >= 1, got {n}")
        return n

    @property
    def timeout(self) -> float:
        return float(self.http.get("timeout") or 70.0)

    @property
    def max_requeues(self) -> int:
        rq = self.http.get("requeue") or {}
        return max(0, int(rq.get("max_requeues", 1)))

    @property
    def requeue_penalty(self) -> int:
        rq = self.http.get("requeue") or {}
        return int(rq.get("penalty", 10))

    def resolve_api_key(self, secrets: Optional[SecretStore] = None) -> Optional[str]:
        """ENV -> api.api_key -> api.api_key_ref (secrets.json)."""
        env = os.getenv(ENV_API_KEY, "").strip()
        if env:
            return env
        key = self.api.get("api_key")
        if isinstance(key, str) and key.strip():
            return key.strip()
        ref = self.api.get("api_key_ref")
        if isinstance(ref, str) and ref.strip():
            if secrets is None:
                raise ConfigError(f"api.api_key_ref={ref!r} needs a secrets file (PARSER_SECRETS_PATH)")
            return secrets.api_key_for(ref.strip())
        return None

    def api_config(self, secrets: Optional[SecretStore] = None) -> ScraperApiConfig:
        mode = str(self.api.get("mode") or "api").strip().lower()
        key = self.resolve_api_key(secrets) if mode == "api" else None
        return ScraperApiConfig.from_cfg(self.api, api_key=key)

    def parse_spec(self) -> ParseSpec:
        return ParseSpec.from_dict(self.parse)

    def retry_policy(self) -> RetryPolicy:
        return make_retry_policy_from_cfg(self.http.get("retries"))

    def auth_hook(self, secrets: Optional[SecretStore] = None) -> Optional[AuthHook]:
        if not self.auth:
            return None
        if secrets is None:
            raise ConfigError("auth section needs a secrets file (PARSER_SECRETS_PATH)")
        return secrets.make_auth_hook(self.auth)

    def build_engine(
        self,
        *,
        api: Optional[ScraperApiConfig] = None,
        secrets: Optional[SecretStore] = None,
        metrics: Optional[RunMetrics] = None,
        concurrency: Optional[int] = None,
    ) -> AsyncScrapeEngine:
        headers = self.http.get("headers")
        return AsyncScrapeEngine(
            api or self.api_config(secrets),
            concurrency=concurrency or self.concurrency,
            timeout=self.timeout,
            retry_policy=self.retry_policy(),
            limiter_factory=build_limiter_factory(self.http),
            auth_hook=self.auth_hook(secrets),
            default_headers=dict(headers) if isinstance(headers, dict) else None,
            pool_limit=self.http.get("pool_limit"),
            pool_limit_per_host=int(self.http.get("pool_limit_per_host") or 0),
            metrics=metrics,
        )


def load_config(path: Optional[str] = None, *, defaults_path: Optional[str] = None) -> RunConfig:
    """
    Загрузить run-конфиг:
    - defaults_path (общий defaults-файл)
    - extends (внутри файла): строка/список путей относительно файла
    Без path — только встроенные DEFAULTS (+ defaults_path).
    """
    merged: dict[str, Any] = {}
    if defaults_path:
        merged = _deep_merge(merged, _load_json_dict(defaults_path))

    if path:
        raw = _load_json_dict(path)
        base_dir = os.path.dirname(path) or "."

        extends = raw.get("extends") or raw.get("_extends")
        if isinstance(extends, str):
            extends_list = [extends]
        elif isinstance(extends, list):
            extends_list = [x for x in extends if isinstance(x, str)]
        else:
            extends_list = []
        for rel in extends_list:
            p = rel if os.path.isabs(rel) else os.path.normpath(os.path.join(base_dir, rel))
            merged = _deep_merge(merged, _load_json_dict(p))

        raw2 = dict(raw)
        raw2.pop("extends", None)
        raw2.pop("_extends", None)
        merged = _deep_merge(merged, raw2)

    return RunConfig.from_dict(merged)


def parse_url_lines(lines: list[str]) -> list[Job]:
    jobs: list[Job] = []
    for lineno, line in enumerate(lines, 1):
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        prio = 0
        if "\t" in s:
            head, _, tail = s.partition("\t")
            try:
                prio = int(head.strip())
            except ValueError as e:
                raise ConfigError(f"line {lineno}: priority must be an integer: {head!r}") from e
            s = tail.strip()
        if not s.lower().startswith(("http://", "https://")):
            raise ConfigError(f"line {lineno}: not an http(s) URL: {s!r}")
        jobs.append(Job(url=s, priority=prio))
    return jobs


def read_url_file(path: str) -> list[Job]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ConfigError(f"cannot read URL file {path}: {e}") from e
    return parse_url_lines(lines)
