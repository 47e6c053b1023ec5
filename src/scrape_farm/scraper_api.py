from __future__ import annotations

"""
scraper_api.py — клиентская часть стороннего scraping API (ScraperAPI-стиль).

Как устроен вызов:
    GET https://api.scraperapi.com/?api_key=KEY&url=https://target/page&render=true

API сам крутит прокси и решает капчи, а нам отдаёт тело целевой страницы.
Этот модуль НЕ делает асинхронный HTTP (это engine.py). Он:
- собирает (endpoint, params) для целевого URL,
- считает стоимость запроса в кредитах,
- прячет api_key из всего, что попадает в логи/БД,
- синхронно (requests) читает /account перед прогоном (preflight).

mode="direct" — тот же движок без API: ходим прямо на сайт (для отладки/тестов).
"""

from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from . import errors
from .errors import ConfigError, ScrapeError, error_for_kind


DEFAULT_ENDPOINT = "https://api.scraperapi.com/"
DEFAULT_ACCOUNT_ENDPOINT = "https://api.scraperapi.com/account"

REDACTED = "***"
_KEY_PARAMS = ("api_key", "apikey", "key", "token")


@dataclass
class AccountInfo:
    request_count: int = 0
    request_limit: int = 0
    concurrency_limit: int = 0
    concurrent_requests: int = 0
    failed_request_count: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def credits_left(self) -> int:
        return max(0, self.request_limit - self.request_count)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "AccountInfo":
        def num(*keys: str) -> int:
            for k in keys:
                v = d.get(k)
                if isinstance(v, (int, float)):
                    return int(v)
                if isinstance(v, str) and v.strip().isdigit():
                    return int(v.strip())
            return 0

        return AccountInfo(
            request_count=num("requestCount", "request_count"),
            request_limit=num("requestLimit", "request_limit"),
            concurrency_limit=num("concurrencyLimit", "concurrency_limit"),
            concurrent_requests=num("concurrentRequests", "concurrent_requests"),
            failed_request_count=num("failedRequestCount", "failed_request_count"),
            raw=dict(d),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "request_limit": self.request_limit,
            "credits_left": self.credits_left,
            "concurrency_limit": self.concurrency_limit,
            "concurrent_requests": self.concurrent_requests,
            "failed_request_count": self.failed_request_count,
        }


@dataclass
class ScraperApiConfig:
    api_key: Optional[str] = None
    mode: str = "api"  # api | direct
    endpoint: str = DEFAULT_ENDPOINT
    account_endpoint: str = DEFAULT_ACCOUNT_ENDPOINT
    render: bool = False
    country_code: Optional[str] = None
    premium: bool = False
    ultra_premium: bool = False
    device_type: Optional[str] = None  # desktop | mobile
    keep_headers: bool = False
    session_number: Optional[int] = None
    follow_redirect: Optional[bool] = None
    extra_params: dict[str, Any] = field(default_factory=dict)

    @property
    def api_mode(self) -> bool:
        return self.mode == "api"

    @staticmethod
    def from_cfg(cfg: Optional[dict[str, Any]], *, api_key: Optional[str] = None) -> "ScraperApiConfig":
        c = dict(cfg or {})
        mode = str(c.get("mode") or "api").strip().lower()
        if mode not in ("api", "direct"):
            raise ConfigError(f"api.mode must be 'api' or 'direct', got {mode!r}")

        key = api_key or c.get("api_key")
        if mode == "api" and not (isinstance(key, str) and key.strip()):
            raise ConfigError("scraping API key is not set (SCRAPER_API_KEY, api.api_key or secrets ref)")

        sn = c.get("session_number")
        fr = c.get("follow_redirect")
        extra = c.get("extra_params")
        return ScraperApiConfig(
            api_key=key.strip() if isinstance(key, str) else None,
            mode=mode,
            endpoint=str(c.get("endpoint") or DEFAULT_ENDPOINT),
            account_endpoint=str(c.get("account_endpoint") or DEFAULT_ACCOUNT_ENDPOINT),
            render=bool(c.get("render", False)),
            country_code=(str(c["country_code"]).lower() if c.get("country_code") else None),
            premium=bool(c.get("premium", False)),
            ultra_premium=bool(c.get("ultra_premium", False)),
            device_type=(str(c["device_type"]) if c.get("device_type") else None),
            keep_headers=bool(c.get("keep_headers", False)),
            session_number=int(sn) if sn is not None else None,
            follow_redirect=bool(fr) if fr is not None else None,
            extra_params=dict(extra) if isinstance(extra, dict) else {},
        )

    def build_request(self, target_url: str) -> tuple[str, dict[str, str]]:
        """(url, params) для одного целевого URL."""
        if not self.api_mode:
            return target_url, {}

        params: dict[str, str] = {"api_key": str(self.api_key), "url": target_url}
        if self.render:
            params["render"] = "true"
        if self.country_code:
            params["country_code"] = self.country_code
        if self.ultra_premium:
            params["ultra_premium"] = "true"
        elif self.premium:
            params["premium"] = "true"
        if self.device_type:
            params["device_type"] = self.device_type
        if self.keep_headers:
            params["keep_headers"] = "true"
        if self.session_number is not None:
            params["session_number"] = str(self.session_number)
        if self.follow_redirect is not None:
            params["follow_redirect"] = "true" if self.follow_redirect else "false"
        for k, v in self.extra_params.items():
            if v is None or k in params:
                continue
            params[str(k)] = ("true" if v else "false") if isinstance(v, bool) else str(v)
        return self.endpoint, params

    def credit_cost(self) -> int:
        """Стоимость одного успешного запроса в кредитах (неуспешные не списываются)."""
        if not self.api_mode:
            return 0
        if self.ultra_premium:
            return 75 if self.render else 30
        if self.premium:
            return 25 if self.render else 10
        if self.render:
            return 10
        return 1

    def redact_params(self, params: dict[str, Any]) -> dict[str, Any]:
        return redact_params(params, secret=self.api_key)


def redact_params(params: dict[str, Any], *, secret: Optional[str] = None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in (params or {}).items():
        if str(k).lower() in _KEY_PARAMS:
            out[k] = REDACTED
        elif secret and isinstance(v, str) and secret in v:
            out[k] = v.replace(secret, REDACTED)
        else:
            out[k] = v
    return out


def redact_url(url: str, *, secret: Optional[str] = None) -> str:
    """Спрятать ключ в query-строке (и просто как подстроку, если он где-то ещё)."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        q = parse_qsl(parts.query, keep_blank_values=True)
    except ValueError:
        q = []
        parts = None
    if parts is not None and q:
        q2 = [(k, REDACTED if k.lower() in _KEY_PARAMS else v) for k, v in q]
        url = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(q2, safe="*"), parts.fragment))
    if secret:
        url = url.replace(secret, REDACTED)
    return url


def add_query_params(url: str, params: dict[str, Any]) -> str:
    """Дописать параметры в query целевого URL; уже заданные в URL не трогаем."""
    parts = urlsplit(url)
    q = parse_qsl(parts.query, keep_blank_values=True)
    have = {k for k, _ in q}
    q += [(str(k), str(v)) for k, v in params.items() if str(k) not in have]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(q), parts.fragment))


def redact_text(text: Optional[str], *, secret: Optional[str]) -> Optional[str]:
    if text is None or not secret:
        return text
    return text.replace(secret, REDACTED)


def fetch_account(
    cfg: ScraperApiConfig,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = 15.0,
) -> AccountInfo:
    """Preflight: сколько кредитов и какой лимит параллельности у ключа."""
    if not cfg.api_mode:
        raise ConfigError("account info is only available in api mode")

    sess = session or requests.Session()
    try:
        resp = sess.get(cfg.account_endpoint, params={"api_key": cfg.api_key}, timeout=timeout)
    except requests.Timeout as e:
        raise ScrapeError("timeout", f"account endpoint timed out: {type(e).__name__}") from e
    except requests.RequestException as e:
        raise ScrapeError("network", f"account endpoint unreachable: {type(e).__name__}") from e

    sc = int(resp.status_code)
    if sc in (401, 403):
        # /account отвечает 403 на чужой или заблокированный ключ, а не на кончившиеся кредиты
        raise error_for_kind(errors.AUTH, "scraping API rejected the key", status=sc)
    if not (200 <= sc < 300):
        kind = errors.classify_status(sc, api_mode=True) or errors.CLIENT
        raise error_for_kind(kind, "account endpoint error", status=sc)

    try:
        data = resp.json()
    except ValueError as e:
        raise ScrapeError("parse", "account endpoint returned non-JSON", status=sc) from e
    if not isinstance(data, dict):
        raise ScrapeError("parse", "account endpoint returned unexpected JSON", status=sc)
    return AccountInfo.from_dict(data)


def effective_concurrency(requested: int, account: Optional[AccountInfo]) -> int:
    n = max(1, int(requested))
    if account is not None and account.concurrency_limit > 0:
        return min(n, account.concurrency_limit)
    return n
