from __future__ import annotations

"""
engine.py — асинхронный "двигатель" HTTP для фермы:
aiohttp.ClientSession (пул соединений) + семафор + rate limit (per-domain) + retry/backoff.

Ключевые правила:
- одна ClientSession на прогон: TCP/TLS соединения переиспользуются (пул TCPConnector);
- семафор держит не больше `concurrency` запросов "в полёте";
- ожидание rate limit и backoff — ВНЕ семафора (спящая задача не занимает слот);
- лимитер выбирается по домену ЦЕЛЕВОГО сайта, а не хосту API;
- fetch() не бросает исключений на сетевых/HTTP ошибках: всё уходит в FetchResult.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Optional
from urllib.parse import urlparse

import aiohttp

from . import errors
from .block_detect import classify_block
from .limits import NoLimit, RateLimiter
from .logging_setup import get_logger
from .metrics import RunMetrics
from .resp_read import read_text_safely
from .retry import RetryPolicy, next_delay
from .scraper_api import ScraperApiConfig, add_query_params, redact_text


DEFAULT_HTML_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

AuthHook = Callable[[str, dict[str, Any], dict[str, str]], None]

log = get_logger("engine")


def domain_of(url: str) -> str:
    try:
        return (urlparse(url).netloc or "").lower()
    except ValueError:
        return ""


@dataclass
class FetchResult:
    url: str
    ok: bool
    status: Optional[int]
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    elapsed_ms: int = 0
    body: Optional[bytes] = None
    headers: dict[str, str] = field(default_factory=dict)
    final_url: Optional[str] = None
    credits: int = 0
    block_hint: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        tp = read_text_safely(self.body, self.headers)
        return tp.text if tp is not None else ""

    @property
    def retryable(self) -> bool:
        return errors.is_retryable(self.error_kind)

    @property
    def fatal(self) -> bool:
        return errors.is_fatal(self.error_kind)

    def to_row(self) -> dict[str, Any]:
        """Плоский dict без тела (для JSONL/БД)."""
        return {
            "url": self.url,
            "ok": self.ok,
            "status": self.status,
            "error_kind": self.error_kind,
            "error": self.error,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
            "final_url": self.final_url,
            "bytes": len(self.body or b""),
            "credits": self.credits,
            "block_hint": self.block_hint,
        }


@dataclass
class _Attempt:
    status: Optional[int]
    headers: dict[str, str]
    body: Optional[bytes]
    final_url: Optional[str]
    kind: Optional[str]
    error: Optional[str]
    elapsed_ms: int


class AsyncScrapeEngine:
    """Единая точка выполнения HTTP-запросов (пул + семафор + rate-limit + retry)."""

    def __init__(
        self,
        api: ScraperApiConfig,
        *,
        concurrency: int = 10,
        timeout: float = 70.0,
        retry_policy: Optional[RetryPolicy] = None,
        limiter_factory: Optional[Callable[[str], RateLimiter]] = None,
        auth_hook: Optional[AuthHook] = None,
        default_headers: Optional[dict[str, str]] = None,
        pool_limit: Optional[int] = None,
        pool_limit_per_host: int = 0,
        metrics: Optional[RunMetrics] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api = api
        self.concurrency = max(1, int(concurrency))
        self.timeout = float(timeout)
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_headers = dict(default_headers or {})
        self.pool_limit = int(pool_limit) if pool_limit else self.concurrency
        self.pool_limit_per_host = max(0, int(pool_limit_per_host or 0))
        self.metrics = metrics if metrics is not None else RunMetrics()

        self._limiter_factory = limiter_factory or (lambda _d: NoLimit())
        self._limiters: dict[str, RateLimiter] = {}
        self._auth_hook = auth_hook

        self.session = session
        self._owns_session = session is None
        self._sem: Optional[asyncio.Semaphore] = None
        self.in_flight = 0
        self.max_in_flight = 0

    # --------- lifecycle ---------

    async def start(self) -> None:
        if self._sem is None:
            self._sem = asyncio.Semaphore(self.concurrency)
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.pool_limit,
                limit_per_host=self.pool_limit_per_host,
                ttl_dns_cache=300,
            )
            self.session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "AsyncScrapeEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------- helpers ---------

    def _get_limiter(self, domain: str) -> RateLimiter:
        if domain not in self._limiters:
            self._limiters[domain] = self._limiter_factory(domain)
        return self._limiters[domain]

    async def _sleep(self, sec: float) -> None:
        if sec and sec > 0:
            await asyncio.sleep(float(sec))

    def _build(self, url: str) -> tuple[str, dict[str, Any], dict[str, str]]:
        if self.api.api_mode:
            # без keep_headers API подставит свои заголовки и наши проигнорирует
            headers = dict(self.default_headers) if self.api.keep_headers else {}
        else:
            headers = dict(DEFAULT_HTML_HEADERS)
            headers.update(self.default_headers)

        target = url
        if self._auth_hook is not None:
            target_params: dict[str, Any] = {}
            self._auth_hook(url, target_params, headers)
            if target_params:
                target = add_query_params(url, target_params)

        req_url, params = self.api.build_request(target)
        return req_url, dict(params), headers

    def _error_text(self, status: int, body: Optional[bytes]) -> str:
        snippet = ""
        if body:
            snippet = body[:200].decode("utf-8", errors="replace").strip().replace("\n", " ")
        msg = f"http_{status}" + (f": {snippet}" if snippet else "")
        return str(redact_text(msg, secret=self.api.api_key))

    async def _attempt(self, url: str, req_url: str, params: dict[str, Any], headers: dict[str, str]) -> _Attempt:
        assert self.session is not None and self._sem is not None, "engine is not started"
        async with self._sem:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            t0 = time.monotonic()
            try:
                async with self.session.get(
                    req_url,
                    params=params or None,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    allow_redirects=True,
                ) as resp:
                    body = await resp.read()
                    elapsed_ms = int((time.monotonic() - t0) * 1000)
                    status = int(resp.status)
                    hdrs = {str(k): str(v) for k, v in resp.headers.items()}
                    final_url = url if self.api.api_mode else str(resp.url)
            except asyncio.TimeoutError:
                return _Attempt(None, {}, None, None, errors.TIMEOUT, "timeout", int((time.monotonic() - t0) * 1000))
            except (aiohttp.InvalidURL, ValueError) as e:
                # битый URL не лечится повтором
                return _Attempt(
                    None, {}, None, None, errors.CLIENT, f"invalid_url:{type(e).__name__}",
                    int((time.monotonic() - t0) * 1000),
                )
            except aiohttp.ClientError as e:
                return _Attempt(
                    None, {}, None, None, errors.NETWORK, f"network_error:{type(e).__name__}",
                    int((time.monotonic() - t0) * 1000),
                )
            finally:
                self.in_flight -= 1

        kind = errors.classify_status(status, api_mode=self.api.api_mode)
        err = None if kind is None else self._error_text(status, body)
        return _Attempt(status, hdrs, body, final_url, kind, err, elapsed_ms)

    # --------- public ---------

    async def fetch(self, url: str, *, meta: Optional[dict[str, Any]] = None) -> FetchResult:
        """Скачать один URL с повторами. Исключения наружу не летят (кроме отмены)."""
        domain = domain_of(url)
        limiter = self._get_limiter(domain)
        pol = self.retry_policy
        req_url, params, headers = self._build(url)

        start_all = time.monotonic()
        last: Optional[_Attempt] = None
        hint: Optional[str] = None
        attempt = 0

        for attempt in range(1, pol.max_attempts + 1):
            await self._sleep(limiter.acquire())
            a = await self._attempt(url, req_url, params, headers)
            last = a

            hint = None
            if not self.api.api_mode and a.status is not None:
                text = ""
                tp = read_text_safely(a.body, a.headers)
                if tp is not None:
                    text = tp.text
                info = classify_block(a.status, a.headers, text, url=a.final_url)
                if info is not None:
                    hint = str(info["hint"])
                    if a.kind is None:
                        # 200 + challenge: страница есть, но данных в ней нет
                        a.kind = errors.BLOCKED
                        a.error = f"blocked:{hint}"

            self.metrics.observe_attempt(status=a.status, elapsed_ms=a.elapsed_ms, error_kind=a.kind)

            if a.kind is None:
                log.debug("http_ok", domain=domain, status=a.status, attempt=attempt, elapsed_ms=a.elapsed_ms)
                return FetchResult(
                    url=url,
                    ok=True,
                    status=a.status,
                    attempts=attempt,
                    elapsed_ms=int((time.monotonic() - start_all) * 1000),
                    body=a.body,
                    headers=a.headers,
                    final_url=a.final_url,
                    credits=self.api.credit_cost(),
                    meta=dict(meta or {}),
                )

            log.warning(
                "http_attempt_failed",
                domain=domain,
                status=a.status,
                kind=a.kind,
                attempt=attempt,
                max_attempts=pol.max_attempts,
                elapsed_ms=a.elapsed_ms,
                hint=hint,
            )

            if attempt >= pol.max_attempts or not pol.should_retry(a.kind, a.status):
                break

            await self._sleep(next_delay(attempt, pol, a.headers))

        assert last is not None
        return FetchResult(
            url=url,
            ok=False,
            status=last.status,
            error_kind=last.kind,
            error=last.error,
            attempts=attempt,
            elapsed_ms=int((time.monotonic() - start_all) * 1000),
            body=last.body,
            headers=last.headers,
            final_url=last.final_url,
            block_hint=hint,
            meta=dict(meta or {}),
        )

    async def fetch_many(self, urls: Iterable[str], *, window: Optional[int] = None) -> AsyncIterator[FetchResult]:
        """Результаты в порядке завершения. Задач создаётся не больше window (по умолчанию 2*concurrency)."""
        win = max(1, int(window or self.concurrency * 2))
        it = iter(urls)
        pending: set[asyncio.Task] = set()

        def fill() -> None:
            while len(pending) < win:
                try:
                    u = next(it)
                except StopIteration:
                    return
                pending.add(asyncio.ensure_future(self.fetch(u)))

        fill()
        try:
            while pending:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    pending.discard(t)
                    yield t.result()
                fill()
        finally:
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
