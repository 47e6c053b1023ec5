from __future__ import annotations

import asyncio

from aiohttp import web
from aiohttp.test_utils import TestServer

from scrape_farm.engine import AsyncScrapeEngine
from scrape_farm.limits import NoLimit
from scrape_farm.retry import RetryPolicy
from scrape_farm.scraper_api import ScraperApiConfig


FAST = RetryPolicy(max_attempts=3, base_delay=0.01, cap_delay=0.02, jitter="none")

PAGE = "<html><head><title>ok</title></head><body><p>hello</p></body></html>"


async def _with_server(routes, fn):
    app = web.Application()
    for path, handler in routes:
        app.router.add_get(path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        return await fn(server)
    finally:
        await server.close()


def _direct() -> ScraperApiConfig:
    return ScraperApiConfig(mode="direct")


def _fake_api_handler(seen: list):
    """Ведёт себя как scraping API: api_key + url в query, тело целевой страницы в ответе."""

    async def handler(request: web.Request) -> web.Response:
        q = dict(request.query)
        seen.append(q)
        key = q.get("api_key")
        target = q.get("url", "")
        if key == "LEAKY":
            return web.Response(status=500, text=f"internal error for key {key}")
        if key != "GOOD":
            return web.Response(status=401, text="invalid api key")
        if "out-of-credits" in target:
            return web.Response(status=403, text="You have exhausted your API credits")
        if "missing" in target:
            return web.Response(status=404, text="not found")
        return web.Response(text=f"<html><title>{target}</title></html>", content_type="text/html")

    return handler


def test_retries_server_errors_then_succeeds():
    calls = {"n": 0}

    async def flaky(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return web.Response(status=503, text="busy")
        return web.Response(text=PAGE, content_type="text/html")

    async def go(server):
        async with AsyncScrapeEngine(_direct(), concurrency=2, retry_policy=FAST) as eng:
            res = await eng.fetch(str(server.make_url("/flaky")))
            return res, eng.metrics

    res, metrics = asyncio.run(_with_server([("/flaky", flaky)], go))
    assert res.ok
    assert res.status == 200
    assert res.attempts == 3
    assert "hello" in res.text
    assert res.credits == 0
    assert metrics.attempts == 3
    assert metrics.status_counts["503"] == 2


def test_retry_after_header_and_exhausted_attempts():
    async def limited(request):
        return web.Response(status=429, text="slow down", headers={"Retry-After": "0.01"})

    async def go(server):
        async with AsyncScrapeEngine(_direct(), retry_policy=FAST) as eng:
            return await eng.fetch(str(server.make_url("/limited")))

    res = asyncio.run(_with_server([("/limited", limited)], go))
    assert not res.ok
    assert res.error_kind == "rate_limited"
    assert res.attempts == 3
    assert res.retryable
    assert res.error.startswith("http_429")


def test_not_found_is_not_retried():
    async def gone(request):
        return web.Response(status=404, text="nope")

    async def go(server):
        async with AsyncScrapeEngine(_direct(), retry_policy=FAST) as eng:
            return await eng.fetch(str(server.make_url("/gone")), meta={"src": "test"})

    res = asyncio.run(_with_server([("/gone", gone)], go))
    assert res.error_kind == "not_found"
    assert res.attempts == 1
    assert res.meta == {"src": "test"}


def test_direct_mode_challenge_page_is_blocked():
    async def challenge(request):
        return web.Response(
            text="<html><title>Just a moment...</title>Checking your browser</html>",
            content_type="text/html",
        )

    async def go(server):
        async with AsyncScrapeEngine(_direct(), retry_policy=FAST) as eng:
            return await eng.fetch(str(server.make_url("/c")))

    res = asyncio.run(_with_server([("/c", challenge)], go))
    assert not res.ok
    assert res.error_kind == "blocked"
    assert res.block_hint == "js_challenge"
    assert res.attempts == 1


def test_direct_mode_page_with_captcha_form_is_ok():
    async def product(request):
        return web.Response(
            text=(
                "<html><body><h1>Blue mug</h1>"
                '<form action="/subscribe"><div class="g-recaptcha" data-sitekey="k"></div></form>'
                "</body></html>"
            ),
            content_type="text/html",
        )

    async def go(server):
        async with AsyncScrapeEngine(_direct(), retry_policy=FAST) as eng:
            return await eng.fetch(str(server.make_url("/mug")))

    res = asyncio.run(_with_server([("/mug", product)], go))
    assert res.ok
    assert res.error_kind is None
    assert res.block_hint is None


def test_malformed_url_is_client_error_without_retries():
    async def go():
        async with AsyncScrapeEngine(_direct(), retry_policy=FAST) as eng:
            return await eng.fetch("http://[::1/broken")

    res = asyncio.run(go())
    assert not res.ok
    assert res.error_kind == "client"
    assert not res.retryable
    assert res.attempts == 1


def test_timeout_kind():
    async def slow(request):
        await asyncio.sleep(0.5)
        return web.Response(text="late")

    async def go(server):
        pol = RetryPolicy(max_attempts=1)
        async with AsyncScrapeEngine(_direct(), timeout=0.1, retry_policy=pol) as eng:
            return await eng.fetch(str(server.make_url("/slow")))

    res = asyncio.run(_with_server([("/slow", slow)], go))
    assert res.error_kind == "timeout"
    assert res.status is None
    assert res.retryable


def test_network_error_kind():
    async def go():
        pol = RetryPolicy(max_attempts=2, base_delay=0.01, jitter="none")
        async with AsyncScrapeEngine(_direct(), timeout=2.0, retry_policy=pol) as eng:
            return await eng.fetch("http://127.0.0.1:1/")

    res = asyncio.run(go())
    assert res.error_kind == "network"
    assert res.error.startswith("network_error:")
    assert res.attempts == 2


def test_api_mode_sends_key_and_target_and_counts_credits():
    seen: list = []

    async def go(server):
        api = ScraperApiConfig(api_key="GOOD", endpoint=str(server.make_url("/api")), render=True)
        async with AsyncScrapeEngine(api, retry_policy=FAST) as eng:
            return await eng.fetch("https://shop.example.com/item/1")

    res = asyncio.run(_with_server([("/api", _fake_api_handler(seen))], go))
    assert res.ok
    assert res.final_url == "https://shop.example.com/item/1"
    assert res.credits == 10
    assert "shop.example.com/item/1" in res.text
    assert seen == [{"api_key": "GOOD", "url": "https://shop.example.com/item/1", "render": "true"}]


def test_api_mode_fatal_kinds():
    seen: list = []

    async def go(server):
        endpoint = str(server.make_url("/api"))
        async with AsyncScrapeEngine(ScraperApiConfig(api_key="BAD", endpoint=endpoint), retry_policy=FAST) as eng:
            bad = await eng.fetch("https://shop.example.com/1")
        async with AsyncScrapeEngine(ScraperApiConfig(api_key="GOOD", endpoint=endpoint), retry_policy=FAST) as eng:
            quota = await eng.fetch("https://shop.example.com/out-of-credits")
            missing = await eng.fetch("https://shop.example.com/missing")
        return bad, quota, missing

    bad, quota, missing = asyncio.run(_with_server([("/api", _fake_api_handler(seen))], go))
    assert bad.error_kind == "auth" and bad.fatal and bad.attempts == 1
    assert quota.error_kind == "quota" and quota.fatal
    assert missing.error_kind == "not_found" and not missing.fatal
    assert missing.credits == 0


def test_api_key_is_redacted_from_errors():
    async def go(server):
        api = ScraperApiConfig(api_key="LEAKY", endpoint=str(server.make_url("/api")))
        async with AsyncScrapeEngine(api, retry_policy=RetryPolicy(max_attempts=1)) as eng:
            return await eng.fetch("https://shop.example.com/1")

    res = asyncio.run(_with_server([("/api", _fake_api_handler([]))], go))
    assert res.error_kind == "server"
    assert "LEAKY" not in (res.error or "")
    assert "***" in res.error


def test_auth_hook_applies_to_target_url():
    seen: list = []

    def hook(url, params, headers):
        params["token"] = "T1"
        headers["X-Client"] = "farm"

    async def echo(request):
        seen.append({"query": dict(request.query), "x_client": request.headers.get("X-Client")})
        return web.Response(text=PAGE, content_type="text/html")

    async def go(server):
        async with AsyncScrapeEngine(_direct(), auth_hook=hook, retry_policy=FAST) as eng:
            return await eng.fetch(str(server.make_url("/echo")))

    res = asyncio.run(_with_server([("/echo", echo)], go))
    assert res.ok
    assert seen == [{"query": {"token": "T1"}, "x_client": "farm"}]


def test_auth_hook_query_goes_into_target_in_api_mode():
    seen: list = []

    def hook(url, params, headers):
        params["token"] = "T1"

    async def go(server):
        api = ScraperApiConfig(api_key="GOOD", endpoint=str(server.make_url("/api")))
        async with AsyncScrapeEngine(api, auth_hook=hook, retry_policy=FAST) as eng:
            return await eng.fetch("https://shop.example.com/list?page=2")

    res = asyncio.run(_with_server([("/api", _fake_api_handler(seen))], go))
    assert res.ok
    assert seen[0]["url"] == "https://shop.example.com/list?page=2&token=T1"
    assert "token" not in seen[0]
    assert res.url == "https://shop.example.com/list?page=2"


def test_limiter_is_keyed_by_target_domain():
    domains: list = []

    def factory(domain):
        domains.append(domain)
        return NoLimit()

    async def go(server):
        api = ScraperApiConfig(api_key="GOOD", endpoint=str(server.make_url("/api")))
        async with AsyncScrapeEngine(api, limiter_factory=factory, retry_policy=FAST) as eng:
            await eng.fetch("https://shop-a.example.com/1")
            await eng.fetch("https://shop-a.example.com/2")
            await eng.fetch("https://shop-b.example.com/1")

    asyncio.run(_with_server([("/api", _fake_api_handler([]))], go))
    assert domains == ["shop-a.example.com", "shop-b.example.com"]


def test_semaphore_bounds_in_flight_and_fetch_many_yields_all():
    async def slowish(request):
        await asyncio.sleep(0.05)
        return web.Response(text=PAGE, content_type="text/html")

    async def go(server):
        urls = [str(server.make_url(f"/p?i={i}")) for i in range(12)]
        got = []
        async with AsyncScrapeEngine(_direct(), concurrency=3, retry_policy=FAST) as eng:
            async for res in eng.fetch_many(urls):
                got.append(res)
            return got, eng.max_in_flight, eng.in_flight

    got, max_in_flight, in_flight = asyncio.run(_with_server([("/p", slowish)], go))
    assert len(got) == 12
    assert all(r.ok for r in got)
    assert len({r.url for r in got}) == 12
    assert 1 <= max_in_flight <= 3
    assert in_flight == 0
