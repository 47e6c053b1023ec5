from __future__ import annotations

import json

import pytest
import requests

from scrape_farm.errors import AuthError, ConfigError, ScrapeError
from scrape_farm.scraper_api import (
    AccountInfo,
    ScraperApiConfig,
    add_query_params,
    effective_concurrency,
    fetch_account,
    redact_params,
    redact_text,
    redact_url,
)


class _StubSession:
    """requests.Session-заглушка: отдаёт заранее заданный Response и запоминает вызов."""

    def __init__(self, status: int = 200, payload: object = None, raw: bytes = None, exc: Exception = None):
        self.status = status
        self.payload = payload
        self.raw = raw
        self.exc = exc
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        resp = requests.Response()
        resp.status_code = self.status
        resp._content = self.raw if self.raw is not None else json.dumps(self.payload).encode("utf-8")
        resp.headers["Content-Type"] = "application/json"
        return resp


def test_build_request_api_mode_params():
    cfg = ScraperApiConfig.from_cfg(
        {"render": True, "country_code": "US", "device_type": "mobile", "session_number": 7},
        api_key="K1",
    )
    url, params = cfg.build_request("https://shop.example.com/p/1?x=1")
    assert url == "https://api.scraperapi.com/"
    assert params["api_key"] == "K1"
    assert params["url"] == "https://shop.example.com/p/1?x=1"
    assert params["render"] == "true"
    assert params["country_code"] == "us"
    assert params["device_type"] == "mobile"
    assert params["session_number"] == "7"
    assert "premium" not in params


def test_build_request_direct_mode_passes_url_through():
    cfg = ScraperApiConfig.from_cfg({"mode": "direct"})
    assert cfg.api_key is None
    assert cfg.build_request("https://a.example.com/") == ("https://a.example.com/", {})
    assert cfg.credit_cost() == 0


def test_extra_params_do_not_override_known_ones():
    cfg = ScraperApiConfig.from_cfg({"extra_params": {"url": "evil", "autoparse": True, "skip": None}}, api_key="K")
    _, params = cfg.build_request("https://a.example.com/")
    assert params["url"] == "https://a.example.com/"
    assert params["autoparse"] == "true"
    assert "skip" not in params


def test_from_cfg_requires_key_in_api_mode():
    with pytest.raises(ConfigError):
        ScraperApiConfig.from_cfg({"mode": "api"})
    with pytest.raises(ConfigError):
        ScraperApiConfig.from_cfg({"mode": "proxy"}, api_key="K")


def test_credit_cost_table():
    def cost(**kw):
        return ScraperApiConfig(api_key="K", **kw).credit_cost()

    assert cost() == 1
    assert cost(render=True) == 10
    assert cost(premium=True) == 10
    assert cost(premium=True, render=True) == 25
    assert cost(ultra_premium=True) == 30
    assert cost(ultra_premium=True, render=True) == 75


def test_redaction_helpers():
    secret = "SECRET123"
    assert redact_params({"api_key": secret, "url": "https://a/"}, secret=secret) == {
        "api_key": "***",
        "url": "https://a/",
    }
    red = redact_url(f"https://api.scraperapi.com/?api_key={secret}&url=x", secret=secret)
    assert secret not in red
    assert "api_key=***" in red
    assert redact_text(f"failed for key {secret}", secret=secret) == "failed for key ***"
    assert redact_text("nothing", secret=None) == "nothing"


def test_add_query_params_keeps_existing():
    u = add_query_params("https://a.example.com/list?page=2", {"page": "9", "token": "T"})
    assert u == "https://a.example.com/list?page=2&token=T"


def test_fetch_account_ok():
    sess = _StubSession(
        payload={"requestCount": 120, "requestLimit": 1000, "concurrencyLimit": 5, "failedRequestCount": 3}
    )
    cfg = ScraperApiConfig(api_key="K9")
    acct = fetch_account(cfg, session=sess)
    assert acct.request_count == 120
    assert acct.credits_left == 880
    assert acct.concurrency_limit == 5
    assert acct.failed_request_count == 3
    assert sess.calls[0]["url"] == "https://api.scraperapi.com/account"
    assert sess.calls[0]["params"] == {"api_key": "K9"}


def test_fetch_account_rejected_key():
    cfg = ScraperApiConfig(api_key="bad")
    with pytest.raises(AuthError) as ei:
        fetch_account(cfg, session=_StubSession(status=401, payload={"error": "invalid key"}))
    assert ei.value.status == 401

    with pytest.raises(AuthError) as ei:
        fetch_account(cfg, session=_StubSession(status=403, payload={}))
    assert ei.value.kind == "auth"


def test_fetch_account_errors():
    cfg = ScraperApiConfig(api_key="K")
    with pytest.raises(ScrapeError) as ei:
        fetch_account(cfg, session=_StubSession(status=502, payload={}))
    assert ei.value.kind == "server"

    with pytest.raises(ScrapeError) as ei:
        fetch_account(cfg, session=_StubSession(status=429, payload={}))
    assert ei.value.kind == "rate_limited"
    assert ei.value.status == 429

    with pytest.raises(ScrapeError) as ei:
        fetch_account(cfg, session=_StubSession(status=400, payload={}))
    assert ei.value.kind == "client"

    with pytest.raises(ScrapeError) as ei:
        fetch_account(cfg, session=_StubSession(raw=b"<html>oops</html>"))
    assert ei.value.kind == "parse"

    with pytest.raises(ScrapeError) as ei:
        fetch_account(cfg, session=_StubSession(exc=requests.ConnectTimeout("slow")))
    assert ei.value.kind == "timeout"

    with pytest.raises(ConfigError):
        fetch_account(ScraperApiConfig(mode="direct"), session=_StubSession())


def test_account_info_snake_case_and_concurrency():
    acct = AccountInfo.from_dict({"request_count": "10", "request_limit": 5, "concurrency_limit": 3})
    assert acct.credits_left == 0
    assert effective_concurrency(10, acct) == 3
    assert effective_concurrency(2, acct) == 2
    assert effective_concurrency(8, None) == 8
    assert effective_concurrency(0, None) == 1
