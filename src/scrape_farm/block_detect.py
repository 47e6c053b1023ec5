from __future__ import annotations

"""
block_detect.py — эвристика для распознавания блокировок/антиботов.

Это НЕ "обход". Это детектор: понять, что сайт нас не пустил, записать hint
в результат/БД и не тратить повторы впустую.
Через scraping API блоки обычно снимает сам API; детектор нужен прямому режиму
и "200 + challenge HTML", который иногда проходит и через API.
"""

from typing import Any, Mapping, Optional
import re


_KEEP_HEADERS = ("server", "cf-ray", "location", "content-type", "retry-after")

# фразы "стены": страница просит пройти проверку, а не просто содержит виджет капчи
_WALL_RE = re.compile(
    r"checking your browser|just a moment|verify you are (?:a )?human|are you a robot"
    r"|unusual traffic|complete the (?:captcha|security check|challenge)|prove you.{0,12}human"
)
_LINK_RE = re.compile(r"<a\s[^>]*href", re.IGNORECASE)


def _is_stub_page(text: str, *, max_len: int = 15000, max_links: int = 3) -> bool:
    """Короткая страница почти без ссылок: так выглядят challenge-заглушки."""
    return len(text) < max_len and len(_LINK_RE.findall(text)) <= max_links


def _headers_lower(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def classify_block(
    status: Optional[int],
    headers: Optional[Mapping[str, str]],
    text: Optional[str],
    *,
    url: Optional[str] = None,
    text_limit: int = 6000,
) -> Optional[dict[str, Any]]:
    """
    None — если не похоже на блокировку. Иначе dict:
      - hint: cloudflare|js_challenge|captcha|rate_limited|auth_required|access_denied|blocked
      - status_code, resp_url_final, resp_headers (subset), resp_snippet
    """
    sc = int(status or 0)
    h = _headers_lower(headers)
    full = text or ""
    txt = full[:max(0, int(text_limit))].lower()

    is_cf = ("cf-ray" in h) or ("cloudflare" in h.get("server", "").lower()) or ("__cf_bm" in txt) or ("cf-chl" in txt)
    is_js = ("checking your browser" in txt) or ("just a moment" in txt) or ("verify you are human" in txt)
    is_wall = _WALL_RE.search(txt) is not None
    is_cf_challenge = ("cf-chl" in txt) or ("cf_chl" in txt) or ("challenge-platform" in txt)
    is_captcha = ("g-recaptcha" in txt) or ("hcaptcha" in txt) or re.search(r"\bcaptcha\b", txt) is not None
    is_rate = (sc == 429) or ("too many requests" in txt)
    is_auth = (sc == 401) or (sc == 403 and ("sign in" in txt or "log in" in txt))
    is_denied = (sc == 403) or ("access denied" in txt)

    hint: Optional[str] = None
    if sc and 200 <= sc < 400:
        # 2xx: виджет капчи или CF-заголовки на обычной странице блоком не считаются;
        # нужна разметка CF-challenge или "стена" на странице-заглушке
        if is_cf_challenge or (is_wall and _is_stub_page(full)):
            hint = "captcha" if is_captcha else ("js_challenge" if is_js or is_cf_challenge else "blocked")
    elif is_cf:
        hint = "cloudflare"
        if is_js:
            hint = "js_challenge"
        if is_captcha:
            hint = "captcha"
    elif is_captcha:
        hint = "captcha"
    elif is_js:
        hint = "js_challenge"
    elif is_rate:
        hint = "rate_limited"
    elif is_auth:
        hint = "auth_required"
    elif is_denied:
        hint = "access_denied"

    if hint is None:
        return None

    return {
        "hint": hint,
        "status_code": sc or None,
        "resp_url_final": url,
        "resp_headers": {k: v for k, v in h.items() if k in _KEEP_HEADERS},
        "resp_snippet": full[:1200],
    }
