from __future__ import annotations

"""
errors.py — таксономия ошибок фермы.

Каждый URL заканчивается либо успехом, либо одним "видом" ошибки (kind).
Вид решает судьбу задачи:
- retryable (network/timeout/rate_limited/server) — повторяем с backoff;
- fatal (auth/quota) — останавливаем весь прогон: дальше будет только хуже
  (ключ не тот / кредиты кончились);
- остальные — фиксируем и идём дальше.
"""

from typing import Optional


NETWORK = "network"
TIMEOUT = "timeout"
RATE_LIMITED = "rate_limited"
SERVER = "server"
AUTH = "auth"
QUOTA = "quota"
NOT_FOUND = "not_found"
CLIENT = "client"
BLOCKED = "blocked"
PARSE = "parse"

ALL_KINDS: tuple[str, ...] = (
    NETWORK, TIMEOUT, RATE_LIMITED, SERVER, AUTH, QUOTA, NOT_FOUND, CLIENT, BLOCKED, PARSE,
)

_RETRYABLE = frozenset({NETWORK, TIMEOUT, RATE_LIMITED, SERVER})
_FATAL = frozenset({AUTH, QUOTA})

# Cloudflare-style 52x: origin недоступен, обычно временно
_SERVER_STATUSES = frozenset({500, 502, 503, 504, 520, 521, 522, 523, 524})


class ScrapeError(Exception):
    """Базовая ошибка: kind + message (+ HTTP status, если был)."""

    def __init__(self, kind: str, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind}[{self.status}]: {self.message}"
        return f"{self.kind}: {self.message}"


class ConfigError(ScrapeError):
    def __init__(self, message: str) -> None:
        super().__init__("config", message)


class AuthError(ScrapeError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(AUTH, message, status=status)


class QuotaExceeded(ScrapeError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(QUOTA, message, status=status)


class ParseError(ScrapeError):
    def __init__(self, message: str) -> None:
        super().__init__(PARSE, message)


def classify_status(status: int, *, api_mode: bool) -> Optional[str]:
    """
    HTTP status -> kind (None = успех).

    403 читается по-разному:
    - через scraping API это "кредиты/тариф исчерпаны" (quota);
    - при прямом запросе это почти всегда антибот/запрет (blocked).
    """
    sc = int(status)
    if 200 <= sc < 400:
        return None
    if sc == 401:
        return AUTH
    if sc == 403:
        return QUOTA if api_mode else BLOCKED
    if sc in (404, 410):
        return NOT_FOUND
    if sc == 429:
        return RATE_LIMITED
    if sc in _SERVER_STATUSES or sc >= 500:
        return SERVER
    return CLIENT


def is_retryable(kind: Optional[str]) -> bool:
    return kind in _RETRYABLE


def is_fatal(kind: Optional[str]) -> bool:
    return kind in _FATAL


def error_for_kind(kind: str, message: str, *, status: Optional[int] = None) -> ScrapeError:
    if kind == AUTH:
        return AuthError(message, status=status)
    if kind == QUOTA:
        return QuotaExceeded(message, status=status)
    return ScrapeError(kind, message, status=status)
