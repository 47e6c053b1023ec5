from __future__ import annotations

"""
retry.py — политика повторов: exponential backoff + full jitter + Retry-After.
"""

import random
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

from .errors import is_retryable


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    cap_delay: float = 8.0
    jitter: str = "full"  # none | full
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)
    respect_retry_after: bool = True
    max_retry_after: float = 60.0

    def should_retry(self, kind: Optional[str], status: Optional[int]) -> bool:
        """Сетевые ошибки (status=None) повторяем всегда, HTTP — только из retry_statuses."""
        if not is_retryable(kind):
            return False
        return status is None or int(status) in self.retry_statuses


def make_retry_policy_from_cfg(cfg: Optional[dict[str, Any]]) -> RetryPolicy:
    """Секция http.retries; неизвестные ключи игнорируются."""
    pol = RetryPolicy()
    if not isinstance(cfg, dict):
        return pol
    for f in fields(RetryPolicy):
        if cfg.get(f.name) is None:
            continue
        val = cfg[f.name]
        if f.name == "retry_statuses":
            val = tuple(int(x) for x in val)
        else:
            val = type(getattr(pol, f.name))(val)
        setattr(pol, f.name, val)
    pol.max_attempts = max(1, pol.max_attempts)
    return pol


def backoff_delay(attempt: int, pol: RetryPolicy) -> float:
    """min(cap, base * 2^(attempt-1)); full jitter -> uniform(0, это)."""
    delay = min(pol.cap_delay, pol.base_delay * 2 ** max(0, attempt - 1))
    return random.uniform(0.0, delay) if pol.jitter == "full" else float(delay)


def _http_date_delta(value: str) -> Optional[float]:
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (when - datetime.now(timezone.utc)).total_seconds()


def retry_after_seconds(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """Retry-After: секунды или HTTP-date. None — если нет или уже в прошлом."""
    raw = ""
    for k, v in (headers or {}).items():
        if str(k).lower() == "retry-after":
            raw = str(v).strip()
            break
    if not raw:
        return None
    try:
        sec: Optional[float] = float(raw)
    except ValueError:
        sec = _http_date_delta(raw)
    return sec if sec is not None and sec > 0 else None


def next_delay(attempt: int, pol: RetryPolicy, headers: Optional[Mapping[str, str]] = None) -> float:
    """Сколько ждать перед попыткой attempt+1."""
    ra = retry_after_seconds(headers) if pol.respect_retry_after else None
    if ra is not None:
        return min(ra, pol.max_retry_after)
    return backoff_delay(attempt, pol)
