from __future__ import annotations

"""
limits.py — ограничители скорости для async-движка (по целевому домену).

acquire() ничего не ждёт сам: он бронирует слот и возвращает,
сколько секунд до него осталось. Спит движок (asyncio.sleep вне семафора).
Вызовы идут из одного event loop, поэтому блокировок здесь нет.

Конфиг (секция http):
    "limiters":   {"*": {...}, "shop.com": {...}}      # по домену / суффиксу / по умолчанию
    "rate_limit": {"kind": "token_bucket", "rate_per_sec": 2, "scope": "global"}
"""

import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


class RateLimiter:
    """acquire() -> секунды ожидания перед следующим запросом."""

    def acquire(self) -> float:
        raise NotImplementedError


class NoLimit(RateLimiter):
    def acquire(self) -> float:
        return 0.0


@dataclass
class TokenBucket(RateLimiter):
    """
    Средняя скорость rate_per_sec, разовый рывок до capacity запросов.

    Токен списывается сразу, даже если его ещё нет: баланс уходит в минус,
    и следующий вызов получит ожидание уже за двоих.
    """

    rate_per_sec: float
    capacity: float
    start_full: bool = True
    tokens: float = 0.0
    last_ts: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if self.start_full:
            self.tokens = float(self.capacity)

    def _refill(self, now: float) -> None:
        gained = max(0.0, now - self.last_ts) * self.rate_per_sec
        self.tokens = min(float(self.capacity), self.tokens + gained)
        self.last_ts = now

    def acquire(self) -> float:
        self._refill(time.monotonic())
        self.tokens -= 1.0
        if self.tokens >= 0.0:
            return 0.0
        return -self.tokens / max(self.rate_per_sec, 1e-9)


@dataclass
class SlidingWindow(RateLimiter):
    """Не больше max_requests отметок в любом окне window_sec."""

    max_requests: int
    window_sec: float
    booked: deque = field(default_factory=deque)

    def acquire(self) -> float:
        now = time.monotonic()
        while self.booked and self.booked[0] <= now - self.window_sec:
            self.booked.popleft()

        if len(self.booked) < self.max_requests:
            self.booked.append(now)
            return 0.0

        # отметки растут монотонно: слот = отметка max_requests назад + окно
        slot = self.booked[-self.max_requests] + self.window_sec
        self.booked.append(slot)
        return max(0.0, slot - now)


@dataclass
class MinDelayWrapper(RateLimiter):
    """Пауза не меньше min_delay между запросами плюс случайные 0..jitter сверху."""

    inner: RateLimiter
    min_delay: float = 0.0
    jitter: float = 0.0
    _ready_at: float = 0.0

    def acquire(self) -> float:
        wait = float(self.inner.acquire())
        now = time.monotonic()
        wait = max(wait, self._ready_at - now)
        if self.jitter > 0:
            wait += random.uniform(0.0, self.jitter)
        wait = max(0.0, wait)
        self._ready_at = now + wait + max(0.0, self.min_delay)
        return wait


def _seconds(cfg: dict[str, Any], key: str) -> float:
    """cfg[key] в секундах или cfg[key + "_ms"] в миллисекундах."""
    if cfg.get(key) is not None:
        return float(cfg[key])
    if cfg.get(key + "_ms") is not None:
        return float(cfg[key + "_ms"]) / 1000.0
    return 0.0


def limiter_from_cfg(cfg: Optional[dict[str, Any]]) -> RateLimiter:
    """
    kind: token_bucket (по умолчанию) | sliding_window | none.
    token_bucket: rate_per_sec=1, capacity=2, start_full=true;
    sliding_window: max_requests=10, window_sec=1.
    min_delay/jitter (или *_ms) оборачивают результат в MinDelayWrapper.
    """
    cfg = dict(cfg or {})
    kind = str(cfg.get("kind") or "token_bucket").strip().lower()

    inner: RateLimiter
    if kind in ("none", "off", "disabled"):
        inner = NoLimit()
    elif kind in ("sliding_window", "window"):
        inner = SlidingWindow(int(cfg.get("max_requests", 10)), float(cfg.get("window_sec", 1.0)))
    else:
        inner = TokenBucket(
            float(cfg.get("rate_per_sec", 1.0)),
            float(cfg.get("capacity", 2.0)),
            start_full=bool(cfg.get("start_full", True)),
        )

    min_delay, jitter = _seconds(cfg, "min_delay"), _seconds(cfg, "jitter")
    if min_delay or jitter:
        return MinDelayWrapper(inner, min_delay=min_delay, jitter=jitter)
    return inner


def _pick(limiters: dict[str, Any], domain: str) -> Optional[dict[str, Any]]:
    cfg = limiters.get(domain)
    if cfg is None:
        cfg = next(
            (v for k, v in limiters.items() if isinstance(k, str) and k not in ("", "*") and domain.endswith(k)),
            limiters.get("*"),
        )
    return cfg if isinstance(cfg, dict) else None


def build_limiter_factory(http_cfg: Optional[dict[str, Any]]) -> Callable[[str], RateLimiter]:
    """
    factory(domain) -> RateLimiter для движка.
    http.limiters важнее http.rate_limit; без обоих — NoLimit (остаётся семафор).
    rate_limit.scope=global: один ограничитель на все домены.
    """
    http_cfg = dict(http_cfg or {})

    limiters = http_cfg.get("limiters")
    if isinstance(limiters, dict) and limiters:
        table = dict(limiters)

        def factory(domain: str) -> RateLimiter:
            cfg = _pick(table, domain)
            return limiter_from_cfg(cfg) if cfg is not None else NoLimit()

        return factory

    rl_cfg = http_cfg.get("rate_limit")
    if not isinstance(rl_cfg, dict) or not rl_cfg:
        return lambda _domain: NoLimit()
    if str(rl_cfg.get("scope") or "domain").lower() == "global":
        shared = limiter_from_cfg(rl_cfg)
        return lambda _domain: shared
    return lambda _domain: limiter_from_cfg(rl_cfg)
