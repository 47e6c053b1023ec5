from __future__ import annotations

"""
metrics.py — метрики прогона ("приборная панель").

Считаем всё в памяти одного процесса: счётчики, гистограмма статусов,
латентности попыток, кредиты API. В конце прогона:
- summary() — dict (пишется в БД и печатается JSON-ом),
- format_text() — короткая таблица для человека.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional


def percentile(values: list[float], q: float) -> float:
    """Перцентиль методом nearest-rank (q в 0..100). Пустой список -> 0."""
    if not values:
        return 0.0
    s = sorted(values)
    if q <= 0:
        return float(s[0])
    if q >= 100:
        return float(s[-1])
    k = int(-(-q * len(s) // 100))  # ceil
    return float(s[max(0, k - 1)])


@dataclass
class RunMetrics:
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    requests: int = 0        # задач (URL), доведённых до результата
    attempts: int = 0        # HTTP-попыток всего
    retries: int = 0         # попыток сверх первой
    requeued: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    bytes_received: int = 0
    credits: int = 0
    items: int = 0
    parse_errors: int = 0

    status_counts: Counter = field(default_factory=Counter)
    error_counts: Counter = field(default_factory=Counter)
    block_hints: Counter = field(default_factory=Counter)
    attempt_ms: list[float] = field(default_factory=list)
    result_ms: list[float] = field(default_factory=list)

    def observe_attempt(self, *, status: Optional[int], elapsed_ms: float, error_kind: Optional[str] = None) -> None:
        self.attempts += 1
        self.attempt_ms.append(float(elapsed_ms))
        self.status_counts[str(status) if status is not None else "none"] += 1

    def observe_result(self, result: Any) -> None:
        """result — FetchResult (duck-typing, чтобы не тянуть engine сюда)."""
        self.requests += 1
        self.retries += max(0, int(result.attempts) - 1)
        self.result_ms.append(float(result.elapsed_ms))
        if result.ok:
            self.successes += 1
            self.bytes_received += len(result.body or b"")
            self.credits += int(getattr(result, "credits", 0) or 0)
        else:
            self.failures += 1
            self.error_counts[str(result.error_kind or "unknown")] += 1
        hint = getattr(result, "block_hint", None)
        if hint:
            self.block_hints[str(hint)] += 1

    def observe_items(self, n: int) -> None:
        self.items += int(n)

    def observe_parse_error(self) -> None:
        self.parse_errors += 1
        self.error_counts["parse"] += 1

    def observe_requeue(self, result: Any = None) -> None:
        """
        Задача ушла в очередь повторно. Её попытки до observe_result не дойдут:
        все они (attempts - 1 внутри fetch и первая попытка следующего fetch) идут в retries.
        """
        self.requeued += 1
        if result is not None:
            self.retries += int(result.attempts)

    def observe_skipped(self, n: int = 1) -> None:
        self.skipped += int(n)

    def finish(self) -> None:
        if self.finished_at is None:
            self.finished_at = time.monotonic()

    @property
    def elapsed_s(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    def summary(self) -> dict[str, Any]:
        elapsed = self.elapsed_s
        done = self.successes + self.failures
        return {
            "requests": self.requests,
            "attempts": self.attempts,
            "retries": self.retries,
            "requeued": self.requeued,
            "successes": self.successes,
            "failures": self.failures,
            "skipped": self.skipped,
            "success_rate": round(self.successes / done, 4) if done else 0.0,
            "items": self.items,
            "parse_errors": self.parse_errors,
            "bytes": self.bytes_received,
            "credits": self.credits,
            "status_counts": dict(sorted(self.status_counts.items())),
            "error_counts": dict(sorted(self.error_counts.items())),
            "block_hints": dict(sorted(self.block_hints.items())),
            "p50_ms": round(percentile(self.attempt_ms, 50), 1),
            "p95_ms": round(percentile(self.attempt_ms, 95), 1),
            "max_ms": round(max(self.attempt_ms), 1) if self.attempt_ms else 0.0,
            "elapsed_s": round(elapsed, 3),
            "throughput_rps": round(self.requests / elapsed, 3) if elapsed > 0 else 0.0,
        }

    def format_text(self) -> str:
        s = self.summary()
        lines = [
            "=" * 44,
            f"{'requests':<16}{s['requests']:>10}   ok={s['successes']} fail={s['failures']} skip={s['skipped']}",
            f"{'success rate':<16}{s['success_rate'] * 100:>9.1f}%",
            f"{'attempts':<16}{s['attempts']:>10}   retries={s['retries']} requeued={s['requeued']}",
            f"{'items':<16}{s['items']:>10}   parse_errors={s['parse_errors']}",
            f"{'latency ms':<16}{s['p50_ms']:>10}   p95={s['p95_ms']} max={s['max_ms']}",
            f"{'throughput':<16}{s['throughput_rps']:>10}   rps over {s['elapsed_s']}s",
            f"{'credits':<16}{s['credits']:>10}   bytes={s['bytes']}",
        ]
        if s["status_counts"]:
            lines.append("statuses: " + " ".join(f"{k}={v}" for k, v in s["status_counts"].items()))
        if s["error_counts"]:
            lines.append("errors:   " + " ".join(f"{k}={v}" for k, v in s["error_counts"].items()))
        if s["block_hints"]:
            lines.append("blocks:   " + " ".join(f"{k}={v}" for k, v in s["block_hints"].items()))
        lines.append("=" * 44)
        return "\n".join(lines)
