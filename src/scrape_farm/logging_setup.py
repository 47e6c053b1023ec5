from __future__ import annotations

"""
logging_setup.py — структурные логи фермы (structlog поверх stdlib logging).

- console (по умолчанию): читаемые строки key=value в stderr
- json (LOG_FORMAT=json или --log-json): одна JSON-строка на событие,
  удобно грузить в любой агрегатор логов

run_id кладётся в contextvars и попадает во все события прогона.
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars
from structlog.typing import Processor


def configure_logging(
    *,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    stream: Any = None,
) -> None:
    """Настроить structlog + stdlib logging. Повторный вызов переконфигурирует."""
    lvl_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").strip().lower() == "json"

    processors: list[Processor] = [
        merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors += [
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    # stdout занят JSON-отчётами CLI, логи идут в stderr
    logging.basicConfig(
        format="%(message)s",
        handlers=[logging.StreamHandler(stream or sys.stderr)],
        level=lvl,
        force=True,
    )
    # aiohttp/urllib3 слишком болтливы на DEBUG
    logging.getLogger("aiohttp").setLevel(max(lvl, logging.WARNING))
    logging.getLogger("urllib3").setLevel(max(lvl, logging.WARNING))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_logger(name: Optional[str] = None) -> Any:
    # ленивый прокси: конфиг берётся при вызове, а не при импорте модуля
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_run(run_id: str, **extra: Any) -> None:
    bind_contextvars(run_id=run_id, **extra)


def clear_run() -> None:
    clear_contextvars()
