from __future__ import annotations

"""storage_jsonl.py — JSONL-вывод: одна строка на URL (метаданные ответа + items, без тела)."""

import json
from pathlib import Path
from typing import IO, Any, Optional


class JsonlWriter:
    def __init__(self, path: str, *, append: bool = False) -> None:
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._f: Optional[IO[str]] = open(self.path, "a" if append else "w", encoding="utf-8")
        self.rows = 0

    def write(self, row: dict[str, Any], *, items: Optional[list[dict[str, Any]]] = None) -> None:
        assert self._f is not None, "writer is closed"
        out = dict(row)
        if items is not None:
            out["items"] = items
        self._f.write(json.dumps(out, ensure_ascii=False) + "\n")
        self.rows += 1

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def __enter__(self) -> "JsonlWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_jsonl(path: str) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                out.append(json.loads(line))
    return out
