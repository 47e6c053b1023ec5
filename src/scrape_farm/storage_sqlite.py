from __future__ import annotations

"""
storage_sqlite.py — SQLite-хранилище результатов прогона.

Таблицы:
1) runs          — один прогон = одна строка (+ итоговые метрики JSON)
2) pages         — одна строка на URL в прогоне (статус, вид ошибки, попытки, латентность)
3) items_raw     — каждая встреча item (повторы не теряются)
4) items_unique  — "витрина": уникальные items + seen_count + последний payload
5) failures      — очередь "разобраться": неуспешные URL (open -> resolved)

Термины:
- upsert: INSERT если нет, иначе UPDATE
- WAL: режим журнала, при котором чтение не блокирует запись
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import hashlib
import json
import sqlite3
import uuid
from typing import Any, Optional

from .keying import extract_item_id, make_item_key
from .parse import ParseSpec


@dataclass
class ItemWriteStats:
    items_seen: int = 0
    raw_inserted: int = 0
    unique_inserted: int = 0
    unique_updated: int = 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_or_none(s: Any) -> Any:
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        return None


class ResultStore:
    """Хранилище прогонов: runs + pages + items (raw/unique) + failures."""

    def __init__(self, db_path: str, *, parse_spec: Optional[ParseSpec] = None) -> None:
        self.db_path = str(db_path)
        self.parse_spec = parse_spec or ParseSpec()

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        try:
            self.conn.commit()
        finally:
            self.conn.close()

    def __enter__(self) -> "ResultStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                name TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                stopped_reason TEXT,
                summary_json TEXT
            );

            CREATE TABLE IF NOT EXISTS pages (
                pid INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                url TEXT NOT NULL,
                ok INTEGER NOT NULL,
                status INTEGER,
                error_kind TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                elapsed_ms INTEGER NOT NULL DEFAULT 0,
                final_url TEXT,
                bytes INTEGER NOT NULL DEFAULT 0,
                credits INTEGER NOT NULL DEFAULT 0,
                block_hint TEXT,
                items_count INTEGER NOT NULL DEFAULT 0,
                body_sha1 TEXT,
                fetched_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_pages_run_id ON pages(run_id);
            CREATE INDEX IF NOT EXISTS idx_pages_url ON pages(url);

            CREATE TABLE IF NOT EXISTS items_raw (
                rid INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                url TEXT NOT NULL,
                seq INTEGER NOT NULL,
                item_key TEXT NOT NULL,
                item_id TEXT,
                payload TEXT NOT NULL,
                seen_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_items_raw_item_key ON items_raw(item_key);
            CREATE INDEX IF NOT EXISTS idx_items_raw_run_id ON items_raw(run_id);

            CREATE TABLE IF NOT EXISTS items_unique (
                item_key TEXT PRIMARY KEY,
                item_id TEXT,
                url TEXT,
                payload TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                seen_count INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS failures (
                fid INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                resolved_note TEXT,
                run_id TEXT,
                url TEXT NOT NULL,
                kind TEXT NOT NULL,
                status INTEGER,
                error TEXT,
                attempts INTEGER,
                block_hint TEXT,
                resp_snippet TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_failures_run_id ON failures(run_id);
            CREATE INDEX IF NOT EXISTS idx_failures_open ON failures(resolved_at);
            """
        )
        self.conn.commit()

    # -----------------
    # runs
    # -----------------

    @staticmethod
    def new_run_id() -> str:
        return str(uuid.uuid4())

    def start_run(self, run_id: str, *, name: Optional[str] = None) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO runs(run_id, name, started_at) VALUES(?,?,?)",
            (run_id, name, _now_iso()),
        )
        self.conn.commit()

    def finish_run(self, run_id: str, *, summary: dict[str, Any], stopped_reason: Optional[str] = None) -> None:
        self.conn.execute(
            "UPDATE runs SET finished_at=?, stopped_reason=?, summary_json=? WHERE run_id=?",
            (_now_iso(), stopped_reason, json.dumps(summary, ensure_ascii=False), run_id),
        )
        self.conn.commit()

    def run_summary(self, run_id: str) -> Optional[dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM runs WHERE run_id=?", (run_id,)).fetchone()
        if not row:
            return None
        out = dict(row)
        out["summary"] = _json_or_none(out.pop("summary_json"))
        return out

    def latest_run_id(self) -> Optional[str]:
        row = self.conn.execute("SELECT run_id FROM runs ORDER BY started_at DESC LIMIT 1").fetchone()
        return str(row[0]) if row else None

    # -----------------
    # pages + items
    # -----------------

    def record_page(self, run_id: str, row: dict[str, Any], *, items_count: int = 0, body: Optional[bytes] = None) -> int:
        """row — FetchResult.to_row(). Тело не храним, только sha1."""
        body_sha1 = hashlib.sha1(body).hexdigest() if body else None
        cur = self.conn.execute(
            """
            INSERT INTO pages(run_id, url, ok, status, error_kind, error, attempts, elapsed_ms,
                              final_url, bytes, credits, block_hint, items_count, body_sha1, fetched_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                run_id,
                row["url"],
                1 if row.get("ok") else 0,
                row.get("status"),
                row.get("error_kind"),
                row.get("error"),
                int(row.get("attempts") or 0),
                int(row.get("elapsed_ms") or 0),
                row.get("final_url"),
                int(row.get("bytes") or 0),
                int(row.get("credits") or 0),
                row.get("block_hint"),
                int(items_count),
                body_sha1,
                _now_iso(),
            ),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def _upsert_unique(self, *, item_key: str, item_id: Optional[str], url: str, payload: str, seen_at: str) -> bool:
        """True — вставили новый unique, False — обновили существующий."""
        try:
            self.conn.execute(
                """
                INSERT INTO items_unique(item_key, item_id, url, payload, first_seen_at, last_seen_at, seen_count)
                VALUES(?,?,?,?,?,?,1)
                """,
                (item_key, item_id, url, payload, seen_at, seen_at),
            )
            return True
        except sqlite3.IntegrityError:
            self.conn.execute(
                """
                UPDATE items_unique
                SET last_seen_at=?, seen_count=seen_count+1, payload=?, url=?, item_id=COALESCE(?, item_id)
                WHERE item_key=?
                """,
                (seen_at, payload, url, item_id, item_key),
            )
            return False

    def put_items(self, run_id: str, url: str, items: list[dict[str, Any]]) -> ItemWriteStats:
        st = ItemWriteStats()
        seen_at = _now_iso()
        for seq, item in enumerate(items):
            item_id = extract_item_id(item, self.parse_spec)
            item_key = make_item_key(item, self.parse_spec)
            payload = json.dumps(item, ensure_ascii=False)
            self.conn.execute(
                "INSERT INTO items_raw(run_id, url, seq, item_key, item_id, payload, seen_at) VALUES(?,?,?,?,?,?,?)",
                (run_id, url, seq, item_key, item_id, payload, seen_at),
            )
            st.items_seen += 1
            st.raw_inserted += 1
            if self._upsert_unique(item_key=item_key, item_id=item_id, url=url, payload=payload, seen_at=seen_at):
                st.unique_inserted += 1
            else:
                st.unique_updated += 1
        self.conn.commit()
        return st

    def count_pages(self, run_id: Optional[str] = None) -> int:
        if run_id:
            row = self.conn.execute("SELECT COUNT(*) FROM pages WHERE run_id=?", (run_id,)).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM pages").fetchone()
        return int(row[0]) if row else 0

    def count_raw(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM items_raw").fetchone()
        return int(row[0]) if row else 0

    def count_unique(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM items_unique").fetchone()
        return int(row[0]) if row else 0

    def pages(self, run_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM pages WHERE run_id=? ORDER BY pid", (run_id,)).fetchall()
        return [dict(r) for r in rows]

    # -----------------
    # failures
    # -----------------

    def record_failure(
        self,
        *,
        run_id: Optional[str],
        url: str,
        kind: str,
        status: Optional[int] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
        block_hint: Optional[str] = None,
        resp_snippet: Optional[str] = None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO failures(created_at, run_id, url, kind, status, error, attempts, block_hint, resp_snippet)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (_now_iso(), run_id, url, kind, status, error, attempts, block_hint, (resp_snippet or "")[:1200] or None),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def list_failures(
        self,
        *,
        open_only: bool = True,
        run_id: Optional[str] = None,
        kinds: Optional[list[str]] = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        where: list[str] = []
        args: list[Any] = []
        if open_only:
            where.append("resolved_at IS NULL")
        if run_id:
            where.append("run_id=?")
            args.append(run_id)
        if kinds:
            where.append("kind IN (" + ",".join("?" for _ in kinds) + ")")
            args.extend(kinds)
        sql = "SELECT * FROM failures"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY fid LIMIT ?"
        args.append(int(limit))
        return [dict(r) for r in self.conn.execute(sql, args).fetchall()]

    def failed_urls(self, run_id: Optional[str] = None, *, kinds: Optional[list[str]] = None) -> list[str]:
        """Уникальные URL открытых failures (порядок первого появления)."""
        out: list[str] = []
        seen: set[str] = set()
        for r in self.list_failures(open_only=True, run_id=run_id, kinds=kinds, limit=10**9):
            u = str(r["url"])
            if u not in seen:
                seen.add(u)
                out.append(u)
        return out

    def resolve_failure(self, fid: int, *, note: Optional[str] = None) -> bool:
        cur = self.conn.execute(
            "UPDATE failures SET resolved_at=?, resolved_note=? WHERE fid=? AND resolved_at IS NULL",
            (_now_iso(), note, int(fid)),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def resolve_url(self, url: str, *, note: Optional[str] = None) -> int:
        """Закрыть все открытые failures по URL (после успешного повтора)."""
        cur = self.conn.execute(
            "UPDATE failures SET resolved_at=?, resolved_note=? WHERE url=? AND resolved_at IS NULL",
            (_now_iso(), note, url),
        )
        self.conn.commit()
        return int(cur.rowcount)
