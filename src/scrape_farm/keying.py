from __future__ import annotations

"""keying.py — единая логика item_id и ключа дедупликации.

Нужна в двух местах: parse (что считать id) и storage (item_key в items_unique).
Держим в одном месте, чтобы не было расхождений.
"""

import hashlib
import json
from typing import Any, Optional

from .parse import ParseSpec, get_by_path


def extract_item_id(item: dict[str, Any], spec: ParseSpec) -> Optional[str]:
    """Приоритет: spec.id_path (dot-path) -> spec.id_keys."""
    val: Any = None

    if spec.id_path:
        val = get_by_path(item, spec.id_path)

    if val is None or val == "":
        for k in spec.id_keys:
            val = get_by_path(item, k) if "." in k else item.get(k)
            if val is not None and val != "":
                break

    if val is None or val == "":
        return None
    return str(val)


def make_item_key(item: dict[str, Any], spec: ParseSpec) -> str:
    """"id:<id>", иначе "sha1:<sha1(json с сортировкой ключей)>"."""
    _id = extract_item_id(item, spec)
    if _id:
        return f"id:{_id}"

    blob = json.dumps(item, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return "sha1:" + hashlib.sha1(blob).hexdigest()
