from __future__ import annotations

"""
parse.py — извлечение items из скачанной страницы (HTML через BeautifulSoup, JSON через resp_read).

Мини-язык полей (ParseSpec.fields):
    "h2::text"          — текст первого h2 внутри item
    "a::attr(href)"     — атрибут href первого a внутри item
    "::text"            — текст самого item
    "::attr(data-id)"   — атрибут самого item
    "span.price"        — то же, что "span.price::text"

href/src делаются абсолютными относительно URL страницы.

Ошибки разбора — ParseError: пайплайн логирует их, считает в метриках и идёт дальше.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .errors import ParseError
from .resp_read import read_text_safely, safe_read_json


_WS_RE = re.compile(r"\s+")
_FIELD_RE = re.compile(r"^(?P<sel>.*?)(?:::(?P<op>text|attr\((?P<attr>[^()]+)\)))?$")
_URL_ATTRS = ("href", "src")


@dataclass
class ParseSpec:
    mode: str = "html"  # html | json | none
    items_selector: Optional[str] = None
    fields: dict[str, str] = field(default_factory=dict)
    id_attr: Optional[str] = None
    items_path: Optional[str] = None
    id_path: Optional[str] = None
    id_keys: tuple[str, ...] = ("id", "uuid", "sku", "slug")
    require_items: bool = False
    parser: str = "html.parser"

    @staticmethod
    def from_dict(d: Optional[dict[str, Any]]) -> "ParseSpec":
        d = dict(d or {})
        mode = str(d.get("mode") or "html").strip().lower()
        if mode not in ("html", "json", "none"):
            mode = "html"
        fields = d.get("fields")
        id_keys = d.get("id_keys")
        sel = d.get("items_selector")
        return ParseSpec(
            mode=mode,
            items_selector=sel.strip() if isinstance(sel, str) and sel.strip() else None,
            fields={str(k): str(v) for k, v in fields.items()} if isinstance(fields, dict) else {},
            id_attr=(str(d["id_attr"]) if d.get("id_attr") else None),
            items_path=(str(d["items_path"]) if d.get("items_path") else None),
            id_path=(str(d["id_path"]) if d.get("id_path") else None),
            id_keys=tuple(str(x) for x in id_keys) if isinstance(id_keys, (list, tuple)) else ("id", "uuid", "sku", "slug"),
            require_items=bool(d.get("require_items", False)),
            parser=str(d.get("parser") or "html.parser"),
        )


def get_by_path(obj: Any, path: str) -> Any:
    """Dot-path: "a.b.c" для dict, "arr.0.id" для list. None — если пути нет."""
    cur = obj
    for seg in path.split("."):
        if isinstance(cur, list) and seg.isdigit():
            idx = int(seg)
            if not (0 <= idx < len(cur)):
                return None
            cur = cur[idx]
        elif isinstance(cur, dict) and seg in cur:
            cur = cur[seg]
        else:
            return None
    return cur


def _clean(s: str) -> str:
    return _WS_RE.sub(" ", s or "").strip()


def _select_one(node: Tag, selector: str) -> Optional[Tag]:
    try:
        return node.select_one(selector)
    except Exception as e:  # soupsieve SelectorSyntaxError и прочие ошибки селектора
        raise ParseError(f"bad selector {selector!r}: {e}") from e


def _select(node: Tag, selector: str) -> list[Tag]:
    try:
        return list(node.select(selector))
    except Exception as e:
        raise ParseError(f"bad selector {selector!r}: {e}") from e


def eval_field(node: Tag, expr: str, *, base_url: Optional[str] = None) -> Optional[str]:
    m = _FIELD_RE.match(expr.strip())
    if m is None:
        raise ParseError(f"bad field expression: {expr!r}")
    sel = (m.group("sel") or "").strip()
    attr = m.group("attr")

    target: Optional[Tag] = node if not sel else _select_one(node, sel)
    if target is None:
        return None

    if attr:
        attr = attr.strip().lower()
        val = target.get(attr)
        if val is None:
            return None
        if isinstance(val, list):
            val = " ".join(val)
        val = str(val).strip()
        if attr in _URL_ATTRS and base_url and val:
            val = urljoin(base_url, val)
        return val

    return _clean(target.get_text(" "))


def _page_item(soup: BeautifulSoup, spec: ParseSpec, base_url: Optional[str]) -> dict[str, Any]:
    title = soup.title.get_text(" ") if soup.title is not None else ""
    desc_tag = soup.find("meta", attrs={"name": "description"})
    desc = desc_tag.get("content") if isinstance(desc_tag, Tag) else None
    item: dict[str, Any] = {
        "url": base_url,
        "title": _clean(title),
        "meta_description": _clean(str(desc)) if desc else None,
        "links_count": len(soup.find_all("a", href=True)),
    }
    for name, expr in spec.fields.items():
        item[name] = eval_field(soup, expr, base_url=base_url)
    return item


def extract_html_items(html: str, spec: ParseSpec, *, base_url: Optional[str] = None) -> list[dict[str, Any]]:
    soup = BeautifulSoup(html or "", spec.parser)
    if not spec.items_selector:
        return [_page_item(soup, spec, base_url)]

    items: list[dict[str, Any]] = []
    for node in _select(soup, spec.items_selector):
        item: dict[str, Any] = {}
        if spec.id_attr:
            v = node.get(spec.id_attr)
            if v is not None:
                item["id"] = " ".join(v) if isinstance(v, list) else str(v)
        for name, expr in spec.fields.items():
            item[name] = eval_field(node, expr, base_url=base_url)
        items.append(item)
    return items


def extract_json_items(body: Optional[bytes], headers: Optional[dict[str, str]], spec: ParseSpec) -> list[dict[str, Any]]:
    jr = safe_read_json(body, headers, force=True, detect_soft=False)
    if not jr.ok:
        raise ParseError(f"{jr.error}: {jr.details or ''}".strip())
    data = jr.data

    if spec.items_path:
        found = get_by_path(data, spec.items_path)
        if found is None:
            raise ParseError(f"items_path not found: {spec.items_path}")
        data = found

    if isinstance(data, list):
        return [x if isinstance(x, dict) else {"value": x} for x in data]
    if isinstance(data, dict):
        return [data]
    return [{"value": data}]


def extract_items(result: Any, spec: ParseSpec) -> list[dict[str, Any]]:
    """result — FetchResult. Бросает ParseError."""
    if spec.mode == "none":
        return []

    if spec.mode == "json":
        items = extract_json_items(result.body, result.headers, spec)
    else:
        tp = read_text_safely(result.body, result.headers)
        if tp is None:
            raise ParseError("binary content, expected HTML")
        items = extract_html_items(tp.text, spec, base_url=result.final_url or result.url)

    if spec.require_items and not items:
        raise ParseError("no items extracted")
    return items
