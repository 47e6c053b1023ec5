from __future__ import annotations

"""
resp_read.py — чтение уже скачанного тела ответа (bytes + headers) в текст/JSON.

Через scraping API тело приходит "как есть" от целевого сайта, поэтому:
- 200 с HTML-капчей вместо JSON ловим до json.loads (error=not_json);
- XSSI-префиксы и BOM срезаем;
- JSON с "error"/"errors"/success=false считаем soft_error;
- кодировку берём из заголовка, иначе перебираем utf-8 -> cp1251.

HTTP здесь нет.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


JSONType = Union[dict[str, Any], list[Any]]

_BINARY_PREFIXES = ("image/", "audio/", "video/", "font/")
_BINARY_MARKERS = ("pdf", "zip", "octet-stream", "gzip", "protobuf")
_XSSI_PREFIXES = (")]}'", "while(1);", "for(;;);", "throw 1;")
_CHARSET_RE = re.compile(r"charset=[\"']?([\w.:-]+)", re.IGNORECASE)

_FAIL_WORDS = frozenset({"false", "0", "no", "fail", "failed", "error"})


@dataclass
class TextPayload:
    text: str
    encoding_used: str
    source: str  # header_charset | fallback_list | fallback_utf8
    content_type: str = ""
    size_bytes: int = 0


@dataclass
class JsonReadResult:
    ok: bool
    data: Optional[JSONType] = None
    error: Optional[str] = None  # binary | not_json | json_decode_error | soft_error
    details: Optional[str] = None
    preview: Optional[str] = None
    encoding_used: Optional[str] = None
    content_type: Optional[str] = None


def content_type_of(headers: Optional[Mapping[str, str]]) -> str:
    if not headers:
        return ""
    for k, v in headers.items():
        if str(k).lower() == "content-type":
            return str(v)
    return ""


def is_binary_content_type(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return ct.startswith(_BINARY_PREFIXES) or any(m in ct for m in _BINARY_MARKERS)


def read_text_safely(
    body: Optional[bytes],
    headers: Optional[Mapping[str, str]] = None,
    *,
    fallback_encodings: tuple[str, ...] = ("utf-8", "cp1251"),
) -> Optional[TextPayload]:
    """
    bytes -> TextPayload; None для бинарного Content-Type.

    charset из заголовка доверяем (с errors="replace"), если Python его знает.
    Иначе первая из fallback_encodings, что декодирует без ошибок,
    и в самом конце utf-8 с заменой.
    """
    ctype = content_type_of(headers)
    if is_binary_content_type(ctype):
        return None
    raw = body or b""

    m = _CHARSET_RE.search(ctype)
    if m:
        charset = m.group(1)
        try:
            text = raw.decode(charset, errors="replace")
        except LookupError:
            pass
        else:
            return TextPayload(text, charset, "header_charset", ctype, len(raw))

    for enc in fallback_encodings:
        try:
            text = raw.decode(enc)
        except (UnicodeDecodeError, LookupError):
            continue
        return TextPayload(text, enc, "fallback_list", ctype, len(raw))

    return TextPayload(raw.decode("utf-8", errors="replace"), "utf-8", "fallback_utf8", ctype, len(raw))


def strip_xssi_prefix(text: str) -> str:
    """Срезать ")]}'" и похожие защитные префиксы (вместе с остатком первой строки)."""
    t = text.lstrip()
    pref = next((p for p in _XSSI_PREFIXES if t.startswith(p)), None)
    if pref is None:
        return text
    _, sep, rest = t.partition("\n")
    return rest if sep else t[len(pref):]


def _json_text(text: str) -> str:
    return strip_xssi_prefix(text.lstrip("\ufeff")).lstrip()


def looks_like_json(content_type: str, text: str) -> bool:
    if "json" in (content_type or "").lower():
        return True
    return _json_text(text)[:1] in ("{", "[")


def detect_soft_error(data: JSONType) -> Optional[str]:
    """
    HTTP 200, но JSON сам говорит об ошибке.
    Пустые "error": null / "errors": [] ошибкой не считаются.
    """
    if not isinstance(data, dict):
        return None

    err = data.get("error")
    if isinstance(err, str) and err.strip():
        return f"error: {err.strip()}"
    if isinstance(err, (dict, list)) and err:
        return "error: non-empty"

    errs = data.get("errors")
    if isinstance(errs, (dict, list)) and errs:
        return "errors: non-empty"

    succ = data.get("success")
    if succ is False:
        return "success=false"
    if isinstance(succ, str) and succ.strip().lower() in _FAIL_WORDS:
        return f"success={succ}"

    status = data.get("status")
    if isinstance(status, str) and status.strip().lower() in ("error", "fail", "failed"):
        return f"status={status.strip()}"
    return None


def safe_read_json(
    body: Optional[bytes],
    headers: Optional[Mapping[str, str]] = None,
    *,
    force: bool = False,
    detect_soft: bool = True,
    preview_len: int = 220,
) -> JsonReadResult:
    """
    Разобрать тело как JSON, не бросая исключений.

    force=True — звать json.loads, даже если тело на JSON не похоже.
    При soft_error data всё равно заполнен (бывает полезно посмотреть).
    """
    ctype = content_type_of(headers)
    tp = read_text_safely(body, headers)
    if tp is None:
        return JsonReadResult(
            ok=False,
            error="binary",
            details=ctype,
            preview=f"<binary {len(body or b'')} bytes>",
            content_type=ctype,
        )

    common = {
        "preview": tp.text[:preview_len].replace("\n", " "),
        "encoding_used": tp.encoding_used,
        "content_type": ctype,
    }

    # капча/логин под видом 200: decode_error на каждом бане не нужен
    if not force and not looks_like_json(ctype, tp.text):
        return JsonReadResult(ok=False, error="not_json", details=ctype, **common)

    try:
        data: JSONType = json.loads(_json_text(tp.text))
    except ValueError as e:
        return JsonReadResult(ok=False, error="json_decode_error", details=str(e), **common)

    soft = detect_soft_error(data) if detect_soft else None
    if soft:
        return JsonReadResult(ok=False, error="soft_error", details=soft, data=data, **common)
    return JsonReadResult(ok=True, data=data, **common)
