from __future__ import annotations

"""
secret_store.py — секреты фермы в отдельном JSON-файле (в репозиторий не попадает).

Путь к файлу — в ENV PARSER_SECRETS_PATH (удобно держать в .env) или --secrets.
Run-конфиг ссылается на секреты только по имени (ref):

    "api":  {"api_key_ref": "scraperapi_main"}          -> ключ scraping API
    "auth": {"ref": "partner_api"}                      -> один секрет на все URL
    "auth": {"by_domain": {"shop.com": "shop_cookies"}} -> по хосту целевого URL

secrets.json:
{
  "scraperapi_main": {"type": "scraper_api", "token": "..."},
  "partner_api":     {"type": "bearer", "token": "..."},
  "shop_token":      {"type": "api_key_header", "header": "X-Api-Token", "token": "..."},
  "shop_query":      {"type": "api_key_query", "param": "key", "token": "..."},
  "shop_cookies":    {"type": "cookies_file", "path": "shop.cookies.json"},
  "staging":         {"type": "basic", "username": "u", "password": "p", "headers": {"X-Env": "stg"}}
}

Секреты auth применяются к ЦЕЛЕВОМУ запросу (заголовки и query целевого URL),
а не к запросу в scraping API. "headers" можно добавить к секрету любого type.
Относительный path у cookies_file считается от папки secrets.json.
"""

import base64
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from .errors import ConfigError


def _domain_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _domain_matches(host: str, cookie_domain: Optional[str]) -> bool:
    if not cookie_domain:
        return True
    d = cookie_domain.lstrip(".").lower()
    return host == d or host.endswith("." + d)


@dataclass(frozen=True)
class AuthSelection:
    """Результат выбора секрета для URL."""
    ref: str
    secret: dict[str, Any]


class SecretStore:
    """
    SecretStore читает secrets.json и даёт доступ по ref.
    """

    ENV_KEY = "PARSER_SECRETS_PATH"
    _cached: Optional["SecretStore"] = None

    def __init__(self, secrets_path: str) -> None:
        self.secrets_path = str(secrets_path)
        self.base_dir = str(Path(self.secrets_path).resolve().parent)
        try:
            raw = _load_json(self.secrets_path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read secrets file {self.secrets_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError("secrets.json must be an object: {ref: {...}}")
        self._secrets: dict[str, dict[str, Any]] = {}
        for k, v in raw.items():
            if isinstance(k, str) and isinstance(v, dict):
                self._secrets[k] = v
        if not self._secrets:
            raise ConfigError("secrets.json has no valid entries")

        # cookies по ref читаем один раз
        self._cookies_cache: dict[str, list[dict[str, Any]]] = {}

    @classmethod
    def from_env(cls) -> Optional["SecretStore"]:
        """Singleton из ENV. Если ENV не задан — вернёт None."""
        if cls._cached is not None:
            return cls._cached
        p = os.getenv(cls.ENV_KEY, "").strip()
        if not p:
            return None
        cls._cached = cls(str(Path(p).expanduser().resolve()))
        return cls._cached

    @classmethod
    def reset_cache(cls) -> None:
        cls._cached = None

    def refs(self) -> list[str]:
        return sorted(self._secrets)

    def get(self, ref: str) -> dict[str, Any]:
        if ref not in self._secrets:
            raise ConfigError(f"secret ref not found: {ref}")
        return self._secrets[ref]

    def api_key_for(self, ref: str) -> str:
        """Ключ scraping API по ref (type=scraper_api, поле token)."""
        sec = self.get(ref)
        typ = _secret_type(sec)
        if typ != "scraper_api":
            raise ConfigError(f"secret '{ref}' is not a scraper_api secret (type={typ or '-'})")
        token = sec.get("token")
        if not isinstance(token, str) or not token.strip():
            raise ConfigError(f"scraper_api secret '{ref}' requires 'token'")
        return token.strip()

    def resolve_ref(self, auth_cfg: dict[str, Any], url: str) -> Optional[str]:
        """
        auth_cfg (секция "auth" run-конфига):
        - {"ref":"client_api"}
        - {"by_domain":{"api.site.com":"ref1","site.com":"ref2"}}

        by_domain: точное совпадение хоста важнее суффикса (site.com покрывает www.site.com).
        """
        if not isinstance(auth_cfg, dict):
            return None
        ref = auth_cfg.get("ref")
        if isinstance(ref, str) and ref:
            return ref
        by_domain = auth_cfg.get("by_domain")
        if not isinstance(by_domain, dict):
            return None
        host = _domain_of(url)
        rules = [(str(k).lower(), v) for k, v in by_domain.items() if isinstance(v, str)]
        exact = [v for k, v in rules if k == host]
        if exact:
            return exact[0]
        for k, v in rules:
            if host.endswith("." + k):
                return v
        return None

    def _resolve_path(self, p: str) -> str:
        pp = Path(p).expanduser()
        return str(pp if pp.is_absolute() else (Path(self.base_dir) / pp).resolve())

    def _load_cookies(self, ref: str, secret: dict[str, Any]) -> list[dict[str, Any]]:
        cached = self._cookies_cache.get(ref)
        if cached is not None:
            return cached
        p = secret.get("path") or secret.get("cookies_path") or secret.get("cookies_file")
        if not isinstance(p, str) or not p.strip():
            raise ConfigError(f"cookies_file secret '{ref}' has no path")
        cookie_path = self._resolve_path(p.strip())
        try:
            raw = _load_json(cookie_path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read cookies file {cookie_path}: {e}") from e
        # Chrome-export (список) или {"cookies": [...]}
        if isinstance(raw, dict):
            raw = raw.get("cookies")
        cookies = [c for c in (raw or []) if isinstance(c, dict) and "name" in c and "value" in c]
        if not cookies:
            raise ConfigError(f"cookies file '{cookie_path}' has no cookies list")
        self._cookies_cache[ref] = cookies
        return cookies

    def cookie_header(self, ref: str, secret: dict[str, Any], url: str) -> Optional[str]:
        """Cookie-заголовок из cookies_file: только куки, чей domain подходит к хосту url."""
        host = _domain_of(url)
        pairs = []
        for c in self._load_cookies(ref, secret):
            dom = c.get("domain")
            if _domain_matches(host, dom if isinstance(dom, str) else None):
                pairs.append(f"{c['name']}={c['value']}")
        return "; ".join(pairs) or None

    def _apply_secret(
        self,
        ref: str,
        secret: dict[str, Any],
        url: str,
        params: dict[str, Any],
        headers: dict[str, str],
    ) -> None:
        typ = _secret_type(secret)
        if typ not in _KNOWN_TYPES:
            raise ConfigError(f"Unsupported secret type: {typ or '-'} (ref={ref})")

        # "headers" можно добавить к секрету любого типа
        extra = secret.get("headers")
        if isinstance(extra, dict):
            headers.update({str(k): str(v) for k, v in extra.items() if isinstance(v, (str, int, float))})

        if typ == "bearer":
            (token,) = _require(ref, secret, "token")
            headers["Authorization"] = f"Bearer {token}"
        elif typ == "api_key_header":
            token, header = _require(ref, secret, "token", "header")
            headers[header] = token
        elif typ == "basic":
            user, password = _require(ref, secret, "username", "password")
            pair = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {pair}"
        elif typ == "api_key_query":
            token, param = _require(ref, secret, "token", "param")
            # явно заданный параметр не затираем
            params.setdefault(param, token)
        elif typ == "cookies_file":
            cookie = self.cookie_header(ref, secret, url)
            if cookie:
                headers["Cookie"] = cookie

    def select_for_url(self, auth_cfg: dict[str, Any], url: str) -> Optional[AuthSelection]:
        ref = self.resolve_ref(auth_cfg, url)
        if not ref:
            return None
        return AuthSelection(ref=ref, secret=self.get(ref))

    def make_auth_hook(self, auth_cfg: dict[str, Any]) -> Callable[[str, dict[str, Any], dict[str, str]], None]:
        """
        hook(url, params, headers) для движка: выбирает секрет по url и дописывает
        в headers/params то, что требует его type. URL без секрета не трогает.
        """
        def _hook(url: str, params: dict[str, Any], headers: dict[str, str]) -> None:
            sel = self.select_for_url(auth_cfg, url)
            if sel is not None:
                self._apply_secret(sel.ref, sel.secret, url, params, headers)

        return _hook


_KNOWN_TYPES = frozenset({"bearer", "api_key_header", "api_key_query", "basic", "headers", "cookies_file", "scraper_api"})


def _secret_type(secret: dict[str, Any]) -> str:
    return str(secret.get("type") or "").strip().lower()


def _require(ref: str, secret: dict[str, Any], *keys: str) -> tuple[str, ...]:
    missing = [k for k in keys if not isinstance(secret.get(k), str) or not secret.get(k)]
    if missing:
        raise ConfigError(f"{_secret_type(secret)} secret '{ref}' requires: {', '.join(missing)}")
    return tuple(str(secret[k]) for k in keys)
