"""Which cookies to copy from the user's Chrome profile into the controlled tab.

Three steps:
- resolve_origins: the origins whose cookies matter for a target URL
- per-origin reads with a loopback fallback chain (the cookie store may index
  local cookies under one particular spelling of localhost)
- normalize_cookie: rehome cookies onto the target origin and fix the security
  attributes browsers would otherwise reject on plain-HTTP loopback origins
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import SplitResult, urlsplit

from .config import CookieOriginMapping
from .url import LOOPBACK_HOSTS, is_loopback_host, normalize_url_for_match, url_origin

_LOGGER = logging.getLogger("tablink.cookies")

OAUTH_PROVIDER_ORIGINS: tuple[str, ...] = ("https://twitter.com", "https://x.com", "https://api.twitter.com")
FIRST_PARTY_ORIGINS: tuple[str, ...] = (
    "https://sweetistics.com",
    "https://www.sweetistics.com",
    "https://app.sweetistics.com",
    "https://auth.sweetistics.com",
)
FIRST_PARTY_HOST = "sweetistics.com"
_FIRST_PARTY_DOMAIN_RE = re.compile(r"(^|\.)sweetistics\.[a-z]+$", re.IGNORECASE)

# Deployment-platform session cookies that only make sense on their own origin.
LOOPBACK_DISALLOWED_NAMES = frozenset({"_vercel_session", "_vercel_jwt"})

SECURE_SESSION_PREFIX = "__Secure-better-auth."
PARSE_ERROR_MARKER = "Could not parse domain from URI"

READ_ADDED = "added"
READ_EMPTY = "empty"
READ_PARSE_ERROR = "parse-error"
READ_FAILED = "failed"


class CookieStoreError(Exception):
    pass


class CookieStore(Protocol):
    def get_cookies(self, origin_url: str, profile: str | None = None) -> list[dict[str, Any]]: ...


@dataclass(frozen=True, slots=True)
class CookieRecord:
    name: str
    value: str
    domain: str | None = None
    url: str | None = None
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    same_site: str | None = None
    expires: int | None = None

    @property
    def scope(self) -> str:
        return self.domain or self.url or ""

    def key(self) -> tuple[str, str, str]:
        return (self.scope, self.path or "/", self.name)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.domain:
            out["domain"] = self.domain
        if self.url:
            out["url"] = self.url
        out["path"] = self.path
        out["secure"] = self.secure
        out["httpOnly"] = self.http_only
        if self.same_site:
            out["sameSite"] = self.same_site
        if self.expires is not None:
            out["expires"] = self.expires
        return out

    def to_playwright(self) -> dict[str, Any]:
        """Shape accepted by Playwright's BrowserContext.add_cookies.

        Playwright refuses `url` together with `path` and derives the path
        from the url only up to its last slash, so rehomed cookies are sent as
        a host-only `domain` (no leading dot) plus their exact `path`.
        """
        out = self.to_dict()
        if self.url:
            host = urlsplit(self.url).hostname
            if host:
                out.pop("url")
                out["domain"] = host
                out["path"] = self.path if self.path.startswith("/") else "/" + self.path
            else:
                out.pop("path", None)
        return out


def classify_cookie_store_error(exc: BaseException) -> str:
    """Map a cookie-store failure to READ_PARSE_ERROR or READ_FAILED.

    This matches on message text and is therefore coupled to the store's error
    wording; if the store ever rewords it, parse errors degrade to READ_FAILED
    (a warning instead of a silent fallback).
    """
    return READ_PARSE_ERROR if PARSE_ERROR_MARKER in str(exc) else READ_FAILED


def normalize_same_site(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    normalized = value.lower()
    if normalized == "strict":
        return "Strict"
    if normalized == "lax":
        return "Lax"
    if normalized in ("no_restriction", "none"):
        return "None"
    return None


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_cookie(raw: dict[str, Any], source_base: str, target_base: str) -> CookieRecord | None:
    """Rehome and sanitize one raw cookie for the target; None when unusable."""
    name = raw.get("name")
    value = raw.get("value")
    if not isinstance(name, str) or not name or not isinstance(value, str):
        return None

    target = normalize_url_for_match(target_base)
    if target is None:
        return None
    target_origin = url_origin(target_base) or ""
    local_target = is_loopback_host(target.hostname)

    domain = raw.get("domain") if isinstance(raw.get("domain"), str) and raw.get("domain") else None
    path = raw.get("path") if isinstance(raw.get("path"), str) and raw.get("path") else "/"
    bare_domain = domain.lstrip(".") if domain else None
    first_party_domain = bool(bare_domain and _FIRST_PARTY_DOMAIN_RE.search(bare_domain))
    loopback_domain = bool(bare_domain and bare_domain.lower() in LOOPBACK_HOSTS)

    if local_target and name.startswith(SECURE_SESSION_PREFIX):
        name = name[len("__Secure-") :]

    url: str | None = None
    if domain and domain != "localhost":
        if local_target and (first_party_domain or loopback_domain):
            url = target_origin
            domain = None
    else:
        url = target_origin
        domain = None

    secure = raw.get("Secure") is True or raw.get("secure") is True
    http_only = raw.get("HttpOnly") is True or raw.get("httpOnly") is True
    same_site = normalize_same_site(raw.get("sameSite"))
    if same_site == "None" and not secure:
        secure = True

    expires = None
    raw_expires = raw.get("expires")
    if isinstance(raw_expires, (int, float)) and not isinstance(raw_expires, bool):
        if math.isfinite(raw_expires) and raw_expires > 0:
            expires = _js_round(float(raw_expires))

    if url and url == target_origin and target.scheme.lower() == "http":
        secure = False
        if same_site == "None":
            same_site = "Lax"
        if name.startswith("__Secure-"):
            name = name[len("__Secure-") :]
        if name.startswith("__Host-"):
            name = name[len("__Host-") :]
            path = "/"

    return CookieRecord(
        name=name,
        value=value,
        domain=domain,
        url=url,
        path=path,
        secure=secure,
        http_only=http_only,
        same_site=same_site,
        expires=expires,
    )


def derive_origin_fallbacks(origin_url: str) -> list[str]:
    """Alternative spellings of a loopback origin, excluding the origin itself."""
    parts = normalize_url_for_match(origin_url)
    if parts is None or not parts.hostname:
        return []
    host = parts.hostname.lower()
    if host not in ("localhost", "127.0.0.1"):
        return []
    scheme = parts.scheme.lower()
    candidates = [
        f"{scheme}://{host}/",
        "http://localhost/",
        "http://127.0.0.1/",
        "https://localhost/",
        "https://127.0.0.1/",
    ]
    if host == "localhost":
        candidates.append(f"{scheme}://{host}.localdomain/")
    own = f"{url_origin(origin_url)}/"
    out: list[str] = []
    for candidate in candidates:
        if candidate != own and candidate not in out:
            out.append(candidate)
    return out


def normalize_domain_to_origins(domain: str) -> list[str]:
    trimmed = (domain or "").strip()
    if not trimmed:
        return []
    raw_candidates = [trimmed] if re.match(r"^[a-z]+://", trimmed, re.IGNORECASE) else [
        f"https://{trimmed}",
        f"http://{trimmed}",
    ]
    out: list[str] = []
    for candidate in raw_candidates:
        origin = url_origin(candidate)
        if origin and f"{origin}/" not in out:
            out.append(f"{origin}/")
    return out


def _import_browser_cookie3():
    try:
        import browser_cookie3  # type: ignore[import-not-found]

        return browser_cookie3
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "Cookie sync requires the 'browser-cookie3' Python package. Install it (pip install browser-cookie3)."
        ) from exc


def _resolve_cookie_file(profile: str | None) -> str | None:
    if not profile:
        return None
    path = Path(profile).expanduser()
    if path.is_dir():
        for candidate in (path / "Network" / "Cookies", path / "Cookies"):
            if candidate.exists():
                return str(candidate)
        return str(path / "Cookies")
    return str(path)


class ChromeCookieStore:
    """Reads (and decrypts) cookies from a local Chrome profile via browser_cookie3."""

    def __init__(self) -> None:
        self._module = _import_browser_cookie3()

    def get_cookies(self, origin_url: str, profile: str | None = None) -> list[dict[str, Any]]:
        parts = normalize_url_for_match(origin_url)
        if parts is None or not parts.hostname:
            raise CookieStoreError(f"{PARSE_ERROR_MARKER}: {origin_url}")
        host = parts.hostname.lower()
        try:
            jar = self._module.chrome(cookie_file=_resolve_cookie_file(profile), domain_name=host)
        except Exception as exc:  # noqa: BLE001
            raise CookieStoreError(str(exc)) from exc
        return [self._to_raw(cookie) for cookie in jar if self._applies_to(cookie.domain, host)]

    @staticmethod
    def _applies_to(cookie_domain: str | None, host: str) -> bool:
        bare = (cookie_domain or "").lstrip(".").lower()
        return bool(bare) and (host == bare or host.endswith("." + bare))

    @staticmethod
    def _to_raw(cookie: Any) -> dict[str, Any]:
        rest = getattr(cookie, "_rest", None) or {}
        http_only = any(key.lower() == "httponly" for key in rest)
        raw: dict[str, Any] = {
            "name": cookie.name,
            "value": cookie.value or "",
            "domain": cookie.domain,
            "path": cookie.path or "/",
            "Secure": bool(cookie.secure),
            "HttpOnly": http_only,
        }
        if cookie.expires:
            raw["expires"] = cookie.expires
        return raw


class CookieOriginResolver:
    """Resolve origins for a target and collect deduplicated, rehomed cookies."""

    def __init__(
        self,
        mappings: Iterable[CookieOriginMapping] | None = None,
        *,
        store: CookieStore | None = None,
        profile: str | None = None,
        debug: bool = False,
    ) -> None:
        self.mappings = list(mappings or [])
        self.profile = profile
        self.debug = debug
        self._store = store
        self._initialized = store is not None

    def _trace(self, msg: str, *args: Any) -> None:
        if self.debug:
            _LOGGER.info(msg, *args)

    def _ensure_initialized(self) -> bool:
        """Load the cookie store once per resolver; False when it is unavailable."""
        if self._initialized:
            return self._store is not None
        self._initialized = True
        try:
            self._store = ChromeCookieStore()
        except RuntimeError as exc:
            _LOGGER.warning("Failed to load the Chrome cookie reader to copy cookies: %s", exc)
            self._store = None
        return self._store is not None

    def resolve_origins(self, target_url: str) -> list[str]:
        target = normalize_url_for_match(target_url)
        if target is None:
            raise ValueError(f"Invalid target URL: {target_url}")
        origins: list[str] = []

        def _add(origin: str | None) -> None:
            if origin and origin not in origins:
                origins.append(origin)

        _add(url_origin(target_url))
        host = (target.hostname or "").lower()
        for mapping in self.mappings:
            if mapping.matches_host(host):
                for origin in mapping.origins:
                    _add(url_origin(origin) or origin)
        for origin in OAUTH_PROVIDER_ORIGINS:
            _add(origin)
        if is_loopback_host(host) or host == FIRST_PARTY_HOST or host.endswith("." + FIRST_PARTY_HOST):
            for origin in FIRST_PARTY_ORIGINS:
                _add(origin)
        return origins

    def collect(self, target_url: str) -> list[CookieRecord]:
        return self.collect_for_origins(self.resolve_origins(target_url), target_url)

    def collect_for_origins(self, origins: Iterable[str], target_url: str) -> list[CookieRecord]:
        if not self._ensure_initialized():
            return []
        target = normalize_url_for_match(target_url)
        if target is None:
            raise ValueError(f"Invalid target URL: {target_url}")
        collected: dict[tuple[str, str, str], CookieRecord] = {}
        self._trace("Cookie sync debug enabled.")
        for origin in origins:
            self._collect_origin(origin, target_url, collected)
        prune_incompatible_cookies(target, collected)
        return list(collected.values())

    def collect_for_domains(self, domains: Iterable[str | None]) -> dict[str, list[CookieRecord]]:
        """Cookies per domain, each normalized against that domain's own origin."""
        if not self._ensure_initialized():
            return {}
        results: dict[str, list[CookieRecord]] = {}
        for domain in domains:
            if not domain:
                continue
            origins = normalize_domain_to_origins(domain)
            collected: dict[tuple[str, str, str], CookieRecord] = {}
            for origin in origins:
                self._collect_origin(origin, origin, collected)
            target = normalize_url_for_match(origins[0]) if origins else None
            if target is not None:
                prune_incompatible_cookies(target, collected)
            results[domain] = list(collected.values())
        return results

    def _collect_origin(
        self,
        origin: str,
        target_url: str,
        collected: dict[tuple[str, str, str], CookieRecord],
    ) -> None:
        cookie_origin = origin if origin.endswith("/") else f"{origin}/"
        if normalize_url_for_match(cookie_origin) is None:
            self._trace("Skipping malformed cookie origin candidate %s", cookie_origin)
            return

        primary = self._read(cookie_origin, target_url, collected, fallback=False)
        if primary not in (READ_EMPTY, READ_PARSE_ERROR):
            return
        fallbacks = derive_origin_fallbacks(cookie_origin)
        if not fallbacks:
            if primary == READ_PARSE_ERROR:
                self._trace("Giving up on cookie sync for %s; the cookie store cannot parse the host.", cookie_origin)
            return

        saw_parse_error = primary == READ_PARSE_ERROR
        for candidate in fallbacks:
            result = self._read(candidate, target_url, collected, fallback=True)
            if result == READ_ADDED:
                return
            if result == READ_PARSE_ERROR:
                saw_parse_error = True
        self._trace(
            "Giving up on cookie sync for %s; %s",
            cookie_origin,
            "the cookie store cannot parse the host." if saw_parse_error else "no cookies were found after fallbacks.",
        )

    def _read(
        self,
        candidate: str,
        target_url: str,
        collected: dict[tuple[str, str, str], CookieRecord],
        *,
        fallback: bool,
    ) -> str:
        if fallback:
            self._trace("Retrying cookie collection using fallback %s", candidate)
        else:
            self._trace("Reading Chrome cookies for %s", candidate)
        store = self._store
        if store is None:
            return READ_FAILED
        try:
            raw_cookies = store.get_cookies(candidate, self.profile)
        except Exception as exc:  # noqa: BLE001
            outcome = classify_cookie_store_error(exc)
            if outcome == READ_FAILED and not fallback:
                _LOGGER.warning("Failed to read cookies from Chrome for %s: %s", candidate, exc)
                _LOGGER.warning(
                    "If this persists, ensure Chrome is running and you are logged in, then rerun the command."
                )
            else:
                self._trace("Cookie origin %s failed: %s", candidate, exc)
            return outcome

        before = len(collected)
        for raw in raw_cookies or []:
            if not isinstance(raw, dict):
                continue
            self._trace("Saw cookie %s from %s", raw.get("name", "unknown"), candidate)
            record = normalize_cookie(raw, candidate, target_url)
            if record is None:
                continue
            collected.setdefault(record.key(), record)
        self._trace("%d cookies captured so far after %s", len(collected), candidate)
        return READ_ADDED if len(collected) > before else READ_EMPTY


def prune_incompatible_cookies(target: SplitResult, collected: dict[tuple[str, str, str], CookieRecord]) -> None:
    if not collected or not is_loopback_host(target.hostname):
        return
    for key in [k for k, cookie in collected.items() if cookie.name.lower() in LOOPBACK_DISALLOWED_NAMES]:
        del collected[key]
