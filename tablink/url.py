"""Loose URL matching for picking the tab that "is" a given page.

A tab that sits on `/timeline/home` should count as the `/timeline/` target; a
tab on `/settings/account` must not count as `/insights`. Matching is origin
exact, path prefix based, and tolerant of a short allow-list of trailing
segments (see LOOSE_PATH_SUFFIXES).
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import SplitResult, urlsplit, urlunsplit

LOOSE_PATH_SUFFIXES: tuple[str, ...] = ("home", "index", "overview")

# Root targets are usually redirected by the marketing shell to the timeline.
REDIRECT_BASE_PATH = "/timeline"
AUTH_SIGNIN_PATH = "/auth/signin"

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def normalize_url_for_match(raw: str | None) -> SplitResult | None:
    """Parse `raw` as an absolute URL; None when it has no scheme or host."""
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parts = urlsplit(raw.strip())
        # Accessing .port validates it (raises on garbage like ":abc").
        _ = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    return parts


def _origin_of(parts: SplitResult) -> str:
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or _DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def url_origin(raw: str | None) -> str | None:
    """Return `scheme://host[:port]` with default ports dropped, or None."""
    parts = normalize_url_for_match(raw)
    if parts is None:
        return None
    return _origin_of(parts)


def url_hostname(raw: str | None) -> str | None:
    parts = normalize_url_for_match(raw)
    if parts is None:
        return None
    return (parts.hostname or "").lower() or None


def is_loopback_host(host: str | None) -> bool:
    return (host or "").strip().lower().strip("[]") in LOOPBACK_HOSTS


def trim_trailing_slash(path: str | None) -> str:
    if not path:
        return "/"
    trimmed = path.rstrip("/")
    if not trimmed:
        return "/"
    return trimmed if trimmed.startswith("/") else f"/{trimmed}"


def extract_path_segments(path: str | None) -> list[str]:
    normalized = trim_trailing_slash(path)
    if normalized == "/":
        return []
    return normalized.lstrip("/").split("/")


def suffix_segments_allowed(segments: Iterable[str]) -> bool:
    return all(segment in LOOSE_PATH_SUFFIXES for segment in segments)


def urls_roughly_match(a: str, b: str) -> bool:
    """True when `a` and `b` address the same page for tab-selection purposes.

    Unparseable input on either side degrades to exact string equality.
    """
    url_a = normalize_url_for_match(a)
    url_b = normalize_url_for_match(b)
    if url_a is None or url_b is None:
        return a == b
    if _origin_of(url_a) != _origin_of(url_b):
        return False

    path_a = trim_trailing_slash(url_a.path)
    path_b = trim_trailing_slash(url_b.path)
    if path_a == path_b:
        return True

    segments_a = extract_path_segments(path_a)
    segments_b = extract_path_segments(path_b)
    shared = min(len(segments_a), len(segments_b))
    for index in range(shared):
        if segments_a[index] != segments_b[index]:
            return False
    return suffix_segments_allowed(segments_a[shared:]) and suffix_segments_allowed(segments_b[shared:])


def _serialize(parts: SplitResult, *, path: str | None = None, query: str | None = None) -> str:
    new_path = parts.path if path is None else path
    return urlunsplit(
        (
            parts.scheme,
            parts.netloc,
            new_path or "/",
            parts.query if query is None else query,
            parts.fragment,
        )
    )


def build_wait_candidate_urls(target_url: str, aliases: Iterable[str | None] | None = None) -> list[str]:
    """Expand a target into the URLs it may land on after redirects.

    Order is stable and duplicates are dropped; the target itself is first.
    """
    candidates: list[str] = []

    def _add(url: str | None) -> None:
        if url and url not in candidates:
            candidates.append(url)

    _add(target_url)
    parts = normalize_url_for_match(target_url)
    if parts is not None:
        without_query = parts._replace(query="")
        _add(_serialize(without_query))
        trimmed = trim_trailing_slash(without_query.path)
        if trimmed != "/":
            for suffix in LOOSE_PATH_SUFFIXES:
                if trimmed.endswith(f"/{suffix}"):
                    continue
                _add(_serialize(without_query, path=f"{trimmed}/{suffix}"))
            if trimmed == "/auth":
                _add(_serialize(without_query, path=AUTH_SIGNIN_PATH))
        else:
            _add(_serialize(without_query, path=REDIRECT_BASE_PATH))
            for suffix in LOOSE_PATH_SUFFIXES:
                _add(_serialize(without_query, path=f"{REDIRECT_BASE_PATH}/{suffix}"))
            _add(_serialize(without_query, path=AUTH_SIGNIN_PATH))

    for alias in aliases or ():
        _add(alias)
    return candidates
