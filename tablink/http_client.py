from __future__ import annotations

import errno
import json
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

USER_AGENT = "tablink/1.0"


class HttpClientError(Exception):
    """Failed request against a local DevTools or daemon HTTP endpoint."""

    def __init__(self, message: str, *, status: int | None = None, connection_refused: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.connection_refused = connection_refused


def _is_connection_refused(exc: BaseException) -> bool:
    if isinstance(exc, ConnectionRefusedError):
        return True
    reason = getattr(exc, "reason", None)
    if isinstance(reason, ConnectionRefusedError):
        return True
    if isinstance(reason, OSError) and reason.errno == errno.ECONNREFUSED:
        return True
    return isinstance(exc, OSError) and exc.errno == errno.ECONNREFUSED


def http_get_json(url: str, *, timeout: float = 5.0) -> Any:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError(f"Only http/https are supported: {url}")
    req = Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = resp.read()
    except HTTPError as exc:
        raise HttpClientError(f"DevTools endpoint responded with {exc.code}", status=exc.code) from exc
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(exc), connection_refused=_is_connection_refused(exc)) from exc
    try:
        return json.loads(body.decode("utf-8", errors="replace"))
    except ValueError as exc:
        raise HttpClientError(f"Invalid JSON from {url}") from exc


def http_probe(url: str, *, timeout: float = 0.5) -> bool:
    """Return True when `url` answers with a 2xx status."""
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return 200 <= int(resp.status) < 300
    except (TimeoutError, URLError, OSError, ValueError):
        return False
