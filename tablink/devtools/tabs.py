"""Tab discovery against a DevTools HTTP endpoint (`/json/list`, `/json/version`)."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..http_client import HttpClientError, http_get_json, http_probe
from ..url import build_wait_candidate_urls, urls_roughly_match

_LOGGER = logging.getLogger("tablink.devtools.tabs")

FETCH_ATTEMPTS = 5
FETCH_RETRY_DELAY = 0.2
DISCOVERY_PORTS = range(9222, 9323)
DEFAULT_HTTP_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class DevToolsTarget:
    id: str
    title: str
    url: str
    type: str | None = None
    web_socket_debugger_url: str | None = None

    @property
    def drivable(self) -> bool:
        return bool(self.web_socket_debugger_url)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "title": self.title, "url": self.url}
        if self.type:
            out["type"] = self.type
        if self.web_socket_debugger_url:
            out["webSocketDebuggerUrl"] = self.web_socket_debugger_url
        return out


def parse_targets(payload: Any) -> list[DevToolsTarget]:
    """Keep only well-formed entries (string `id` and non-empty `url`)."""
    if not isinstance(payload, list):
        raise HttpClientError("DevTools endpoint returned unexpected payload")
    targets: list[DevToolsTarget] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        target_id = entry.get("id")
        url = entry.get("url")
        if not isinstance(target_id, str) or not target_id or not isinstance(url, str) or not url:
            continue
        title = entry.get("title")
        kind = entry.get("type")
        ws_url = entry.get("webSocketDebuggerUrl")
        targets.append(
            DevToolsTarget(
                id=target_id,
                title=title if isinstance(title, str) else "",
                url=url,
                type=kind if isinstance(kind, str) else None,
                web_socket_debugger_url=ws_url if isinstance(ws_url, str) and ws_url else None,
            )
        )
    return targets


def fetch_tabs(devtools_url: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT) -> list[DevToolsTarget]:
    return parse_targets(http_get_json(f"{devtools_url.rstrip('/')}/json/list", timeout=timeout))


async def fetch_tabs_with_retry(
    devtools_url: str,
    *,
    attempts: int = FETCH_ATTEMPTS,
    delay: float = FETCH_RETRY_DELAY,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> list[DevToolsTarget]:
    """Fetch targets, retrying only while the endpoint refuses connections or lists nothing.

    Any other failure propagates on the first attempt. Returns [] once the
    attempt budget is spent.
    """
    for attempt in range(max(1, attempts)):
        try:
            tabs = await asyncio.to_thread(fetch_tabs, devtools_url, timeout=http_timeout)
        except HttpClientError as exc:
            if not exc.connection_refused:
                raise
            _LOGGER.debug("DevTools endpoint %s refused connection (attempt %d)", devtools_url, attempt + 1)
        else:
            if tabs:
                return tabs
        await asyncio.sleep(delay)
    return []


def select_tab(tabs: Iterable[DevToolsTarget], target_url_hint: str | None) -> DevToolsTarget | None:
    """Best drivable tab for `target_url_hint`, else the first drivable tab."""
    drivable = [tab for tab in tabs if tab.drivable]
    if target_url_hint:
        for tab in drivable:
            if urls_roughly_match(tab.url, target_url_hint):
                return tab
    return drivable[0] if drivable else None


def find_matching_tab(tabs: Iterable[DevToolsTarget], candidates: Iterable[str]) -> DevToolsTarget | None:
    wanted = [c for c in candidates if c]
    for tab in tabs:
        if any(urls_roughly_match(tab.url, candidate) for candidate in wanted):
            return tab
    return None


async def wait_for_tab(
    devtools_url: str,
    target_url: str,
    *,
    aliases: Iterable[str | None] | None = None,
    timeout: float = 20.0,
    interval: float = 0.5,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> DevToolsTarget | None:
    """Poll until a tab lands on the target or one of its redirect candidates."""
    candidates = build_wait_candidate_urls(target_url, aliases)
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        try:
            tabs = await asyncio.to_thread(fetch_tabs, devtools_url, timeout=http_timeout)
        except HttpClientError as exc:
            _LOGGER.debug("Tab poll failed for %s: %s", devtools_url, exc)
            tabs = []
        match = find_matching_tab(tabs, candidates)
        if match is not None:
            return match
        if time.monotonic() >= deadline:
            return None
        await asyncio.sleep(interval)


async def discover_devtools_endpoints(
    host: str = "127.0.0.1",
    ports: Iterable[int] = DISCOVERY_PORTS,
    *,
    timeout: float = 0.3,
) -> list[str]:
    """Base URLs of every port on `host` that answers `/json/version`."""
    bases = [f"http://{host}:{int(port)}" for port in ports]
    results = await asyncio.gather(
        *[asyncio.to_thread(http_probe, f"{base}/json/version", timeout=timeout) for base in bases]
    )
    return [base for base, ok in zip(bases, results) if ok]
