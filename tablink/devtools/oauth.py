"""Auto-accept third-party OAuth consent screens without ever entering credentials.

Two tiers: a fast in-page heuristic evaluated over the debugger socket of each
candidate tab, then (once) a Playwright attachment that can reach every frame
of every page, including cross-origin iframes and popups.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..http_client import HttpClientError
from ..url import url_hostname, urls_roughly_match
from .cdp import EvaluationError, evaluate_in_tab
from .driver import all_pages, attach_browser
from .oauth_script import OAUTH_ACCEPT_EXPRESSION, OAUTH_ACCEPT_FUNCTION
from .tabs import DevToolsTarget, fetch_tabs_with_retry

_LOGGER = logging.getLogger("tablink.devtools.oauth")

OAUTH_PROVIDER_DOMAINS: tuple[str, ...] = ("twitter.com", "x.com")

REASONS = frozenset({"not-twitter", "requires-login", "button-not-found", "button-not-clickable", "invalid-response"})
ACTIONS = frozenset({"click", "dispatch-event", "form-submit", "puppeteer-click"})
# Reasons that mean "the consent page has not shown up yet".
WAITING_REASONS = frozenset({"not-twitter", "button-not-found"})

MAX_ATTEMPTS = 12
WAITING_RETRY_DELAY = 0.5
SHORT_RETRY_DELAY = 0.25
NAVIGATION_SETTLE_TIMEOUT = 1.5


@dataclass(frozen=True, slots=True)
class OAuthAttemptResult:
    handled: bool
    reason: str | None = None
    action: str | None = None
    clicked_text: str | None = None
    has_username_input: bool = False
    has_password_input: bool = False

    @classmethod
    def from_payload(cls, raw: Any) -> OAuthAttemptResult:
        if not isinstance(raw, dict):
            return cls(handled=False, reason="invalid-response")
        if raw.get("handled") is True:
            action = raw.get("action")
            clicked = raw.get("clickedText")
            return cls(
                handled=True,
                action=action if action in ACTIONS else "click",
                clicked_text=clicked if isinstance(clicked, str) and clicked else None,
            )
        reason = raw.get("reason")
        return cls(
            handled=False,
            reason=reason if reason in REASONS else "invalid-response",
            has_username_input=raw.get("hasUsernameInput") is True,
            has_password_input=raw.get("hasPasswordInput") is True,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.handled:
            return {"handled": True, "action": self.action, "clickedText": self.clicked_text}
        out: dict[str, Any] = {"handled": False, "reason": self.reason}
        if self.reason == "requires-login":
            out["hasUsernameInput"] = self.has_username_input
            out["hasPasswordInput"] = self.has_password_input
        return out


def is_oauth_provider_url(url: str | None) -> bool:
    host = url_hostname(url)
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in OAUTH_PROVIDER_DOMAINS)


def is_oauth_candidate(url: str | None, session_url: str | None) -> bool:
    if not url:
        return False
    if session_url and urls_roughly_match(url, session_url):
        return True
    return is_oauth_provider_url(url) or "oauth" in url.lower()


EvaluateFn = Callable[[str, str, str], Awaitable[Any]]
ListTabsFn = Callable[[str], Awaitable[list[DevToolsTarget]]]


class OAuthAutoAcceptEngine:
    """Bounded retry loop around the consent heuristic.

    `requires-login` ends everything immediately; `not-twitter` and
    `button-not-found` wait WAITING_RETRY_DELAY; any other miss waits
    SHORT_RETRY_DELAY. After MAX_ATTEMPTS rounds the Playwright fallback runs
    once, then the last miss is returned.
    """

    def __init__(
        self,
        *,
        evaluate: EvaluateFn | None = None,
        list_tabs: ListTabsFn | None = None,
        attach: Callable[[str], Any] | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        waiting_delay: float = WAITING_RETRY_DELAY,
        short_delay: float = SHORT_RETRY_DELAY,
        settle_timeout: float = NAVIGATION_SETTLE_TIMEOUT,
    ) -> None:
        self._evaluate = evaluate or evaluate_in_tab
        self._list_tabs = list_tabs or fetch_tabs_with_retry
        self._attach = attach or attach_browser
        self.max_attempts = max(1, int(max_attempts))
        self.waiting_delay = waiting_delay
        self.short_delay = short_delay
        self.settle_timeout = settle_timeout
        self.attempts_made = 0

    async def candidate_urls(self, devtools_url: str, session_url: str) -> list[str]:
        urls: list[str] = [session_url] if session_url else []
        try:
            tabs = await self._list_tabs(devtools_url)
        except HttpClientError as exc:
            _LOGGER.debug("Failed to inspect DevTools tabs for OAuth auto-accept: %s", exc)
            tabs = []
        for tab in tabs:
            if tab.url not in urls and is_oauth_candidate(tab.url, session_url):
                urls.append(tab.url)
        return urls

    def _delay_after(self, last: OAuthAttemptResult | None) -> float:
        if last is None or last.reason in WAITING_REASONS:
            return self.waiting_delay
        return self.short_delay

    async def attempt(self, devtools_url: str, session_url: str) -> OAuthAttemptResult:
        last: OAuthAttemptResult | None = None
        self.attempts_made = 0
        for attempt in range(self.max_attempts):
            self.attempts_made = attempt + 1
            for candidate in await self.candidate_urls(devtools_url, session_url):
                try:
                    raw = await self._evaluate(devtools_url, candidate, OAUTH_ACCEPT_EXPRESSION)
                except (EvaluationError, HttpClientError, OSError) as exc:
                    _LOGGER.debug("OAuth auto-accept evaluation failed for %s: %s", candidate, exc)
                    continue
                result = OAuthAttemptResult.from_payload(raw)
                if result.handled:
                    _LOGGER.info("OAuth consent accepted via %s (%s)", result.action, result.clicked_text or "no label")
                    return result
                last = result
                if result.reason == "requires-login":
                    _LOGGER.warning("OAuth provider is asking for a login; sign in manually to continue.")
                    return result
            if attempt < self.max_attempts - 1:
                await asyncio.sleep(self._delay_after(last))

        fallback = await self.attempt_with_driver(devtools_url, session_url)
        if fallback is not None:
            if fallback.handled:
                return fallback
            last = fallback
        return last or OAuthAttemptResult(handled=False, reason="button-not-found")

    async def attempt_with_driver(self, devtools_url: str, session_url: str) -> OAuthAttemptResult | None:
        """Run the heuristic in every frame of every candidate page via Playwright."""
        try:
            async with self._attach(devtools_url) as browser:
                return await self._scan_pages(browser, session_url)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("OAuth auto-accept fallback failed: %s", exc)
            return None

    async def _scan_pages(self, browser: Any, session_url: str) -> OAuthAttemptResult | None:
        pages = all_pages(browser)
        if not pages:
            return None
        matching = [page for page in pages if is_oauth_candidate(page.url, session_url)]
        last: OAuthAttemptResult | None = None
        for page in matching or pages:
            result = await self._scan_frames(page)
            if result is None:
                continue
            if result.handled:
                await self._settle(page)
                return OAuthAttemptResult(handled=True, action="puppeteer-click", clicked_text=result.clicked_text)
            last = result
            if result.reason == "requires-login":
                return result
        return last

    async def _scan_frames(self, page: Any) -> OAuthAttemptResult | None:
        last: OAuthAttemptResult | None = None
        for frame in list(page.frames):
            try:
                raw = await frame.evaluate(OAUTH_ACCEPT_FUNCTION)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("OAuth auto-accept fallback: frame evaluation failed: %s", exc)
                continue
            if not raw:
                continue
            result = OAuthAttemptResult.from_payload(raw)
            if result.handled or result.reason == "requires-login":
                return result
            last = result
        return last

    async def _settle(self, page: Any) -> None:
        with contextlib.suppress(Exception):
            await page.wait_for_event("framenavigated", timeout=self.settle_timeout * 1000)


async def attempt_oauth_auto_accept(devtools_url: str, session_url: str) -> OAuthAttemptResult:
    return await OAuthAutoAcceptEngine().attempt(devtools_url, session_url)
