from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any

from .cookies import CookieOriginResolver, CookieRecord
from .devtools.driver import attach_browser, resolve_page

_LOGGER = logging.getLogger("tablink.cookie_sync")

PRIME_ATTACH_ATTEMPTS = 10
PRIME_ATTACH_DELAY = 0.2
_AUTH_COOKIE_RE = re.compile(r"auth|session|token", re.IGNORECASE)


def likely_auth_cookie_names(cookies: list[CookieRecord]) -> list[str]:
    names: list[str] = []
    for cookie in cookies:
        if cookie.name.strip() and _AUTH_COOKIE_RE.search(cookie.name) and cookie.name not in names:
            names.append(cookie.name)
    return names


async def _verify(context: Any, origins: list[str], attempted: list[CookieRecord]) -> list[str]:
    applied: set[str] = set()
    for origin in origins:
        try:
            for cookie in await context.cookies(origin):
                applied.add(cookie.get("name"))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("Cookie verification for %s failed: %s", origin, exc)
    missing = [cookie.name for cookie in attempted if cookie.name not in applied]
    if missing:
        _LOGGER.warning(
            "The controlled window is missing %d cookie(s) (%s).", len(missing), ", ".join(missing)
        )
    return missing


async def prime_controlled_cookies(
    devtools_url: str,
    target_url: str,
    resolver: CookieOriginResolver,
    *,
    reload: bool = False,
    attach: Callable[..., Any] | None = None,
) -> dict[str, Any]:
    """Copy the user's Chrome cookies for `target_url` into the controlled browser.

    Best effort: every failure is logged and reported in the returned summary,
    never raised.
    """
    summary: dict[str, Any] = {"applied": 0, "missing": [], "reloaded": False}
    try:
        # Each store read decrypts the profile's cookie DB; keep it off the loop.
        cookies = await asyncio.to_thread(resolver.collect, target_url)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("Failed to read Chrome cookies for %s: %s", target_url, exc)
        summary["error"] = str(exc)
        return summary
    if not cookies:
        _LOGGER.info("No Chrome cookies found for this origin; continuing without priming the controlled window.")
        return summary

    attach = attach or attach_browser
    try:
        async with attach(devtools_url, attempts=PRIME_ATTACH_ATTEMPTS, retry_delay=PRIME_ATTACH_DELAY) as browser:
            page = resolve_page(browser, target_url)
            if page is None:
                context = browser.contexts[0] if browser.contexts else await browser.new_context()
                page = await context.new_page()
                await page.goto(target_url, wait_until="domcontentloaded")
            context = page.context
            await context.add_cookies([cookie.to_playwright() for cookie in cookies])
            summary["applied"] = len(cookies)
            summary["missing"] = await _verify(context, resolver.resolve_origins(target_url), cookies)
            if reload:
                try:
                    await page.reload(wait_until="domcontentloaded")
                    summary["reloaded"] = True
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.warning("Cookies applied but the tab could not be reloaded: %s", exc)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("Failed to apply Chrome cookies to the controlled window: %s", exc)
        summary["error"] = str(exc)
        return summary

    plural = "" if len(cookies) == 1 else "s"
    suffix = " and refreshed the tab to apply the session." if summary["reloaded"] else "."
    _LOGGER.info(
        "Copied %d cookie%s from your main Chrome profile into the controlled window%s", len(cookies), plural, suffix
    )
    auth_names = likely_auth_cookie_names(cookies)
    if auth_names:
        _LOGGER.info("Detected likely auth cookies: %s.", ", ".join(auth_names))
    else:
        _LOGGER.info("No obvious auth/session cookies detected; expect to re-authenticate in the controlled window.")
    _LOGGER.info(
        "HttpOnly cookies present: %s (Chrome may restrict visibility inside the page).",
        "yes" if any(cookie.http_only for cookie in cookies) else "no",
    )
    return summary
