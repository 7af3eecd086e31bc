"""Playwright attachment to the controlled browser for out-of-band work.

Connecting over CDP shares the user's browser; `browser.close()` on such a
connection only detaches, it never quits Chrome.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from ..url import urls_roughly_match

_LOGGER = logging.getLogger("tablink.devtools.driver")

ATTACH_ATTEMPTS = 3
ATTACH_RETRY_DELAY = 0.25
ATTACH_TIMEOUT = 10.0


class DriverAttachError(Exception):
    pass


def _import_async_playwright():
    try:
        from playwright.async_api import async_playwright  # type: ignore[import-not-found]

        return async_playwright
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "This fallback requires the 'playwright' Python package. "
            "Install it (pip install playwright) and retry."
        ) from exc


@contextlib.asynccontextmanager
async def attach_browser(
    devtools_url: str,
    *,
    attempts: int = ATTACH_ATTEMPTS,
    retry_delay: float = ATTACH_RETRY_DELAY,
    timeout: float = ATTACH_TIMEOUT,
) -> AsyncIterator[Any]:
    """Yield a Playwright Browser attached to `devtools_url`; always detaches on exit."""
    async_playwright = _import_async_playwright()
    pw = await async_playwright().start()
    browser = None
    try:
        for attempt in range(max(1, attempts)):
            try:
                browser = await pw.chromium.connect_over_cdp(devtools_url, timeout=timeout * 1000)
                break
            except Exception as exc:  # noqa: BLE001
                if attempt >= attempts - 1:
                    raise DriverAttachError(f"Unable to attach to controlled Chrome at {devtools_url}: {exc}") from exc
                _LOGGER.debug("Attach attempt %d to %s failed: %s", attempt + 1, devtools_url, exc)
                await asyncio.sleep(retry_delay)
        yield browser
    finally:
        if browser is not None:
            with contextlib.suppress(Exception):
                await browser.close()
        with contextlib.suppress(Exception):
            await pw.stop()


def all_pages(browser: Any) -> list[Any]:
    pages: list[Any] = []
    for ctx in getattr(browser, "contexts", None) or []:
        pages.extend(getattr(ctx, "pages", None) or [])
    return pages


def resolve_page(browser: Any, target_url: str | None) -> Any | None:
    """Page that roughly matches `target_url`, else the first page, else None."""
    pages = all_pages(browser)
    if target_url:
        for page in pages:
            if urls_roughly_match(page.url or "", target_url):
                return page
    return pages[0] if pages else None
