from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ..http_client import HttpClientError
from .cdp import EvaluationError, evaluate_in_tab

_LOGGER = logging.getLogger("tablink.devtools.diagnostics")

# Read-only snapshot of how far the page got while booting. `__tablinkAuto` and
# `__tablinkErrors` are set by the in-page bridge client; the overlay/route
# probes cover the Next.js dev error surfaces.
BOOTSTRAP_DIAGNOSTICS_SCRIPT = r"""
(() => {
  const summary = {
    readyState: document.readyState,
    autoFlag: Boolean(window.__tablinkAuto),
    bootstrapEmits: Number(window.__tablinkBootstrapEmits || 0),
    sessionStorageAuto: null,
    locationHref: location.href,
    locationPathname: location.pathname,
    errors: [],
    overlayText: null,
    nextRouteError: null,
  };
  try {
    summary.sessionStorageAuto = sessionStorage.getItem("tablink:auto");
  } catch (err) {
    summary.sessionStorageAuto = null;
  }
  const store = window.__tablinkErrors;
  if (Array.isArray(store) && store.length) {
    summary.errors = store.slice(-5).map((entry) => {
      const safe = entry && typeof entry === "object" ? entry : {};
      return {
        type: typeof safe.type === "string" ? safe.type : safe.type != null ? String(safe.type) : "error",
        message: typeof safe.message === "string" ? safe.message : String(safe.message == null ? "" : safe.message),
        source: typeof safe.source === "string" ? safe.source : null,
        stack: typeof safe.stack === "string" ? safe.stack : null,
        status: typeof safe.status === "number" ? safe.status : null,
        timestamp: typeof safe.timestamp === "number" ? safe.timestamp : null,
      };
    });
  }
  const overlay =
    document.querySelector("[data-nextjs-error-overlay-root]") ||
    document.querySelector("[data-nextjs-error-overlay]") ||
    document.querySelector("#__nextjs__container_errors");
  if (overlay && typeof overlay.textContent === "string") {
    summary.overlayText = overlay.textContent.slice(0, 500);
  }
  const nextData = typeof window.__NEXT_DATA__ === "object" ? window.__NEXT_DATA__ : null;
  if (nextData && nextData.err) {
    const err = nextData.err;
    const isObj = err && typeof err === "object";
    summary.nextRouteError = {
      message: isObj && "message" in err ? String(err.message == null ? "" : err.message) : String(err),
      digest: isObj && "digest" in err ? String(err.digest == null ? "" : err.digest) : null,
    };
  }
  return summary;
})()
"""

_AUTH_ERROR_TYPES = {"auth-fetch"}
_AUTH_STATUSES = {401, 403}
_IGNORABLE_ERROR_TYPES = {"log", "info", "debug"}


async def collect_bootstrap_diagnostics(devtools_url: str, candidates: Iterable[str]) -> dict[str, Any] | None:
    """Snapshot from the first candidate tab that answers; None if none do."""
    for candidate in candidates:
        try:
            result = await evaluate_in_tab(devtools_url, candidate, BOOTSTRAP_DIAGNOSTICS_SCRIPT)
        except (EvaluationError, HttpClientError, OSError) as exc:
            _LOGGER.debug("Bootstrap diagnostics failed for %s: %s", candidate, exc)
            continue
        if isinstance(result, dict):
            return result
    return None


def _errors(diagnostics: dict[str, Any]) -> list[dict[str, Any]]:
    errors = diagnostics.get("errors")
    return [e for e in errors if isinstance(e, dict)] if isinstance(errors, list) else []


def _is_auth_failure(entry: dict[str, Any]) -> bool:
    return entry.get("type") in _AUTH_ERROR_TYPES or entry.get("status") in _AUTH_STATUSES


def diagnostics_contain_blocking_issues(diagnostics: dict[str, Any] | None) -> bool:
    if not isinstance(diagnostics, dict):
        return False
    if diagnostics.get("overlayText"):
        return True
    if diagnostics.get("nextRouteError"):
        return True
    return any(_is_auth_failure(entry) for entry in _errors(diagnostics))


def log_bootstrap_diagnostics(label: str, diagnostics: dict[str, Any] | None) -> None:
    if not isinstance(diagnostics, dict):
        _LOGGER.warning("%s: no bootstrap diagnostics available", label)
        return

    _LOGGER.warning(
        "%s document=%s autoFlag=%s bootstrapEmits=%s sessionStorage=%s",
        label,
        diagnostics.get("readyState") or "unknown",
        bool(diagnostics.get("autoFlag")),
        diagnostics.get("bootstrapEmits") or 0,
        diagnostics.get("sessionStorageAuto") or "none",
    )

    errors = _errors(diagnostics)
    auth_failures = [e for e in errors if _is_auth_failure(e)]
    if auth_failures:
        noun = "failure" if len(auth_failures) == 1 else "failures"
        _LOGGER.warning("Detected %d authentication %s while loading the page.", len(auth_failures), noun)
        for entry in auth_failures:
            _LOGGER.warning(
                "  auth status=%s (%s): %s",
                entry.get("status") if entry.get("status") is not None else "?",
                entry.get("source") or "unknown",
                entry.get("message") or "",
            )
    for entry in errors:
        if entry in auth_failures or entry.get("type") in _IGNORABLE_ERROR_TYPES:
            continue
        _LOGGER.warning(
            "%s console %s (%s): %s",
            label,
            entry.get("type") or "error",
            entry.get("source") or "page",
            entry.get("message") or "",
        )

    overlay = diagnostics.get("overlayText")
    if isinstance(overlay, str) and overlay.strip():
        _LOGGER.warning("%s Next.js overlay: %s", label, " ".join(overlay.split())[:300])
    route_error = diagnostics.get("nextRouteError")
    if isinstance(route_error, dict) and route_error.get("message"):
        digest = route_error.get("digest")
        suffix = f" (digest {digest})" if digest else ""
        _LOGGER.warning("%s route error: %s%s", label, route_error.get("message"), suffix)
