"""
DevTools-side plumbing, organized by concern:
- tabs: target discovery, selection and waiting
- cdp: per-evaluation debugger socket with id-correlated responses
- oauth: consent-screen auto-accept loop (+ oauth_script for the in-page heuristic)
- diagnostics: bootstrap health snapshot of a freshly opened page
- driver: Playwright attachment used by the out-of-band fallbacks
"""

from .cdp import CdpRpcClient, EvaluationError, evaluate_in_tab
from .tabs import (
    DevToolsTarget,
    discover_devtools_endpoints,
    fetch_tabs,
    fetch_tabs_with_retry,
    select_tab,
    wait_for_tab,
)

__all__ = [
    "CdpRpcClient",
    "DevToolsTarget",
    "EvaluationError",
    "discover_devtools_endpoints",
    "evaluate_in_tab",
    "fetch_tabs",
    "fetch_tabs_with_retry",
    "select_tab",
    "wait_for_tab",
]
