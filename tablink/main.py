"""
Command-line entry point for tablink.

Each subcommand is thin glue over the library modules: it resolves the
DevTools endpoint, runs one async operation and prints JSON to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from functools import partial
from typing import Any

from .bridge import BridgeClient, BridgeProtocolError, CommandDispatcher
from .config import BridgeConfig, load_devtools_link, load_file_config, save_devtools_link
from .cookie_sync import prime_controlled_cookies
from .cookies import CookieOriginResolver, CookieStoreError
from .devtools.cdp import EvaluationError, evaluate_in_tab
from .devtools.diagnostics import (
    collect_bootstrap_diagnostics,
    diagnostics_contain_blocking_issues,
    log_bootstrap_diagnostics,
)
from .devtools.oauth import attempt_oauth_auto_accept
from .devtools.tabs import discover_devtools_endpoints, fetch_tabs_with_retry, wait_for_tab
from .http_client import HttpClientError
from .url import build_wait_candidate_urls

logger = logging.getLogger("tablink")


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def resolve_devtools_url(explicit: str | None, config: BridgeConfig) -> str:
    if explicit:
        return explicit.rstrip("/")
    if os.environ.get("TABLINK_DEVTOOLS_URL"):
        return config.devtools_url
    link = load_devtools_link()
    if link is not None:
        return link.devtools_url.rstrip("/")
    return config.devtools_url


def resolve_target_url(explicit: str | None, config: BridgeConfig) -> str:
    if explicit:
        return explicit
    if config.app_url:
        return config.app_url
    file_config = load_file_config().config
    if file_config.app_url:
        return file_config.app_url
    link = load_devtools_link()
    if link is not None and link.target_url:
        return link.target_url
    raise ValueError("No target URL given; pass --url or set TABLINK_APP_URL")


def _make_resolver(config: BridgeConfig) -> CookieOriginResolver:
    return CookieOriginResolver(
        load_file_config().config.cookie_mappings,
        profile=config.chrome_profile,
        debug=config.cookie_debug,
    )


async def _cmd_tabs(args: argparse.Namespace, config: BridgeConfig) -> int:
    tabs = await fetch_tabs_with_retry(
        resolve_devtools_url(args.devtools_url, config), http_timeout=config.http_timeout
    )
    _print_json([tab.to_dict() for tab in tabs])
    return 0


async def _cmd_endpoints(args: argparse.Namespace, config: BridgeConfig) -> int:
    ports = range(args.first_port, args.last_port + 1)
    _print_json(await discover_devtools_endpoints(args.host, ports))
    return 0


async def _cmd_run_js(args: argparse.Namespace, config: BridgeConfig) -> int:
    expression = args.expression
    if expression == "-":
        expression = sys.stdin.read()
    value = await evaluate_in_tab(
        resolve_devtools_url(args.devtools_url, config),
        args.url,
        expression,
        command_timeout=config.command_timeout,
        http_timeout=config.http_timeout,
    )
    _print_json(value)
    return 0


async def _cmd_oauth_accept(args: argparse.Namespace, config: BridgeConfig) -> int:
    result = await attempt_oauth_auto_accept(
        resolve_devtools_url(args.devtools_url, config), resolve_target_url(args.url, config)
    )
    _print_json(result.to_dict())
    return 0 if result.handled else 1


async def _cmd_cookies(args: argparse.Namespace, config: BridgeConfig) -> int:
    target_url = resolve_target_url(args.url, config)
    resolver = _make_resolver(config)
    if args.apply:
        summary = await prime_controlled_cookies(
            resolve_devtools_url(args.devtools_url, config), target_url, resolver, reload=args.reload
        )
        _print_json(summary)
        return 1 if summary.get("error") else 0
    cookies = await asyncio.to_thread(resolver.collect, target_url)
    payload = [cookie.to_dict() for cookie in cookies]
    if not args.show_values:
        for item in payload:
            item["value"] = "<redacted>"
    _print_json({"origins": resolver.resolve_origins(target_url), "cookies": payload})
    return 0


async def _cmd_diagnostics(args: argparse.Namespace, config: BridgeConfig) -> int:
    target_url = resolve_target_url(args.url, config)
    candidates = build_wait_candidate_urls(target_url, [load_file_config().config.prod_url])
    diagnostics = await collect_bootstrap_diagnostics(resolve_devtools_url(args.devtools_url, config), candidates)
    log_bootstrap_diagnostics("[tablink]", diagnostics)
    _print_json(diagnostics)
    return 1 if diagnostics_contain_blocking_issues(diagnostics) else 0


async def _cmd_wait(args: argparse.Namespace, config: BridgeConfig) -> int:
    target_url = resolve_target_url(args.url, config)
    tab = await wait_for_tab(
        resolve_devtools_url(args.devtools_url, config),
        target_url,
        aliases=[load_file_config().config.prod_url],
        timeout=args.timeout,
        http_timeout=config.http_timeout,
    )
    if tab is None:
        logger.warning("No tab reached %s within %.1fs", target_url, args.timeout)
        return 1
    _print_json(tab.to_dict())
    return 0


async def _cmd_link(args: argparse.Namespace, config: BridgeConfig) -> int:
    if args.devtools_url is None:
        link = load_devtools_link()
        _print_json(link.to_dict() if link else None)
        return 0 if link else 1
    link = save_devtools_link(
        args.devtools_url.rstrip("/"),
        port=args.port,
        user_data_dir=args.user_data_dir,
        target_url=args.url,
    )
    _print_json(link.to_dict())
    return 0


async def _cmd_bridge(args: argparse.Namespace, config: BridgeConfig) -> int:
    target_url = resolve_target_url(args.url, config)
    daemon_url = args.daemon_url or load_file_config().config.daemon_url or config.daemon_url
    session_id = args.session_id or str(uuid.uuid4())
    evaluate = partial(evaluate_in_tab, command_timeout=config.command_timeout, http_timeout=config.http_timeout)
    dispatcher = CommandDispatcher(resolve_devtools_url(args.devtools_url, config), target_url, evaluate=evaluate)
    client = BridgeClient(daemon_url, session_id=session_id, token=args.token, dispatcher=dispatcher)
    logger.info("Bridging session %s (%s) to %s", session_id, target_url, daemon_url)
    reason = await client.run()
    logger.info("Bridge stopped: %s", reason)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tablink", description="Drive a Chrome tab over DevTools.")
    sub = parser.add_subparsers(dest="command", required=True)

    def _add(name: str, handler: Any, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--devtools-url", default=None, help="DevTools HTTP endpoint (default: env, link, :9222)")
        p.set_defaults(handler=handler)
        return p

    _add("tabs", _cmd_tabs, "List DevTools targets")

    p = _add("endpoints", _cmd_endpoints, "Probe local ports for DevTools endpoints")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--first-port", type=int, default=9222)
    p.add_argument("--last-port", type=int, default=9322)

    p = _add("run-js", _cmd_run_js, "Evaluate an expression in the best matching tab")
    p.add_argument("expression", help="JavaScript expression, or - to read stdin")
    p.add_argument("--url", default=None, help="Target URL hint")

    p = _add("oauth-accept", _cmd_oauth_accept, "Auto-accept a pending OAuth consent screen")
    p.add_argument("--url", default=None, help="Session URL")

    p = _add("cookies", _cmd_cookies, "Collect Chrome cookies for a target URL")
    p.add_argument("--url", default=None)
    p.add_argument("--apply", action="store_true", help="Copy them into the controlled browser")
    p.add_argument("--reload", action="store_true", help="Reload the tab after applying")
    p.add_argument("--show-values", action="store_true")

    p = _add("diagnostics", _cmd_diagnostics, "Report page bootstrap health")
    p.add_argument("--url", default=None)

    p = _add("wait", _cmd_wait, "Wait for a tab to reach the target URL")
    p.add_argument("--url", default=None)
    p.add_argument("--timeout", type=float, default=20.0)

    p = _add("link", _cmd_link, "Show or save the DevTools link state")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--user-data-dir", default=None)
    p.add_argument("--url", default=None)

    p = _add("bridge", _cmd_bridge, "Relay daemon commands into a tab")
    p.add_argument("--url", default=None)
    p.add_argument("--daemon-url", default=None)
    p.add_argument("--session-id", default=None)
    p.add_argument("--token", default="")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the tablink CLI."""
    config = BridgeConfig.from_env()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(args.handler(args, config))
    except KeyboardInterrupt:
        return 130
    except (
        EvaluationError,
        HttpClientError,
        CookieStoreError,
        BridgeProtocolError,
        RuntimeError,
        ValueError,
        OSError,
    ) as exc:
        logger.debug("command_failed", exc_info=True)
        sys.stderr.write(f"tablink {args.command}: {exc}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
