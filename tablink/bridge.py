"""Session bridge: daemon <-> tab message relay.

Wire vocabulary (JSON text frames, discriminated by `kind`):
- out: register, heartbeat, console, commandResult
- in:  command, metadata, disconnect

Commands (`runScript`, `navigate`) are executed inside the tab through the
DevTools evaluation path; their outcome goes back as a `commandResult` carrying
`durationMs` and either `data` or `error`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .devtools.cdp import EvaluationError, evaluate_in_tab
from .http_client import HttpClientError
from .url import url_origin

_LOGGER = logging.getLogger("tablink.bridge")

HEARTBEAT_INTERVAL = 15.0
CONSOLE_LEVELS = ("log", "info", "warn", "error", "debug")


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The session bridge requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class BridgeProtocolError(Exception):
    pass


def parse_server_message(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str) or not raw:
        raise BridgeProtocolError("Empty bridge frame")
    try:
        msg = json.loads(raw)
    except ValueError as exc:
        raise BridgeProtocolError(f"Invalid bridge frame: {exc}") from exc
    if not isinstance(msg, dict) or not isinstance(msg.get("kind"), str):
        raise BridgeProtocolError("Bridge frame has no kind")
    if msg["kind"] == "command" and not isinstance(msg.get("command"), dict):
        raise BridgeProtocolError("Command frame has no command object")
    return msg


def register_message(
    *,
    token: str,
    session_id: str,
    url: str,
    title: str = "",
    user_agent: str = "",
    top_origin: str | None = None,
) -> dict[str, Any]:
    return {
        "kind": "register",
        "token": token,
        "sessionId": session_id,
        "url": url,
        "title": title,
        "userAgent": user_agent,
        "topOrigin": top_origin or url_origin(url) or url,
    }


def heartbeat_message(session_id: str) -> dict[str, Any]:
    return {"kind": "heartbeat", "sessionId": session_id}


def console_message(session_id: str, events: list[dict[str, Any]]) -> dict[str, Any]:
    return {"kind": "console", "sessionId": session_id, "events": events}


@dataclass
class CommandResult:
    ok: bool
    command_id: str
    duration_ms: int
    data: Any = None
    error: str | None = None
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok, "commandId": self.command_id, "durationMs": self.duration_ms}
        if self.ok:
            out["data"] = self.data
            return out
        out["error"] = self.error or "Command failed"
        if self.stack:
            out["stack"] = self.stack
        return out


def command_result_message(session_id: str, result: CommandResult) -> dict[str, Any]:
    return {"kind": "commandResult", "sessionId": session_id, "result": result.to_dict()}


def build_run_script_expression(code: str, *, capture_console: bool = False) -> str:
    """Wrap opaque command code as an awaited async IIFE.

    With `capture_console`, console calls made while the script runs are
    recorded and returned next to the result as `{result, console}`.
    """
    body = f'(async () => {{ "use strict"; return ({code}\n); }})()'
    if not capture_console:
        return body
    levels = json.dumps(list(CONSOLE_LEVELS))
    return (
        "(async () => {\n"
        f"  const levels = {levels};\n"
        "  const captured = [];\n"
        "  const originals = {};\n"
        "  const safe = (value) => {\n"
        '    if (value === null || ["string", "number", "boolean"].includes(typeof value)) return value;\n'
        "    try { return JSON.parse(JSON.stringify(value)); } catch (err) { return String(value); }\n"
        "  };\n"
        "  for (const level of levels) {\n"
        "    originals[level] = console[level];\n"
        "    console[level] = (...args) => {\n"
        "      captured.push({ level, timestamp: Date.now(), args: args.map(safe) });\n"
        "      return originals[level].apply(console, args);\n"
        "    };\n"
        "  }\n"
        "  try {\n"
        f"    const result = await {body};\n"
        "    return { result, console: captured };\n"
        "  } finally {\n"
        "    for (const level of levels) console[level] = originals[level];\n"
        "  }\n"
        "})()"
    )


def build_navigate_expression(target: str) -> str:
    return f"(() => {{ window.location.assign({json.dumps(target)}); return window.location.href; }})()"


EvaluateFn = Callable[[str, str, str], Awaitable[Any]]


class CommandDispatcher:
    """Execute bridge commands in the tab matching `target_url`."""

    def __init__(
        self,
        devtools_url: str,
        target_url: str,
        *,
        evaluate: EvaluateFn | None = None,
        capture_console: bool = True,
    ) -> None:
        self.devtools_url = devtools_url
        self.target_url = target_url
        self.capture_console = capture_console
        self._evaluate = evaluate or evaluate_in_tab
        self._console: list[dict[str, Any]] = []

    def drain_console(self) -> list[dict[str, Any]]:
        events, self._console = self._console, []
        return events

    async def execute(self, command: dict[str, Any]) -> CommandResult:
        start = time.perf_counter()
        command_id = str(command.get("id") or "")
        kind = command.get("type")

        def _elapsed() -> int:
            return int(round((time.perf_counter() - start) * 1000))

        try:
            if kind == "runScript":
                data = await self._run_script(command)
            elif kind == "navigate":
                data = await self._navigate(command)
            else:
                raise BridgeProtocolError(f'Command "{kind}" is not implemented.')
        except (
            EvaluationError,
            HttpClientError,
            BridgeProtocolError,
            TypeError,
            ValueError,
            RuntimeError,
            OSError,
        ) as exc:
            _LOGGER.debug("Command %s (%s) failed: %s", command_id, kind, exc)
            return CommandResult(
                ok=False,
                command_id=command_id,
                duration_ms=_elapsed(),
                error=str(exc),
                stack=getattr(exc, "stack", None),
            )
        return CommandResult(ok=True, command_id=command_id, duration_ms=_elapsed(), data=data)

    async def _run_script(self, command: dict[str, Any]) -> Any:
        code = command.get("code")
        if not isinstance(code, str) or not code.strip():
            raise TypeError("runScript command is missing code.")
        expression = build_run_script_expression(code, capture_console=self.capture_console)
        value = await self._evaluate(self.devtools_url, self.target_url, expression)
        if not self.capture_console:
            return value
        if not isinstance(value, dict):
            return None
        for event in value.get("console") or []:
            if not isinstance(event, dict):
                continue
            level = event.get("level")
            self._console.append(
                {
                    "id": str(uuid.uuid4()),
                    "timestamp": event.get("timestamp") or int(time.time() * 1000),
                    "level": level if level in CONSOLE_LEVELS else "log",
                    "args": event.get("args") if isinstance(event.get("args"), list) else [],
                }
            )
        return value.get("result")

    async def _navigate(self, command: dict[str, Any]) -> Any:
        target = command.get("target")
        if not isinstance(target, str) or not target:
            raise TypeError("Missing navigate target")
        return await self._evaluate(self.devtools_url, self.target_url, build_navigate_expression(target))


class BridgeClient:
    """Registers a tab with the daemon and serves its commands until told to disconnect."""

    def __init__(
        self,
        socket_url: str,
        *,
        session_id: str,
        token: str,
        dispatcher: CommandDispatcher,
        title: str = "",
        user_agent: str = "tablink/1.0",
        heartbeat_interval: float = HEARTBEAT_INTERVAL * 0.8,
    ) -> None:
        self.socket_url = socket_url
        self.session_id = session_id
        self.token = token
        self.dispatcher = dispatcher
        self.title = title
        self.user_agent = user_agent
        self.heartbeat_interval = heartbeat_interval
        self.codename: str | None = None
        self._ws = None
        self._tasks: set[asyncio.Task] = set()

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps(payload, ensure_ascii=False))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self._send(heartbeat_message(self.session_id))

    async def _handle_command(self, msg: dict[str, Any]) -> None:
        result = await self.dispatcher.execute(msg["command"])
        events = self.dispatcher.drain_console()
        try:
            if events:
                await self._send(console_message(self.session_id, events))
            await self._send(command_result_message(self.session_id, result))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Failed to report result for command %s: %s", result.command_id, exc)

    def _on_message(self, msg: dict[str, Any]) -> str | None:
        """Route one server message; returns a disconnect reason to stop the loop."""
        kind = msg.get("kind")
        if kind == "command":
            sid = msg.get("sessionId")
            if sid and sid != self.session_id:
                _LOGGER.debug("Ignoring command for foreign session %s", sid)
                return None
            task = asyncio.create_task(self._handle_command(msg))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return None
        if kind == "metadata":
            self.codename = str(msg.get("codename") or "") or None
            _LOGGER.info('CLI attached as "%s".', self.codename or "unknown")
            return None
        if kind == "disconnect":
            return str(msg.get("reason") or "unknown reason")
        _LOGGER.debug("Received bridge message: %s", kind)
        return None

    async def run(self) -> str:
        """Serve until the daemon disconnects us; returns the disconnect reason."""
        websockets = _import_websockets()
        reason = "connection closed"
        async with websockets.connect(self.socket_url, ping_interval=None, max_size=None) as ws:
            self._ws = ws
            await self._send(
                register_message(
                    token=self.token,
                    session_id=self.session_id,
                    url=self.dispatcher.target_url,
                    title=self.title,
                    user_agent=self.user_agent,
                )
            )
            heartbeat = asyncio.create_task(self._heartbeat_loop())
            try:
                async for raw in ws:
                    try:
                        msg = parse_server_message(raw)
                    except BridgeProtocolError as exc:
                        _LOGGER.debug("Received invalid bridge message: %s", exc)
                        continue
                    stop = self._on_message(msg)
                    if stop is not None:
                        reason = stop
                        _LOGGER.warning("Daemon requested disconnect: %s", reason)
                        break
                if self._tasks:
                    await asyncio.gather(*list(self._tasks), return_exceptions=True)
            except websockets.ConnectionClosed:
                pass
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await heartbeat
                for task in list(self._tasks):
                    task.cancel()
                self._ws = None
        return reason
