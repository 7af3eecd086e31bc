"""Minimal CDP client: one WebSocket per evaluation, responses routed by id.

Only `Runtime.enable` and `Runtime.evaluate` are ever sent. Everything that can
go wrong on the wire ends as an `EvaluationError`; nothing here reconnects, so
retries belong to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from .tabs import DEFAULT_HTTP_TIMEOUT, fetch_tabs_with_retry, select_tab

_LOGGER = logging.getLogger("tablink.devtools.cdp")

READY_POLL_ATTEMPTS = 50
READY_POLL_INTERVAL = 0.15
DEFAULT_COMMAND_TIMEOUT = 30.0

SOCKET_CLOSED_MESSAGE = "DevTools socket closed before command completed"


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "DevTools evaluation requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class EvaluationError(Exception):
    """Evaluation in a DevTools tab failed.

    `kind` is one of: no-tabs, no-debugger-socket, remote-exception,
    command-failed, socket-error, socket-closed, timeout.
    """

    def __init__(self, message: str, *, kind: str = "command-failed", stack: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.stack = stack


def is_devtools_response(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if "id" in value and (not isinstance(value["id"], int) or isinstance(value["id"], bool)):
        return False
    if "error" in value:
        error = value["error"]
        if not isinstance(error, dict):
            return False
        if "message" in error and not isinstance(error["message"], str):
            return False
    return True


def extract_remote_value(result: Any) -> Any:
    """Pull the by-value payload out of a `Runtime.evaluate` result."""
    if not isinstance(result, dict):
        return None
    inner = result.get("result")
    if not isinstance(inner, dict):
        return None
    value = inner.get("value")
    if value is None and isinstance(inner.get("result"), dict):
        value = inner["result"].get("value")
    return value


def describe_exception(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict):
        description = exc.get("description")
        if isinstance(description, str) and description:
            return description
        value = exc.get("value")
        if value is not None:
            return str(value)
    text = details.get("text")
    if isinstance(text, str) and text:
        return text
    return "Remote evaluation failed"


def exception_stack(details: dict[str, Any]) -> str | None:
    """Stack text of a thrown Error, or the formatted `stackTrace` frames."""
    exc = details.get("exception")
    if isinstance(exc, dict):
        description = exc.get("description")
        if isinstance(description, str) and "\n" in description:
            return description
    trace = details.get("stackTrace")
    frames = trace.get("callFrames") if isinstance(trace, dict) else None
    if not isinstance(frames, list) or not frames:
        return None
    lines = []
    for frame in frames:
        if not isinstance(frame, dict):
            continue
        name = frame.get("functionName") or "<anonymous>"
        lines.append(
            f"    at {name} ({frame.get('url') or '<eval>'}:{int(frame.get('lineNumber') or 0) + 1}:"
            f"{int(frame.get('columnNumber') or 0) + 1})"
        )
    return "\n".join(lines) or None


class CdpRpcClient:
    """One DevTools debugger socket with a pending-call map keyed by request id."""

    def __init__(
        self,
        ws_url: str,
        *,
        open_timeout: float = 10.0,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.ws_url = ws_url
        self.open_timeout = open_timeout
        self.command_timeout = command_timeout
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._closed = False
        self._socket_close_requested = False
        self._close_error: EvaluationError | None = None

    async def __aenter__(self) -> CdpRpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        websockets = _import_websockets()
        try:
            self._ws = await websockets.connect(
                self.ws_url,
                open_timeout=self.open_timeout,
                ping_interval=None,
                max_size=None,
            )
        except Exception as exc:  # noqa: BLE001
            self._closed = True
            raise EvaluationError(f"DevTools socket error: {exc}", kind="socket-error") from exc
        self._reader = asyncio.create_task(self._read_loop(websockets.ConnectionClosed))

    async def _read_loop(self, closed_exc: type[BaseException]) -> None:
        error = EvaluationError(SOCKET_CLOSED_MESSAGE, kind="socket-closed")
        try:
            async for raw in self._ws:
                self._on_message(raw)
        except closed_exc:
            pass
        except Exception as exc:  # noqa: BLE001
            error = EvaluationError(f"DevTools socket error: {exc}", kind="socket-error")
        self._teardown(error)

    def _on_message(self, raw: Any) -> None:
        if not isinstance(raw, str):
            _LOGGER.debug("Ignoring non-text DevTools frame (%d bytes)", len(raw or b""))
            return
        try:
            msg = json.loads(raw)
        except ValueError:
            _LOGGER.debug("Ignoring malformed DevTools frame: %.200s", raw)
            return
        if not is_devtools_response(msg):
            _LOGGER.debug("Ignoring DevTools frame with unexpected shape: %.200s", raw)
            return

        req_id = msg.get("id")
        if req_id is None:
            return
        fut = self._pending.pop(req_id, None)
        if fut is None or fut.done():
            return

        err = msg.get("error")
        if err is not None:
            fut.set_exception(EvaluationError(err.get("message") or "DevTools command failed", kind="command-failed"))
            return
        result = msg.get("result")
        fut.set_result(result if isinstance(result, dict) else {})

    def _teardown(self, error: EvaluationError) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close_error is None:
            self._close_error = error
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(error)

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._closed or self._ws is None:
            raise self._close_error or EvaluationError("DevTools socket is not open", kind="socket-closed")

        self._next_id += 1
        req_id = self._next_id
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut

        try:
            await self._ws.send(json.dumps({"id": req_id, "method": method, "params": params or {}}))
        except Exception as exc:  # noqa: BLE001
            self._pending.pop(req_id, None)
            raise EvaluationError(f"DevTools socket error: {exc}", kind="socket-error") from exc

        try:
            return await asyncio.wait_for(fut, timeout=max(0.1, float(self.command_timeout)))
        except asyncio.TimeoutError as exc:
            raise EvaluationError(f"DevTools command timed out: {method}", kind="timeout") from exc
        finally:
            self._pending.pop(req_id, None)

    async def enable_runtime(self) -> None:
        await self.send("Runtime.enable")

    async def wait_for_document_ready(
        self,
        *,
        attempts: int = READY_POLL_ATTEMPTS,
        interval: float = READY_POLL_INTERVAL,
    ) -> bool:
        """Poll `document.readyState`; False when the budget runs out or the socket closes."""
        for attempt in range(attempts):
            if self._closed:
                return False
            try:
                result = await self.send(
                    "Runtime.evaluate", {"expression": "document.readyState", "returnByValue": True}
                )
            except EvaluationError as exc:
                if self._closed:
                    return False
                _LOGGER.debug("readyState poll %d failed: %s", attempt + 1, exc)
            else:
                if extract_remote_value(result) in ("complete", "interactive"):
                    return True
            await asyncio.sleep(interval)
        return False

    async def evaluate(self, expression: str) -> Any:
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": True, "returnByValue": True},
        )
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            raise EvaluationError(
                describe_exception(details), kind="remote-exception", stack=exception_stack(details)
            )
        return extract_remote_value(result)

    async def close(self) -> None:
        self._teardown(EvaluationError(SOCKET_CLOSED_MESSAGE, kind="socket-closed"))
        ws = self._ws
        if ws is not None and not self._socket_close_requested:
            self._socket_close_requested = True
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await asyncio.wait_for(reader, timeout=2.0)


async def evaluate_in_tab(
    devtools_url: str,
    target_url_hint: str | None,
    expression: str,
    *,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    ready_attempts: int = READY_POLL_ATTEMPTS,
    ready_interval: float = READY_POLL_INTERVAL,
) -> Any:
    """Evaluate `expression` in the tab that best matches `target_url_hint`.

    The result is returned by value; promises are awaited in the page.
    """
    tabs = await fetch_tabs_with_retry(devtools_url, http_timeout=http_timeout)
    if not tabs:
        raise EvaluationError("No DevTools tabs available", kind="no-tabs")
    tab = select_tab(tabs, target_url_hint)
    if tab is None or not tab.web_socket_debugger_url:
        raise EvaluationError("DevTools tab does not expose a debugger WebSocket URL", kind="no-debugger-socket")

    _LOGGER.debug("Evaluating in tab %s (%s)", tab.id, tab.url)
    async with CdpRpcClient(tab.web_socket_debugger_url, command_timeout=command_timeout) as client:
        await client.enable_runtime()
        if not await client.wait_for_document_ready(attempts=ready_attempts, interval=ready_interval):
            _LOGGER.debug("Document in tab %s never reported ready; evaluating anyway", tab.id)
        return await client.evaluate(expression)
