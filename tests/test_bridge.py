from __future__ import annotations

import asyncio
import contextlib
import json
import socket
from typing import Any

import pytest

TARGET = "http://localhost:3000/timeline"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class _Evaluate:
    def __init__(self, value: Any = None) -> None:
        self.value = value
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(self, devtools_url: str, hint: str, expression: str) -> Any:
        self.calls.append((devtools_url, hint, expression))
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


def _dispatcher(value: Any = None, **kwargs: Any) -> Any:
    from tablink.bridge import CommandDispatcher

    evaluate = _Evaluate(value)
    return CommandDispatcher("http://devtools.test", TARGET, evaluate=evaluate, **kwargs), evaluate


def test_parse_server_message_validates_shape() -> None:
    from tablink.bridge import BridgeProtocolError, parse_server_message

    assert parse_server_message('{"kind": "metadata", "codename": "otter"}')["codename"] == "otter"
    assert parse_server_message(b'{"kind": "disconnect"}')["kind"] == "disconnect"
    for raw in ["", "nope", "[1]", '{"kind": 3}', '{"kind": "command"}', '{"kind": "command", "command": "x"}']:
        with pytest.raises(BridgeProtocolError):
            parse_server_message(raw)


def test_message_builders() -> None:
    from tablink.bridge import CommandResult, command_result_message, heartbeat_message, register_message

    reg = register_message(token="t", session_id="s1", url=TARGET, title="App", user_agent="ua")
    assert reg == {
        "kind": "register",
        "token": "t",
        "sessionId": "s1",
        "url": TARGET,
        "title": "App",
        "userAgent": "ua",
        "topOrigin": "http://localhost:3000",
    }
    assert heartbeat_message("s1") == {"kind": "heartbeat", "sessionId": "s1"}

    failed = command_result_message("s1", CommandResult(ok=False, command_id="c1", duration_ms=4, error="x", stack="at y"))
    assert failed["result"] == {"ok": False, "commandId": "c1", "durationMs": 4, "error": "x", "stack": "at y"}
    ok = CommandResult(ok=True, command_id="c2", duration_ms=1, data=None).to_dict()
    assert ok == {"ok": True, "commandId": "c2", "durationMs": 1, "data": None}


def test_run_script_captures_console_output() -> None:
    dispatcher, evaluate = _dispatcher({"result": 3, "console": [{"level": "warn", "timestamp": 5, "args": ["hi"]}]})
    result = asyncio.run(dispatcher.execute({"type": "runScript", "id": "c1", "code": "1 + 2"}))

    assert result.ok is True
    assert result.data == 3
    assert result.command_id == "c1"
    assert result.duration_ms >= 0
    expression = evaluate.calls[0][2]
    assert "1 + 2" in expression
    assert "console[level]" in expression
    assert evaluate.calls[0][:2] == ("http://devtools.test", TARGET)

    events = dispatcher.drain_console()
    assert len(events) == 1
    assert events[0]["level"] == "warn"
    assert events[0]["args"] == ["hi"]
    assert events[0]["id"]
    assert dispatcher.drain_console() == []


def test_run_script_without_capture_returns_raw_value() -> None:
    from tablink.bridge import build_run_script_expression

    dispatcher, evaluate = _dispatcher({"answer": 1}, capture_console=False)
    result = asyncio.run(dispatcher.execute({"type": "runScript", "id": "c1", "code": "({answer: 1})"}))
    assert result.data == {"answer": 1}
    assert evaluate.calls[0][2] == build_run_script_expression("({answer: 1})")
    assert "console" not in evaluate.calls[0][2]


@pytest.mark.parametrize(
    "command,error",
    [
        ({"type": "runScript", "id": "c1"}, "runScript command is missing code."),
        ({"type": "runScript", "id": "c1", "code": "   "}, "runScript command is missing code."),
        ({"type": "navigate", "id": "c1"}, "Missing navigate target"),
        ({"type": "reload", "id": "c1"}, 'Command "reload" is not implemented.'),
    ],
)
def test_invalid_commands_fail_without_evaluating(command: dict[str, Any], error: str) -> None:
    dispatcher, evaluate = _dispatcher("unused")
    result = asyncio.run(dispatcher.execute(command))
    assert result.ok is False
    assert result.error == error
    assert "data" not in result.to_dict()
    assert evaluate.calls == []


def test_navigate_assigns_location() -> None:
    dispatcher, evaluate = _dispatcher("http://localhost:3000/insights")
    result = asyncio.run(dispatcher.execute({"type": "navigate", "id": "n1", "target": '/insights?q="x"'}))
    assert result.ok is True
    assert result.data == "http://localhost:3000/insights"
    assert 'window.location.assign("/insights?q=\\"x\\"")' in evaluate.calls[0][2]


def test_evaluation_errors_become_failed_results() -> None:
    from tablink.devtools.cdp import EvaluationError

    dispatcher, _ = _dispatcher(EvaluationError("ReferenceError: nope is not defined", kind="remote-exception"))
    result = asyncio.run(dispatcher.execute({"type": "runScript", "id": "c9", "code": "nope"}))
    assert result.ok is False
    assert result.command_id == "c9"
    assert result.error == "ReferenceError: nope is not defined"
    assert "stack" not in result.to_dict()


def test_remote_exception_stack_is_reported() -> None:
    from tablink.devtools.cdp import EvaluationError

    stack = "TypeError: x is undefined\n    at run (http://localhost:3000/app.js:3:7)"
    dispatcher, _ = _dispatcher(EvaluationError("TypeError: x is undefined", kind="remote-exception", stack=stack))
    result = asyncio.run(dispatcher.execute({"type": "runScript", "id": "c10", "code": "x.y"}))
    payload = result.to_dict()
    assert payload["ok"] is False
    assert payload["error"] == "TypeError: x is undefined"
    assert payload["stack"] == stack


def test_heartbeat_loop_sends_periodically() -> None:
    from tablink.bridge import BridgeClient

    sent: list[dict[str, Any]] = []

    class _Ws:
        async def send(self, raw: str) -> None:
            sent.append(json.loads(raw))

    dispatcher, _ = _dispatcher()
    client = BridgeClient("ws://unused", session_id="s1", token="t", dispatcher=dispatcher, heartbeat_interval=0.01)
    client._ws = _Ws()  # noqa: SLF001

    async def _main() -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(client._heartbeat_loop(), timeout=0.2)  # noqa: SLF001

    asyncio.run(_main())
    assert sent
    assert all(msg == {"kind": "heartbeat", "sessionId": "s1"} for msg in sent)


def test_bridge_client_session_roundtrip() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from tablink.bridge import BridgeClient

    received: list[dict[str, Any]] = []

    async def _daemon(ws: Any, *_args: Any) -> None:
        received.append(json.loads(await ws.recv()))
        await ws.send(json.dumps({"kind": "metadata", "codename": "otter"}))
        await ws.send("garbage")
        await ws.send(
            json.dumps({"kind": "command", "sessionId": "other", "command": {"type": "runScript", "id": "x", "code": "0"}})
        )
        await ws.send(
            json.dumps({"kind": "command", "sessionId": "s1", "command": {"type": "runScript", "id": "c1", "code": "1"}})
        )
        while True:
            msg = json.loads(await ws.recv())
            received.append(msg)
            if msg["kind"] == "commandResult":
                break
        await ws.send(json.dumps({"kind": "disconnect", "reason": "cli detached"}))
        with contextlib.suppress(Exception):
            async for _ in ws:
                pass

    dispatcher, evaluate = _dispatcher({"result": 1, "console": [{"level": "log", "timestamp": 1, "args": [1]}]})
    port = _free_port()

    async def _main() -> tuple[str, Any]:
        async with websockets.serve(_daemon, "127.0.0.1", port):
            client = BridgeClient(
                f"ws://127.0.0.1:{port}/bridge",
                session_id="s1",
                token="secret",
                dispatcher=dispatcher,
                title="App",
                heartbeat_interval=60,
            )
            reason = await asyncio.wait_for(client.run(), timeout=10)
            return reason, client

    reason, client = asyncio.run(_main())
    assert reason == "cli detached"
    assert client.codename == "otter"

    register = received[0]
    assert register["kind"] == "register"
    assert register["token"] == "secret"
    assert register["sessionId"] == "s1"
    assert register["url"] == TARGET

    kinds = [msg["kind"] for msg in received[1:]]
    assert kinds == ["console", "commandResult"]
    assert received[1]["events"][0]["args"] == [1]
    result = received[2]["result"]
    assert result["ok"] is True
    assert result["commandId"] == "c1"
    assert result["data"] == 1
    assert isinstance(result["durationMs"], int)
    assert len(evaluate.calls) == 1
