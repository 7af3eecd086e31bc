from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any

import pytest

SESSION_URL = "http://localhost:3000/auth/twitter"
CONSENT_URL = "https://x.com/i/oauth2/authorize?client_id=abc"


def _tab(tab_id: str, url: str) -> Any:
    from tablink.devtools.tabs import DevToolsTarget

    return DevToolsTarget(id=tab_id, title=tab_id, url=url, web_socket_debugger_url=f"ws://x/{tab_id}")


class _Evaluator:
    def __init__(self, responses: dict[str, Any] | None = None, default: Any = None) -> None:
        self.responses = responses or {}
        self.default = default
        self.calls: list[str] = []

    async def __call__(self, devtools_url: str, candidate: str, expression: str) -> Any:
        self.calls.append(candidate)
        value = self.responses.get(candidate, self.default)
        if isinstance(value, Exception):
            raise value
        return value


class _Attach:
    def __init__(self, browser: Any = None) -> None:
        self.browser = browser or SimpleNamespace(contexts=[])
        self.calls = 0
        self.released = 0

    @contextlib.asynccontextmanager
    async def __call__(self, devtools_url: str) -> AsyncIterator[Any]:
        self.calls += 1
        try:
            yield self.browser
        finally:
            self.released += 1


def _engine(evaluate: Any, *, tabs: list[Any] | None = None, attach: _Attach | None = None, **kwargs: Any) -> Any:
    from tablink.devtools.oauth import OAuthAutoAcceptEngine

    async def _list_tabs(_url: str) -> list[Any]:
        return list(tabs or [])

    return OAuthAutoAcceptEngine(
        evaluate=evaluate,
        list_tabs=_list_tabs,
        attach=attach or _Attach(),
        waiting_delay=0,
        short_delay=0,
        settle_timeout=0.01,
        **kwargs,
    )


def test_handled_on_first_attempt() -> None:
    evaluate = _Evaluator({CONSENT_URL: {"handled": True, "action": "click", "clickedText": "Authorize app"}})
    attach = _Attach()
    engine = _engine(evaluate, tabs=[_tab("consent", CONSENT_URL)], attach=attach)

    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is True
    assert result.action == "click"
    assert result.clicked_text == "Authorize app"
    assert engine.attempts_made == 1
    assert evaluate.calls == [SESSION_URL, CONSENT_URL]
    assert attach.calls == 0


def test_requires_login_short_circuits() -> None:
    evaluate = _Evaluator(
        default={"handled": False, "reason": "requires-login", "hasUsernameInput": True, "hasPasswordInput": False}
    )
    attach = _Attach()
    engine = _engine(evaluate, tabs=[_tab("consent", CONSENT_URL)], attach=attach)

    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is False
    assert result.reason == "requires-login"
    assert result.to_dict() == {
        "handled": False,
        "reason": "requires-login",
        "hasUsernameInput": True,
        "hasPasswordInput": False,
    }
    assert engine.attempts_made == 1
    assert evaluate.calls == [SESSION_URL]
    assert attach.calls == 0


def test_attempt_budget_is_capped_then_driver_runs_once() -> None:
    evaluate = _Evaluator(default={"handled": False, "reason": "button-not-found"})
    attach = _Attach()
    engine = _engine(evaluate, attach=attach)

    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is False
    assert result.reason == "button-not-found"
    assert engine.attempts_made == 12
    assert len(evaluate.calls) == 12
    assert attach.calls == 1
    assert attach.released == 1


def test_invalid_payloads_keep_retrying() -> None:
    evaluate = _Evaluator(default="garbage")
    engine = _engine(evaluate, max_attempts=3)

    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.reason == "invalid-response"
    assert len(evaluate.calls) == 3


def test_evaluation_failures_move_to_next_candidate() -> None:
    from tablink.devtools.cdp import EvaluationError

    evaluate = _Evaluator(
        {
            SESSION_URL: EvaluationError("No DevTools tabs available", kind="no-tabs"),
            CONSENT_URL: {"handled": True, "action": "form-submit"},
        }
    )
    engine = _engine(evaluate, tabs=[_tab("consent", CONSENT_URL)])
    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is True
    assert result.action == "form-submit"


def test_no_result_defaults_to_button_not_found() -> None:
    from tablink.devtools.cdp import EvaluationError

    evaluate = _Evaluator(default=EvaluationError("socket", kind="socket-error"))
    engine = _engine(evaluate, max_attempts=2)
    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is False
    assert result.reason == "button-not-found"


class _Frame:
    def __init__(self, payload: Any) -> None:
        self.payload = payload
        self.scripts: list[str] = []

    async def evaluate(self, script: str) -> Any:
        self.scripts.append(script)
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class _Page:
    def __init__(self, url: str, frames: list[_Frame]) -> None:
        self.url = url
        self.frames = frames
        self.waited: list[tuple[str, float]] = []

    async def wait_for_event(self, event: str, timeout: float) -> None:
        self.waited.append((event, timeout))
        raise TimeoutError("no navigation")


def test_driver_fallback_clicks_inside_cross_origin_frame() -> None:
    from tablink.devtools.oauth_script import OAUTH_ACCEPT_FUNCTION

    unrelated = _Page("https://news.example/", [_Frame({"handled": True, "action": "click"})])
    consent = _Page(
        CONSENT_URL,
        [
            _Frame(RuntimeError("detached")),
            _Frame(None),
            _Frame({"handled": True, "action": "dispatch-event", "clickedText": "Authorize app"}),
        ],
    )
    browser = SimpleNamespace(contexts=[SimpleNamespace(pages=[unrelated, consent])])
    attach = _Attach(browser)
    evaluate = _Evaluator(default={"handled": False, "reason": "not-twitter"})
    engine = _engine(evaluate, attach=attach, max_attempts=2)

    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.handled is True
    assert result.action == "puppeteer-click"
    assert result.clicked_text == "Authorize app"
    assert consent.waited and consent.waited[0][0] == "framenavigated"
    assert consent.frames[2].scripts == [OAUTH_ACCEPT_FUNCTION]
    assert unrelated.frames[0].scripts == []
    assert attach.released == 1


def test_driver_fallback_reports_login_frames() -> None:
    page = _Page(CONSENT_URL, [_Frame({"handled": False, "reason": "requires-login", "hasPasswordInput": True})])
    engine = _engine(_Evaluator(default=None), attach=_Attach(SimpleNamespace(contexts=[SimpleNamespace(pages=[page])])))
    engine.max_attempts = 1
    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.reason == "requires-login"
    assert result.has_password_input is True


def test_driver_attach_failure_is_not_fatal() -> None:
    @contextlib.asynccontextmanager
    async def _broken(_url: str) -> AsyncIterator[Any]:
        raise RuntimeError("playwright missing")
        yield  # pragma: no cover

    evaluate = _Evaluator(default={"handled": False, "reason": "button-not-clickable"})
    from tablink.devtools.oauth import OAuthAutoAcceptEngine

    async def _no_tabs(_url: str) -> list[Any]:
        return []

    engine = OAuthAutoAcceptEngine(
        evaluate=evaluate, list_tabs=_no_tabs, attach=_broken, max_attempts=1, waiting_delay=0, short_delay=0
    )
    result = asyncio.run(engine.attempt("http://devtools.test", SESSION_URL))
    assert result.reason == "button-not-clickable"


def test_candidate_urls_include_oauth_tabs_only() -> None:
    from tablink.http_client import HttpClientError

    tabs = [
        _tab("session", SESSION_URL),
        _tab("consent", CONSENT_URL),
        _tab("provider", "https://api.twitter.com/oauth/authenticate"),
        _tab("generic", "https://accounts.example/oauth/start"),
        _tab("news", "https://news.example/"),
    ]
    engine = _engine(_Evaluator(), tabs=tabs)
    urls = asyncio.run(engine.candidate_urls("http://devtools.test", SESSION_URL))
    assert urls == [
        SESSION_URL,
        CONSENT_URL,
        "https://api.twitter.com/oauth/authenticate",
        "https://accounts.example/oauth/start",
    ]

    async def _failing(_url: str) -> list[Any]:
        raise HttpClientError("refused", connection_refused=True)

    engine._list_tabs = _failing  # noqa: SLF001
    assert asyncio.run(engine.candidate_urls("http://devtools.test", SESSION_URL)) == [SESSION_URL]


def test_retry_delay_depends_on_reason() -> None:
    from tablink.devtools.oauth import OAuthAttemptResult, OAuthAutoAcceptEngine

    engine = OAuthAutoAcceptEngine(evaluate=_Evaluator(), waiting_delay=0.5, short_delay=0.25)
    assert engine._delay_after(None) == 0.5  # noqa: SLF001
    assert engine._delay_after(OAuthAttemptResult(False, "not-twitter")) == 0.5  # noqa: SLF001
    assert engine._delay_after(OAuthAttemptResult(False, "button-not-found")) == 0.5  # noqa: SLF001
    assert engine._delay_after(OAuthAttemptResult(False, "button-not-clickable")) == 0.25  # noqa: SLF001


@pytest.mark.parametrize(
    "payload,expected",
    [
        (None, {"handled": False, "reason": "invalid-response"}),
        ({"handled": False, "reason": "mystery"}, {"handled": False, "reason": "invalid-response"}),
        ({"handled": "yes"}, {"handled": False, "reason": "invalid-response"}),
        ({"handled": True, "action": "teleport"}, {"handled": True, "action": "click", "clickedText": None}),
        ({"handled": False, "reason": "not-twitter"}, {"handled": False, "reason": "not-twitter"}),
    ],
)
def test_attempt_result_from_payload(payload: Any, expected: dict[str, Any]) -> None:
    from tablink.devtools.oauth import OAuthAttemptResult

    assert OAuthAttemptResult.from_payload(payload).to_dict() == expected


def test_provider_host_matching_is_exact_or_subdomain() -> None:
    from tablink.devtools.oauth import is_oauth_provider_url

    assert is_oauth_provider_url("https://x.com/i/oauth2/authorize") is True
    assert is_oauth_provider_url("https://api.twitter.com/oauth/authorize") is True
    assert is_oauth_provider_url("https://notx.com/") is False
    assert is_oauth_provider_url("https://x.com.evil.test/") is False
    assert is_oauth_provider_url("about:blank") is False


def test_accept_expression_never_fills_credentials() -> None:
    from tablink.devtools.oauth_script import OAUTH_ACCEPT_EXPRESSION, OAUTH_ACCEPT_FUNCTION

    assert OAUTH_ACCEPT_EXPRESSION.startswith("(") and OAUTH_ACCEPT_EXPRESSION.endswith(")()")
    assert OAUTH_ACCEPT_FUNCTION.strip() in OAUTH_ACCEPT_EXPRESSION
    assert ".value =" not in OAUTH_ACCEPT_FUNCTION
    assert "requires-login" in OAUTH_ACCEPT_FUNCTION
