import json
import threading
from types import SimpleNamespace

import litellm
import pytest

from deckhand.cancellation import CancelToken, StopCause, TimedOut, UserStopped
from deckhand.router import (
    BudgetExceededError,
    Router,
    UpstreamError,
    UpstreamErrorKind,
    classify_failure,
)


class FakeAPIError(Exception):
    def __init__(self, status_code, message="upstream said no"):
        self.status_code = status_code
        super().__init__(message)


def _response(content="```bash\nls\n```", model="test/model"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        model=model,
    )


@pytest.fixture
def calls(monkeypatch):
    """Scripted litellm.completion; each entry is a response or an exception."""
    script: list = []
    seen: list[dict] = []

    def fake_completion(**kwargs):
        seen.append(kwargs)
        item = script.pop(0)
        if callable(item) and not isinstance(item, Exception):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(litellm, "completion", fake_completion)
    monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.002)
    return SimpleNamespace(script=script, seen=seen)


@pytest.fixture
def router(config):
    return Router(config, poll_interval=0.01)


MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def test_successful_completion_records_cost(router, calls):
    calls.script.append(_response())

    response = router.complete(MESSAGES, CancelToken())

    assert response.content.startswith("```bash")
    assert response.cost.prompt_tokens == 10
    assert response.cost.cost == pytest.approx(0.002)
    assert router.budget.usage.call_count == 1


def test_request_carries_user_agent_and_temperature(router, calls):
    calls.script.append(_response())
    router.complete(MESSAGES, CancelToken())

    kwargs = calls.seen[0]
    assert kwargs["extra_headers"]["User-Agent"].startswith("deckhand/")
    assert kwargs["temperature"] == router.config.routing.temperature
    assert kwargs["messages"] == MESSAGES


def test_reasoning_models_get_no_temperature(config, calls):
    config.routing.model = "openai/o3-mini"
    calls.script.append(_response())
    Router(config, poll_interval=0.01).complete(MESSAGES, CancelToken())
    assert "temperature" not in calls.seen[0]


def test_server_errors_are_retried(router, calls):
    calls.script.extend([FakeAPIError(502), FakeAPIError(500), _response("done")])

    assert router.complete(MESSAGES, CancelToken()).content == "done"
    assert len(calls.seen) == 3


def test_retries_are_bounded(router, calls):
    calls.script.extend([FakeAPIError(503)] * 3)

    with pytest.raises(UpstreamError) as exc:
        router.complete(MESSAGES, CancelToken())

    assert exc.value.kind is UpstreamErrorKind.SERVER_ERROR
    assert len(calls.seen) == router.config.limits.upstream_retries


@pytest.mark.parametrize("status, kind", [
    (401, UpstreamErrorKind.UNAUTHORIZED),
    (413, UpstreamErrorKind.PAYLOAD_TOO_LARGE),
    (429, UpstreamErrorKind.RATE_LIMITED),
    (400, UpstreamErrorKind.BAD_REQUEST),
])
def test_non_transient_errors_fail_fast(router, calls, status, kind):
    calls.script.append(FakeAPIError(status))

    with pytest.raises(UpstreamError) as exc:
        router.complete(MESSAGES, CancelToken())

    assert exc.value.kind is kind
    assert exc.value.to_marked_text().startswith(f"[ERROR] UPSTREAM_{kind.value.upper()}")
    assert len(calls.seen) == 1


def test_html_body_is_malformed_not_success(router, calls):
    calls.script.append(_response("<!DOCTYPE html><html><body>502 Bad Gateway</body></html>"))

    with pytest.raises(UpstreamError) as exc:
        router.complete(MESSAGES, CancelToken())

    assert exc.value.kind is UpstreamErrorKind.MALFORMED_RESPONSE


def test_html_error_page_in_exception_is_malformed(router, calls):
    calls.script.append(FakeAPIError(502, "Expecting value: <html><head><title>502</title>"))
    with pytest.raises(UpstreamError) as exc:
        router.complete(MESSAGES, CancelToken())
    assert exc.value.kind is UpstreamErrorKind.MALFORMED_RESPONSE
    assert len(calls.seen) == 1


def test_programming_errors_propagate_unclassified(router, calls):
    calls.script.append(KeyError("bug"))
    with pytest.raises(KeyError):
        router.complete(MESSAGES, CancelToken())


def test_budget_exceeded_blocks_requests(router, calls):
    router.budget.usage.total_tokens = router.budget.max_tokens
    with pytest.raises(BudgetExceededError):
        router.complete(MESSAGES, CancelToken())
    assert calls.seen == []

    router.start_run()
    calls.script.append(_response())
    router.complete(MESSAGES, CancelToken())


def test_user_stop_interrupts_inflight_request(router, calls):
    release = threading.Event()
    calls.script.append(lambda: (release.wait(5), _response())[1])
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()

    try:
        with pytest.raises(UserStopped):
            router.complete(MESSAGES, token)
    finally:
        release.set()


def test_deadline_cancels_token_as_timeout(config, calls):
    config.limits.request_timeout_seconds = 0.05
    release = threading.Event()
    calls.script.append(lambda: (release.wait(5), _response())[1])
    token = CancelToken()

    try:
        with pytest.raises(TimedOut):
            Router(config, poll_interval=0.01).complete(MESSAGES, token)
    finally:
        release.set()

    assert token.cause is StopCause.TIMEOUT


def test_cancelled_token_sends_nothing(router, calls):
    token = CancelToken()
    token.cancel()
    with pytest.raises(UserStopped):
        router.complete(MESSAGES, token)
    assert calls.seen == []


@pytest.mark.parametrize("exc, kind", [
    (FakeAPIError(504), UpstreamErrorKind.GATEWAY_TIMEOUT),
    (FakeAPIError(408), UpstreamErrorKind.GATEWAY_TIMEOUT),
    (FakeAPIError(403), UpstreamErrorKind.UNAUTHORIZED),
    (FakeAPIError(None), UpstreamErrorKind.SERVER_ERROR),
    (TimeoutError("read timed out"), UpstreamErrorKind.GATEWAY_TIMEOUT),
    (json.JSONDecodeError("Expecting value", "<html>", 0), UpstreamErrorKind.MALFORMED_RESPONSE),
])
def test_classify_failure(exc, kind):
    failure = classify_failure(exc)
    assert failure.kind is kind
    assert failure.transient == (kind in (UpstreamErrorKind.SERVER_ERROR, UpstreamErrorKind.GATEWAY_TIMEOUT))
