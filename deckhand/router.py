"""
DECKHAND Router — Remote Endpoint Client

Sends the outgoing request through LiteLLM so the loop never knows which
vendor is behind it. Handles budget tracking, cancellation, error
classification, and bounded retries of transient failures.
"""

from __future__ import annotations

import json
import platform
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from deckhand.cancellation import CancelToken, StopCause, TimedOut
from deckhand.config_loader import DeckhandConfig
from deckhand.errors import DeckhandError
from deckhand.identity import __version__
from deckhand.state import CostInfo


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UpstreamErrorKind(str, Enum):
    PAYLOAD_TOO_LARGE = "payload_too_large"
    GATEWAY_TIMEOUT = "gateway_timeout"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    BAD_REQUEST = "bad_request"


_TRANSIENT = {UpstreamErrorKind.SERVER_ERROR, UpstreamErrorKind.GATEWAY_TIMEOUT}


class UpstreamError(DeckhandError):
    def __init__(self, kind: UpstreamErrorKind, message: str, status_code: int | None = None):
        self.kind = UpstreamErrorKind(kind)
        self.status_code = status_code
        self.code = f"UPSTREAM_{self.kind.value.upper()}"
        super().__init__(message)

    @property
    def transient(self) -> bool:
        return self.kind in _TRANSIENT


class BudgetExceededError(DeckhandError):
    code = "BUDGET_EXCEEDED"


def _looks_like_html(text: str, anywhere: bool = False) -> bool:
    head = text.lstrip()[:200].lower()
    if head.startswith(("<!doctype html", "<html")):
        return True
    return anywhere and "<html" in head


def classify_failure(exc: Exception) -> UpstreamError:
    """Map a transport exception onto the upstream error taxonomy."""
    status = getattr(exc, "status_code", None)
    message = str(exc) or type(exc).__name__

    if isinstance(exc, json.JSONDecodeError) or _looks_like_html(message, anywhere=True):
        return UpstreamError(
            UpstreamErrorKind.MALFORMED_RESPONSE,
            f"Non-JSON response from endpoint (status {status})",
            status,
        )
    if status == 413:
        kind = UpstreamErrorKind.PAYLOAD_TOO_LARGE
    elif status in (401, 403):
        kind = UpstreamErrorKind.UNAUTHORIZED
    elif status == 429:
        kind = UpstreamErrorKind.RATE_LIMITED
    elif status in (408, 504) or isinstance(exc, TimeoutError):
        kind = UpstreamErrorKind.GATEWAY_TIMEOUT
    elif status is None or status >= 500:
        kind = UpstreamErrorKind.SERVER_ERROR
    else:
        kind = UpstreamErrorKind.BAD_REQUEST
    return UpstreamError(kind, message[:500], status)


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend per run."""
    max_tokens: int = 400_000
    max_dollars: float = 5.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def reset(self) -> None:
        self.usage = UsageRecord()

    def record(self, response: Any) -> CostInfo:
        """Record usage from a LiteLLM response and return this call's share."""
        usage = getattr(response, "usage", None)
        prompt = getattr(usage, "prompt_tokens", 0) or 0
        completion = getattr(usage, "completion_tokens", 0) or 0
        self.usage.prompt_tokens += prompt
        self.usage.completion_tokens += completion
        self.usage.total_tokens += getattr(usage, "total_tokens", 0) or prompt + completion

        cost = 0.0
        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ROUTER] No cost data for this model: {e}")
        self.usage.estimated_cost += cost
        self.usage.call_count += 1

        return CostInfo(
            model=getattr(response, "model", "") or "",
            prompt_tokens=prompt,
            completion_tokens=completion,
            cost=cost,
        )

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def user_agent() -> str:
    return f"deckhand/{__version__} ({platform.system().lower()}; python {platform.python_version()})"


def _build_kwargs(config: DeckhandConfig, messages: list[dict]) -> dict[str, Any]:
    routing = config.routing
    kwargs: dict[str, Any] = {
        "model": routing.model,
        "messages": messages,
        "max_tokens": routing.max_tokens,
        # The watchdog in Router fires first; this only bounds the worker thread.
        "timeout": config.limits.request_timeout_seconds + 5,
        "extra_headers": {"User-Agent": user_agent()},
    }
    if not _is_gpt5_model(routing.model) and not _is_o_series_model(routing.model):
        kwargs["temperature"] = routing.temperature
    if routing.api_base:
        kwargs["api_base"] = routing.api_base
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    cost: CostInfo
    latency_ms: int = 0


class Router:
    """
    Vendor-agnostic model client.

    The loop calls `router.complete(messages, token)`. The blocking LiteLLM
    call runs on a worker thread while this thread watches the token and
    the request deadline.
    """

    def __init__(self, config: DeckhandConfig, poll_interval: float = 0.1):
        self.config = config
        self.poll_interval = poll_interval
        self.budget = BudgetTracker(
            max_tokens=config.limits.max_tokens_per_run,
            max_dollars=config.limits.max_dollars_per_run,
        )
        litellm.suppress_debug_info = True

    @property
    def model(self) -> str:
        return self.config.routing.model

    def start_run(self) -> None:
        self.budget.reset()

    def complete(self, messages: list[dict], token: CancelToken) -> RouterResponse:
        """
        Send one request, retrying server errors and gateway timeouts.

        Raises:
            BudgetExceededError: the run's token or dollar ceiling is reached.
            UpstreamError: classified transport or response failure.
            UserStopped / TimedOut: the token was cancelled or the deadline passed.
        """
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

        limits = self.config.limits
        retrying = Retrying(
            stop=stop_after_attempt(limits.upstream_retries),
            wait=wait_exponential(min=limits.retry_wait_min, max=limits.retry_wait_max),
            retry=retry_if_exception(lambda e: isinstance(e, UpstreamError) and e.transient),
            sleep=token.wait,
            before_sleep=lambda state: logger.warning(
                f"[ROUTER] Attempt {state.attempt_number} failed "
                f"({state.outcome.exception()}), retrying"
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._attempt(messages, token)
        raise AssertionError("unreachable")

    def _attempt(self, messages: list[dict], token: CancelToken) -> RouterResponse:
        token.raise_if_cancelled()
        kwargs = _build_kwargs(self.config, messages)
        deadline = self.config.limits.request_timeout_seconds
        start = time.monotonic()

        logger.debug(f"[ROUTER] → {kwargs['model']} ({len(messages)} messages)")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="deckhand-router")
        future = executor.submit(litellm.completion, **kwargs)
        try:
            while True:
                try:
                    response = future.result(timeout=self.poll_interval)
                    break
                except FutureTimeout:
                    pass
                if token.cancelled:
                    raise token.as_error()
                if time.monotonic() - start >= deadline:
                    token.cancel(StopCause.TIMEOUT)
                    raise TimedOut(f"Request timed out after {deadline:.0f}s")
        except DeckhandError:
            raise
        except Exception as e:
            if not self._is_transport_failure(e):
                raise
            failure = classify_failure(e)
            logger.warning(f"[ROUTER] {failure.to_marked_text()}")
            raise failure from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        content = self._content_of(response)
        cost = self.budget.record(response)
        cost.model = cost.model or kwargs["model"]

        logger.debug(
            f"[ROUTER] complete — "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )
        return RouterResponse(content=content, model=cost.model, cost=cost, latency_ms=elapsed_ms)

    @staticmethod
    def _is_transport_failure(exc: Exception) -> bool:
        module = type(exc).__module__ or ""
        return (
            module.startswith(("litellm", "openai", "httpx", "anthropic"))
            or isinstance(exc, (json.JSONDecodeError, TimeoutError, ConnectionError))
            or hasattr(exc, "status_code")
        )

    @staticmethod
    def _content_of(response: Any) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise UpstreamError(UpstreamErrorKind.MALFORMED_RESPONSE, f"Unexpected response shape: {e}") from e
        if content is None:
            return ""
        if not isinstance(content, str) or _looks_like_html(content):
            raise UpstreamError(
                UpstreamErrorKind.MALFORMED_RESPONSE,
                "Non-JSON response: endpoint returned an HTML or non-text body",
            )
        return content
