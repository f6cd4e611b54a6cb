from __future__ import annotations

import asyncio
import time

import pytest

from agentmix.agents.config import RetryPolicy
from agentmix.agents.mock_provider import MockProvider
from agentmix.agents.retry import RetryExecutor, is_transient
from agentmix.exceptions import (
    DeadlineExceededError,
    FatalProviderError,
    NonRetryableError,
    RetryExhaustedError,
    TransientProviderError,
)
from agentmix.models.agent_schemas import GenerationRequest


class FakeAPIError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(Exception):
    pass


def _transient(message: str = "try again") -> TransientProviderError:
    return TransientProviderError(message, provider="mock")


def _execute(provider, policy: RetryPolicy, request: GenerationRequest | None = None, **kwargs):
    executor = RetryExecutor(policy)
    return asyncio.run(
        executor.execute(provider, request or GenerationRequest(prompt="hi"), agent_name="a1", **kwargs),
    )


def test_succeeds_on_last_allowed_attempt() -> None:
    provider = MockProvider([_transient(), _transient(), "done"])

    result = _execute(provider, RetryPolicy(max_attempts=3, delay_seconds=0.0))

    assert result.succeeded
    assert result.text == "done"
    assert result.attempts == 3
    assert len(provider.calls) == 3


def test_exhausts_when_failures_exceed_budget() -> None:
    provider = MockProvider([_transient(), _transient(), "too late"])

    with pytest.raises(RetryExhaustedError) as exc_info:
        _execute(provider, RetryPolicy(max_attempts=2, delay_seconds=0.0))

    assert exc_info.value.attempts == 2
    assert exc_info.value.agent_name == "a1"
    assert isinstance(exc_info.value.last_error, TransientProviderError)
    assert len(provider.calls) == 2


def test_fatal_error_is_not_retried() -> None:
    provider = MockProvider([FatalProviderError("bad key", provider="mock", status_code=401), "never"])

    with pytest.raises(NonRetryableError) as exc_info:
        _execute(provider, RetryPolicy(max_attempts=5, delay_seconds=0.0))

    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value.__cause__, FatalProviderError)
    assert len(provider.calls) == 1


def test_status_code_decides_retryability() -> None:
    provider = MockProvider([FakeAPIError("slow down", 429), "ok"])
    assert _execute(provider, RetryPolicy(delay_seconds=0.0)).attempts == 2

    provider = MockProvider([FakeAPIError("unauthorized", 401), "ok"])
    with pytest.raises(NonRetryableError):
        _execute(provider, RetryPolicy(delay_seconds=0.0))
    assert len(provider.calls) == 1


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TimeoutError(), True),
        (ConnectionError(), True),
        (RateLimitError(), True),
        (FakeAPIError("server", 503), True),
        (FakeAPIError("bad request", 400), False),
        (ValueError("unexpected"), False),
        (_transient(), True),
        (FatalProviderError("nope", provider="mock", status_code=503), False),
    ],
)
def test_is_transient(error: BaseException, expected: bool) -> None:
    assert is_transient(error) is expected


def test_blank_response_is_retried() -> None:
    provider = MockProvider(["", "   ", "content"])

    result = _execute(provider, RetryPolicy(max_attempts=3, delay_seconds=0.0))

    assert result.text == "content"
    assert result.attempts == 3


def test_blank_responses_never_become_success() -> None:
    provider = MockProvider(["", ""])

    with pytest.raises(RetryExhaustedError):
        _execute(provider, RetryPolicy(max_attempts=2, delay_seconds=0.0))


def test_attempt_timeout_counts_as_transient_failure() -> None:
    provider = MockProvider(delay_seconds=0.5)

    with pytest.raises(RetryExhaustedError) as exc_info:
        _execute(provider, RetryPolicy(max_attempts=2, delay_seconds=0.0, attempt_timeout_seconds=0.05))

    assert exc_info.value.attempts == 2
    assert isinstance(exc_info.value.last_error, TimeoutError)
    assert provider.active == 0


def test_overall_timeout_stops_retrying() -> None:
    provider = MockProvider(delay_seconds=0.5)
    policy = RetryPolicy(
        max_attempts=10,
        delay_seconds=0.0,
        attempt_timeout_seconds=None,
        overall_timeout_seconds=0.1,
    )

    start = time.monotonic()
    with pytest.raises(DeadlineExceededError) as exc_info:
        _execute(provider, policy)

    assert time.monotonic() - start < 0.4
    assert 1 <= exc_info.value.attempts < policy.max_attempts


def test_caller_deadline_caps_backoff_sleep() -> None:
    provider = MockProvider([_transient(), "late"], delay_seconds=0.05)
    policy = RetryPolicy(max_attempts=2, delay_seconds=5.0)

    async def scenario() -> None:
        deadline = asyncio.get_running_loop().time() + 0.2
        await RetryExecutor(policy).execute(
            provider, GenerationRequest(prompt="hi"), agent_name="a1", deadline=deadline,
        )

    start = time.monotonic()
    with pytest.raises(DeadlineExceededError):
        asyncio.run(scenario())
    assert time.monotonic() - start < 1.0


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(delay_seconds=1.0, backoff_multiplier=2.0, max_delay_seconds=3.0)

    assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]


def test_cancellation_propagates_immediately() -> None:
    provider = MockProvider(delay_seconds=10.0)

    async def scenario() -> None:
        task = asyncio.create_task(
            RetryExecutor(RetryPolicy()).execute(provider, GenerationRequest(prompt="hi"), agent_name="a1"),
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    start = time.monotonic()
    asyncio.run(scenario())

    assert time.monotonic() - start < 1.0
    assert len(provider.calls) == 1
    assert provider.active == 0


def test_requests_with_tools_use_tool_calling() -> None:
    provider = MockProvider(["ok"])
    tools = ({"name": "lookup", "input_schema": {"type": "object"}},)

    _execute(provider, RetryPolicy(), GenerationRequest(prompt="hi", tools=tools))

    assert provider.calls[0]["tools"] == list(tools)
