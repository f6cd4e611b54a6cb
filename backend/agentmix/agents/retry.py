"""Retry executor — one logical generation call with bounded, classified retries."""

import asyncio
import logging
from typing import Optional

from agentmix.agents.config import RetryPolicy
from agentmix.agents.llm_providers import LLMProvider
from agentmix.exceptions import (
    DeadlineExceededError,
    FatalProviderError,
    NonRetryableError,
    RetryExhaustedError,
    TransientProviderError,
)
from agentmix.models.agent_schemas import GenerationRequest, GenerationResult, LLMResponse

logger = logging.getLogger(__name__)

# ── Transient error detection ──────────────────────────────────
_TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504, 529}
_TRANSIENT_ERROR_NAMES = {
    "RateLimitError",
    "InternalServerError",
    "APITimeoutError",
    "APIConnectionError",
    "ServiceUnavailableError",
    "OverloadedError",
    "ServerError",
}


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_transient(error: BaseException) -> bool:
    """Check if an error is transient and worth retrying.

    Anything not recognised as transient is treated as fatal.
    """
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, FatalProviderError):
        return False
    status = _status_of(error)
    if status is not None:
        return status in _TRANSIENT_STATUS_CODES
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return type(error).__name__ in _TRANSIENT_ERROR_NAMES


class RetryExecutor:
    """Executes a GenerationRequest against a provider under a RetryPolicy.

    Holds nothing but the policy, so one executor can serve any number of
    concurrent calls. Task cancellation is never caught: it propagates out of
    the in-flight attempt or backoff sleep immediately.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    async def execute(
        self,
        provider: LLMProvider,
        request: GenerationRequest,
        *,
        agent_name: str,
        deadline: Optional[float] = None,
    ) -> GenerationResult:
        """Run the request until it succeeds, hits a fatal error, or runs out of budget.

        Args:
            deadline: Absolute event-loop time after which no attempt may run.
                Combined with the policy's overall timeout (the earlier wins).

        Raises:
            NonRetryableError: the backend reported a fatal error.
            RetryExhaustedError: every attempt failed transiently.
            DeadlineExceededError: the deadline expired first.
        """
        loop = asyncio.get_running_loop()
        policy = self.policy
        limit = deadline
        if policy.overall_timeout_seconds is not None:
            own_limit = loop.time() + policy.overall_timeout_seconds
            limit = own_limit if limit is None else min(limit, own_limit)

        last_error: Optional[BaseException] = None
        attempts = 0
        for attempt in range(1, policy.max_attempts + 1):
            timeout = policy.attempt_timeout_seconds
            if limit is not None:
                remaining = limit - loop.time()
                if remaining <= 0:
                    raise DeadlineExceededError(
                        f"Deadline exceeded for {agent_name} after {attempts} attempt(s): {last_error}",
                        agent_name=agent_name, attempts=attempts, last_error=last_error,
                    )
                timeout = remaining if timeout is None else min(timeout, remaining)

            attempts = attempt
            logger.debug(
                "LLM call attempt=%d/%d agent=%s provider=%s timeout=%s",
                attempt, policy.max_attempts, agent_name, provider.provider_name, timeout,
            )
            try:
                response = await asyncio.wait_for(self._call(provider, request), timeout=timeout)
                if not response.content or not response.content.strip():
                    raise TransientProviderError(
                        f"Empty LLM response for {agent_name}", provider=provider.provider_name,
                    )
            except Exception as e:
                if not is_transient(e):
                    logger.error(
                        "Non-transient LLM error agent=%s attempt=%d error=%s — not retrying",
                        agent_name, attempt, e,
                    )
                    raise NonRetryableError(
                        f"Non-retryable error for {agent_name} on attempt {attempt}: {e}",
                        agent_name=agent_name, attempts=attempt,
                    ) from e

                last_error = e
                if attempt < policy.max_attempts:
                    wait = policy.delay_for(attempt)
                    if limit is not None:
                        wait = min(wait, max(0.0, limit - loop.time()))
                    logger.warning(
                        "Transient error attempt=%d/%d agent=%s error=%r retrying_in=%.2fs",
                        attempt, policy.max_attempts, agent_name, e, wait,
                    )
                    await asyncio.sleep(wait)
                continue

            logger.info(
                "LLM response agent=%s attempts=%d tokens_in=%s tokens_out=%s latency_ms=%s provider=%s",
                agent_name, attempt,
                response.usage.get("input_tokens"), response.usage.get("output_tokens"),
                response.latency_ms, provider.provider_name,
            )
            return GenerationResult.success(agent_name, response, attempts=attempt)

        if limit is not None and loop.time() >= limit:
            raise DeadlineExceededError(
                f"Deadline exceeded for {agent_name} after {attempts} attempt(s): {last_error!r}",
                agent_name=agent_name, attempts=attempts, last_error=last_error,
            ) from last_error
        raise RetryExhaustedError(
            f"All {policy.max_attempts} attempts failed for {agent_name}: {last_error!r}",
            agent_name=agent_name, attempts=policy.max_attempts, last_error=last_error,
        ) from last_error

    @staticmethod
    async def _call(provider: LLMProvider, request: GenerationRequest) -> LLMResponse:
        if request.tools:
            return await provider.complete_with_tools(
                request.system_prompt, request.prompt, list(request.tools),
                model=request.model,
                max_output_tokens=request.max_output_tokens,
                temperature=request.temperature,
            )
        return await provider.complete(
            request.system_prompt, request.prompt,
            model=request.model,
            max_output_tokens=request.max_output_tokens,
            temperature=request.temperature,
        )
