"""agentmix exception hierarchy."""

from typing import Optional


class AgentMixError(Exception):
    """Base exception for all agentmix errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(AgentMixError):
    """Invalid agent or MOA configuration. Raised at construction, never retried."""
    pass


class PromptTemplateError(AgentMixError):
    """Prompt file missing or variable placeholder cannot be resolved."""
    pass


class UnsupportedCapabilityError(AgentMixError):
    """A backend was asked for an optional capability it does not implement."""

    def __init__(self, message: str, provider: str, capability: str, **kw):
        super().__init__(message, **kw)
        self.provider = provider
        self.capability = capability


# ── Backend call errors ────────────────────────────────────────

class LLMProviderError(AgentMixError):
    """LLM provider API error (auth, rate limit, timeout, server error)."""

    def __init__(self, message: str, provider: str, status_code: int | None = None, **kw):
        super().__init__(message, **kw)
        self.provider = provider
        self.status_code = status_code


class FatalProviderError(LLMProviderError):
    """Invalid credentials, invalid configuration or malformed request. Never retried."""
    pass


class TransientProviderError(LLMProviderError):
    """Timeout, rate limiting or transport failure. Safe to retry."""
    pass


# ── Agent-level outcomes (raised by the retry executor) ────────

class AgentCallError(AgentMixError):
    """One agent's generation call ended without a usable response."""

    def __init__(self, message: str, agent_name: str, attempts: int, **kw):
        super().__init__(message, **kw)
        self.agent_name = agent_name
        self.attempts = attempts


class NonRetryableError(AgentCallError):
    """The backend reported a fatal error; remaining retry budget was not used."""
    pass


class RetryExhaustedError(AgentCallError):
    """Every allowed attempt failed with a transient error."""

    def __init__(
        self,
        message: str,
        agent_name: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        **kw,
    ):
        super().__init__(message, agent_name=agent_name, attempts=attempts, **kw)
        self.last_error = last_error


class DeadlineExceededError(RetryExhaustedError):
    """The overall deadline ran out before a successful attempt."""
    pass


# ── Orchestration-level failures ───────────────────────────────

class PipelineError(AgentMixError):
    """Orchestration failure, tagged with the phase it happened in."""

    def __init__(self, message: str, stage: str, **kw):
        super().__init__(message, **kw)
        self.stage = stage


class RoundFailedError(PipelineError):
    """Every agent of a fan-out round failed, so there is nothing to aggregate."""

    def __init__(self, message: str, iteration: int, failures: dict[str, str], **kw):
        super().__init__(message, stage="fan_out", **kw)
        self.iteration = iteration
        self.failures = failures


class AggregationError(PipelineError):
    """The aggregator agent could not produce a synthesized draft."""

    def __init__(self, message: str, iteration: int, attempts: int, **kw):
        super().__init__(message, stage="aggregation", **kw)
        self.iteration = iteration
        self.attempts = attempts


class OrchestrationCancelledError(PipelineError):
    """The caller's deadline expired while a MOA run was in flight."""

    def __init__(self, message: str, iteration: int, phase: str, **kw):
        super().__init__(message, stage="cancellation", **kw)
        self.iteration = iteration
        self.phase = phase
