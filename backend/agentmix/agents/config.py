"""Agent, retry and MOA configuration dataclasses."""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Sequence

from agentmix.exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-retry rules for one logical generation call.

    ``overall_timeout_seconds`` bounds the sum of all attempts and waits,
    regardless of ``attempt_timeout_seconds``.
    """

    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    attempt_timeout_seconds: Optional[float] = 60.0
    overall_timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ConfigurationError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        for name in ("attempt_timeout_seconds", "overall_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive when set, got {value}")

    def delay_for(self, attempt: int) -> float:
        """Wait before the attempt following ``attempt`` (1-based)."""
        delay = self.delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class AgentConfig:
    """Immutable configuration for a single agent instance."""

    agent_name: str
    provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    endpoint: Optional[str] = None
    system_prompt: str = ""
    max_output_tokens: Optional[int] = None
    temperature: float = 0.7
    tools: tuple[dict[str, Any], ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if not self.agent_name or not self.agent_name.strip():
            raise ConfigurationError("agent_name must be a non-empty string")
        if not self.provider:
            raise ConfigurationError(f"agent {self.agent_name!r}: provider must be set")
        if self.max_output_tokens is not None and self.max_output_tokens < 1:
            raise ConfigurationError(
                f"agent {self.agent_name!r}: max_output_tokens must be >= 1, got {self.max_output_tokens}"
            )
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(
                f"agent {self.agent_name!r}: temperature must be within [0, 2], got {self.temperature}"
            )
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    @classmethod
    def from_options(cls, agent_name: str, *options: Mapping[str, Any]) -> "AgentConfig":
        """Fold an ordered sequence of option mappings into one validated config.

        Later options override earlier ones. A ``retry`` option may be a
        RetryPolicy or a mapping of RetryPolicy fields.
        """
        known = {f.name for f in fields(cls)} - {"agent_name"}
        merged: dict[str, Any] = {}
        for option in options:
            unknown = set(option) - known
            if unknown:
                raise ConfigurationError(
                    f"agent {agent_name!r}: unknown configuration option(s) {sorted(unknown)}"
                )
            merged.update(option)

        retry = merged.get("retry")
        if isinstance(retry, Mapping):
            try:
                merged["retry"] = RetryPolicy(**retry)
            except TypeError as e:
                raise ConfigurationError(f"agent {agent_name!r}: invalid retry option: {e}") from e
        return cls(agent_name=agent_name, **merged)

    def with_options(self, **changes: Any) -> "AgentConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class MOAConfig:
    """Mixture-of-Agents configuration, validated once at construction.

    ``max_parallel`` defaults to one slot per agent.
    """

    agents: Sequence[AgentConfig]
    aggregator: AgentConfig
    iterations: int = 1
    max_parallel: Optional[int] = None
    agent_timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        agents = tuple(self.agents or ())
        if not agents:
            raise ConfigurationError(
                "invalid model configuration: at least one agent must be specified"
            )
        object.__setattr__(self, "agents", agents)

        names = [a.agent_name for a in agents]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"agent names must be unique, duplicated: {duplicates}")
        if self.iterations < 1:
            raise ConfigurationError(f"iterations must be >= 1, got {self.iterations}")

        if self.max_parallel is None:
            object.__setattr__(self, "max_parallel", len(agents))
        elif self.max_parallel < 1:
            raise ConfigurationError(f"max_parallel must be >= 1, got {self.max_parallel}")

        if self.agent_timeout_seconds is not None and self.agent_timeout_seconds <= 0:
            raise ConfigurationError(
                f"agent_timeout_seconds must be positive when set, got {self.agent_timeout_seconds}"
            )
