"""Pydantic I/O models shared by providers, agents and the MOA orchestrator."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentmix.models.enums import ErrorClass


# ── LLM Response (shared) ──────────────────────────────────────

class LLMResponse(BaseModel):
    """Standardized response from any LLM provider."""
    content: str = ""
    usage: dict[str, int] = Field(default_factory=dict)
    model: str = ""
    latency_ms: int = 0
    provider: str = ""
    tool_calls: Optional[list[dict[str, Any]]] = None


# ── Generation request / result ────────────────────────────────

class GenerationRequest(BaseModel):
    """One prompt plus the generation parameters an agent sends to its backend."""
    model_config = ConfigDict(frozen=True)

    prompt: str
    system_prompt: str = ""
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: Optional[int] = Field(default=None, ge=1)
    tools: tuple[dict[str, Any], ...] = ()


class GenerationResult(BaseModel):
    """Outcome of one agent call: a success with text XOR a classified failure."""
    model_config = ConfigDict(frozen=True)

    agent_name: str
    attempts: int = Field(ge=0)
    text: Optional[str] = None
    usage: dict[str, int] = Field(default_factory=dict)
    model: str = ""
    provider: str = ""
    latency_ms: int = 0
    error_class: Optional[ErrorClass] = None
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def validate_exactly_one_outcome(self) -> "GenerationResult":
        if (self.text is None) == (self.error_class is None):
            raise ValueError("GenerationResult must carry either text or error_class, not both or neither")
        if self.error_class is not None and not self.error_message:
            raise ValueError("Failed GenerationResult requires error_message")
        return self

    @property
    def succeeded(self) -> bool:
        return self.error_class is None

    @classmethod
    def success(cls, agent_name: str, response: LLMResponse, attempts: int) -> "GenerationResult":
        return cls(
            agent_name=agent_name,
            attempts=attempts,
            text=response.content,
            usage=response.usage,
            model=response.model,
            provider=response.provider,
            latency_ms=response.latency_ms,
        )

    @classmethod
    def failure(
        cls, agent_name: str, error_class: ErrorClass, error_message: str, attempts: int,
    ) -> "GenerationResult":
        return cls(
            agent_name=agent_name,
            attempts=attempts,
            error_class=error_class,
            error_message=error_message,
        )


# ── Fan-out round ──────────────────────────────────────────────

class RoundResult(BaseModel):
    """All GenerationResults of one fan-out round, in agent configuration order."""
    iteration: int = Field(ge=1)
    input_text: str
    results: list[GenerationResult]

    @property
    def successes(self) -> list[GenerationResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failures(self) -> list[GenerationResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def by_agent(self) -> dict[str, GenerationResult]:
        return {r.agent_name: r for r in self.results}

    def failure_summary(self) -> dict[str, str]:
        return {r.agent_name: f"{r.error_class}: {r.error_message}" for r in self.failures}


class MOAResult(BaseModel):
    """Final text of a MOA run plus the per-round record that produced it."""
    text: str
    iterations: int
    rounds: list[RoundResult] = Field(default_factory=list)
    aggregations: list[GenerationResult] = Field(default_factory=list)
