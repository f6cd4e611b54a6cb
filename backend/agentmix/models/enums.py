"""Shared enums for the agentmix orchestration layer."""

from enum import StrEnum


class ProviderName(StrEnum):
    CLAUDE = "claude"
    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    DEEPSEEK = "deepseek"
    MISTRAL = "mistral"
    MOCK = "mock"


class ErrorClass(StrEnum):
    """Why an agent produced no output in a round."""
    FATAL = "fatal"
    RETRIES_EXHAUSTED = "retries_exhausted"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class MOAPhase(StrEnum):
    CONSTRUCTION = "construction"
    FAN_OUT = "fan_out"
    AGGREGATION = "aggregation"
    CANCELLATION = "cancellation"
