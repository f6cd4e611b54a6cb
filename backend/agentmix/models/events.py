"""Progress events emitted by the MOA orchestrator."""

from datetime import datetime
from typing import Union

from pydantic import BaseModel, Field


class RoundCompleteEvent(BaseModel):
    """Emitted once a fan-out round has at least one surviving agent."""
    iteration: int
    total_iterations: int
    succeeded: list[str]
    failed: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime


class AggregationCompleteEvent(BaseModel):
    """Emitted after the aggregator produced the draft for an iteration."""
    iteration: int
    total_iterations: int
    attempts: int
    latency_ms: int
    final: bool
    timestamp: datetime


MOAEvent = Union[RoundCompleteEvent, AggregationCompleteEvent]
