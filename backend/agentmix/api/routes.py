"""REST API routes for agentmix — /api/v1/ prefix."""

import logging
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from agentmix.exceptions import (
    AggregationError,
    ConfigurationError,
    OrchestrationCancelledError,
    PromptTemplateError,
    RoundFailedError,
)
from agentmix.models.agent_schemas import RoundResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


# ── Request / Response Schemas ────────────────────────────────

class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class AgentOutcome(BaseModel):
    agent_name: str
    succeeded: bool
    attempts: int
    latency_ms: int = 0
    error_class: Optional[str] = None
    error_message: Optional[str] = None


class RoundSummary(BaseModel):
    iteration: int
    agents: list[AgentOutcome]


class GenerateResponse(BaseModel):
    text: str
    iterations: int
    rounds: list[RoundSummary]
    elapsed_ms: int


def _require_orchestrator(request: Request):
    """Return orchestrator or raise 503 if the MOA could not be built."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="MOA unavailable — agents not configured")
    return orchestrator


def _summarize(round_result: RoundResult) -> RoundSummary:
    return RoundSummary(
        iteration=round_result.iteration,
        agents=[
            AgentOutcome(
                agent_name=r.agent_name,
                succeeded=r.succeeded,
                attempts=r.attempts,
                latency_ms=r.latency_ms,
                error_class=str(r.error_class) if r.error_class else None,
                error_message=r.error_message,
            )
            for r in round_result.results
        ],
    )


# ── MOA Endpoints ─────────────────────────────────────────────

@router.post("/moa/generate", response_model=GenerateResponse)
async def generate(req: GenerateRequest, request: Request):
    orchestrator = _require_orchestrator(request)
    start = time.monotonic()

    try:
        result = await orchestrator.run(req.prompt, timeout=req.timeout_seconds)
    except (RoundFailedError, AggregationError) as e:
        logger.warning("MOA generate failed stage=%s: %s", e.stage, e)
        raise HTTPException(
            status_code=502,
            detail={"stage": e.stage, "iteration": e.iteration, "message": str(e)},
        )
    except OrchestrationCancelledError as e:
        raise HTTPException(
            status_code=504,
            detail={"stage": e.phase, "iteration": e.iteration, "message": str(e)},
        )
    except (ConfigurationError, PromptTemplateError) as e:
        logger.error("MOA misconfigured: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    return GenerateResponse(
        text=result.text,
        iterations=result.iterations,
        rounds=[_summarize(r) for r in result.rounds],
        elapsed_ms=int((time.monotonic() - start) * 1000),
    )
