"""MOA orchestrator — iterative fan-out / aggregate loop over a fixed agent set."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

from agentmix.agents.agent import Agent
from agentmix.agents.aggregator import Aggregator
from agentmix.agents.config import AgentConfig, MOAConfig
from agentmix.agents.llm_providers import LLMProviderFactory
from agentmix.agents.pool import AgentPool
from agentmix.agents.prompt_loader import PromptLoader
from agentmix.exceptions import (
    AgentCallError,
    AggregationError,
    ConfigurationError,
    OrchestrationCancelledError,
    RoundFailedError,
)
from agentmix.models.agent_schemas import GenerationResult, MOAResult, RoundResult
from agentmix.models.enums import MOAPhase
from agentmix.models.events import AggregationCompleteEvent, MOAEvent, RoundCompleteEvent

# Progress callback type: sync or async
ProgressCallback = Callable[[MOAEvent], Union[None, Awaitable[None]]]


@dataclass
class _RunProgress:
    """Where a single run currently is; owned by that run only."""
    iteration: int = 0
    phase: MOAPhase = MOAPhase.FAN_OUT


class MOA:
    """
    Mixture of Agents: every iteration fans the current text out to all agents,
    then the aggregator folds the survivors into the next iteration's input.

    Construction validates and binds every agent (no network calls happen);
    afterwards the instance only holds static configuration, so concurrent
    ``generate`` calls are independent.
    """

    def __init__(
        self,
        config: MOAConfig,
        *,
        provider_factory: Optional[LLMProviderFactory] = None,
        prompt_loader: Optional[PromptLoader] = None,
        logger: Optional[logging.Logger] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config
        self._factory = provider_factory or LLMProviderFactory()
        self._logger = logger or logging.getLogger(__name__)
        self._progress_callback = progress_callback

        self.agents = [
            self._build_agent(agent_config, f"agent {i} ({agent_config.agent_name})")
            for i, agent_config in enumerate(config.agents)
        ]
        self.pool = AgentPool(
            self.agents,
            max_parallel=config.max_parallel,
            agent_timeout_seconds=config.agent_timeout_seconds,
            logger=self._logger,
        )
        self.aggregator = Aggregator(
            self._build_agent(config.aggregator, "aggregator"),
            prompt_loader or PromptLoader(),
        )
        self._logger.info(
            "MOA ready agents=%d iterations=%d max_parallel=%d aggregator=%s",
            len(self.agents), config.iterations, config.max_parallel, config.aggregator.agent_name,
        )

    def _build_agent(self, agent_config: AgentConfig, label: str) -> Agent:
        try:
            provider = self._factory.get_provider(agent_config)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"failed to create LLM for {label}: {e}",
                details={
                    "phase": MOAPhase.CONSTRUCTION,
                    "agent_name": agent_config.agent_name,
                    "provider": agent_config.provider,
                },
            ) from e
        return Agent(agent_config, provider)

    # ── Public API ─────────────────────────────────────────────

    async def generate(self, prompt: str, *, timeout: Optional[float] = None) -> str:
        """Run the full MOA loop and return the final aggregated text."""
        result = await self.run(prompt, timeout=timeout)
        return result.text

    async def run(self, prompt: str, *, timeout: Optional[float] = None) -> MOAResult:
        """Like generate() but returns every round and aggregation alongside the text.

        Args:
            timeout: Caller deadline in seconds for the whole run. On expiry all
                in-flight calls are cancelled and OrchestrationCancelledError is
                raised. Cancelling the calling task propagates CancelledError.
        """
        progress = _RunProgress()
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await self._run_logging_cancel(prompt, progress)
        except TimeoutError as e:
            # Only our own deadline is translated; anything else propagates as-is.
            if not deadline.expired():
                raise
            self._logger.warning(
                "MOA deadline exceeded timeout=%ss iteration=%d phase=%s",
                timeout, progress.iteration, progress.phase,
            )
            raise OrchestrationCancelledError(
                f"MOA deadline of {timeout}s exceeded during {progress.phase} of iteration {progress.iteration}",
                iteration=progress.iteration,
                phase=progress.phase,
            ) from e

    async def _run_logging_cancel(self, prompt: str, progress: _RunProgress) -> MOAResult:
        try:
            return await self._run(prompt, progress)
        except asyncio.CancelledError:
            self._logger.warning(
                "MOA run cancelled iteration=%d phase=%s", progress.iteration, progress.phase,
            )
            raise

    async def close(self) -> None:
        await self._factory.close()

    async def __aenter__(self) -> "MOA":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Iteration loop ─────────────────────────────────────────

    async def _run(self, prompt: str, progress: _RunProgress) -> MOAResult:
        total = self.config.iterations
        current = prompt
        rounds: list[RoundResult] = []
        aggregations: list[GenerationResult] = []

        for iteration in range(1, total + 1):
            progress.iteration, progress.phase = iteration, MOAPhase.FAN_OUT
            round_result = await self.pool.run_round(current, iteration=iteration)
            rounds.append(round_result)

            if not round_result.successes:
                raise RoundFailedError(
                    f"All {len(round_result.results)} agents failed in iteration {iteration}; "
                    f"nothing to aggregate",
                    iteration=iteration,
                    failures=round_result.failure_summary(),
                )
            await self._report_progress(RoundCompleteEvent(
                iteration=iteration,
                total_iterations=total,
                succeeded=[r.agent_name for r in round_result.successes],
                failed=round_result.failure_summary(),
                timestamp=datetime.now(timezone.utc),
            ))

            progress.phase = MOAPhase.AGGREGATION
            aggregated = await self._aggregate(round_result, iteration, total)
            aggregations.append(aggregated)
            current = aggregated.text
            await self._report_progress(AggregationCompleteEvent(
                iteration=iteration,
                total_iterations=total,
                attempts=aggregated.attempts,
                latency_ms=aggregated.latency_ms,
                final=iteration == total,
                timestamp=datetime.now(timezone.utc),
            ))

        self._logger.info("MOA done iterations=%d output_chars=%d", total, len(current))
        return MOAResult(text=current, iterations=total, rounds=rounds, aggregations=aggregations)

    async def _aggregate(self, round_result: RoundResult, iteration: int, total: int) -> GenerationResult:
        try:
            return await self.aggregator.aggregate(round_result, total_iterations=total)
        except AgentCallError as e:
            self._logger.error(
                "Aggregation failed iteration=%d attempts=%d error=%s", iteration, e.attempts, e,
            )
            raise AggregationError(
                f"Aggregation failed in iteration {iteration} after {e.attempts} attempt(s): {e}",
                iteration=iteration,
                attempts=e.attempts,
            ) from e

    async def _report_progress(self, event: MOAEvent) -> None:
        """Fire progress callback if registered (supports both sync and async callbacks)."""
        if self._progress_callback:
            result = self._progress_callback(event)
            if asyncio.iscoroutine(result):
                await result
