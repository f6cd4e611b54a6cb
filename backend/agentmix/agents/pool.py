"""Agent pool — semaphore-bounded, partial-failure-tolerant fan-out of one round."""

import asyncio
import logging
from typing import Optional, Sequence

from agentmix.agents.agent import Agent
from agentmix.exceptions import (
    AgentCallError,
    DeadlineExceededError,
    RetryExhaustedError,
)
from agentmix.models.agent_schemas import GenerationResult, RoundResult
from agentmix.models.enums import ErrorClass


def _classify(error: AgentCallError) -> ErrorClass:
    if isinstance(error, DeadlineExceededError):
        return ErrorClass.DEADLINE_EXCEEDED
    if isinstance(error, RetryExhaustedError):
        return ErrorClass.RETRIES_EXHAUSTED
    return ErrorClass.FATAL


class AgentPool:
    """Runs the same input against every agent, at most ``max_parallel`` at a time.

    Each agent gets its own deadline of ``agent_timeout_seconds``, started when
    it acquires a slot, so a slow agent never eats into a sibling's budget.
    Results come back in agent order, whatever order the calls finish in.
    """

    def __init__(
        self,
        agents: Sequence[Agent],
        *,
        max_parallel: int,
        agent_timeout_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.agents = tuple(agents)
        self.max_parallel = max_parallel
        self.agent_timeout_seconds = agent_timeout_seconds
        self._logger = logger or logging.getLogger(__name__)

    async def run_round(self, text: str, *, iteration: int = 1) -> RoundResult:
        """Fan ``text`` out to all agents and collect one GenerationResult per agent.

        Individual agent failures are recorded, never raised. Cancellation of the
        calling task cancels every queued and in-flight agent call.
        """
        # Per round, so concurrent runs never share slots.
        slots = asyncio.Semaphore(self.max_parallel)
        self._logger.info(
            "Fan-out iteration=%d agents=%d max_parallel=%d agent_timeout=%s",
            iteration, len(self.agents), self.max_parallel, self.agent_timeout_seconds,
        )
        results = await asyncio.gather(*(
            self._run_agent(agent, text, slots) for agent in self.agents
        ))
        round_result = RoundResult(iteration=iteration, input_text=text, results=list(results))

        for failed in round_result.failures:
            self._logger.warning(
                "Agent failed iteration=%d agent=%s class=%s attempts=%d error=%s",
                iteration, failed.agent_name, failed.error_class, failed.attempts, failed.error_message,
            )
        self._logger.info(
            "Fan-out done iteration=%d succeeded=%d failed=%d",
            iteration, len(round_result.successes), len(round_result.failures),
        )
        return round_result

    async def _run_agent(self, agent: Agent, text: str, slots: asyncio.Semaphore) -> GenerationResult:
        async with slots:
            deadline = None
            if self.agent_timeout_seconds is not None:
                deadline = asyncio.get_running_loop().time() + self.agent_timeout_seconds
            try:
                return await agent.generate(text, deadline=deadline)
            except AgentCallError as e:
                return GenerationResult.failure(
                    agent.name, _classify(e), str(e), attempts=e.attempts,
                )
