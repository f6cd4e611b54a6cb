"""Aggregator — folds one round's surviving outputs into a single draft."""

import logging

from agentmix.agents.agent import Agent
from agentmix.agents.prompt_loader import PromptLoader
from agentmix.models.agent_schemas import GenerationResult, RoundResult

logger = logging.getLogger(__name__)

RESPONSE_SEPARATOR = "\n\n---\n\n"


class Aggregator:
    """Prompt-driven synthesis on a dedicated agent.

    Conflicting answers are resolved by the aggregator model itself; this class
    only decides what the model sees. Swap the templates to change the policy.
    The aggregator agent's own ``system_prompt``, when set, wins over the
    system template.
    """

    def __init__(
        self,
        agent: Agent,
        prompt_loader: PromptLoader,
        *,
        system_template: str = "aggregate_system",
        input_template: str = "aggregate_input",
        surface_failures: bool = True,
    ) -> None:
        self.agent = agent
        self.prompts = prompt_loader
        self.system_template = system_template
        self.input_template = input_template
        self.surface_failures = surface_failures

    def system_prompt(self) -> str:
        return self.agent.config.system_prompt or self.prompts.get(self.system_template)

    def build_prompt(self, round_result: RoundResult, *, total_iterations: int) -> str:
        successes = round_result.successes
        responses = RESPONSE_SEPARATOR.join(
            f"### Response {i}\n{result.text.strip()}"
            for i, result in enumerate(successes, start=1)
        )
        failure_note = ""
        failed = len(round_result.failures)
        if self.surface_failures and failed:
            failure_note = f"; {failed} other assistant(s) failed to respond"
        return self.prompts.get(
            self.input_template,
            request=round_result.input_text,
            iteration=round_result.iteration,
            total_iterations=total_iterations,
            response_count=len(successes),
            failure_note=failure_note,
            responses=responses,
        )

    async def aggregate(self, round_result: RoundResult, *, total_iterations: int) -> GenerationResult:
        """Run the synthesis prompt on the aggregator agent.

        Raises AgentCallError subclasses when the aggregator's retries fail.
        """
        prompt = self.build_prompt(round_result, total_iterations=total_iterations)
        logger.info(
            "Aggregating iteration=%d responses=%d aggregator=%s",
            round_result.iteration, len(round_result.successes), self.agent.name,
        )
        return await self.agent.generate(prompt, system_prompt=self.system_prompt())
