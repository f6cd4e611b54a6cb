from __future__ import annotations

import asyncio
import time

import pytest

from agentmix.agents.config import MOAConfig, RetryPolicy
from agentmix.agents.mock_provider import MockProvider
from agentmix.agents.orchestrator import MOA
from agentmix.exceptions import (
    AggregationError,
    ConfigurationError,
    FatalProviderError,
    OrchestrationCancelledError,
    RoundFailedError,
    TransientProviderError,
)
from agentmix.models.enums import MOAPhase
from agentmix.models.events import AggregationCompleteEvent, RoundCompleteEvent


def _answering(label: str, call_log=None, **kwargs) -> MockProvider:
    """Agent backend answering every prompt with '<label> on <first line of prompt>'."""
    return MockProvider(
        [lambda message: f"{label} on {message.splitlines()[0]}"],
        loop_responses=True,
        label=label,
        call_log=call_log,
        **kwargs,
    )


def _request_of(aggregator_input: str) -> str:
    # aggregate_input starts with "Request:\n<request>"
    return aggregator_input.splitlines()[1]


def _build(agent_config, mock_factory, agents: dict, aggregator: MockProvider, **config_options) -> MOA:
    factory = mock_factory(aggregator=aggregator, **agents)
    config = MOAConfig(
        agents=[agent_config(name) for name in agents],
        aggregator=agent_config("aggregator"),
        **config_options,
    )
    return MOA(config, provider_factory=factory)


def test_empty_agent_list_fails_before_any_call(agent_config) -> None:
    with pytest.raises(ConfigurationError, match="at least one agent must be specified"):
        MOAConfig(agents=[], aggregator=agent_config("aggregator"))


def test_unknown_provider_fails_construction(agent_config, mock_factory) -> None:
    config = MOAConfig(
        agents=[agent_config("a"), agent_config("b", provider="no-such-backend")],
        aggregator=agent_config("aggregator"),
    )
    factory = mock_factory(a=MockProvider(), aggregator=MockProvider())

    with pytest.raises(ConfigurationError, match=r"failed to create LLM for agent 1 \(b\)"):
        MOA(config, provider_factory=factory)


def test_three_agents_two_iterations_end_to_end(agent_config, mock_factory, call_log) -> None:
    agents = {name: _answering(name, call_log) for name in ("a", "b", "c")}
    aggregator = MockProvider(["draft one", "draft two"], label="aggregator", call_log=call_log)
    moa = _build(agent_config, mock_factory, agents, aggregator, iterations=2, max_parallel=2)

    result = asyncio.run(moa.run("What is MOA?"))

    assert result.text == "draft two"
    assert result.iterations == 2
    assert len(result.rounds) == 2

    labels = [label for label, _ in call_log]
    assert sorted(labels[:3]) == ["a", "b", "c"]
    assert labels[3] == "aggregator"
    assert sorted(labels[4:7]) == ["a", "b", "c"]
    assert labels[7] == "aggregator"
    assert all(message == "What is MOA?" for _, message in call_log[:3])
    assert all(message == "draft one" for _, message in call_log[4:7])

    first_aggregation = aggregator.calls[0]["user_message"]
    assert "Iteration 1 of 2" in first_aggregation
    for name in ("a", "b", "c"):
        assert f"{name} on What is MOA?" in first_aggregation
    assert "draft one" in aggregator.calls[1]["user_message"]


def test_single_iteration_still_aggregates(agent_config, mock_factory) -> None:
    aggregator = MockProvider(["merged"])
    moa = _build(agent_config, mock_factory, {"a": _answering("a")}, aggregator)

    assert asyncio.run(moa.generate("hello")) == "merged"
    assert len(aggregator.calls) == 1


def test_failed_agent_is_excluded_from_aggregation(agent_config, mock_factory) -> None:
    agents = {
        "a": _answering("a"),
        "b": MockProvider([FatalProviderError("bad key", provider="mock")]),
        "c": _answering("c"),
    }
    aggregator = MockProvider(["merged"])
    moa = _build(agent_config, mock_factory, agents, aggregator)

    result = asyncio.run(moa.run("hello"))

    assert result.text == "merged"
    prompt = aggregator.calls[0]["user_message"]
    assert "a on hello" in prompt
    assert "c on hello" in prompt
    assert "2 assistant(s) responded; 1 other assistant(s) failed to respond" in prompt
    assert [r.agent_name for r in result.rounds[0].failures] == ["b"]


def test_all_agents_failing_skips_aggregation(agent_config, mock_factory) -> None:
    agents = {
        name: MockProvider([FatalProviderError("down", provider="mock")])
        for name in ("a", "b")
    }
    aggregator = MockProvider(["never"])
    moa = _build(agent_config, mock_factory, agents, aggregator)

    with pytest.raises(RoundFailedError) as exc_info:
        asyncio.run(moa.generate("hello"))

    assert exc_info.value.iteration == 1
    assert exc_info.value.stage == MOAPhase.FAN_OUT
    assert set(exc_info.value.failures) == {"a", "b"}
    assert aggregator.calls == []


def test_aggregator_retry_exhaustion_is_wrapped(agent_config, mock_factory) -> None:
    aggregator = MockProvider(
        [TransientProviderError("overloaded", provider="mock", status_code=529)],
        loop_responses=True,
    )
    moa = _build(agent_config, mock_factory, {"a": _answering("a")}, aggregator)

    with pytest.raises(AggregationError) as exc_info:
        asyncio.run(moa.generate("hello"))

    assert exc_info.value.stage == MOAPhase.AGGREGATION
    assert exc_info.value.iteration == 1
    assert exc_info.value.attempts == 3
    assert len(aggregator.calls) == 3


def test_blank_aggregation_is_a_failure(agent_config, mock_factory) -> None:
    aggregator = MockProvider(["", " ", "\n"])
    moa = _build(agent_config, mock_factory, {"a": _answering("a")}, aggregator)

    with pytest.raises(AggregationError):
        asyncio.run(moa.generate("hello"))


def test_deadline_cancels_in_flight_calls(agent_config, mock_factory) -> None:
    agents = {name: MockProvider(delay_seconds=10.0) for name in ("a", "b")}
    aggregator = MockProvider(["never"])
    moa = _build(agent_config, mock_factory, agents, aggregator)

    start = time.monotonic()
    with pytest.raises(OrchestrationCancelledError) as exc_info:
        asyncio.run(moa.generate("hello", timeout=0.1))

    assert time.monotonic() - start < 1.0
    assert exc_info.value.phase == MOAPhase.FAN_OUT
    assert exc_info.value.iteration == 1
    assert all(p.active == 0 for p in agents.values())
    assert aggregator.calls == []


def test_task_cancellation_propagates(agent_config, mock_factory) -> None:
    agents = {"a": MockProvider(delay_seconds=10.0)}
    moa = _build(agent_config, mock_factory, agents, MockProvider(["never"]))

    async def scenario() -> None:
        task = asyncio.create_task(moa.generate("hello"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert agents["a"].active == 0


def test_progress_events(agent_config, mock_factory) -> None:
    events = []
    factory = mock_factory(a=_answering("a"), aggregator=MockProvider(["one", "two"]))
    config = MOAConfig(agents=[agent_config("a")], aggregator=agent_config("aggregator"), iterations=2)
    moa = MOA(config, provider_factory=factory, progress_callback=events.append)

    asyncio.run(moa.generate("hello"))

    assert [type(e) for e in events] == [
        RoundCompleteEvent, AggregationCompleteEvent, RoundCompleteEvent, AggregationCompleteEvent,
    ]
    assert events[0].succeeded == ["a"]
    assert [e.final for e in events if isinstance(e, AggregationCompleteEvent)] == [False, True]


def test_async_progress_callback(agent_config, mock_factory) -> None:
    seen = []

    async def on_event(event) -> None:
        await asyncio.sleep(0)
        seen.append(event.iteration)

    factory = mock_factory(a=_answering("a"), aggregator=MockProvider(["merged"]))
    config = MOAConfig(agents=[agent_config("a")], aggregator=agent_config("aggregator"))
    moa = MOA(config, provider_factory=factory, progress_callback=on_event)

    asyncio.run(moa.generate("hello"))

    assert seen == [1, 1]


def test_concurrent_runs_are_independent(agent_config, mock_factory) -> None:
    aggregator = MockProvider(
        [lambda message: f"final[{_request_of(message)}]"],
        loop_responses=True,
        delay_seconds=0.02,
    )
    agents = {name: _answering(name, delay_seconds=0.02) for name in ("a", "b")}
    moa = _build(agent_config, mock_factory, agents, aggregator)

    async def scenario():
        return await asyncio.gather(moa.generate("alpha"), moa.generate("beta"))

    assert asyncio.run(scenario()) == ["final[alpha]", "final[beta]"]


def test_aggregator_system_prompt(agent_config, mock_factory) -> None:
    aggregator = MockProvider(["merged"], loop_responses=True)
    moa = _build(agent_config, mock_factory, {"a": _answering("a")}, aggregator)
    asyncio.run(moa.generate("hello"))
    assert aggregator.calls[0]["system_prompt"].startswith("You are the aggregator")

    factory = mock_factory(a=_answering("a"), aggregator=aggregator)
    config = MOAConfig(
        agents=[agent_config("a")],
        aggregator=agent_config("aggregator", system_prompt="Pick the shortest answer."),
    )
    asyncio.run(MOA(config, provider_factory=factory).generate("hello"))
    assert aggregator.calls[1]["system_prompt"] == "Pick the shortest answer."


def test_agent_timeout_from_config(agent_config, mock_factory) -> None:
    agents = {"stuck": MockProvider(delay_seconds=5.0), "quick": _answering("quick")}
    aggregator = MockProvider(["merged"])
    moa = _build(agent_config, mock_factory, agents, aggregator, agent_timeout_seconds=0.1)

    result = asyncio.run(moa.run("hello", timeout=2.0))

    assert result.text == "merged"
    assert [r.agent_name for r in result.rounds[0].successes] == ["quick"]


def test_close_releases_providers(agent_config, mock_factory) -> None:
    agent_backend = _answering("a")
    moa = _build(agent_config, mock_factory, {"a": agent_backend}, MockProvider(["merged"]))

    async def scenario() -> None:
        async with moa:
            await moa.generate("hello")

    asyncio.run(scenario())
    assert agent_backend.closed


def test_retry_policy_reaches_agents(agent_config, mock_factory) -> None:
    flaky = MockProvider([TransientProviderError("busy", provider="mock"), "recovered"])
    factory = mock_factory(a=flaky, aggregator=MockProvider(["merged"]))
    config = MOAConfig(
        agents=[agent_config("a", retry=RetryPolicy(max_attempts=2, delay_seconds=0.0))],
        aggregator=agent_config("aggregator"),
    )

    result = asyncio.run(MOA(config, provider_factory=factory).run("hello"))

    assert result.rounds[0].results[0].attempts == 2


def test_shared_registered_backend_cannot_take_per_agent_endpoints(agent_config, mock_factory) -> None:
    local = MockProvider()
    factory = mock_factory(local=local, aggregator=MockProvider())
    config = MOAConfig(
        agents=[
            agent_config("a", provider="local", endpoint="http://host-a/v1"),
            agent_config("b", provider="local", endpoint="http://host-b/v1"),
        ],
        aggregator=agent_config("aggregator"),
    )

    with pytest.raises(ConfigurationError, match=r"failed to create LLM for agent 0 \(a\)"):
        MOA(config, provider_factory=factory)
    assert local.endpoint is None


def test_unknown_aggregator_provider_fails_construction(agent_config, mock_factory) -> None:
    agent_backend = _answering("a")
    factory = mock_factory(a=agent_backend)
    config = MOAConfig(
        agents=[agent_config("a")],
        aggregator=agent_config("aggregator", provider="no-such-backend"),
    )

    with pytest.raises(ConfigurationError, match="failed to create LLM for aggregator") as exc_info:
        MOA(config, provider_factory=factory)

    assert exc_info.value.details["phase"] == MOAPhase.CONSTRUCTION
    assert exc_info.value.details["agent_name"] == "aggregator"
    assert agent_backend.calls == []


def test_fatal_aggregator_error_is_wrapped(agent_config, mock_factory) -> None:
    aggregator = MockProvider([FatalProviderError("bad key", provider="mock", status_code=401), "never"])
    moa = _build(agent_config, mock_factory, {"a": _answering("a")}, aggregator)

    with pytest.raises(AggregationError) as exc_info:
        asyncio.run(moa.generate("hello"))

    assert exc_info.value.attempts == 1
    assert exc_info.value.iteration == 1
    assert len(aggregator.calls) == 1


@pytest.mark.parametrize("timeout", [None, 5.0])
def test_callback_timeout_error_is_not_a_deadline(agent_config, mock_factory, timeout) -> None:
    def on_event(event) -> None:
        raise TimeoutError("callback gave up")

    factory = mock_factory(a=_answering("a"), aggregator=MockProvider(["merged"]))
    config = MOAConfig(agents=[agent_config("a")], aggregator=agent_config("aggregator"))
    moa = MOA(config, provider_factory=factory, progress_callback=on_event)

    with pytest.raises(TimeoutError, match="callback gave up") as exc_info:
        asyncio.run(moa.generate("hello", timeout=timeout))

    assert not isinstance(exc_info.value, OrchestrationCancelledError)
