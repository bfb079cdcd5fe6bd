"""
Multi-agent coordination patterns.

Complements AgentChain (sequential pipelines) with three other ways of
combining agents:

    broadcast          - every agent answers the same input concurrently
    map_reduce         - one mapper per item concurrently, then a reducer
    supervisor_worker  - a supervisor agent delegates tasks to named workers
                         until it declares the work complete

Agents are created per run by factories that receive the
CoordinationContext, so each run gets fresh agents. Before an agent runs,
the context state is merged into its own state.

Usage:
    results = await broadcast(
        [lambda ctx: Agent(provider, AgentConfig(name="optimist")),
         lambda ctx: Agent(provider, AgentConfig(name="skeptic"))],
        CoordinationContext("Should we migrate the fleet?"),
    )
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from ..domain.entities import AgentProgress, AgentResult, AgentStatus, Message
from ..exceptions import (
    CoordinationError,
    InvalidConfigurationError,
    ValidationError,
    WorkflowStepLimitError,
)
from ..resilience import run_concurrent_tasks
from ..schema.output_schema import extract_json
from ..state.immutable_state import ImmutableState
from .agent import Agent, ProgressCallback

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10

COMPLETE_DECISION = "COMPLETE"


@dataclass(frozen=True)
class CoordinationContext:
    """Input and shared context handed to agent factories.

    Attributes:
        input: Text the agents work on
        state: Merged into every agent's state before it runs
        messages: Transcript of earlier agent outputs in this run
        shared_data: Free-form data for factories
    """

    input: str
    state: ImmutableState = field(default_factory=ImmutableState)
    messages: tuple[Message, ...] = ()
    shared_data: dict[str, Any] = field(default_factory=dict)

    def with_message(self, message: Message) -> CoordinationContext:
        return replace(self, messages=(*self.messages, message))


AgentFactory = Callable[[CoordinationContext], Union[Agent, Awaitable[Agent]]]


async def _build_agent(factory: AgentFactory, context: CoordinationContext) -> Agent:
    agent = factory(context)
    if inspect.isawaitable(agent):
        agent = await agent
    agent.state = agent.state.merge(context.state)
    return agent


def _notify(on_progress: Optional[ProgressCallback], event: AgentProgress) -> None:
    if on_progress is None:
        return
    try:
        on_progress(event)
    except Exception as e:
        logger.warning(f"Coordination progress callback failed: {e}")


def _as_input(item: Any) -> str:
    if isinstance(item, str):
        return item
    return json.dumps(item, default=str)


async def _run_concurrently(
    jobs: Sequence[tuple[Agent, str]],
    pattern: str,
    on_progress: Optional[ProgressCallback],
    **progress_metadata: Any,
) -> list[AgentResult]:
    """Execute (agent, input) pairs concurrently; results keep job order.

    Progress events are emitted as agents finish, so current_index counts
    completions rather than positions.
    """
    total = len(jobs)
    completed = 0

    async def run(index: int, agent: Agent, text: str) -> AgentResult:
        nonlocal completed
        result = await agent.execute(text, stream=False, position=(index, total))
        completed += 1
        _notify(
            on_progress,
            AgentProgress(
                status=AgentStatus.COMPLETED,
                current_index=completed,
                total_count=total,
                metadata={"agent": agent.name, "pattern": pattern, **progress_metadata},
            ),
        )
        return result

    tasks = {
        f"{pattern}_{index}": partial(run, index, agent, text)
        for index, (agent, text) in enumerate(jobs, start=1)
    }
    try:
        results = await run_concurrent_tasks(tasks)
    except Exception as e:
        logger.error(f"{pattern} failed after {completed}/{total} agents: {e}")
        raise
    return list(results.values())


# ============================================
# Broadcast
# ============================================


async def broadcast(
    factories: Sequence[AgentFactory],
    context: CoordinationContext,
    on_progress: Optional[ProgressCallback] = None,
) -> list[AgentResult]:
    """Run every agent on the same input concurrently.

    Returns:
        One result per factory, in factory order

    Raises:
        InvalidConfigurationError: No factories
        MurmurError: The first agent failure; the other agents are cancelled
    """
    if not factories:
        raise InvalidConfigurationError("broadcast requires at least one agent factory")

    agents = [await _build_agent(factory, context) for factory in factories]
    logger.info(f"Broadcasting to {len(agents)} agents")
    return await _run_concurrently(
        [(agent, context.input) for agent in agents],
        "broadcast",
        on_progress,
    )


# ============================================
# Map-Reduce
# ============================================


async def map_reduce(
    mapper_factory: AgentFactory,
    reducer_factory: AgentFactory,
    items: Sequence[Any],
    context: CoordinationContext,
    on_progress: Optional[ProgressCallback] = None,
) -> AgentResult:
    """Map every item with its own mapper agent, then reduce the outputs.

    Non-string items are passed to the mapper as JSON. The reducer receives
    the numbered mapper outputs as its input; they are also available to
    the reducer factory as shared_data["map_results"].

    Returns:
        The reducer's result, with metadata["map_results"] holding the
        mapper outputs in item order
    """
    if not items:
        raise InvalidConfigurationError("map_reduce requires at least one item")

    jobs = []
    for item in items:
        text = _as_input(item)
        mapper = await _build_agent(mapper_factory, replace(context, input=text))
        jobs.append((mapper, text))

    logger.info(f"Mapping {len(jobs)} items")
    map_results = await _run_concurrently(jobs, "map_reduce", on_progress, phase="map")
    outputs = [result.output for result in map_results]

    prompt = "Combine these results:\n" + "\n".join(
        f"{index}. {output}" for index, output in enumerate(outputs, start=1)
    )
    reduce_context = replace(
        context,
        input=prompt,
        shared_data={**context.shared_data, "map_results": outputs},
    )
    reducer = await _build_agent(reducer_factory, reduce_context)
    result = await reducer.execute(prompt, stream=False)
    _notify(
        on_progress,
        AgentProgress(
            status=AgentStatus.COMPLETED,
            current_index=1,
            total_count=1,
            metadata={"agent": reducer.name, "pattern": "map_reduce", "phase": "reduce"},
        ),
    )
    return replace(result, metadata={**result.metadata, "map_results": outputs})


# ============================================
# Supervisor / Worker
# ============================================


def _decision_from(result: AgentResult) -> dict[str, Any]:
    """Read a supervisor decision from schema data or JSON in the output."""
    data = result.metadata.get("data")
    if data is None:
        if result.output.strip().upper() == COMPLETE_DECISION:
            return {"decision": COMPLETE_DECISION}
        try:
            data = extract_json(result.output)
        except ValidationError as e:
            raise CoordinationError(
                "Supervisor returned no decision",
                pattern="supervisor_worker",
                details={"output": result.output},
                cause=e,
            ) from e
    if not isinstance(data, Mapping):
        raise CoordinationError(
            "Supervisor decision must be an object",
            pattern="supervisor_worker",
            details={"output": result.output},
        )
    return dict(data)


async def supervisor_worker(
    supervisor_factory: AgentFactory,
    worker_factories: Mapping[str, AgentFactory],
    context: CoordinationContext,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    on_progress: Optional[ProgressCallback] = None,
) -> AgentResult:
    """Let a supervisor delegate tasks to workers until it is done.

    Each round the supervisor answers with either {"decision": "COMPLETE"}
    or {"worker": <name>, "task": <text>}. The named worker runs the task,
    its state is handed back to the supervisor and its output becomes the
    supervisor's next input.

    Returns:
        The supervisor's completing result, with metadata["worker_results"]
        (every worker result in order) and metadata["rounds"]

    Raises:
        CoordinationError: Unparseable decision, unknown worker or empty task
        WorkflowStepLimitError: No completion within max_rounds
    """
    if not worker_factories:
        raise InvalidConfigurationError("supervisor_worker requires at least one worker")
    if max_rounds < 1:
        raise InvalidConfigurationError("max_rounds must be positive")

    supervisor = await _build_agent(supervisor_factory, context)
    current = context
    supervisor_input = context.input
    worker_results: list[AgentResult] = []

    for round_number in range(1, max_rounds + 1):
        decision_result = await supervisor.execute(
            supervisor_input, stream=False, position=(round_number, max_rounds)
        )
        decision = _decision_from(decision_result)

        if str(decision.get("decision", "")).upper() == COMPLETE_DECISION:
            logger.info(f"Supervisor {supervisor.name} completed after {round_number} rounds")
            return replace(
                decision_result,
                metadata={
                    **decision_result.metadata,
                    "worker_results": list(worker_results),
                    "rounds": round_number,
                },
            )

        worker_name = decision.get("worker")
        if worker_name not in worker_factories:
            raise CoordinationError(
                f"Invalid worker type: {worker_name}",
                pattern="supervisor_worker",
                details={"available_workers": sorted(worker_factories)},
            )
        task = decision.get("task")
        if not isinstance(task, str) or not task.strip():
            raise CoordinationError(
                f"Supervisor gave worker '{worker_name}' no task",
                pattern="supervisor_worker",
            )

        worker = await _build_agent(worker_factories[worker_name], current)
        logger.debug(f"Round {round_number}: {worker_name} <- {task}")
        worker_result = await worker.execute(task, stream=False)
        worker_results.append(worker_result)
        worker.handoff(supervisor)

        current = replace(
            current.with_message(Message.assistant(worker_result.output)),
            state=current.state.merge(worker.state),
        )
        _notify(
            on_progress,
            AgentProgress(
                status=AgentStatus.COMPLETED,
                current_index=round_number,
                total_count=max_rounds,
                metadata={
                    "agent": worker.name,
                    "worker": worker_name,
                    "pattern": "supervisor_worker",
                },
            ),
        )
        supervisor_input = (
            f"Worker '{worker_name}' completed the task.\n"
            f"Task: {task}\n"
            f"Result: {worker_result.output}"
        )

    raise WorkflowStepLimitError(
        f"Supervisor did not complete within {max_rounds} rounds",
        details={"pattern": "supervisor_worker", "max_rounds": max_rounds},
    )


__all__ = [
    "AgentFactory",
    "CoordinationContext",
    "DEFAULT_MAX_ROUNDS",
    "broadcast",
    "map_reduce",
    "supervisor_worker",
]
