"""
Workflow Orchestrator.

Runs small JSON recipes over registered agents. A recipe is a list of steps;
each step is a dict whose "type" is one of:

    agent      {"agent": name, "input": text | "$path" | object}
    parallel   {"steps": [...]}  sub-steps run concurrently
    condition  {"condition": {"left", "operator", "right"} | bool,
                "then": [...], "else": [...]}
    loop       {"items": "$path" | list, "steps": [...]}

Values written as "$dot.path" are looked up in the working state (then in
the shared context). Every step may carry "name" and "outputKey"; a step
with an outputKey publishes its result into the shared context.

The working state is a plain dict threaded from step to step; each step
returns a new dict with the step's output under "result".
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from ..domain.entities import AgentProgress, AgentStatus
from ..exceptions import MurmurError, WorkflowError, WorkflowStepLimitError
from ..resilience import run_concurrent_tasks, with_timeout
from ..state.immutable_state import ImmutableState
from .agent import Agent

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKFLOW_STEPS = 100
DEFAULT_WORKFLOW_TIMEOUT = 30 * 60.0

STEP_TYPES = ("agent", "parallel", "condition", "loop")


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, (list, tuple, set, dict)):
        return right in left
    return str(right) in str(left)


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    "contains": _contains,
}


class _Run:
    """Bookkeeping for one workflow execution."""

    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        self.steps_taken = 0

    def count(self, what: str) -> None:
        self.steps_taken += 1
        if self.steps_taken > self.max_steps:
            raise WorkflowStepLimitError(
                f"Maximum workflow steps ({self.max_steps}) exceeded at {what}",
                limit=self.max_steps,
                actual=self.steps_taken,
            )


class WorkflowOrchestrator:
    """Recipe interpreter over a set of named agents.

    Usage:
        orchestrator = WorkflowOrchestrator()
        orchestrator.register_agent("classifier", classifier)
        orchestrator.register_agent("responder", responder)

        outcome = await orchestrator.execute_workflow(
            {
                "name": "triage",
                "steps": [
                    {"agent": "classifier", "input": "$ticket", "outputKey": "category"},
                    {
                        "type": "condition",
                        "condition": {"left": "$result", "operator": "==", "right": "urgent"},
                        "then": [{"agent": "responder", "input": "$ticket"}],
                    },
                ],
            },
            {"ticket": "The server room is on fire"},
        )
    """

    def __init__(
        self,
        state: Optional[ImmutableState] = None,
        max_workflow_steps: int = DEFAULT_MAX_WORKFLOW_STEPS,
        workflow_timeout: Optional[float] = DEFAULT_WORKFLOW_TIMEOUT,
    ):
        """Initialize the orchestrator.

        Args:
            state: Global state merged into every agent before it runs
            max_workflow_steps: Cap on executed steps per run, loop
                iterations included
            workflow_timeout: Wall-clock cap per run in seconds (None disables)
        """
        if max_workflow_steps < 1:
            raise WorkflowError("max_workflow_steps must be positive")
        self.state = state or ImmutableState()
        self.max_workflow_steps = max_workflow_steps
        self.workflow_timeout = workflow_timeout

        self._agents: dict[str, Agent] = {}
        self._shared_context: dict[str, Any] = {}
        self._agent_states: dict[str, dict[str, Any]] = {}

    # ============================================
    # Registry and shared data
    # ============================================

    def register_agent(self, name: str, agent: Agent) -> None:
        """Register an agent under a unique name.

        Raises:
            WorkflowError: If the name is taken
        """
        if name in self._agents:
            raise WorkflowError(f'Agent "{name}" is already registered')
        self._agents[name] = agent
        logger.info(f"Registered workflow agent: {name}")

    def get_agent(self, name: str) -> Agent:
        agent = self._agents.get(name)
        if agent is None:
            raise WorkflowError(
                f'Agent "{name}" is not registered',
                details={"registered": sorted(self._agents)},
            )
        return agent

    @property
    def agent_names(self) -> list[str]:
        return list(self._agents)

    @property
    def shared_context(self) -> Mapping[str, Any]:
        return MappingProxyType(self._shared_context)

    def get_agent_state(self, name: str) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._agent_states.get(name, {})))

    def update_agent_state(self, name: str, state: Mapping[str, Any]) -> None:
        self._agent_states[name] = {
            **self._agent_states.get(name, {}),
            **state,
            "lastUpdated": datetime.utcnow().isoformat(),
        }

    # ============================================
    # Execution
    # ============================================

    async def execute_workflow(
        self,
        workflow: Mapping[str, Any],
        input: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[Callable[[AgentProgress], Any]] = None,
    ) -> dict[str, Any]:
        """Run a recipe.

        Args:
            workflow: {"name": str, "steps": [step, ...]}
            input: Initial working state
            on_progress: Receives one event per top-level step, then a
                completed or error event

        Returns:
            {"success": True, "output": final working state,
             "sharedContext": shared context snapshot}

        Raises:
            WorkflowError: Malformed recipe or unresolvable variable
            WorkflowStepLimitError: More than max_workflow_steps steps ran
            TimeoutError: The run exceeded workflow_timeout
            MurmurError: Agent failures, unchanged
        """
        name = workflow.get("name", "workflow")
        steps = workflow.get("steps")
        if not isinstance(steps, list):
            raise WorkflowError(f'Workflow "{name}" must define a list of steps')

        def emit(status: AgentStatus, index: int, **metadata) -> None:
            if on_progress is None:
                return
            try:
                on_progress(
                    AgentProgress(
                        status=status,
                        current_index=index,
                        total_count=len(steps),
                        metadata={"workflow": name, **metadata},
                    )
                )
            except Exception as e:
                logger.warning(f"Workflow progress callback failed: {e}")

        run = _Run(self.max_workflow_steps)
        started = datetime.utcnow()
        logger.info(f'Starting workflow "{name}" with {len(steps)} steps')

        try:
            output = await with_timeout(
                self._run_steps(steps, dict(input or {}), run, emit),
                self.workflow_timeout,
                f'Workflow "{name}" timed out',
            )
        except MurmurError as e:
            logger.error(f'Workflow "{name}" failed: {e}')
            emit(AgentStatus.ERROR, run.steps_taken, error=str(e))
            raise

        elapsed = (datetime.utcnow() - started).total_seconds()
        emit(AgentStatus.COMPLETED, len(steps), elapsed_seconds=elapsed)
        logger.info(f'Workflow "{name}" completed in {elapsed:.2f}s ({run.steps_taken} steps)')
        return {
            "success": True,
            "output": output,
            "sharedContext": dict(self._shared_context),
        }

    async def _run_steps(
        self,
        steps: list[Any],
        state: dict[str, Any],
        run: _Run,
        emit: Optional[Callable[..., None]] = None,
    ) -> dict[str, Any]:
        for index, step in enumerate(steps, start=1):
            if not isinstance(step, dict):
                raise WorkflowError(f"Workflow step must be an object, got {type(step).__name__}")
            step_type = step.get("type", "agent")
            label = step.get("name") or step_type
            run.count(label)

            if emit is not None:
                emit(AgentStatus.PROCESSING, index, step=label)

            state = await self._run_step(step, step_type, state, run)

            output_key = step.get("outputKey")
            if output_key:
                self._shared_context[output_key] = state.get("result")
        return state

    async def _run_step(
        self,
        step: dict[str, Any],
        step_type: str,
        state: dict[str, Any],
        run: _Run,
    ) -> dict[str, Any]:
        logger.debug(f"Running {step_type} step {step.get('name', '')}".rstrip())
        if step_type == "agent":
            return await self._agent_step(step, state)
        if step_type == "parallel":
            return await self._parallel_step(step, state, run)
        if step_type == "condition":
            return await self._condition_step(step, state, run)
        if step_type == "loop":
            return await self._loop_step(step, state, run)
        raise WorkflowError(
            f"Unknown step type: {step_type} (expected one of: {', '.join(STEP_TYPES)})",
            step=step,
        )

    async def _agent_step(self, step: dict[str, Any], state: dict[str, Any]) -> dict[str, Any]:
        agent_name = step.get("agent")
        if not agent_name:
            raise WorkflowError("Agent step is missing 'agent'", step=step)
        agent = self.get_agent(agent_name)

        raw_input = self.resolve(step.get("input", "$result"), state)
        text = raw_input if isinstance(raw_input, str) else json.dumps(raw_input, default=str)

        agent.state = agent.state.merge(self.state)
        result = await agent.execute(text, stream=False)

        self.update_agent_state(agent_name, {"lastInput": text, "lastOutput": result.output})
        return {
            **state,
            "result": result.output,
            "metadata": {
                **state.get("metadata", {}),
                "agent": agent_name,
                "executionTime": datetime.utcnow().isoformat(),
            },
        }

    async def _parallel_step(
        self,
        step: dict[str, Any],
        state: dict[str, Any],
        run: _Run,
    ) -> dict[str, Any]:
        sub_steps = step.get("steps") or []
        tasks = {}
        for index, sub_step in enumerate(sub_steps):
            if not isinstance(sub_step, dict):
                raise WorkflowError("Parallel sub-step must be an object", step=step)
            key = sub_step.get("outputKey") or sub_step.get("name") or str(index)
            if key in tasks:
                raise WorkflowError(f"Duplicate parallel output key: {key}", step=step)
            tasks[key] = self._branch(sub_step, dict(state), run)

        outcomes = await run_concurrent_tasks(tasks)
        return {**state, "result": {key: branch.get("result") for key, branch in outcomes.items()}}

    def _branch(self, sub_step: dict[str, Any], state: dict[str, Any], run: _Run):
        async def run_branch() -> dict[str, Any]:
            return await self._run_steps([sub_step], state, run)

        return run_branch

    async def _condition_step(
        self,
        step: dict[str, Any],
        state: dict[str, Any],
        run: _Run,
    ) -> dict[str, Any]:
        if self.evaluate_condition(step.get("condition"), state):
            return await self._run_steps(step.get("then") or [], state, run)
        if step.get("else") is not None:
            return await self._run_steps(step["else"], state, run)
        return state

    async def _loop_step(
        self,
        step: dict[str, Any],
        state: dict[str, Any],
        run: _Run,
    ) -> dict[str, Any]:
        items = self.resolve(step.get("items"), state)
        if not isinstance(items, (list, tuple)):
            raise WorkflowError(
                f"Loop items must be a list, got {type(items).__name__}", step=step
            )

        results = []
        last = len(items) - 1
        for index, item in enumerate(items):
            run.count(f"loop iteration {index}")
            item_state = {
                **state,
                "item": item,
                "index": index,
                "isFirst": index == 0,
                "isLast": index == last,
            }
            iteration = await self._run_steps(step.get("steps") or [], item_state, run)
            results.append(iteration.get("result"))

        return {**state, "result": results}

    # ============================================
    # Expressions
    # ============================================

    def resolve(self, value: Any, state: Mapping[str, Any]) -> Any:
        """Resolve a "$dot.path" reference; other values pass through.

        Raises:
            WorkflowError: If any path segment is missing
        """
        if not isinstance(value, str) or not value.startswith("$"):
            return value

        path = value[1:].split(".")
        if path[0] in state:
            current: Any = state
        elif path[0] in self._shared_context:
            current = self._shared_context
        else:
            raise WorkflowError(f"Could not resolve variable: {value}")

        for key in path:
            if isinstance(current, Mapping) and key in current:
                current = current[key]
            elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
                current = current[int(key)]
            else:
                raise WorkflowError(f"Could not resolve variable: {value}")
        return current

    def evaluate_condition(self, condition: Any, state: Mapping[str, Any]) -> bool:
        """Evaluate a {"left", "operator", "right"} triple or a literal bool.

        Raises:
            WorkflowError: Unknown operator, incomparable operands or an
                invalid condition value
        """
        if isinstance(condition, bool):
            return condition
        if not isinstance(condition, Mapping):
            raise WorkflowError(f"Invalid condition: {condition!r}")

        operator = condition.get("operator")
        compare = OPERATORS.get(operator)
        if compare is None:
            raise WorkflowError(f"Unknown operator: {operator}")

        left = self.resolve(condition.get("left"), state)
        right = self.resolve(condition.get("right"), state)
        try:
            return bool(compare(left, right))
        except TypeError as e:
            raise WorkflowError(
                f"Cannot compare {left!r} {operator} {right!r}", cause=e
            ) from e


__all__ = [
    "DEFAULT_MAX_WORKFLOW_STEPS",
    "DEFAULT_WORKFLOW_TIMEOUT",
    "OPERATORS",
    "WorkflowOrchestrator",
]
