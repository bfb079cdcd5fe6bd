"""Tests for the workflow orchestrator.

Tests cover:
    - Agent registration and lookup
    - Agent, parallel, condition and loop steps
    - Variable resolution and condition operators
    - Shared context publishing via outputKey
    - Step budget, wall-clock timeout and malformed recipes
"""
import asyncio

import pytest

from murmur.agent import Agent, AgentConfig, WorkflowOrchestrator
from murmur.domain import AgentStatus
from murmur.exceptions import NetworkError, WorkflowError, WorkflowStepLimitError
from murmur.exceptions import TimeoutError as RequestTimeoutError
from murmur.state import ImmutableState


@pytest.fixture
def make_agent(scripted_provider):
    def factory(name, transform):
        provider = scripted_provider(responder=lambda messages: transform(messages[-1].content))
        return Agent(provider, AgentConfig(name=name))

    return factory


@pytest.fixture
def orchestrator(make_agent):
    orchestrator = WorkflowOrchestrator()
    orchestrator.register_agent("upper", make_agent("upper", str.upper))
    orchestrator.register_agent("reverse", make_agent("reverse", lambda text: text[::-1]))
    orchestrator.register_agent("length", make_agent("length", lambda text: str(len(text))))
    return orchestrator


# ============================================
# Registry Tests
# ============================================

class TestRegistry:
    """Test agent registration."""

    def test_duplicate_name(self, orchestrator, make_agent):
        with pytest.raises(WorkflowError):
            orchestrator.register_agent("upper", make_agent("other", str.lower))

    def test_unknown_agent(self, orchestrator):
        with pytest.raises(WorkflowError) as exc_info:
            orchestrator.get_agent("missing")
        assert exc_info.value.details["registered"] == ["length", "reverse", "upper"]

    def test_agent_names(self, orchestrator):
        assert orchestrator.agent_names == ["upper", "reverse", "length"]


# ============================================
# Step Tests
# ============================================

class TestAgentSteps:
    """Test sequential agent steps."""

    @pytest.mark.asyncio
    async def test_sequential_steps(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {
                "name": "pipeline",
                "steps": [
                    {"agent": "upper", "input": "$text", "outputKey": "shouted"},
                    {"agent": "reverse"},
                ],
            },
            {"text": "abc"},
        )

        assert outcome["success"] is True
        assert outcome["output"]["result"] == "CBA"
        assert outcome["output"]["text"] == "abc"
        assert outcome["output"]["metadata"]["agent"] == "reverse"
        assert outcome["sharedContext"] == {"shouted": "ABC"}
        assert orchestrator.get_agent_state("reverse")["lastInput"] == "ABC"

    @pytest.mark.asyncio
    async def test_object_input_is_json_encoded(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {"steps": [{"agent": "upper", "input": {"a": 1}}]}
        )
        assert outcome["output"]["result"] == '{"A": 1}'

    @pytest.mark.asyncio
    async def test_global_state_merged_into_agents(self, make_agent):
        agent = make_agent("echo", lambda text: text)
        orchestrator = WorkflowOrchestrator(state=ImmutableState({"tenant": "acme"}))
        orchestrator.register_agent("echo", agent)

        await orchestrator.execute_workflow({"steps": [{"agent": "echo", "input": "hi"}]})

        assert agent.state.get("tenant") == "acme"
        assert "- tenant: acme" in agent.provider.calls[0]["messages"][0].content

    @pytest.mark.asyncio
    async def test_agent_failure_propagates(self, orchestrator, make_agent):
        def fail(text):
            raise NetworkError("unreachable")

        orchestrator.register_agent("flaky", make_agent("flaky", fail))
        events = []

        with pytest.raises(NetworkError):
            await orchestrator.execute_workflow(
                {"steps": [{"agent": "flaky", "input": "x"}]}, on_progress=events.append
            )

        assert events[-1].status is AgentStatus.ERROR


class TestParallelSteps:
    """Test concurrent sub-steps."""

    @pytest.mark.asyncio
    async def test_results_keyed_by_output_key_name_or_index(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {
                "steps": [
                    {
                        "type": "parallel",
                        "steps": [
                            {"agent": "upper", "input": "$text", "outputKey": "up"},
                            {"agent": "reverse", "input": "$text", "name": "rev"},
                            {"agent": "length", "input": "$text"},
                        ],
                    }
                ]
            },
            {"text": "hello"},
        )

        assert outcome["output"]["result"] == {"up": "HELLO", "rev": "olleh", "2": "5"}
        assert outcome["sharedContext"] == {"up": "HELLO"}

    @pytest.mark.asyncio
    async def test_duplicate_keys_rejected(self, orchestrator):
        with pytest.raises(WorkflowError):
            await orchestrator.execute_workflow(
                {
                    "steps": [
                        {
                            "type": "parallel",
                            "steps": [
                                {"agent": "upper", "input": "a", "name": "same"},
                                {"agent": "reverse", "input": "b", "name": "same"},
                            ],
                        }
                    ]
                }
            )


class TestConditionSteps:
    """Test branching."""

    @pytest.fixture
    def workflow(self):
        return {
            "steps": [
                {
                    "type": "condition",
                    "condition": {"left": "$priority", "operator": ">=", "right": 3},
                    "then": [{"agent": "upper", "input": "$ticket"}],
                    "else": [{"agent": "reverse", "input": "$ticket"}],
                }
            ]
        }

    @pytest.mark.asyncio
    async def test_then_branch(self, orchestrator, workflow):
        outcome = await orchestrator.execute_workflow(workflow, {"priority": 5, "ticket": "fire"})
        assert outcome["output"]["result"] == "FIRE"

    @pytest.mark.asyncio
    async def test_else_branch(self, orchestrator, workflow):
        outcome = await orchestrator.execute_workflow(workflow, {"priority": 1, "ticket": "fire"})
        assert outcome["output"]["result"] == "erif"

    @pytest.mark.asyncio
    async def test_false_without_else_keeps_state(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {"steps": [{"type": "condition", "condition": False, "then": [{"agent": "upper"}]}]},
            {"result": "untouched"},
        )
        assert outcome["output"] == {"result": "untouched"}


class TestLoopSteps:
    """Test iteration."""

    @pytest.mark.asyncio
    async def test_collects_iteration_results(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {
                "steps": [
                    {
                        "type": "loop",
                        "items": "$words",
                        "steps": [{"agent": "upper", "input": "$item"}],
                        "outputKey": "shouted",
                    }
                ]
            },
            {"words": ["a", "bc"]},
        )

        assert outcome["output"]["result"] == ["A", "BC"]
        assert outcome["sharedContext"]["shouted"] == ["A", "BC"]
        assert "item" not in outcome["output"]

    @pytest.mark.asyncio
    async def test_iteration_variables(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {
                "steps": [
                    {
                        "type": "loop",
                        "items": [1, 2, 3],
                        "steps": [
                            {
                                "type": "condition",
                                "condition": {"left": "$isLast", "operator": "==", "right": True},
                                "then": [{"agent": "length", "input": "last"}],
                                "else": [{"agent": "length", "input": "$index"}],
                            }
                        ],
                    }
                ]
            }
        )

        assert outcome["output"]["result"] == ["1", "1", "4"]

    @pytest.mark.asyncio
    async def test_items_must_be_a_list(self, orchestrator):
        with pytest.raises(WorkflowError):
            await orchestrator.execute_workflow(
                {"steps": [{"type": "loop", "items": "$n", "steps": []}]}, {"n": 3}
            )


# ============================================
# Expression Tests
# ============================================

class TestResolve:
    """Test "$path" resolution."""

    def test_nested_paths(self, orchestrator):
        state = {"user": {"name": "Ada", "tags": ["x", "y"]}}

        assert orchestrator.resolve("$user.name", state) == "Ada"
        assert orchestrator.resolve("$user.tags.1", state) == "y"
        assert orchestrator.resolve("plain", state) == "plain"
        assert orchestrator.resolve(42, state) == 42

    def test_missing_path(self, orchestrator):
        with pytest.raises(WorkflowError):
            orchestrator.resolve("$user.email", {"user": {}})

    @pytest.mark.asyncio
    async def test_falls_back_to_shared_context(self, orchestrator):
        outcome = await orchestrator.execute_workflow(
            {
                "steps": [
                    {"agent": "upper", "input": "abc", "outputKey": "first"},
                    {"agent": "reverse", "input": "xyz"},
                    {"agent": "length", "input": "$first"},
                ]
            }
        )
        assert orchestrator.get_agent_state("length")["lastInput"] == "ABC"
        assert outcome["output"]["result"] == "3"


class TestEvaluateCondition:
    """Test condition operators."""

    @pytest.mark.parametrize(
        "left, operator, right, expected",
        [
            (1, "==", 1, True),
            (1, "!=", 1, False),
            (2, ">", 1, True),
            (2, "<", 1, False),
            (2, ">=", 2, True),
            (3, "<=", 2, False),
            ("urgent fix", "contains", "urgent", True),
            (["a", "b"], "contains", "c", False),
        ],
    )
    def test_operators(self, orchestrator, left, operator, right, expected):
        condition = {"left": left, "operator": operator, "right": right}
        assert orchestrator.evaluate_condition(condition, {}) is expected

    def test_unknown_operator(self, orchestrator):
        with pytest.raises(WorkflowError):
            orchestrator.evaluate_condition({"left": 1, "operator": "~", "right": 1}, {})

    def test_incomparable_operands(self, orchestrator):
        with pytest.raises(WorkflowError):
            orchestrator.evaluate_condition({"left": "a", "operator": ">", "right": 1}, {})


# ============================================
# Limits and Validation Tests
# ============================================

class TestLimits:
    """Test step budget, timeout and recipe validation."""

    @pytest.mark.asyncio
    async def test_step_limit_counts_loop_iterations(self, make_agent):
        orchestrator = WorkflowOrchestrator(max_workflow_steps=3)
        orchestrator.register_agent("upper", make_agent("upper", str.upper))

        with pytest.raises(WorkflowStepLimitError) as exc_info:
            await orchestrator.execute_workflow(
                {
                    "steps": [
                        {"type": "loop", "items": ["a", "b", "c"], "steps": [{"agent": "upper", "input": "$item"}]}
                    ]
                }
            )

        assert exc_info.value.limit == 3

    @pytest.mark.asyncio
    async def test_timeout(self, scripted_provider):
        class SlowProvider(scripted_provider):
            async def chat_completion(self, messages, **kwargs):
                await asyncio.sleep(5)

        orchestrator = WorkflowOrchestrator(workflow_timeout=0.01)
        orchestrator.register_agent("slow", Agent(SlowProvider()))

        with pytest.raises(RequestTimeoutError):
            await orchestrator.execute_workflow({"steps": [{"agent": "slow", "input": "x"}]})

    @pytest.mark.asyncio
    async def test_progress_events(self, orchestrator):
        events = []
        await orchestrator.execute_workflow(
            {"name": "two", "steps": [{"agent": "upper", "input": "a"}, {"agent": "reverse"}]},
            on_progress=events.append,
        )

        assert [e.status for e in events] == [
            AgentStatus.PROCESSING,
            AgentStatus.PROCESSING,
            AgentStatus.COMPLETED,
        ]
        assert events[0].metadata["workflow"] == "two"
        assert events[-1].progress == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "workflow",
        [
            {"steps": "not a list"},
            {"steps": ["not an object"]},
            {"steps": [{"type": "teleport"}]},
            {"steps": [{"type": "agent"}]},
            {"steps": [{"agent": "missing", "input": "x"}]},
        ],
    )
    async def test_malformed_recipes(self, orchestrator, workflow):
        with pytest.raises(WorkflowError):
            await orchestrator.execute_workflow(workflow)

    def test_invalid_step_budget(self):
        with pytest.raises(WorkflowError):
            WorkflowOrchestrator(max_workflow_steps=0)
