"""Tests for AgentChain pipelines.

Tests cover:
    - Output of each step feeding the next
    - State handoff between steps
    - Opt-in history sharing
    - Failure reporting with step index, partial results and progress
    - Disposal
"""
import pytest

from murmur.agent import Agent, AgentChain, AgentConfig
from murmur.domain import AgentStatus, MessageRole
from murmur.exceptions import (
    AgentExecutionError,
    ChainExecutionError,
    InvalidConfigurationError,
    StateError,
)
from murmur.memory import MessageHistory
from murmur.state import ImmutableState


def last_user_text(messages):
    return messages[-1].content


@pytest.fixture
def make_agent(scripted_provider):
    def factory(name, transform, **config):
        provider = scripted_provider(responder=lambda messages: transform(last_user_text(messages)))
        return Agent(provider, AgentConfig(name=name, **config))

    return factory


class TestChainExecution:
    """Test sequential execution."""

    @pytest.mark.asyncio
    async def test_outputs_flow_through_steps(self, make_agent):
        chain = AgentChain(
            [
                make_agent("upper", str.upper),
                make_agent("shout", lambda text: text + "!"),
            ]
        )

        result = await chain.execute("foo")

        assert result.final_output == "FOO!"
        assert [r.output for r in result.results] == ["FOO", "FOO!"]
        assert len(chain) == 2

    @pytest.mark.asyncio
    async def test_progress_positions(self, make_agent):
        events = []
        chain = AgentChain(
            [make_agent("a", str.upper), make_agent("b", str.lower)],
            on_progress=events.append,
        )

        result = await chain.execute("Mixed")

        assert len(result.progress) == 8
        assert [(e.current_index, e.total_count) for e in result.progress][::4] == [(1, 2), (2, 2)]
        assert result.progress[-1].status is AgentStatus.COMPLETED
        assert events == list(result.progress)

    @pytest.mark.asyncio
    async def test_state_handed_to_every_step(self, make_agent):
        first = make_agent("first", str.upper)
        second = make_agent("second", str.upper)
        chain = AgentChain([first, second], state=ImmutableState({"lang": "en"}))

        await chain.execute("hi")

        system = second.provider.calls[0]["messages"][0]
        assert system.role is MessageRole.SYSTEM
        assert "- lang: en" in system.content
        assert chain.state.get("lang") == "en"

    @pytest.mark.asyncio
    async def test_state_copied_not_shared(self, make_agent):
        first = make_agent("first", str.upper)
        second = make_agent("second", str.upper)
        first.update_state({"notes": ["a"]})

        await AgentChain([first, second]).execute("hi")
        first.state.get("notes").append("mutated")

        assert second.state.get("notes") == ["a"]


class TestHistorySharing:
    """Test history threading."""

    @pytest.mark.asyncio
    async def test_shared_history_sees_earlier_steps(self, make_agent):
        history = MessageHistory("pipeline")
        first = make_agent("first", str.upper)
        second = make_agent("second", lambda text: text + "?")

        await AgentChain([first, second], share_history=True, history=history).execute("go")

        assert [m.content for m in history.messages] == ["go", "GO", "GO", "GO?"]
        sent = [m.content for m in second.provider.calls[0]["messages"]]
        assert sent == ["go", "GO", "GO"]

    @pytest.mark.asyncio
    async def test_history_not_shared_by_default(self, make_agent):
        history = MessageHistory("pipeline")
        second = make_agent("second", str.upper)

        await AgentChain([make_agent("first", str.upper), second], history=history).execute("go")

        assert len(history) == 0
        assert len(second.provider.calls[0]["messages"]) == 1

    def test_share_history_requires_history(self, make_agent):
        with pytest.raises(InvalidConfigurationError):
            AgentChain([make_agent("a", str.upper)], share_history=True)


class TestChainFailure:
    """Test failure reporting."""

    @pytest.mark.asyncio
    async def test_failing_step_aborts_chain(self, make_agent):
        def explode(text):
            raise RuntimeError("model crashed")

        third = make_agent("third", str.upper)
        chain = AgentChain([make_agent("first", str.upper), make_agent("broken", explode), third])

        with pytest.raises(ChainExecutionError) as exc_info:
            await chain.execute("go")

        error = exc_info.value
        assert error.step_index == 2
        assert error.agent_name == "broken"
        assert error.details["step_index"] == 2
        assert [r.output for r in error.results] == ["GO"]
        assert error.progress[-1].status is AgentStatus.ERROR
        assert error.progress[-1].current_index == 2
        assert isinstance(error.cause, AgentExecutionError)
        assert third.provider.calls == []

    def test_empty_chain(self):
        with pytest.raises(InvalidConfigurationError):
            AgentChain([])


class TestChainDispose:
    """Test disposal."""

    @pytest.mark.asyncio
    async def test_dispose_disposes_agents(self, make_agent):
        agents = [make_agent("a", str.upper), make_agent("b", str.upper)]
        chain = AgentChain(agents)

        chain.dispose()

        assert all(agent.is_disposed for agent in agents)
        with pytest.raises(StateError):
            await chain.execute("go")
