"""
Agent pipelines.

An AgentChain runs agents in order, feeding each agent's output to the next
as its input. State travels between steps by handoff (copied, never shared
by reference). A history is threaded through every step only when
share_history is set. The first failing step aborts the chain.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ..domain.entities import AgentProgress, AgentResult, ChainResult
from ..exceptions import ChainExecutionError, InvalidConfigurationError, StateError
from ..memory.history import MessageHistory
from ..state.immutable_state import ImmutableState
from .agent import Agent, ProgressCallback

logger = logging.getLogger(__name__)


class AgentChain:
    """Sequential pipeline of agents.

    Usage:
        chain = AgentChain([extractor, summarizer, translator])
        result = await chain.execute("Raw document text ...")
        print(result.final_output)
    """

    def __init__(
        self,
        agents: Sequence[Agent],
        state: Optional[ImmutableState] = None,
        share_history: bool = False,
        history: Optional[MessageHistory] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """Initialize the chain.

        Args:
            agents: Agents in execution order
            state: State handed to the first agent
            share_history: Pass `history` to every step
            history: The shared history (required with share_history)
            on_progress: Receives every progress event of every step

        Raises:
            InvalidConfigurationError: Empty chain or missing shared history
        """
        if not agents:
            raise InvalidConfigurationError("Chain must have at least one agent")
        if share_history and history is None:
            raise InvalidConfigurationError(
                "share_history requires a history", missing_keys=["history"]
            )

        self.agents = list(agents)
        self.state = state or ImmutableState()
        self.share_history = share_history
        self.history = history
        self._callbacks: list[ProgressCallback] = [on_progress] if on_progress else []
        self._disposed = False

    def on_progress(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def __len__(self) -> int:
        return len(self.agents)

    async def execute(self, input: str) -> ChainResult:
        """Run every agent in order.

        Raises:
            StateError: The chain has been disposed
            ChainExecutionError: A step failed; carries the step index, the
                progress so far and the results of completed steps
        """
        if self._disposed:
            raise StateError("Chain has been disposed")

        total = len(self.agents)
        results: list[AgentResult] = []
        progress: list[AgentProgress] = []

        def record(event: AgentProgress) -> None:
            progress.append(event)
            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Chain progress callback failed: {e}")

        history = self.history if self.share_history else None
        current_input = input
        previous: Optional[Agent] = None

        for index, agent in enumerate(self.agents, start=1):
            if previous is None:
                agent.state = agent.state.merge(self.state)
            else:
                previous.handoff(agent)

            logger.debug(f"Chain step {index}/{total}: {agent.name}")
            try:
                result = await agent.execute(
                    current_input,
                    stream=False,
                    history=history,
                    position=(index, total),
                    on_progress=record,
                )
            except Exception as e:
                logger.error(f"Chain execution failed at agent {index} ({agent.name}): {e}")
                raise ChainExecutionError(
                    f"Chain step {index}/{total} ({agent.name}) failed: {e}",
                    step_index=index,
                    agent_name=agent.name,
                    progress=progress,
                    results=results,
                    cause=e,
                ) from e

            results.append(result)
            current_input = result.output
            previous = agent

        self.state = previous.state
        logger.info(f"Chain of {total} agents completed")
        return ChainResult(
            results=tuple(results),
            final_output=current_input,
            progress=tuple(progress),
        )

    def dispose(self) -> None:
        """Dispose every agent in the chain."""
        if self._disposed:
            return
        self._disposed = True
        for agent in self.agents:
            agent.dispose()
        logger.info("Chain disposed")


__all__ = ["AgentChain"]
