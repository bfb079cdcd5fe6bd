#!/usr/bin/env python3
"""murmur command-line interface.

Runs one prompt through one agent built from the environment and prints
(or streams) the answer.

Environment Variables:
    - MURMUR_PROVIDER: openai | anthropic | google
    - OPENAI_API_KEY / ANTHROPIC_API_KEY / GOOGLE_API_KEY (or MURMUR_API_KEY)
    - Any other MURMUR_* option read by MurmurConfig.from_env()

Example Usage:
    $ python -m murmur "Summarize the plot of Hamlet in one sentence"
    $ python -m murmur --provider anthropic --stream "Write a haiku"
    $ echo "Translate to French: good morning" | python -m murmur
    $ python -m murmur --thread demo --history-dir .murmur "What did I ask before?"
"""
import argparse
import asyncio
import sys

from dotenv import load_dotenv

load_dotenv()

from .agent import Agent
from .config import MurmurConfig, configure_logging
from .exceptions import MurmurError
from .memory import FileKeyValueStore, HistoryRegistry


async def run_prompt(args: argparse.Namespace) -> int:
    """Build the agent, run the prompt and print the result.

    Returns:
        Process exit code
    """
    overrides = {}
    if args.provider:
        overrides["provider"] = args.provider
    if args.model:
        overrides["model_name"] = args.model
    if args.temperature is not None:
        overrides["temperature"] = args.temperature
    if args.max_tokens is not None:
        overrides["max_tokens"] = args.max_tokens
    if args.thread:
        overrides["thread_id"] = args.thread
    if args.stream:
        overrides["stream"] = True

    try:
        config = MurmurConfig.from_env(**overrides)
        configure_logging(args.log_level or config.log_level)

        registry = None
        if config.thread_id:
            store = FileKeyValueStore(args.history_dir) if args.history_dir else None
            registry = HistoryRegistry(
                store=store,
                max_messages=config.max_messages,
                max_tokens=config.history_max_tokens,
            )

        agent = Agent.from_config(
            config,
            name="cli",
            role=args.role,
            history_registry=registry,
        )

        try:
            if config.stream:
                async for chunk in agent.execute_stream(args.prompt):
                    print(chunk, end="", flush=True)
                print()
            else:
                result = await agent.execute(args.prompt)
                print(result.output)
        finally:
            agent.dispose()
            await agent.provider.close()

    except MurmurError as e:
        print(f"[murmur] Error: {e}", file=sys.stderr)
        for step in e.recovery_steps:
            print(f"  - {step}", file=sys.stderr)
        return 1

    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="murmur",
        description="Run a prompt through a murmur agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m murmur "Explain rate limiting"           # Default provider from env
  python -m murmur --provider google "Hello"         # Pick a provider
  python -m murmur --stream "Tell me a story"        # Stream the answer
  python -m murmur --thread t1 --history-dir .murmur "Remember me?"
        """
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        help="Prompt text (read from stdin when omitted)"
    )

    model_group = parser.add_argument_group("Model Options")
    model_group.add_argument(
        "--provider",
        choices=["openai", "anthropic", "google"],
        help="Provider to use (default: MURMUR_PROVIDER or openai)"
    )
    model_group.add_argument(
        "--model",
        type=str,
        help="Model name (default depends on provider)"
    )
    model_group.add_argument(
        "--temperature",
        type=float,
        help="Sampling temperature"
    )
    model_group.add_argument(
        "--max-tokens",
        type=int,
        help="Maximum tokens in the response"
    )

    agent_group = parser.add_argument_group("Agent Options")
    agent_group.add_argument(
        "--role",
        type=str,
        default="You are a helpful assistant.",
        help="System instructions for the agent"
    )
    agent_group.add_argument(
        "--stream",
        action="store_true",
        help="Stream the response as it is generated"
    )
    agent_group.add_argument(
        "--thread",
        type=str,
        metavar="ID",
        help="Conversation thread to continue"
    )
    agent_group.add_argument(
        "--history-dir",
        type=str,
        metavar="DIR",
        help="Persist thread history under DIR"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        help="Logging level (default: MURMUR_LOG_LEVEL or INFO)"
    )

    args = parser.parse_args()

    if not args.prompt:
        if sys.stdin.isatty():
            parser.error("a prompt is required")
        args.prompt = sys.stdin.read().strip()

    sys.exit(asyncio.run(run_prompt(args)))


if __name__ == "__main__":
    main()
