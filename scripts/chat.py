"""Chat with the knowledge bot.

Usage:
    python -m scripts.chat                       # interactive mode
    python -m scripts.chat "Your question here"  # single question
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time

from rich.console import Console
from rich.table import Table
from rich.text import Text

from config.settings import Settings, get_settings, load_config
from observability.logger import setup_logging
from observability.metrics import MetricsCollector
from pipeline.rag import RAGEngine
from protocols.errors import ConfigurationError, KnowledgeBotError, StorageError
from providers.factory import build_engine

console = Console()

EXIT_WORDS = {"quit", "exit", "q"}
RESET_COMMAND = "/reset"

EXAMPLE_QUESTIONS = [
    "What topics does the knowledge base cover?",
    "Summarize the main points of the getting-started guide.",
    "Where can I find the configuration options?",
]


def print_setup_hints() -> None:
    console.print("\n💡 Make sure you've:")
    console.print("   1. Installed the project (pip install -e .)")
    console.print("   2. Created a .env file with your provider and API keys")
    console.print("   3. Run 'python -m scripts.load_knowledge' to load knowledge")


async def ask_question(engine: RAGEngine, question: str, *, stream: bool = False) -> bool:
    """Ask one question and print the answer with its response time.

    Provider and storage errors are printed, not raised, so an interactive
    session survives a failed question. Returns True on success.
    """
    start = time.perf_counter()
    try:
        if stream:
            console.print(Text("🤖 Bot: ", style="bold green"), end="")
            async for delta in engine.stream_chat(question):
                console.print(Text(delta), end="")
            console.print()
        else:
            with console.status("Thinking..."):
                reply = await engine.chat(question)
            console.print(Text("🤖 Bot: ", style="bold green") + Text(reply.content))
    except KnowledgeBotError as e:
        console.print(f"\n[red]❌ Error getting response: {e}[/red]")
        return False

    duration = time.perf_counter() - start
    console.print(f"\n⏱️  Response time: {duration:.2f}s")
    return True


async def interactive(engine: RAGEngine, *, stream: bool = False) -> None:
    console.print("💡 Interactive mode - Type your questions (or 'quit' to exit)")
    console.print(f"   Type '{RESET_COMMAND}' to start a new conversation. Examples:")
    for example in EXAMPLE_QUESTIONS:
        console.print(f"   - {example}")

    while True:
        try:
            question = console.input("\n[bold cyan]❓ You:[/bold cyan] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break

        if not question:
            continue
        if question.lower() in EXIT_WORDS:
            break
        if question == RESET_COMMAND:
            engine.reset()
            console.print("[dim]Conversation cleared.[/dim]")
            continue

        await ask_question(engine, question, stream=stream)

    console.print("\n👋 Goodbye!")


def print_session_summary(metrics: MetricsCollector) -> None:
    if not metrics.total_calls:
        return
    summary = metrics.summary()
    table = Table(title="🔭 Session", show_lines=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("LLM Calls", str(summary["total_calls"]))
    table.add_row("Failed Calls", str(summary["failed_calls"]))
    table.add_row("Input Tokens", f"{summary['total_input_tokens']:,}")
    table.add_row("Output Tokens", f"{summary['total_output_tokens']:,}")
    table.add_row("Estimated Cost", f"${summary['total_cost_usd']:.4f}")
    table.add_row("Avg Latency", f"{summary['avg_latency_ms']:.1f}ms")
    console.print(table)


async def run(question: str | None, settings: Settings) -> int:
    try:
        config = load_config(settings)
        metrics = MetricsCollector()
        engine = build_engine(config, metrics)
    except (ConfigurationError, StorageError) as e:
        console.print(f"\n[red]❌ Error: {e}[/red]")
        print_setup_hints()
        return 1

    stream = config.generation.stream
    if question:
        ok = await ask_question(engine, question, stream=stream)
    else:
        await interactive(engine, stream=stream)
        ok = True

    print_session_summary(metrics)
    return 0 if ok else 1


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ask the knowledge bot questions")
    parser.add_argument("question", nargs="?", default=None, help="Ask a single question and exit")
    args = parser.parse_args(argv)

    try:
        settings = settings or get_settings()
    except ConfigurationError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        print_setup_hints()
        return 1
    setup_logging(level=settings.log_level, fmt=settings.log_format, stream=sys.stderr)

    console.print("🤖 Knowledge Bot")
    console.print("=" * 51 + "\n")
    return asyncio.run(run(args.question, settings))


if __name__ == "__main__":
    sys.exit(main())
