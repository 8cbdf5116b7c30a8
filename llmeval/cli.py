"""Command-line interface for LLMEval.

Streams a generation to the terminal, refreshing as the evaluator publishes
new output, load progress and statistics.

Usage:
    python -m llmeval generate "Why is the sky blue?"
    python -m llmeval generate --model mlx-community/Qwen2.5-0.5B-Instruct-4bit "hello"
    python -m llmeval chat
    python -m llmeval models
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from typing import NoReturn

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from llmeval import __version__
from llmeval.config import get_config
from llmeval.errors import LLMEvalError, ModelError
from llmeval.evaluator import GenerationResult, LLMEvaluator
from llmeval.state import EvaluatorState
from llmeval.utils.logging import setup_logging
from models.registry import default_profile_id, get_registry

console = Console()
logger = logging.getLogger(__name__)


def _render(state: EvaluatorState) -> Group:
    """Build the live view for one state snapshot."""
    title = "[bold green]Generating[/bold green]" if state.running else "Output"
    return Group(
        Text(state.model_info, style="dim"),
        Panel(Text(state.output), title=title, border_style="green" if state.running else "white"),
        Text(state.stat, style="cyan"),
    )


def _build_evaluator(args: argparse.Namespace) -> LLMEvaluator:
    return LLMEvaluator(
        profile=args.model,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        display_every_n_tokens=args.display_every,
        timeout_seconds=args.timeout,
    )


def _stream(evaluator: LLMEvaluator, prompt: str) -> GenerationResult:
    """Run one generation on a worker thread while rendering updates.

    Ctrl-C cancels the generation and keeps the partial output. Each call
    gets its own stop event, so a Ctrl-C that lands before the worker has
    started generating still cancels it.
    """
    outcome: list[GenerationResult] = []
    stop_event = threading.Event()
    worker = threading.Thread(
        target=lambda: outcome.append(evaluator.generate(prompt, stop_event=stop_event)),
        name="llmeval-generate",
        daemon=True,
    )

    with Live(_render(evaluator.snapshot()), console=console, refresh_per_second=8) as live:
        unsubscribe = evaluator.subscribe(lambda state: live.update(_render(state)))
        try:
            worker.start()
            while worker.is_alive():
                try:
                    worker.join(timeout=0.1)
                except KeyboardInterrupt:
                    stop_event.set()
        finally:
            unsubscribe()
            live.update(_render(evaluator.snapshot()))

    return outcome[0]


def cmd_generate(args: argparse.Namespace) -> int:
    """Generate a single completion."""
    evaluator = _build_evaluator(args)
    result = _stream(evaluator, args.prompt)
    if result.finish_reason == "cancelled":
        console.print("[yellow]Cancelled.[/yellow]")
    return 1 if result.finish_reason == "error" else 0


def cmd_chat(args: argparse.Namespace) -> int:
    """Prompt repeatedly, reusing the loaded model."""
    evaluator = _build_evaluator(args)
    console.print(f"[dim]Model: {evaluator.profile.id}. Empty line or Ctrl-D to quit.[/dim]\n")

    while True:
        try:
            prompt = console.input("[bold blue]You:[/bold blue] ")
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            return 0

        if not prompt.strip():
            console.print("[dim]Goodbye![/dim]")
            return 0

        _stream(evaluator, prompt)
        console.print()


def cmd_models(args: argparse.Namespace) -> int:
    """List registered profiles."""
    registry = get_registry()
    configured = get_config().model.model_id or default_profile_id()

    table = Table(title="Model Profiles")
    table.add_column("Id", style="bold")
    table.add_column("Tokenizer")
    table.add_column("Default")

    for model_id in registry.ids():
        profile = registry.resolve(model_id)
        tokenizer = profile.override_tokenizer or profile.tokenizer_id or "auto"
        table.add_row(profile.id, tokenizer, "yes" if profile.id == configured else "")

    console.print(table)
    return 0


def _add_generation_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-m", "--model", help="model id or HuggingFace repo (default: from config)")
    parser.add_argument("--temperature", type=float, help="sampling temperature")
    parser.add_argument("--max-tokens", type=int, help="maximum output tokens")
    parser.add_argument(
        "--display-every",
        type=int,
        help="refresh the output every N tokens (lower is smoother but slower)",
    )
    parser.add_argument("--timeout", type=float, help="cancel generation after this many seconds")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="llmeval",
        description="Stream text generation from a local MLX language model.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="enable debug logging for troubleshooting",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    generate_parser = subparsers.add_parser("generate", help="generate a completion for a prompt")
    generate_parser.add_argument("prompt", help="prompt text")
    _add_generation_args(generate_parser)
    generate_parser.set_defaults(func=cmd_generate)

    chat_parser = subparsers.add_parser("chat", help="generate repeatedly without reloading")
    _add_generation_args(chat_parser)
    chat_parser.set_defaults(func=cmd_chat)

    models_parser = subparsers.add_parser("models", help="list registered model profiles")
    models_parser.set_defaults(func=cmd_models)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    return args.func(args)


def run() -> NoReturn:
    """Entry point that handles errors and exit."""
    try:
        exit_code = main()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        exit_code = 130
    except LLMEvalError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        if isinstance(e, ModelError) and e.details.get("required_mb"):
            console.print(
                f"[yellow]Available: {e.details.get('available_mb')} MB, "
                f"Required: {e.details['required_mb']} MB[/yellow]"
            )
        logger.debug("LLMEval error details - code=%s, details=%s", e.code.value, e.details)
        exit_code = 1
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        logger.exception("Unexpected error")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    run()
