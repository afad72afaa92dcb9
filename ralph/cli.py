"""Command-line interface for Ralph."""

from __future__ import annotations

import argparse
import logging
import shlex
import signal
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from rich.console import Console
from rich.table import Table

from ralph.errors import ConfigError, PrdValidationError, ThreadCorruptedError
from ralph.models.config import (
    AGENT_KINDS,
    MultiAgentConfig,
    QualityGate,
    RalphConfig,
    load_config_file,
)
from ralph.models.prd import Prd, prompt_to_prd
from ralph.orchestrator import PauseToken, RalphOrchestrator, reopen_paused, resume_with_human_input
from ralph.paths import RalphPaths
from ralph.persistence import RalphStore
from ralph.projections import current_prd, derive_iterations, derive_termination_reason
from ralph.thread import Thread, is_terminal, last_event

logger = logging.getLogger(__name__)

SUCCESS = "green"
WARNING = "yellow"
ERROR = "red"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NEEDS_OPERATOR = 2

_OK_REASONS = ("all_passed", "completion_signal")


def _gate_arg(value: str) -> QualityGate:
    name, sep, command = value.partition(":")
    if not sep or not name.strip() or not command.strip():
        raise argparse.ArgumentTypeError(f"expected NAME:COMMAND, got {value!r}")
    return QualityGate(name=name.strip(), command=command.strip())


def _add_agent_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--agent",
        choices=AGENT_KINDS,
        default="claude",
        help="Agent used in single-agent mode (default: claude)",
    )
    parser.add_argument(
        "--agent-cmd",
        help="Explicit agent command line; the prompt is appended as the last argument",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")


def create_parser() -> argparse.ArgumentParser:
    """Create the ralph argument parser."""
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Ralph runs an autonomous coding agent over a PRD, one story per iteration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ralph run                                   # Implement stories from ./prd.json
  ralph run --prompt "Add a health endpoint"  # Single-story ad-hoc run
  ralph run --gate test:"pytest -x" -m 5      # Gate every story on the test suite
  ralph resume --response "Use SQLite"        # Answer a pending question
  ralph status                                # Show progress
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Ralph operations")

    # ralph run
    run_parser = subparsers.add_parser(
        "run",
        help="Start a new run",
        description="Iteratively implement user stories from the PRD",
    )
    source = run_parser.add_mutually_exclusive_group()
    source.add_argument("--prd", default="prd.json", help="Path to PRD file (default: prd.json)")
    source.add_argument("--prompt", help="Run a single ad-hoc story built from this text")
    run_parser.add_argument("--config", help="JSON config file (top level or under a 'ralph' key)")
    run_parser.add_argument(
        "--max-iterations", "-m", type=int, help="Maximum iterations before stopping"
    )
    run_parser.add_argument(
        "--gate",
        action="append",
        type=_gate_arg,
        default=[],
        metavar="NAME:COMMAND",
        help="Quality gate to run after each story (repeatable)",
    )
    run_parser.add_argument(
        "--no-commit", action="store_true", help="Don't commit after successful stories"
    )
    run_parser.add_argument(
        "--require-approval",
        action="store_true",
        help="Ask the operator before every commit",
    )
    run_parser.add_argument(
        "--max-failures",
        type=int,
        help="Ask the operator after this many consecutive failures on one story",
    )
    run_parser.add_argument("--delay", type=float, help="Seconds to wait between iterations")
    run_parser.add_argument(
        "--multi-agent",
        action="store_true",
        help="Run each iteration as a brainstorm/plan/execute/review cycle between two agents",
    )
    run_parser.add_argument("--agent-a", choices=AGENT_KINDS, help="Agent for role A (thinker)")
    run_parser.add_argument("--agent-b", choices=AGENT_KINDS, help="Agent for role B (builder)")
    run_parser.add_argument("--cmd-a", help="Command line override for role A")
    run_parser.add_argument("--cmd-b", help="Command line override for role B")
    run_parser.add_argument(
        "--fresh",
        action="store_true",
        help="Discard an unfinished run instead of refusing to start",
    )
    _add_agent_options(run_parser)

    # ralph resume
    resume_parser = subparsers.add_parser(
        "resume",
        help="Continue a paused, interrupted or waiting run",
        description="Continue the run recorded in the state directory",
    )
    resume_parser.add_argument(
        "--response",
        "-r",
        help="Answer to a pending human-input request (prompted for if omitted)",
    )
    _add_agent_options(resume_parser)

    # ralph status
    status_parser = subparsers.add_parser(
        "status",
        help="Show run progress",
        description="Display the stories and iterations of the current run",
    )
    status_parser.add_argument(
        "--prd", default="prd.json", help="PRD to show when no run exists (default: prd.json)"
    )
    status_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace, paths: RalphPaths) -> RalphConfig:
    """Resolve the run config: file (explicit or project default), then flags.

    Raises:
        FileNotFoundError: If an explicit --config file doesn't exist
        ConfigError: If a config file is invalid
    """
    if args.config:
        config = load_config_file(Path(args.config))
    elif paths.config_file.exists():
        config = load_config_file(paths.config_file)
    else:
        config = RalphConfig()

    update: dict[str, Any] = {}
    if args.max_iterations is not None:
        if args.max_iterations < 1:
            raise ConfigError("--max-iterations must be at least 1")
        update["max_iterations"] = args.max_iterations
    if args.gate:
        update["quality_gates"] = config.quality_gates + tuple(args.gate)
    if args.no_commit:
        update["commit_on_pass"] = False
    if args.require_approval:
        update["require_approval_before_commit"] = True
    if args.max_failures is not None:
        update["max_consecutive_failures"] = args.max_failures
    if args.delay is not None:
        update["inter_iteration_delay"] = max(0.0, args.delay)

    role_flags = {
        "agent_a": args.agent_a,
        "agent_b": args.agent_b,
        "cmd_a": args.cmd_a,
        "cmd_b": args.cmd_b,
    }
    if args.multi_agent or any(role_flags.values()):
        base = config.multi_agent or MultiAgentConfig()
        update["multi_agent"] = base.model_copy(
            update={k: v for k, v in role_flags.items() if v}
        )

    return config.model_copy(update=update)


def _load_source_prd(args: argparse.Namespace, working_dir: Path) -> Prd:
    if args.prompt:
        return prompt_to_prd(args.prompt)
    return Prd.load(working_dir / args.prd)


def _run_meta(args: argparse.Namespace, working_dir: Path) -> dict[str, str]:
    if args.prompt:
        return {"agent": args.agent, "source": "prompt"}
    # Passed stories are written back to this file
    prd_path = (working_dir / args.prd).resolve()
    return {"agent": args.agent, "source": str(args.prd), "prd_path": str(prd_path)}


def _check_agent(args: argparse.Namespace) -> None:
    if args.agent == "custom" and not args.agent_cmd:
        raise ConfigError("--agent custom requires --agent-cmd")


def _run_with_pause(orchestrator: RalphOrchestrator, console: Console) -> str:
    """Run the loop; the first Ctrl-C pauses at the next iteration boundary."""
    token = PauseToken()

    def _on_sigint(signum, frame):
        if token.is_set():
            raise KeyboardInterrupt
        console.print(f"\n[{WARNING}]Pausing after the current iteration (Ctrl-C again to abort)...[/{WARNING}]")
        token.request()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        state = orchestrator.run(pause_token=token)
    finally:
        signal.signal(signal.SIGINT, previous)
    return state.termination_reason


def _exit_code(reason: str) -> int:
    if reason in _OK_REASONS:
        return EXIT_OK
    if reason in ("paused", "human_input"):
        return EXIT_NEEDS_OPERATOR
    return EXIT_FAILED


def _handle_run(args: argparse.Namespace, console: Console) -> int:
    """Handle 'ralph run' command.

    Args:
        args: Parsed arguments
        console: Rich console

    Returns:
        Process exit code
    """
    working_dir = Path.cwd()
    paths = RalphPaths(working_dir)
    store = RalphStore(paths)

    if store.has_thread() and not args.fresh:
        try:
            existing = store.load_thread()
        except ThreadCorruptedError as e:
            console.print(f"[{ERROR}]Existing run is unreadable: {e}[/{ERROR}]")
            console.print("Use --fresh to discard it.")
            return EXIT_FAILED
        if existing is not None and not is_terminal(existing):
            console.print(f"[{WARNING}]An unfinished run exists in {paths.ralph_dir}[/{WARNING}]")
            console.print("Use 'ralph resume' to continue it, or --fresh to start over.")
            return EXIT_FAILED

    try:
        _check_agent(args)
        config = build_config(args, paths)
        prd = _load_source_prd(args, working_dir)
    except FileNotFoundError as e:
        console.print(f"[{ERROR}]{e}[/{ERROR}]")
        return EXIT_FAILED
    except (ConfigError, PrdValidationError) as e:
        console.print(f"[{ERROR}]Error: {e}[/{ERROR}]")
        return EXIT_FAILED

    orchestrator = RalphOrchestrator(
        working_dir=working_dir,
        thread_or_prd=prd,
        config=config,
        store=store,
        console=console,
        agent=args.agent,
        agent_command=shlex.split(args.agent_cmd) if args.agent_cmd else None,
        meta=_run_meta(args, working_dir),
    )
    return _exit_code(_run_with_pause(orchestrator, console))


def _reopen(thread: Thread, args: argparse.Namespace, console: Console) -> Optional[Thread]:
    """Make a persisted thread runnable again, or None if it is finished."""
    last = last_event(thread)
    if not is_terminal(thread):
        return thread

    reason = last.data.reason
    if reason == "paused":
        return reopen_paused(thread)
    if reason == "human_input" and len(thread.events) >= 2 and thread.events[-2].type == "human_input_requested":
        request = thread.events[-2].data
        console.print(f"[{WARNING}]Agent asked:[/{WARNING}] {request.reason}")
        if request.context:
            console.print(request.context)
        response = args.response
        if response is None:
            response = console.input("Response: ")
        return resume_with_human_input(thread, response)

    console.print(f"Run already finished ({reason}). Use 'ralph run --fresh' to start a new one.")
    return None


def _handle_resume(args: argparse.Namespace, console: Console) -> int:
    """Handle 'ralph resume' command."""
    working_dir = Path.cwd()
    store = RalphStore(RalphPaths(working_dir))

    try:
        _check_agent(args)
        thread = store.load_thread()
    except ThreadCorruptedError as e:
        console.print(f"[{ERROR}]Cannot resume, thread is corrupted: {e}[/{ERROR}]")
        return EXIT_FAILED
    except ConfigError as e:
        console.print(f"[{ERROR}]Error: {e}[/{ERROR}]")
        return EXIT_FAILED

    if thread is None:
        console.print(f"[{WARNING}]No run to resume. Start one with 'ralph run'.[/{WARNING}]")
        return EXIT_FAILED

    thread = _reopen(thread, args, console)
    if thread is None:
        return EXIT_OK

    orchestrator = RalphOrchestrator(
        working_dir=working_dir,
        thread_or_prd=thread,
        store=store,
        console=console,
        agent=args.agent,
        agent_command=shlex.split(args.agent_cmd) if args.agent_cmd else None,
    )
    return _exit_code(_run_with_pause(orchestrator, console))


def _story_table(prd: Prd) -> Table:
    table = Table(title=f"PRD Status: {prd.project}", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Priority", justify="center")
    table.add_column("Status", justify="center")

    for story in sorted(prd.user_stories, key=lambda s: s.priority):
        status = f"[{SUCCESS}]PASS[/{SUCCESS}]" if story.passes else f"[{WARNING}]PENDING[/{WARNING}]"
        table.add_row(story.id, story.title, str(story.priority), status)
    return table


def _iteration_table(thread: Thread) -> Table:
    table = Table(title="Iterations", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Story", style="cyan")
    table.add_column("Agent exit", justify="center")
    table.add_column("Gates")
    table.add_column("Committed", justify="center")
    table.add_column("Result", justify="center")

    for it in derive_iterations(thread):
        gates = ", ".join(
            f"{g.name}: {'PASS' if g.passed else 'FAIL'}" for g in it.gate_results
        ) or "-"
        result = f"[{SUCCESS}]PASS[/{SUCCESS}]" if it.all_gates_passed else f"[{ERROR}]FAIL[/{ERROR}]"
        table.add_row(
            str(it.iteration),
            it.story_id,
            str(it.agent_exit_code),
            gates,
            "yes" if it.committed else "no",
            result,
        )
    return table


def _handle_status(args: argparse.Namespace, console: Console) -> int:
    """Handle 'ralph status' command."""
    working_dir = Path.cwd()
    store = RalphStore(RalphPaths(working_dir))

    try:
        thread = store.load_thread()
    except ThreadCorruptedError as e:
        console.print(f"[{ERROR}]Thread is corrupted: {e}[/{ERROR}]")
        return EXIT_FAILED

    if thread is None:
        prd_path = working_dir / args.prd
        try:
            prd = Prd.load(prd_path)
        except FileNotFoundError:
            console.print(f"[{WARNING}]No run and no PRD found: {prd_path}[/{WARNING}]")
            return EXIT_FAILED
        except PrdValidationError as e:
            console.print(f"[{ERROR}]Error loading PRD: {e}[/{ERROR}]")
            return EXIT_FAILED
        console.print(_story_table(prd))
        console.print("\nNo run yet. Start one with 'ralph run'.")
        return EXIT_OK

    prd = current_prd(thread)
    console.print(_story_table(prd))
    if derive_iterations(thread):
        console.print(_iteration_table(thread))

    total = len(prd.user_stories)
    completed = sum(1 for s in prd.user_stories if s.passes)
    console.print(f"\nProgress: {completed}/{total} stories complete")
    console.print(f"State: {derive_termination_reason(thread)}")

    last = last_event(thread)
    if is_terminal(thread) and last.data.reason == "human_input":
        request = thread.events[-2]
        if request.type == "human_input_requested":
            console.print(f"[{WARNING}]Waiting for input:[/{WARNING}] {request.data.reason}")
    elif not prd.is_complete():
        next_story = prd.get_next_story()
        if next_story:
            console.print(f"\nNext: [{next_story.id}] {next_story.title}")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the ``ralph`` console script."""
    parser = create_parser()
    args = parser.parse_args(argv)
    console = Console()

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    _configure_logging(getattr(args, "verbose", False))

    handlers = {
        "run": _handle_run,
        "resume": _handle_resume,
        "status": _handle_status,
    }
    try:
        return handlers[args.command](args, console)
    except KeyboardInterrupt:
        console.print(f"\n[{WARNING}]Interrupted.[/{WARNING}]")
        return 130
    except ThreadCorruptedError as e:
        console.print(f"[{ERROR}]Thread is corrupted: {e}[/{ERROR}]")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
