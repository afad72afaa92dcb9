"""Pure projections of a thread.

Everything here is a deterministic function of the event sequence: calling
any projection twice on the same thread yields identical results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ralph.errors import ThreadCorruptedError
from ralph.models.config import RalphConfig
from ralph.models.prd import Prd
from ralph.models.results import (
    STATE_SCHEMA,
    GateResult,
    IterationResult,
    RalphState,
    TerminationReason,
)
from ralph.thread import Thread, last_event_of_type, thread_started_event

DEFAULT_MAX_ITERATION_HISTORY = 5
DEFAULT_MAX_ERROR_ITERATIONS = 3
DEFAULT_MAX_OPERATOR_INPUTS = 3
_FAILURE_TEXT_LIMIT = 500


def _started(thread: Thread):
    started = thread_started_event(thread)
    if started is None:
        raise ThreadCorruptedError("Thread missing thread_started event")
    return started


def base_prd(thread: Thread) -> Prd:
    """The PRD exactly as captured when the thread started."""
    return _started(thread).data.prd


def current_config(thread: Thread) -> RalphConfig:
    return _started(thread).data.config


def current_prd(thread: Thread) -> Prd:
    """Base PRD with every story named in a ``story_passed`` event passing."""
    passed = [e.data.story_id for e in thread.events if e.type == "story_passed"]
    return base_prd(thread).with_passed(passed)


@dataclass
class _IterationBuilder:
    iteration: int
    story_id: str
    story_title: str
    started_at: str
    agent_exit_code: int = 1
    agent_stdout: Optional[str] = None
    gate_results: list[GateResult] = field(default_factory=list)
    committed: bool = False
    completion_signal: bool = False


def derive_iterations(thread: Thread) -> list[IterationResult]:
    """One result per ``iteration_started`` ... ``iteration_completed`` span.

    The agent exit code and stdout are those of the last ``agent_completed``
    or ``phase_completed`` in the span, so multi-agent iterations surface
    their final phase.
    """
    results: list[IterationResult] = []
    current: Optional[_IterationBuilder] = None

    for event in thread.events:
        if event.type == "iteration_started":
            current = _IterationBuilder(
                iteration=event.data.iteration,
                story_id=event.data.story_id,
                story_title=event.data.story_title,
                started_at=event.timestamp,
            )
        elif current is None:
            continue
        elif event.type in ("agent_completed", "phase_completed"):
            current.agent_exit_code = event.data.exit_code
            current.agent_stdout = event.data.stdout
            current.completion_signal = event.data.completion_signal
        elif event.type == "gate_completed":
            current.gate_results.append(event.data.result)
        elif event.type == "commit_completed":
            current.committed = event.data.success
        elif event.type == "iteration_completed":
            results.append(
                IterationResult(
                    iteration=current.iteration,
                    story_id=current.story_id,
                    story_title=current.story_title,
                    agent_exit_code=current.agent_exit_code,
                    agent_stdout=current.agent_stdout,
                    gate_results=tuple(current.gate_results),
                    all_gates_passed=event.data.all_gates_passed,
                    committed=current.committed,
                    completion_signal=current.completion_signal,
                    started_at=current.started_at,
                    completed_at=event.timestamp,
                )
            )
            current = None

    return results


def derive_termination_reason(thread: Thread) -> TerminationReason:
    completed = last_event_of_type(thread, "thread_completed")
    return completed.data.reason if completed else "running"


def _gate_summary(gates: tuple[GateResult, ...]) -> str:
    if not gates:
        return "no gates"
    return ", ".join(f"{g.name}: {'PASS' if g.passed else 'FAIL'}" for g in gates)


def progress_block(result: IterationResult) -> str:
    """Transcript block for one completed iteration."""
    return (
        f"## Iteration {result.iteration} - {result.completed_at}\n"
        f"Story: {result.story_id} - {result.story_title}\n"
        f"Gates: {_gate_summary(result.gate_results)}\n"
        f"Committed: {'yes' if result.committed else 'no'}\n"
        "---\n"
    )


def progress_transcript(thread: Thread) -> str:
    """Human-readable log, one block per completed iteration."""
    return "".join(progress_block(r) for r in derive_iterations(thread))


def thread_to_state(thread: Thread) -> RalphState:
    """Backward-compatible snapshot for state.json.

    The termination reason is the one recorded on ``thread_completed``.
    """
    prd = current_prd(thread)
    started = _started(thread)
    completed = last_event_of_type(thread, "thread_completed")
    return RalphState(
        schema_id=STATE_SCHEMA,
        prd=prd,
        config=current_config(thread),
        iterations=tuple(derive_iterations(thread)),
        started_at=started.timestamp,
        completed_at=completed.timestamp if completed else None,
        all_stories_passed=prd.is_complete(),
        termination_reason=derive_termination_reason(thread),
    )


def _failure_text(gate: GateResult) -> str:
    text = gate.stderr or gate.stdout or ""
    return text[:_FAILURE_TEXT_LIMIT]


def serialize_for_prompt(
    thread: Thread,
    max_iteration_history: int = DEFAULT_MAX_ITERATION_HISTORY,
    max_error_iterations: int = DEFAULT_MAX_ERROR_ITERATIONS,
) -> str:
    """Bounded XML-style summary of the thread for an agent prompt.

    Only the most recent iterations and errors are included; counts are always
    present so omitted history is explicit.
    """
    iterations = derive_iterations(thread)
    recent = iterations[-max_iteration_history:] if max_iteration_history > 0 else []
    omitted = len(iterations) - len(recent)

    if recent:
        entries = []
        for it in recent:
            gates = "\n".join(
                f'    <gate name="{g.name}" passed="{str(g.passed).lower()}">'
                f'{"" if g.passed else _failure_text(g)}</gate>'
                for g in it.gate_results
            )
            entries.append(
                f'  <iteration n="{it.iteration}" story="{it.story_id}" '
                f'agent-exit="{it.agent_exit_code}" '
                f'gates-passed="{str(it.all_gates_passed).lower()}" '
                f'committed="{str(it.committed).lower()}">\n'
                f"{gates}\n"
                "  </iteration>"
            )
        note = f"  <!-- {omitted} earlier iteration(s) omitted -->\n" if omitted > 0 else ""
        history = (
            f'<execution-history count="{len(iterations)}">\n'
            f"{note}" + "\n".join(entries) + "\n</execution-history>"
        )
    else:
        history = '<execution-history count="0" />'

    sections = [history]

    errors = [e for e in thread.events if e.type == "error"]
    recent_errors = errors[-(max_error_iterations * 2) :] if max_error_iterations > 0 else []
    if recent_errors:
        lines = "\n".join(
            f'  <error source="{e.data.source}">{e.data.message[:_FAILURE_TEXT_LIMIT]}</error>'
            for e in recent_errors
        )
        sections.append(
            f'<errors count="{len(errors)}" shown="{len(recent_errors)}">\n{lines}\n</errors>'
        )

    inputs = [e for e in thread.events if e.type == "human_input_received" and e.data.response]
    recent_inputs = inputs[-DEFAULT_MAX_OPERATOR_INPUTS:]
    if recent_inputs:
        lines = "\n".join(f"  <input>{e.data.response}</input>" for e in recent_inputs)
        sections.append(f'<operator-input count="{len(inputs)}">\n{lines}\n</operator-input>')

    return "\n\n".join(sections)
