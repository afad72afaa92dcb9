"""The Ralph thread: an append-only event log.

The thread is the single source of truth for a run. All other state (the
current PRD, iteration results, progress text) is derived from its events.
Appending is the only mutation, and :func:`append_event` returns a new
thread rather than touching the one it was given.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import Field

from ralph.models.base import RalphModel
from ralph.models.config import RalphConfig
from ralph.models.events import (
    Event,
    IterationStarted,
    PhaseCompleted,
    ThreadStarted,
    ThreadStartedData,
)
from ralph.models.prd import Prd
from ralph.phases import Phase, next_phase

THREAD_SCHEMA = "ralph.thread.v1"

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"
_REQUEST_INPUT_RE = re.compile(r"<request-input>(.*?)</request-input>", re.DOTALL)

__all__ = [
    "COMPLETION_SIGNAL",
    "THREAD_SCHEMA",
    "Thread",
    "append_event",
    "completed_iteration_count",
    "consecutive_failures",
    "create_thread",
    "current_iteration_number",
    "current_iteration_phases",
    "detect_completion_signal",
    "detect_human_input_request",
    "is_terminal",
    "last_completed_phase",
    "last_event",
    "last_event_of_type",
    "next_phase",
    "open_iteration",
    "phase_completion_count",
    "thread_started_event",
]


class Thread(RalphModel):
    """``{schema, events}``; events are totally ordered by append sequence."""

    schema_id: str = Field(default=THREAD_SCHEMA, alias="schema")
    events: tuple[Event, ...] = ()


def create_thread(
    prd: Prd, config: RalphConfig, meta: Optional[dict[str, Any]] = None
) -> Thread:
    """Start a thread seeded with a single ``thread_started`` event."""
    started = ThreadStarted(data=ThreadStartedData(prd=prd, config=config, meta=dict(meta or {})))
    return Thread(events=(started,))


def append_event(thread: Thread, event: Event) -> Thread:
    """Return a new thread with ``event`` appended; ``thread`` is unchanged."""
    return Thread(schema_id=thread.schema_id, events=thread.events + (event,))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def last_event(thread: Thread) -> Optional[Event]:
    return thread.events[-1] if thread.events else None


def last_event_of_type(thread: Thread, event_type: str) -> Optional[Event]:
    for event in reversed(thread.events):
        if event.type == event_type:
            return event
    return None


def is_terminal(thread: Thread) -> bool:
    last = last_event(thread)
    return last is not None and last.type == "thread_completed"


def completed_iteration_count(thread: Thread) -> int:
    return sum(1 for e in thread.events if e.type == "iteration_completed")


def _last_iteration_start_index(thread: Thread) -> Optional[int]:
    for idx in range(len(thread.events) - 1, -1, -1):
        if thread.events[idx].type == "iteration_started":
            return idx
    return None


def open_iteration(thread: Thread) -> Optional[IterationStarted]:
    """The last ``iteration_started`` if no matching completion follows it."""
    idx = _last_iteration_start_index(thread)
    if idx is None:
        return None
    started = thread.events[idx]
    for event in thread.events[idx + 1 :]:
        if event.type == "iteration_completed" and event.data.iteration == started.data.iteration:
            return None
    return started


def current_iteration_number(thread: Thread) -> int:
    """The open iteration's number, or the next untouched one."""
    idx = _last_iteration_start_index(thread)
    if idx is None:
        return completed_iteration_count(thread) + 1
    started = thread.events[idx]
    if open_iteration(thread) is not None:
        return started.data.iteration
    return started.data.iteration + 1


def consecutive_failures(thread: Thread, story_id: str) -> int:
    """Count the trailing run of failed iterations on ``story_id``.

    Walks ``iteration_completed`` events backwards; a success or an iteration
    on a different story ends the streak.
    """
    count = 0
    for event in reversed(thread.events):
        if event.type != "iteration_completed":
            continue
        if event.data.story_id == story_id and not event.data.all_gates_passed:
            count += 1
        else:
            break
    return count


def detect_completion_signal(output: str) -> bool:
    return COMPLETION_SIGNAL in (output or "")


def detect_human_input_request(output: str) -> Optional[str]:
    """Return the content of a ``<request-input>`` marker, or None."""
    match = _REQUEST_INPUT_RE.search(output or "")
    return match.group(1).strip() if match else None


# ---------------------------------------------------------------------------
# Multi-agent queries
# ---------------------------------------------------------------------------


def current_iteration_phases(thread: Thread) -> list[PhaseCompleted]:
    """``phase_completed`` events of the latest iteration, in order."""
    idx = _last_iteration_start_index(thread)
    start = 0 if idx is None else idx + 1
    return [e for e in thread.events[start:] if e.type == "phase_completed"]


def last_completed_phase(thread: Thread) -> Optional[Phase]:
    phases = current_iteration_phases(thread)
    return phases[-1].data.phase if phases else None


def phase_completion_count(thread: Thread, phase: Phase) -> int:
    return sum(1 for e in current_iteration_phases(thread) if e.data.phase == phase)


def thread_started_event(thread: Thread) -> Optional[ThreadStarted]:
    for event in thread.events:
        if event.type == "thread_started":
            return event
    return None
