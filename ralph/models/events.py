"""Typed events that make up a Ralph thread.

Every event is ``{type, timestamp, data}`` on the wire. In Python each event
kind is its own class with a typed payload, and :data:`Event` is a
discriminated union keyed on ``type``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from ralph.models.base import RalphModel
from ralph.models.config import RalphConfig
from ralph.models.prd import Prd
from ralph.models.results import GateResult, TerminationReason
from ralph.phases import AgentRole, Phase

EventType = Literal[
    "thread_started",
    "iteration_started",
    "agent_dispatched",
    "agent_completed",
    "phase_started",
    "phase_completed",
    "gate_started",
    "gate_completed",
    "story_passed",
    "commit_completed",
    "iteration_completed",
    "error",
    "human_input_requested",
    "human_input_received",
    "thread_completed",
]


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class ThreadStartedData(RalphModel):
    prd: Prd
    config: RalphConfig
    meta: dict[str, Any] = Field(default_factory=dict)


class IterationStartedData(RalphModel):
    iteration: int
    story_id: str
    story_title: str = ""


class AgentDispatchedData(RalphModel):
    iteration: int
    story_id: str
    command: tuple[str, ...] = ()


class AgentCompletedData(RalphModel):
    iteration: int = 0
    story_id: str = ""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    completion_signal: bool = False


class PhaseStartedData(RalphModel):
    iteration: int = 0
    story_id: str = ""
    phase: Phase
    role: Optional[AgentRole] = None
    agent: Optional[str] = None


class PhaseCompletedData(RalphModel):
    iteration: int = 0
    story_id: str = ""
    phase: Phase
    role: Optional[AgentRole] = None
    agent: Optional[str] = None
    exit_code: int
    stdout: str = ""
    completion_signal: bool = False


class GateStartedData(RalphModel):
    iteration: int = 0
    story_id: str = ""
    gate_index: int
    name: str


class GateCompletedData(RalphModel):
    iteration: int = 0
    story_id: str = ""
    gate_index: int
    result: GateResult


class StoryPassedData(RalphModel):
    iteration: int = 0
    story_id: str


class CommitCompletedData(RalphModel):
    iteration: int = 0
    story_id: str
    success: bool = True
    message: str = ""


class IterationCompletedData(RalphModel):
    iteration: int
    story_id: str
    all_gates_passed: bool = False


class ErrorData(RalphModel):
    source: str = "unknown"
    message: str = ""
    recoverable: bool = True
    iteration: Optional[int] = None
    story_id: Optional[str] = None


class HumanInputRequestedData(RalphModel):
    reason: str
    context: str = ""
    iteration: Optional[int] = None
    story_id: Optional[str] = None
    phase: Optional[Phase] = None
    awaiting_approval: bool = False


class HumanInputReceivedData(RalphModel):
    response: str = ""
    resume_from_phase: Optional[Phase] = None


class ThreadCompletedData(RalphModel):
    reason: TerminationReason = "all_passed"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class _BaseEvent(RalphModel):
    timestamp: str = Field(default_factory=iso_now)


class ThreadStarted(_BaseEvent):
    type: Literal["thread_started"] = "thread_started"
    data: ThreadStartedData


class IterationStarted(_BaseEvent):
    type: Literal["iteration_started"] = "iteration_started"
    data: IterationStartedData


class AgentDispatched(_BaseEvent):
    type: Literal["agent_dispatched"] = "agent_dispatched"
    data: AgentDispatchedData


class AgentCompleted(_BaseEvent):
    type: Literal["agent_completed"] = "agent_completed"
    data: AgentCompletedData


class PhaseStarted(_BaseEvent):
    type: Literal["phase_started"] = "phase_started"
    data: PhaseStartedData


class PhaseCompleted(_BaseEvent):
    type: Literal["phase_completed"] = "phase_completed"
    data: PhaseCompletedData


class GateStarted(_BaseEvent):
    type: Literal["gate_started"] = "gate_started"
    data: GateStartedData


class GateCompleted(_BaseEvent):
    type: Literal["gate_completed"] = "gate_completed"
    data: GateCompletedData


class StoryPassed(_BaseEvent):
    type: Literal["story_passed"] = "story_passed"
    data: StoryPassedData


class CommitCompleted(_BaseEvent):
    type: Literal["commit_completed"] = "commit_completed"
    data: CommitCompletedData


class IterationCompleted(_BaseEvent):
    type: Literal["iteration_completed"] = "iteration_completed"
    data: IterationCompletedData


class ErrorEvent(_BaseEvent):
    type: Literal["error"] = "error"
    data: ErrorData


class HumanInputRequested(_BaseEvent):
    type: Literal["human_input_requested"] = "human_input_requested"
    data: HumanInputRequestedData


class HumanInputReceived(_BaseEvent):
    type: Literal["human_input_received"] = "human_input_received"
    data: HumanInputReceivedData


class ThreadCompleted(_BaseEvent):
    type: Literal["thread_completed"] = "thread_completed"
    data: ThreadCompletedData


Event = Annotated[
    Union[
        ThreadStarted,
        IterationStarted,
        AgentDispatched,
        AgentCompleted,
        PhaseStarted,
        PhaseCompleted,
        GateStarted,
        GateCompleted,
        StoryPassed,
        CommitCompleted,
        IterationCompleted,
        ErrorEvent,
        HumanInputRequested,
        HumanInputReceived,
        ThreadCompleted,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)

EVENT_CLASSES: dict[str, type[_BaseEvent]] = {
    cls.model_fields["type"].default: cls
    for cls in (
        ThreadStarted,
        IterationStarted,
        AgentDispatched,
        AgentCompleted,
        PhaseStarted,
        PhaseCompleted,
        GateStarted,
        GateCompleted,
        StoryPassed,
        CommitCompleted,
        IterationCompleted,
        ErrorEvent,
        HumanInputRequested,
        HumanInputReceived,
        ThreadCompleted,
    )
}

EVENT_TYPES: tuple[str, ...] = tuple(EVENT_CLASSES)


def make_event(event_type: str, **data: Any) -> Event:
    """Build a typed event from its type name and payload fields.

    Payload fields may be given in snake_case or camelCase.

    Raises:
        ValueError: For an unknown event type
    """
    try:
        cls = EVENT_CLASSES[event_type]
    except KeyError:
        raise ValueError(f"Unknown event type: {event_type}") from None
    return cls.model_validate({"type": event_type, "data": data})
