"""Intents: the reducer's decision about what the dispatch loop does next.

Intents are ephemeral. They are never persisted; only the events produced by
carrying them out are.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from ralph.models.config import QualityGate
from ralph.models.prd import Story
from ralph.models.results import TerminationReason
from ralph.phases import AgentRole, Phase


class _Intent(BaseModel):
    model_config = ConfigDict(frozen=True)


class RunAgent(_Intent):
    """Dispatch an agent for a story; phase-tagged in multi-agent mode."""

    kind: Literal["run_agent"] = "run_agent"
    story: Story
    prompt: str
    iteration: int
    phase: Optional[Phase] = None
    role: Optional[AgentRole] = None
    agent: Optional[str] = None
    command: Optional[str] = None


class RunGate(_Intent):
    kind: Literal["run_gate"] = "run_gate"
    gate: QualityGate
    story_id: str
    gate_index: int


class Commit(_Intent):
    kind: Literal["commit"] = "commit"
    story_id: str
    story_title: str


class MarkPassed(_Intent):
    kind: Literal["mark_passed"] = "mark_passed"
    story_id: str


class RequestHumanInput(_Intent):
    """Suspend the run until an operator responds.

    ``phase`` is the phase being interrupted (multi-agent mode); resuming
    continues with the phase after it. ``awaiting_approval`` marks a
    pre-commit approval request.
    """

    kind: Literal["request_human_input"] = "request_human_input"
    reason: str
    context: str = ""
    story_id: Optional[str] = None
    phase: Optional[Phase] = None
    awaiting_approval: bool = False


class Complete(_Intent):
    kind: Literal["complete"] = "complete"
    reason: TerminationReason


class WaitDelay(_Intent):
    """Nothing to run now; close a failed iteration or defer mid-step."""

    kind: Literal["wait_delay"] = "wait_delay"


Intent = Union[RunAgent, RunGate, Commit, MarkPassed, RequestHumanInput, Complete, WaitDelay]

# Intents after which the dispatch loop stops
TERMINAL_INTENTS = (Complete, RequestHumanInput)
