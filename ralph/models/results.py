"""Result and snapshot models derived from a thread."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from ralph.models.base import RalphModel
from ralph.models.config import RalphConfig
from ralph.models.prd import Prd

STATE_SCHEMA = "ralph.state.v1"

TerminationReason = Literal[
    "all_passed",
    "max_iterations",
    "completion_signal",
    "paused",
    "human_input",
    "running",
]


class GateResult(RalphModel):
    """Outcome of a single quality gate."""

    name: str
    exit_code: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    passed: bool


class IterationResult(RalphModel):
    """One ``iteration_started`` ... ``iteration_completed`` span."""

    iteration: int
    story_id: str
    story_title: str
    agent_exit_code: int
    agent_stdout: Optional[str] = None
    gate_results: tuple[GateResult, ...] = ()
    all_gates_passed: bool
    committed: bool
    completion_signal: bool
    started_at: str
    completed_at: str


class RalphState(RalphModel):
    """Snapshot written to state.json for tooling that predates the event log."""

    schema_id: str = Field(default=STATE_SCHEMA, alias="schema")
    prd: Prd
    config: RalphConfig
    iterations: tuple[IterationResult, ...] = ()
    started_at: str
    completed_at: Optional[str] = None
    all_stories_passed: bool
    termination_reason: TerminationReason
