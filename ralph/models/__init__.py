"""Ralph data models."""

from ralph.models.config import (
    MultiAgentConfig,
    QualityGate,
    RalphConfig,
    default_ralph_config,
    load_config_file,
    parse_ralph_config,
)
from ralph.models.events import EVENT_TYPES, Event, EventType, make_event
from ralph.models.intents import (
    Commit,
    Complete,
    Intent,
    MarkPassed,
    RequestHumanInput,
    RunAgent,
    RunGate,
    WaitDelay,
)
from ralph.models.prd import Prd, Story, prompt_to_prd, select_next_story, validate_prd
from ralph.models.results import GateResult, IterationResult, RalphState, TerminationReason

__all__ = [
    "Commit",
    "Complete",
    "EVENT_TYPES",
    "Event",
    "EventType",
    "GateResult",
    "Intent",
    "IterationResult",
    "MarkPassed",
    "MultiAgentConfig",
    "Prd",
    "QualityGate",
    "RalphConfig",
    "RalphState",
    "RequestHumanInput",
    "RunAgent",
    "RunGate",
    "Story",
    "TerminationReason",
    "WaitDelay",
    "default_ralph_config",
    "load_config_file",
    "make_event",
    "parse_ralph_config",
    "prompt_to_prd",
    "select_next_story",
    "validate_prd",
]
