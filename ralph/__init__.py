"""Ralph - an event-sourced autonomous coding-agent loop.

Ralph works through a PRD one story per iteration: it dispatches an external
agent (or a pair of agents in multi-agent mode), runs quality gates, and
commits the result. Every step is recorded in an append-only thread, so a run
can be paused, answered, or recovered after a crash.
"""

from ralph.models.config import RalphConfig, parse_ralph_config
from ralph.models.prd import Prd, Story
from ralph.orchestrator import PauseToken, RalphOrchestrator, reopen_paused, resume_with_human_input
from ralph.reducer import determine_next_step
from ralph.thread import Thread, append_event, create_thread

__version__ = "0.1.0"

__all__ = [
    "PauseToken",
    "Prd",
    "RalphConfig",
    "RalphOrchestrator",
    "Story",
    "Thread",
    "append_event",
    "create_thread",
    "determine_next_step",
    "parse_ralph_config",
    "reopen_paused",
    "resume_with_human_input",
]
