"""Multi-agent phase machine.

Each iteration in multi-agent mode walks a fixed sequence of phases, with
two agents alternating roles::

    brainstorm (A) -> clarify (B) -> plan (A) -> execute (B) -> aar (A) -> incorporate_aar (B)

Advisory phases may fail once and be retried in place; after a second
failure the machine jumps straight to ``execute``. Execution phases fail the
whole iteration on a non-zero exit.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class Phase(str, Enum):
    BRAINSTORM = "brainstorm"
    CLARIFY = "clarify"
    PLAN = "plan"
    EXECUTE = "execute"
    AAR = "aar"
    INCORPORATE_AAR = "incorporate_aar"


class AgentRole(str, Enum):
    AGENT_A = "agent_a"
    AGENT_B = "agent_b"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.BRAINSTORM,
    Phase.CLARIFY,
    Phase.PLAN,
    Phase.EXECUTE,
    Phase.AAR,
    Phase.INCORPORATE_AAR,
)

PHASE_ROLES: dict[Phase, AgentRole] = {
    Phase.BRAINSTORM: AgentRole.AGENT_A,
    Phase.CLARIFY: AgentRole.AGENT_B,
    Phase.PLAN: AgentRole.AGENT_A,
    Phase.EXECUTE: AgentRole.AGENT_B,
    Phase.AAR: AgentRole.AGENT_A,
    Phase.INCORPORATE_AAR: AgentRole.AGENT_B,
}

EXECUTION_PHASES = frozenset({Phase.EXECUTE, Phase.INCORPORATE_AAR})

# An advisory phase is re-run at most this many times in total before the
# machine force-advances to execute.
MAX_ADVISORY_ATTEMPTS = 2

# Per-phase character budget for prior-phase output carried into the next prompt
PHASE_OUTPUT_BUDGET = 4000


def next_phase(phase: Optional[Phase]) -> Optional[Phase]:
    """Phase that follows ``phase``, ``brainstorm`` for None, None after the last."""
    if phase is None:
        return PHASE_ORDER[0]
    idx = PHASE_ORDER.index(Phase(phase))
    if idx + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[idx + 1]


def role_for(phase: Phase) -> AgentRole:
    return PHASE_ROLES[Phase(phase)]


def is_execution_phase(phase: Phase) -> bool:
    return Phase(phase) in EXECUTION_PHASES


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(Phase(phase))


def trim_phase_output(text: str, budget: int = PHASE_OUTPUT_BUDGET) -> str:
    """Cap ``text`` to ``budget`` characters, dropping the oldest content."""
    if len(text) <= budget:
        return text
    dropped = len(text) - budget
    return f"[... {dropped} earlier characters trimmed]\n" + text[-budget:]
