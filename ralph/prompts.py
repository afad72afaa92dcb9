"""Prompt builders for Ralph agents.

Two builders are provided: :func:`build_prompt` for the single-agent loop and
:func:`build_phase_prompt` for one phase of the multi-agent workflow. Both are
pure string functions; the reducer injects them so prompt wording never leaks
into the transition logic.
"""

from __future__ import annotations

from typing import NamedTuple, Sequence

from ralph.models.config import RalphConfig
from ralph.models.prd import Prd, Story
from ralph.phases import PHASE_ORDER, AgentRole, Phase, is_execution_phase, role_for, trim_phase_output
from ralph.thread import COMPLETION_SIGNAL


class PriorPhaseOutput(NamedTuple):
    """Stdout of a phase that already ran in the current iteration."""

    phase: Phase
    output: str


PHASE_INSTRUCTIONS: dict[Phase, str] = {
    Phase.BRAINSTORM: (
        "Explore how the current story could be implemented. List candidate approaches, "
        "the parts of the codebase they touch, and the risks or open questions you see.\n"
        "Do NOT modify any files in this phase."
    ),
    Phase.CLARIFY: (
        "Review the brainstorm above. Answer its open questions where the codebase allows, "
        "challenge weak assumptions, and state which approach you recommend and why.\n"
        "Do NOT modify any files in this phase."
    ),
    Phase.PLAN: (
        "Turn the discussion above into a concrete, ordered implementation plan: files to "
        "change, tests to add, and how each acceptance criterion will be verified.\n"
        "Do NOT modify any files in this phase."
    ),
    Phase.EXECUTE: (
        "Implement the story by following the plan above. Make minimal, focused changes "
        "and follow existing code patterns."
    ),
    Phase.AAR: (
        "Perform an after-action review of the execution above. Compare the result with "
        "the plan and the acceptance criteria, and list every defect, gap or follow-up "
        "you find. If the work is complete, say so explicitly.\n"
        "Do NOT modify any files in this phase."
    ),
    Phase.INCORPORATE_AAR: (
        "Address the findings of the after-action review above. Fix each defect it lists; "
        "if a finding does not apply, explain why in your output."
    ),
}

ROLE_LABELS: dict[AgentRole, str] = {
    AgentRole.AGENT_A: "Agent A (thinker: explores, plans and reviews)",
    AgentRole.AGENT_B: "Agent B (builder: questions the plan and writes the code)",
}


class _TemplateVars(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _render_template(template: str, prd: Prd, story: Story, iteration: int, config: RalphConfig) -> str:
    values = _TemplateVars(
        project=prd.project,
        story_id=story.id,
        story_title=story.title,
        story_description=story.description,
        iteration=iteration,
        max_iterations=config.max_iterations,
    )
    try:
        return template.format_map(values)
    except (ValueError, IndexError, AttributeError):
        # Stray braces: the template is plain text
        return template


def _story_section(story: Story) -> str:
    criteria = "\n".join(f"  {i}. {c}" for i, c in enumerate(story.acceptance_criteria, 1))
    lines = [
        "== Current Story ==",
        f"ID: {story.id}",
        f"Title: {story.title}",
        f"Description: {story.description}",
        "Acceptance Criteria:",
        criteria or "  (none listed)",
    ]
    if story.notes:
        lines.append(f"\nNotes: {story.notes}")
    return "\n".join(lines)


def _overview_section(prd: Prd) -> str:
    total = len(prd.user_stories)
    passed = sum(1 for s in prd.user_stories if s.passes)
    remaining = "\n".join(
        f"  - [{s.id}] (priority {s.priority}) {s.title}"
        for s in sorted((s for s in prd.user_stories if not s.passes), key=lambda s: s.priority)
    )
    return (
        "== PRD Overview ==\n"
        f"Stories completed: {passed}/{total}\n"
        "Remaining stories (by priority):\n"
        f"{remaining}"
    )


def _gate_list(config: RalphConfig) -> str:
    if not config.quality_gates:
        return "  (none configured)"
    return "\n".join(f"  - {g.name}: {g.command}" for g in config.quality_gates)


def _history_section(history: str) -> str:
    return "== Progress from Previous Iterations ==\n" + (history.strip() or "No previous iterations.")


def build_prompt(
    prd: Prd,
    story: Story,
    iteration: int,
    config: RalphConfig,
    history: str = "",
) -> str:
    """Build the prompt for a single-agent iteration.

    Args:
        prd: Current PRD (with passed stories applied)
        story: Story to implement this iteration
        iteration: 1-based iteration number
        config: Run configuration
        history: Serialized execution history of the thread

    Returns:
        The full prompt text. A configured ``prompt_template`` replaces the
        built-in prompt, with ``{story_id}``-style placeholders filled in.
    """
    if config.prompt_template:
        return _render_template(config.prompt_template, prd, story, iteration, config)

    return f"""You are an autonomous coding agent working on: {prd.project}
Project description: {prd.description}

{_story_section(story)}

{_overview_section(prd)}

{_history_section(history)}

== Instructions ==
1. Implement ONLY the current story ({story.id}).
2. Make minimal, focused changes. Follow existing code patterns.
3. After implementation, the following quality gates will run automatically:
{_gate_list(config)}
4. Do NOT commit. The system handles commits after quality gates pass.
5. If you discover reusable patterns or gotchas, note them clearly in your output.
6. If you are blocked on a decision only a human can make, output <request-input>your question</request-input>.
7. If ALL project stories are complete, output exactly: {COMPLETION_SIGNAL}

This is iteration {iteration} of {config.max_iterations}."""


def build_phase_prompt(
    prd: Prd,
    story: Story,
    iteration: int,
    phase: Phase,
    prior_outputs: Sequence[PriorPhaseOutput],
    config: RalphConfig,
    history: str = "",
) -> str:
    """Build the prompt for one phase of a multi-agent iteration.

    Each prior phase's output is capped to the phase output budget, keeping
    its most recent text.
    """
    phase = Phase(phase)
    role = role_for(phase)
    position = PHASE_ORDER.index(phase) + 1

    sections = [
        f"You are {ROLE_LABELS[role]} in a two-agent workflow on: {prd.project}\n"
        f"Project description: {prd.description}\n"
        f"Current phase: {phase.value} ({position} of {len(PHASE_ORDER)})",
        _story_section(story),
        _overview_section(prd),
        _history_section(history),
    ]

    if prior_outputs:
        blocks = [
            f'<phase name="{Phase(p.phase).value}" role="{role_for(p.phase).value}">\n'
            f"{trim_phase_output(p.output)}\n</phase>"
            for p in prior_outputs
        ]
        sections.append("== Earlier Phases This Iteration ==\n" + "\n".join(blocks))

    instructions = [PHASE_INSTRUCTIONS[phase]]
    if is_execution_phase(phase):
        instructions.append(
            "After this phase, the following quality gates will run automatically:\n"
            f"{_gate_list(config)}\n"
            "Do NOT commit. The system handles commits after quality gates pass."
        )
    instructions.append(
        "If you are blocked on a decision only a human can make, output "
        "<request-input>your question</request-input>."
    )
    sections.append("== Instructions ==\n" + "\n\n".join(instructions))
    sections.append(f"This is iteration {iteration} of {config.max_iterations}.")

    return "\n\n".join(sections)
