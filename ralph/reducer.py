"""The Ralph reducer: ``(thread, config) -> intent``.

:func:`determine_next_step` is a pure state-transition table keyed on the
type of the most recent event. It never performs I/O and never re-derives the
whole run from scratch; the dispatch loop carries out the returned intent and
appends the resulting events.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from ralph.errors import ThreadCorruptedError
from ralph.models.config import RalphConfig
from ralph.models.events import Event
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
from ralph.models.prd import Prd, Story, select_next_story
from ralph.phases import (
    MAX_ADVISORY_ATTEMPTS,
    AgentRole,
    Phase,
    is_execution_phase,
    next_phase,
    phase_index,
    role_for,
)
from ralph.projections import current_prd, serialize_for_prompt
from ralph.prompts import PriorPhaseOutput
from ralph.prompts import build_phase_prompt as default_build_phase_prompt
from ralph.prompts import build_prompt as default_build_prompt
from ralph.thread import (
    Thread,
    completed_iteration_count,
    consecutive_failures,
    current_iteration_number,
    current_iteration_phases,
    detect_human_input_request,
    last_event,
    last_event_of_type,
    open_iteration,
    phase_completion_count,
)

PromptBuilder = Callable[[Prd, Story, int, RalphConfig, str], str]
PhasePromptBuilder = Callable[
    [Prd, Story, int, Phase, Sequence[PriorPhaseOutput], RalphConfig, str], str
]

APPROVAL_REASON = "Approval required before commit"

# Operator responses that decline a pre-commit approval request
_DENIALS = frozenset({"n", "no", "deny", "denied", "reject", "rejected"})


def determine_next_step(
    thread: Thread,
    config: RalphConfig,
    build_prompt: Optional[PromptBuilder] = None,
    build_phase_prompt: Optional[PhasePromptBuilder] = None,
) -> Intent:
    """Decide what the dispatch loop should do next.

    Args:
        thread: The run's event log
        config: Run configuration
        build_prompt: Single-agent prompt builder (defaults to ralph.prompts)
        build_phase_prompt: Multi-agent phase prompt builder

    Returns:
        The next intent. Identical threads always yield equal intents.

    Raises:
        ThreadCorruptedError: If the thread has no events or no thread_started
    """
    last = last_event(thread)
    if last is None:
        raise ThreadCorruptedError("Thread has no events")
    step = _Step(
        thread,
        config,
        build_prompt or default_build_prompt,
        build_phase_prompt or default_build_phase_prompt,
    )
    handler = getattr(step, f"on_{last.type}", None)
    if handler is None:
        return WaitDelay()
    return handler(last)


class _Step:
    """One reducer evaluation; holds the inputs shared by the handlers."""

    def __init__(
        self,
        thread: Thread,
        config: RalphConfig,
        build_prompt: PromptBuilder,
        build_phase_prompt: PhasePromptBuilder,
    ):
        self.thread = thread
        self.config = config
        self.build_prompt = build_prompt
        self.build_phase_prompt = build_phase_prompt
        self.prd = current_prd(thread)

    # -- helpers ------------------------------------------------------------

    @property
    def multi_agent(self) -> bool:
        return self.config.is_multi_agent

    def _history(self) -> str:
        return serialize_for_prompt(self.thread)

    def _story(self, story_id: str) -> Optional[Story]:
        return self.prd.get_story_by_id(story_id)

    def _start_story(self, story: Story, iteration: int) -> Intent:
        if self.multi_agent:
            return self._phase_intent(story, iteration, Phase.BRAINSTORM)
        prompt = self.build_prompt(self.prd, story, iteration, self.config, self._history())
        return RunAgent(story=story, prompt=prompt, iteration=iteration)

    def _agent_for(self, role: AgentRole) -> tuple[str, Optional[str]]:
        mc = self.config.multi_agent
        if role == AgentRole.AGENT_A:
            return mc.agent_a, mc.cmd_a
        return mc.agent_b, mc.cmd_b

    def _prior_outputs(self, phase: Phase) -> list[PriorPhaseOutput]:
        target = phase_index(phase)
        return [
            PriorPhaseOutput(e.data.phase, e.data.stdout)
            for e in current_iteration_phases(self.thread)
            if phase_index(e.data.phase) < target
        ]

    def _phase_intent(self, story: Story, iteration: int, phase: Phase) -> RunAgent:
        role = role_for(phase)
        agent, command = self._agent_for(role)
        prompt = self.build_phase_prompt(
            self.prd,
            story,
            iteration,
            phase,
            self._prior_outputs(phase),
            self.config,
            self._history(),
        )
        return RunAgent(
            story=story,
            prompt=prompt,
            iteration=iteration,
            phase=phase,
            role=role,
            agent=agent,
            command=command,
        )

    def _after_gates(self, story_id: str, context: str, phase: Optional[Phase] = None) -> Intent:
        """Approval, commit or mark_passed once a story's checks are green."""
        if self.config.require_approval_before_commit:
            return RequestHumanInput(
                reason=APPROVAL_REASON,
                context=context,
                story_id=story_id,
                phase=phase,
                awaiting_approval=True,
            )
        return self._commit_or_mark(story_id)

    def _commit_or_mark(self, story_id: str) -> Intent:
        if self.config.commit_on_pass:
            story = self._story(story_id)
            return Commit(story_id=story_id, story_title=story.title if story else story_id)
        return MarkPassed(story_id=story_id)

    def _after_agent_success(self, story_id: str, context: str, phase: Optional[Phase] = None) -> Intent:
        if self.config.quality_gates:
            return RunGate(gate=self.config.quality_gates[0], story_id=story_id, gate_index=0)
        return self._after_gates(story_id, context, phase)

    def _gates_since_agent(self) -> list[Event]:
        """gate_completed events after the latest agent or phase completion."""
        events = self.thread.events
        start = 0
        for idx in range(len(events) - 1, -1, -1):
            if events[idx].type in ("agent_completed", "phase_completed", "iteration_started"):
                start = idx + 1
                break
        return [e for e in events[start:] if e.type == "gate_completed"]

    def _next_iteration(self, count_open: bool) -> Intent:
        completed = completed_iteration_count(self.thread)
        if count_open and open_iteration(self.thread) is not None:
            completed += 1
        if completed >= self.config.max_iterations:
            return Complete(reason="max_iterations")
        if self.prd.is_complete():
            return Complete(reason="all_passed")
        story = select_next_story(self.prd)
        if story is None:
            return Complete(reason="all_passed")
        return self._start_story(story, completed + 1)

    # -- handlers -----------------------------------------------------------

    def on_thread_started(self, event) -> Intent:
        story = select_next_story(self.prd)
        if story is None:
            return Complete(reason="all_passed")
        return self._start_story(story, current_iteration_number(self.thread))

    def on_iteration_started(self, event) -> Intent:
        story = self._story(event.data.story_id)
        if story is None or story.passes:
            return Complete(reason="all_passed")
        return self._start_story(story, event.data.iteration)

    def on_agent_completed(self, event) -> Intent:
        data = event.data
        if data.completion_signal:
            return Complete(reason="completion_signal")

        request = detect_human_input_request(data.stdout)
        if request is not None:
            return RequestHumanInput(
                reason=request,
                context=f"Agent requested input during iteration {data.iteration}",
                story_id=data.story_id,
            )

        if data.exit_code != 0:
            failures = consecutive_failures(self.thread, data.story_id) + 1
            limit = self.config.max_consecutive_failures
            if limit and failures >= limit:
                return RequestHumanInput(
                    reason=f"{failures} consecutive failures on story {data.story_id}",
                    context=f"Agent exited with code {data.exit_code}",
                    story_id=data.story_id,
                )
            return WaitDelay()

        return self._after_agent_success(
            data.story_id, f"All quality checks passed for story {data.story_id}"
        )

    def on_phase_completed(self, event) -> Intent:
        data = event.data
        phase = Phase(data.phase)
        story = self._story(data.story_id)
        if story is None:
            return Complete(reason="all_passed")

        request = detect_human_input_request(data.stdout)
        if request is not None:
            return RequestHumanInput(
                reason=request,
                context=f"Agent requested input during phase {phase.value} of iteration {data.iteration}",
                story_id=data.story_id,
                phase=phase,
            )

        if data.exit_code != 0:
            if is_execution_phase(phase):
                return WaitDelay()
            if phase_completion_count(self.thread, phase) < MAX_ADVISORY_ATTEMPTS:
                return self._phase_intent(story, data.iteration, phase)
            # Retries exhausted: move on with whatever context exists
            if phase_index(phase) < phase_index(Phase.EXECUTE):
                return self._phase_intent(story, data.iteration, Phase.EXECUTE)
            phase_after = next_phase(phase)
            if phase_after is None:
                return WaitDelay()
            return self._phase_intent(story, data.iteration, phase_after)

        if phase == Phase.INCORPORATE_AAR:
            aar_runs = phase_completion_count(self.thread, Phase.AAR)
            if aar_runs > 1:
                return RequestHumanInput(
                    reason=f"AAR retry cycle completed for story {data.story_id} - review recommended",
                    context=f"AAR ran {aar_runs} times. Human judgment requested.",
                    story_id=data.story_id,
                    phase=phase,
                )

        phase_after = next_phase(phase)
        if phase_after is None:
            return self._after_agent_success(
                data.story_id,
                f"All phases and quality checks passed for story {data.story_id}",
                phase,
            )
        return self._phase_intent(story, data.iteration, phase_after)

    def on_gate_completed(self, event) -> Intent:
        data = event.data
        gates = self.config.quality_gates
        if not data.result.passed:
            gate = gates[data.gate_index] if data.gate_index < len(gates) else None
            if gate is None or gate.name != data.result.name:
                gate = next((g for g in gates if g.name == data.result.name), None)
            if gate is None or not gate.continue_on_fail:
                return WaitDelay()

        next_index = data.gate_index + 1
        if next_index < len(gates):
            return RunGate(gate=gates[next_index], story_id=data.story_id, gate_index=next_index)

        if not all(e.data.result.passed for e in self._gates_since_agent()):
            return WaitDelay()

        phase = None
        if self.multi_agent:
            phases = current_iteration_phases(self.thread)
            phase = phases[-1].data.phase if phases else None
        return self._after_gates(
            data.story_id, f"All quality gates passed for story {data.story_id}", phase
        )

    def on_commit_completed(self, event) -> Intent:
        if not event.data.success:
            return WaitDelay()
        return MarkPassed(story_id=event.data.story_id)

    def on_story_passed(self, event) -> Intent:
        return self._next_iteration(count_open=True)

    def on_iteration_completed(self, event) -> Intent:
        return self._next_iteration(count_open=False)

    def on_human_input_requested(self, event) -> Intent:
        return Complete(reason="human_input")

    def on_human_input_received(self, event) -> Intent:
        request = last_event_of_type(self.thread, "human_input_requested")
        opened = open_iteration(self.thread)

        if request is not None and request.data.awaiting_approval and opened is not None:
            story_id = request.data.story_id or opened.data.story_id
            if event.data.response.strip().lower() in _DENIALS:
                return WaitDelay()
            return self._commit_or_mark(story_id)

        story = self._story(opened.data.story_id) if opened is not None else None
        if story is None or story.passes:
            story = select_next_story(self.prd)
        if story is None:
            return Complete(reason="all_passed")
        iteration = current_iteration_number(self.thread)

        if not self.multi_agent:
            prompt = self.build_prompt(self.prd, story, iteration, self.config, self._history())
            return RunAgent(story=story, prompt=prompt, iteration=iteration)

        interrupted = event.data.resume_from_phase
        if interrupted is None or opened is None:
            return self._phase_intent(story, iteration, Phase.BRAINSTORM)
        resume_phase = next_phase(interrupted)
        if resume_phase is None:
            return self._after_agent_success(
                story.id, f"All phases passed for story {story.id}", Phase(interrupted)
            )
        return self._phase_intent(story, iteration, resume_phase)

    def on_thread_completed(self, event) -> Intent:
        return Complete(reason=event.data.reason)
