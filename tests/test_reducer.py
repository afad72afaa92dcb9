"""Tests for the Ralph reducer."""

import pytest

from ralph.errors import ThreadCorruptedError
from ralph.models.config import MultiAgentConfig, QualityGate, RalphConfig
from ralph.models.events import make_event
from ralph.models.intents import (
    Commit,
    Complete,
    MarkPassed,
    RequestHumanInput,
    RunAgent,
    RunGate,
    WaitDelay,
)
from ralph.models.prd import Prd, Story
from ralph.models.results import GateResult
from ralph.phases import AgentRole, Phase
from ralph.reducer import APPROVAL_REASON, determine_next_step
from ralph.thread import Thread, append_event, create_thread

TEST_GATE = QualityGate(name="test", command="pytest")
LINT_GATE = QualityGate(name="lint", command="ruff check .")


def _prd(*passed):
    return Prd(
        project="Demo",
        user_stories=(
            Story(id="US-001", title="Login", priority=1, passes="US-001" in passed),
            Story(id="US-002", title="Logout", priority=2, passes="US-002" in passed),
        ),
    )


def _config(**kwargs):
    kwargs.setdefault("max_iterations", 5)
    kwargs.setdefault("quality_gates", (TEST_GATE,))
    return RalphConfig(**kwargs)


def _multi_config(**kwargs):
    kwargs.setdefault("multi_agent", MultiAgentConfig(cmd_b="codex exec --full-auto"))
    kwargs.setdefault("quality_gates", ())
    return _config(**kwargs)


def _thread(config, *events, prd=None):
    thread = create_thread(prd or _prd(), config)
    for event in events:
        thread = append_event(thread, event)
    return thread


def _fake_prompt(prd, story, iteration, config, history):
    return f"prompt {story.id} #{iteration}"


def _fake_phase_prompt(prd, story, iteration, phase, prior, config, history):
    return f"{phase.value}<-" + ",".join(p.phase.value for p in prior)


def _next(thread, config):
    return determine_next_step(
        thread, config, build_prompt=_fake_prompt, build_phase_prompt=_fake_phase_prompt
    )


def _started(n=1, story_id="US-001"):
    return make_event("iteration_started", iteration=n, story_id=story_id, story_title=story_id)


def _agent(exit_code=0, stdout="", n=1, story_id="US-001", signal=False):
    return make_event(
        "agent_completed",
        iteration=n,
        story_id=story_id,
        exit_code=exit_code,
        stdout=stdout,
        completion_signal=signal,
    )


def _gate(index, name, passed, n=1, story_id="US-001"):
    return make_event(
        "gate_completed",
        iteration=n,
        story_id=story_id,
        gate_index=index,
        result=GateResult(name=name, exit_code=0 if passed else 1, passed=passed),
    )


def _completed(n=1, story_id="US-001", passed=False):
    return make_event("iteration_completed", iteration=n, story_id=story_id, all_gates_passed=passed)


def _phase(phase, exit_code=0, stdout="", n=1, story_id="US-001"):
    return make_event(
        "phase_completed",
        iteration=n,
        story_id=story_id,
        phase=phase,
        exit_code=exit_code,
        stdout=stdout or f"{phase} output",
    )


class TestStart:
    """Tests for the first step of a run."""

    def test_empty_thread(self):
        """Test an empty thread is corrupted."""
        with pytest.raises(ThreadCorruptedError):
            determine_next_step(Thread(), _config())

    def test_first_story(self):
        """Test a fresh thread runs the highest-priority story."""
        intent = _next(_thread(_config()), _config())

        assert isinstance(intent, RunAgent)
        assert intent.story.id == "US-001"
        assert intent.iteration == 1
        assert intent.prompt == "prompt US-001 #1"
        assert intent.phase is None

    def test_already_complete(self):
        """Test a PRD with every story passed completes immediately."""
        thread = _thread(_config(), prd=_prd("US-001", "US-002"))
        assert _next(thread, _config()) == Complete(reason="all_passed")

    def test_iteration_started_runs_its_story(self):
        """Test resuming after iteration_started dispatches that story."""
        thread = _thread(_config(), _started(story_id="US-002"))
        intent = _next(thread, _config())
        assert intent.story.id == "US-002"
        assert intent.iteration == 1

    def test_iteration_started_for_passed_story(self):
        """Test an iteration on an already-passed story ends the run."""
        thread = _thread(_config(), _started(story_id="US-001"), prd=_prd("US-001", "US-002"))
        assert _next(thread, _config()) == Complete(reason="all_passed")

    def test_default_prompt_builder(self):
        """Test the built-in prompt is used when no builder is injected."""
        config = _config()
        intent = determine_next_step(_thread(config), config)
        assert "ID: US-001" in intent.prompt
        assert '<execution-history count="0" />' in intent.prompt

    def test_deterministic(self):
        """Test identical threads give equal intents."""
        config = _config()
        thread = _thread(config, _started(), _agent(), _gate(0, "test", True))
        assert _next(thread, config) == _next(thread, config)


class TestAgentCompleted:
    """Tests for single-agent completions."""

    def test_success_runs_first_gate(self):
        """Test a successful agent leads to the first gate."""
        config = _config(quality_gates=(LINT_GATE, TEST_GATE))
        thread = _thread(config, _started(), _agent())
        assert _next(thread, config) == RunGate(gate=LINT_GATE, story_id="US-001", gate_index=0)

    def test_success_without_gates_commits(self):
        """Test no gates goes straight to commit."""
        config = _config(quality_gates=())
        thread = _thread(config, _started(), _agent())
        assert _next(thread, config) == Commit(story_id="US-001", story_title="Login")

    def test_failure_waits(self):
        """Test a failing agent closes the iteration."""
        thread = _thread(_config(), _started(), _agent(exit_code=1))
        assert _next(thread, _config()) == WaitDelay()

    def test_completion_signal(self):
        """Test the completion signal ends the run."""
        thread = _thread(_config(), _started(), _agent(signal=True, exit_code=1))
        assert _next(thread, _config()) == Complete(reason="completion_signal")

    def test_request_input(self):
        """Test a request-input marker suspends the run."""
        thread = _thread(
            _config(), _started(), _agent(stdout="<request-input>Which DB?</request-input>")
        )
        intent = _next(thread, _config())

        assert isinstance(intent, RequestHumanInput)
        assert intent.reason == "Which DB?"
        assert intent.story_id == "US-001"
        assert intent.awaiting_approval is False

    def test_escalation_after_consecutive_failures(self):
        """Test the failure limit asks the operator instead of retrying."""
        config = _config(max_consecutive_failures=2)
        thread = _thread(config, _started(1), _agent(exit_code=1, n=1), _completed(1), _started(2), _agent(exit_code=1, n=2))
        intent = _next(thread, config)

        assert isinstance(intent, RequestHumanInput)
        assert intent.reason == "2 consecutive failures on story US-001"

    def test_below_failure_limit(self):
        """Test the first failure is retried normally."""
        config = _config(max_consecutive_failures=2)
        thread = _thread(config, _started(), _agent(exit_code=1))
        assert _next(thread, config) == WaitDelay()

    def test_mid_step_event_waits(self):
        """Test events with no transition yield WaitDelay."""
        thread = _thread(
            _config(),
            _started(),
            make_event("agent_dispatched", iteration=1, story_id="US-001", command=["claude"]),
        )
        assert _next(thread, _config()) == WaitDelay()


class TestGates:
    """Tests for quality gate sequencing."""

    def test_gate_failure_short_circuits(self):
        """Test a failing gate skips the remaining gates."""
        config = _config(quality_gates=(LINT_GATE, TEST_GATE))
        thread = _thread(config, _started(), _agent(), _gate(0, "lint", False))
        assert _next(thread, config) == WaitDelay()

    def test_next_gate(self):
        """Test a passing gate runs the next one."""
        config = _config(quality_gates=(LINT_GATE, TEST_GATE))
        thread = _thread(config, _started(), _agent(), _gate(0, "lint", True))
        assert _next(thread, config) == RunGate(gate=TEST_GATE, story_id="US-001", gate_index=1)

    def test_all_gates_pass_commits(self):
        """Test the last passing gate leads to commit."""
        config = _config(quality_gates=(LINT_GATE, TEST_GATE))
        thread = _thread(config, _started(), _agent(), _gate(0, "lint", True), _gate(1, "test", True))
        assert _next(thread, config) == Commit(story_id="US-001", story_title="Login")

    def test_continue_on_fail(self):
        """Test a continue-on-fail gate still blocks the story at the end."""
        lint = QualityGate(name="lint", command="ruff check .", continue_on_fail=True)
        config = _config(quality_gates=(lint, TEST_GATE))

        thread = _thread(config, _started(), _agent(), _gate(0, "lint", False))
        assert _next(thread, config) == RunGate(gate=TEST_GATE, story_id="US-001", gate_index=1)

        thread = append_event(thread, _gate(1, "test", True))
        assert _next(thread, config) == WaitDelay()

    def test_earlier_iterations_ignored(self):
        """Test failed gates from a previous iteration do not block this one."""
        config = _config()
        thread = _thread(
            config,
            _started(1),
            _agent(n=1),
            _gate(0, "test", False, n=1),
            _completed(1),
            _started(2),
            _agent(n=2),
            _gate(0, "test", True, n=2),
        )
        assert isinstance(_next(thread, config), Commit)

    def test_mark_passed_without_commit(self):
        """Test commit_on_pass=False marks the story directly."""
        config = _config(commit_on_pass=False)
        thread = _thread(config, _started(), _agent(), _gate(0, "test", True))
        assert _next(thread, config) == MarkPassed(story_id="US-001")

    def test_approval_required(self):
        """Test approval is requested before committing."""
        config = _config(require_approval_before_commit=True)
        thread = _thread(config, _started(), _agent(), _gate(0, "test", True))
        intent = _next(thread, config)

        assert isinstance(intent, RequestHumanInput)
        assert intent.reason == APPROVAL_REASON
        assert intent.awaiting_approval is True
        assert intent.story_id == "US-001"


class TestCommitAndProgress:
    """Tests for commit, story_passed and iteration boundaries."""

    def test_commit_success(self):
        """Test a successful commit marks the story passed."""
        thread = _thread(
            _config(), _started(), make_event("commit_completed", story_id="US-001", success=True)
        )
        assert _next(thread, _config()) == MarkPassed(story_id="US-001")

    def test_commit_failure(self):
        """Test a failed commit closes the iteration."""
        thread = _thread(
            _config(), _started(), make_event("commit_completed", story_id="US-001", success=False)
        )
        assert _next(thread, _config()) == WaitDelay()

    def test_story_passed_moves_on(self):
        """Test the next story starts in the next iteration."""
        thread = _thread(_config(), _started(), make_event("story_passed", iteration=1, story_id="US-001"))
        intent = _next(thread, _config())

        assert intent.story.id == "US-002"
        assert intent.iteration == 2

    def test_last_story_passed(self):
        """Test passing the final story completes the run."""
        config = _config(max_iterations=3)
        thread = _thread(
            config,
            _started(story_id="US-002"),
            make_event("story_passed", iteration=1, story_id="US-002"),
            prd=_prd("US-001"),
        )
        assert _next(thread, config) == Complete(reason="all_passed")

    def test_last_story_passed_on_last_iteration(self):
        """Test the iteration limit is reported when it coincides with the final pass."""
        config = _config(max_iterations=1)
        thread = _thread(
            config,
            _started(story_id="US-002"),
            make_event("story_passed", iteration=1, story_id="US-002"),
            prd=_prd("US-001"),
        )
        assert _next(thread, config) == Complete(reason="max_iterations")

        thread = append_event(thread, _completed(story_id="US-002", passed=True))
        assert _next(thread, config) == Complete(reason="max_iterations")

    def test_max_iterations_after_pass(self):
        """Test the iteration limit applies at story_passed."""
        config = _config(max_iterations=1)
        thread = _thread(config, _started(), make_event("story_passed", iteration=1, story_id="US-001"))
        assert _next(thread, config) == Complete(reason="max_iterations")

    def test_retry_after_failed_iteration(self):
        """Test a failed iteration retries the same story."""
        thread = _thread(_config(), _started(), _agent(exit_code=1), _completed())
        intent = _next(thread, _config())

        assert intent.story.id == "US-001"
        assert intent.iteration == 2
        assert intent.prompt == "prompt US-001 #2"

    def test_max_iterations(self):
        """Test the run stops once the limit is reached."""
        config = _config(max_iterations=2)
        thread = _thread(config, _started(1), _completed(1), _started(2), _completed(2))
        assert _next(thread, config) == Complete(reason="max_iterations")


class TestHumanInput:
    """Tests for suspending and resuming on operator input."""

    def test_request_completes_run(self):
        """Test human_input_requested stops the loop."""
        thread = _thread(_config(), _started(), make_event("human_input_requested", reason="?"))
        assert _next(thread, _config()) == Complete(reason="human_input")

    def test_thread_completed_reason(self):
        """Test a finished thread reports its recorded reason."""
        thread = _thread(_config(), make_event("thread_completed", reason="paused"))
        assert _next(thread, _config()) == Complete(reason="paused")

    def test_resume_reruns_open_story(self):
        """Test resuming continues the interrupted iteration's story."""
        thread = _thread(
            _config(),
            _started(story_id="US-002"),
            _agent(stdout="<request-input>?</request-input>", story_id="US-002"),
            make_event("human_input_requested", reason="?", story_id="US-002"),
            make_event("human_input_received", response="Use SQLite"),
        )
        intent = _next(thread, _config())

        assert isinstance(intent, RunAgent)
        assert intent.story.id == "US-002"
        assert intent.iteration == 1

    def test_resume_without_open_iteration(self):
        """Test resuming between iterations selects the next story."""
        thread = _thread(
            _config(),
            _started(),
            _completed(),
            make_event("human_input_requested", reason="?"),
            make_event("human_input_received", response="ok"),
        )
        intent = _next(thread, _config())
        assert intent.story.id == "US-001"
        assert intent.iteration == 2

    def _approval_thread(self, response):
        config = _config(require_approval_before_commit=True)
        thread = _thread(
            config,
            _started(),
            _agent(),
            _gate(0, "test", True),
            make_event(
                "human_input_requested",
                reason=APPROVAL_REASON,
                story_id="US-001",
                awaiting_approval=True,
            ),
            make_event("human_input_received", response=response),
        )
        return thread, config

    def test_approval_granted(self):
        """Test an approving response commits the story."""
        thread, config = self._approval_thread("yes")
        assert _next(thread, config) == Commit(story_id="US-001", story_title="Login")

    def test_approval_denied(self):
        """Test a denial fails the iteration."""
        thread, config = self._approval_thread("No")
        assert _next(thread, config) == WaitDelay()


class TestMultiAgent:
    """Tests for the multi-agent phase machine."""

    def test_starts_with_brainstorm(self):
        """Test the first phase is brainstorm by agent A."""
        config = _multi_config()
        intent = _next(_thread(config), config)

        assert intent.phase == Phase.BRAINSTORM
        assert intent.role == AgentRole.AGENT_A
        assert intent.agent == "claude"
        assert intent.command is None
        assert intent.prompt == "brainstorm<-"

    def test_brainstorm_then_clarify(self):
        """Test a successful brainstorm hands over to agent B."""
        config = _multi_config()
        thread = _thread(config, _started(), _phase("brainstorm"))
        intent = _next(thread, config)

        assert intent.phase == Phase.CLARIFY
        assert intent.role == AgentRole.AGENT_B
        assert intent.agent == "codex"
        assert intent.command == "codex exec --full-auto"
        assert intent.prompt == "clarify<-brainstorm"

    def test_advisory_retry_then_force_execute(self):
        """Test a failing advisory phase retries once then jumps to execute."""
        config = _multi_config()
        thread = _thread(config, _started(), _phase("brainstorm", exit_code=1))
        assert _next(thread, config).phase == Phase.BRAINSTORM

        thread = append_event(thread, _phase("brainstorm", exit_code=1))
        assert _next(thread, config).phase == Phase.EXECUTE

    def test_aar_retries_exhausted(self):
        """Test a failing AAR advances to incorporate_aar after retries."""
        config = _multi_config()
        thread = _thread(
            config,
            _started(),
            _phase("brainstorm"),
            _phase("clarify"),
            _phase("plan"),
            _phase("execute"),
            _phase("aar", exit_code=1),
            _phase("aar", exit_code=1),
        )
        assert _next(thread, config).phase == Phase.INCORPORATE_AAR

    def test_execute_failure_waits(self):
        """Test an execution phase failure closes the iteration."""
        config = _multi_config()
        thread = _thread(config, _started(), _phase("brainstorm"), _phase("clarify"), _phase("plan"), _phase("execute", exit_code=2))
        assert _next(thread, config) == WaitDelay()

    def test_full_cycle_runs_gates(self):
        """Test the last phase leads into the quality gates."""
        config = _multi_config(quality_gates=(TEST_GATE,))
        phases = ("brainstorm", "clarify", "plan", "execute", "aar", "incorporate_aar")
        thread = _thread(config, _started(), *(_phase(p) for p in phases))
        assert _next(thread, config) == RunGate(gate=TEST_GATE, story_id="US-001", gate_index=0)

    def test_full_cycle_without_gates(self):
        """Test the last phase commits when no gates are configured."""
        config = _multi_config()
        phases = ("brainstorm", "clarify", "plan", "execute", "aar", "incorporate_aar")
        thread = _thread(config, _started(), *(_phase(p) for p in phases))
        assert isinstance(_next(thread, config), Commit)

    def test_repeated_aar_requests_review(self):
        """Test a retried AAR asks the operator for review."""
        config = _multi_config()
        thread = _thread(
            config,
            _started(),
            _phase("brainstorm"),
            _phase("clarify"),
            _phase("plan"),
            _phase("execute"),
            _phase("aar", exit_code=1),
            _phase("aar"),
            _phase("incorporate_aar"),
        )
        intent = _next(thread, config)

        assert isinstance(intent, RequestHumanInput)
        assert "review recommended" in intent.reason
        assert intent.phase == Phase.INCORPORATE_AAR

    def test_phase_request_input(self):
        """Test a phase may request operator input."""
        config = _multi_config()
        thread = _thread(config, _started(), _phase("plan", stdout="<request-input>Which API?</request-input>"))
        intent = _next(thread, config)

        assert isinstance(intent, RequestHumanInput)
        assert intent.reason == "Which API?"
        assert intent.phase == Phase.PLAN

    def test_resume_after_interrupted_phase(self):
        """Test resuming continues with the phase after the interrupted one."""
        config = _multi_config()
        thread = _thread(
            config,
            _started(),
            _phase("brainstorm"),
            _phase("clarify"),
            _phase("plan", stdout="<request-input>Which API?</request-input>"),
            make_event("human_input_requested", reason="Which API?", phase="plan"),
            make_event("human_input_received", response="REST", resume_from_phase="plan"),
        )
        intent = _next(thread, config)

        assert intent.phase == Phase.EXECUTE
        assert intent.iteration == 1
        assert intent.prompt == "execute<-brainstorm,clarify,plan"

    def test_resume_without_phase_restarts(self):
        """Test a resume with no interrupted phase starts at brainstorm."""
        config = _multi_config()
        thread = _thread(
            config,
            _started(),
            _phase("brainstorm"),
            make_event("human_input_requested", reason="help"),
            make_event("human_input_received", response="ok"),
        )
        assert _next(thread, config).phase == Phase.BRAINSTORM
