"""RalphOrchestrator - the dispatch loop of the Ralph agent loop.

Each turn the loop asks the reducer for the next intent, performs exactly one
side effect for it, appends the resulting events and persists the thread
before asking again. The thread on disk is therefore always a complete audit
trail, and a crashed run resumes from its last persisted event.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from rich.console import Console

from ralph.agents.runner import AgentRunner, SubprocessAgentRunner, default_agent_command
from ralph.errors import AgentInvocationError, ConfigError, ResumeError, ThreadCorruptedError
from ralph.git import Committer, GitCommitter, commit_message
from ralph.models.config import RalphConfig, default_ralph_config
from ralph.models.events import (
    AgentCompleted,
    AgentCompletedData,
    AgentDispatched,
    AgentDispatchedData,
    CommitCompleted,
    CommitCompletedData,
    ErrorData,
    ErrorEvent,
    Event,
    GateCompleted,
    GateCompletedData,
    GateStarted,
    GateStartedData,
    HumanInputReceived,
    HumanInputReceivedData,
    HumanInputRequested,
    HumanInputRequestedData,
    IterationCompleted,
    IterationCompletedData,
    IterationStarted,
    IterationStartedData,
    PhaseCompleted,
    PhaseCompletedData,
    PhaseStarted,
    PhaseStartedData,
    StoryPassed,
    StoryPassedData,
    ThreadCompleted,
    ThreadCompletedData,
)
from ralph.models.intents import (
    TERMINAL_INTENTS,
    Commit,
    Complete,
    MarkPassed,
    RequestHumanInput,
    RunAgent,
    RunGate,
    WaitDelay,
)
from ralph.models.prd import Prd
from ralph.models.results import GateResult, RalphState
from ralph.paths import RalphPaths
from ralph.persistence import RalphStore
from ralph.projections import current_config, current_prd, derive_iterations, progress_block, thread_to_state
from ralph.quality.gates import GateRunner, ShellGateRunner, run_gate
from ralph.reducer import determine_next_step
from ralph.thread import (
    Thread,
    append_event,
    create_thread,
    detect_completion_signal,
    is_terminal,
    last_event,
    open_iteration,
)

logger = logging.getLogger(__name__)


class PauseToken:
    """Cooperative pause request shared between a signal handler and the loop.

    The loop samples the token only at iteration boundaries, so setting it
    never interrupts an agent, a gate or a commit.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def request(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return early (True) once set."""
        return self._event.wait(timeout)


def resume_with_human_input(thread: Thread, response: str) -> Thread:
    """Answer a pending human-input request.

    The trailing ``thread_completed`` is dropped and replaced with
    ``human_input_received``, recording the interrupted phase so the reducer
    continues from there.

    Raises:
        ResumeError: If the thread is not waiting for human input
    """
    events = thread.events
    if (
        len(events) < 2
        or events[-1].type != "thread_completed"
        or events[-2].type != "human_input_requested"
    ):
        raise ResumeError("Thread is not waiting for human input")
    requested = events[-2]
    reopened = Thread(schema_id=thread.schema_id, events=events[:-1])
    received = HumanInputReceived(
        data=HumanInputReceivedData(response=response, resume_from_phase=requested.data.phase)
    )
    return append_event(reopened, received)


def reopen_paused(thread: Thread) -> Thread:
    """Drop a trailing ``thread_completed{paused}`` so the run can continue.

    Raises:
        ResumeError: If the thread was not paused
    """
    last = last_event(thread)
    if last is None or last.type != "thread_completed" or last.data.reason != "paused":
        raise ResumeError("Thread is not paused")
    return Thread(schema_id=thread.schema_id, events=thread.events[:-1])


class RalphOrchestrator:
    """Main loop controller for a Ralph run.

    A run is driven entirely by its thread: the orchestrator holds no state
    of its own beyond the ports it talks to. Handing it a persisted thread
    continues that run; handing it a PRD starts a new one.
    """

    def __init__(
        self,
        working_dir: Path,
        thread_or_prd: Union[Thread, Prd],
        config: Optional[RalphConfig] = None,
        runner: Optional[AgentRunner] = None,
        gate_runner: Optional[GateRunner] = None,
        committer: Optional[Committer] = None,
        store: Optional[RalphStore] = None,
        console: Optional[Console] = None,
        agent: str = "claude",
        agent_command: Optional[Sequence[str]] = None,
        capabilities: Optional[Mapping[str, Any]] = None,
        meta: Optional[dict[str, Any]] = None,
        on_event: Optional[Callable[[Event], None]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            working_dir: Project working directory agents and gates run in
            thread_or_prd: Existing thread to continue, or a PRD for a new run
            config: Configuration for a new run; an existing thread always
                keeps the config it was started with
            runner: Agent execution port
            gate_runner: Quality gate execution port
            committer: Commit port
            store: Persistence for the state directory
            console: Rich console for operator output
            agent: Agent identity used in single-agent mode
            agent_command: Explicit single-agent command line
            capabilities: Passed through to the agent runner unchanged
            meta: Free-form metadata recorded on a new thread
            on_event: Callback after each appended event
        """
        self.working_dir = working_dir
        if isinstance(thread_or_prd, Thread):
            self.thread = thread_or_prd
        else:
            self.thread = create_thread(thread_or_prd, config or default_ralph_config(), meta)
        self.config = current_config(self.thread)

        self.console = console or Console()
        self.runner = runner or SubprocessAgentRunner(console=self.console)
        self.gate_runner = gate_runner or ShellGateRunner()
        self.committer = committer or GitCommitter()
        self.store = store or RalphStore(RalphPaths(working_dir))
        self.agent = agent
        self.agent_command = list(agent_command) if agent_command else None
        self.capabilities = dict(capabilities or {})
        self.on_event = on_event

    # -- event plumbing -----------------------------------------------------

    def _append(self, event: Event) -> None:
        self.thread = append_event(self.thread, event)
        self.store.save_thread(self.thread)
        logger.debug("Appended %s", event.type)
        if self.on_event is not None:
            self.on_event(event)

    def _record_error(self, source: str, message: str, iteration: Optional[int], story_id: Optional[str]) -> None:
        logger.warning("%s error: %s", source, message)
        self.console.print(f"[red]{source} error: {message}[/red]")
        self._append(
            ErrorEvent(
                data=ErrorData(
                    source=source,
                    message=message,
                    recoverable=True,
                    iteration=iteration,
                    story_id=story_id,
                )
            )
        )

    def _story_passed_in(self, opened: IterationStarted) -> bool:
        for event in reversed(self.thread.events):
            if event.type == "iteration_started" and event.data.iteration == opened.data.iteration:
                return False
            if event.type == "story_passed" and event.data.story_id == opened.data.story_id:
                return True
        return False

    def _close_iteration(self, opened: IterationStarted, passed: bool) -> None:
        self._append(
            IterationCompleted(
                data=IterationCompletedData(
                    iteration=opened.data.iteration,
                    story_id=opened.data.story_id,
                    all_gates_passed=passed,
                )
            )
        )
        result = derive_iterations(self.thread)[-1]
        self.store.append_progress(progress_block(result))

        status = "[green]PASSED[/green]" if passed else "[red]FAILED[/red]"
        self.console.print(f"Iteration {opened.data.iteration} {status}: [{opened.data.story_id}]")

    def _prd_path(self) -> Optional[Path]:
        source = self.thread.events[0].data.meta.get("prd_path")
        return Path(source) if source else None

    # -- effects ------------------------------------------------------------

    def _command_for(self, intent: RunAgent) -> list[str]:
        if intent.phase is not None:
            return default_agent_command(intent.agent, intent.command)
        if self.agent_command:
            return list(self.agent_command)
        return default_agent_command(self.agent)

    def _environment(self, intent: RunAgent) -> dict[str, str]:
        env = {
            "RALPH_ITERATION": str(intent.iteration),
            "RALPH_STORY_ID": intent.story.id,
            "RALPH_MAX_ITERATIONS": str(self.config.max_iterations),
        }
        if intent.phase is not None:
            env["RALPH_PHASE"] = intent.phase.value
            env["RALPH_ROLE"] = intent.role.value if intent.role else ""
        return env

    def _run_agent(self, intent: RunAgent) -> None:
        story = intent.story
        opened = open_iteration(self.thread)
        if opened is not None and opened.data.iteration != intent.iteration:
            self._close_iteration(opened, self._story_passed_in(opened))
            opened = None
        if opened is None:
            self.console.print(f"\n{'=' * 60}")
            self.console.print(
                f"[bold]Iteration {intent.iteration}/{self.config.max_iterations}[/bold]"
            )
            self.console.print(f"Story: [{story.id}] {story.title}")
            self.console.print(f"{'=' * 60}\n")
            self._append(
                IterationStarted(
                    data=IterationStartedData(
                        iteration=intent.iteration, story_id=story.id, story_title=story.title
                    )
                )
            )

        try:
            command = self._command_for(intent)
        except ConfigError as e:
            self._record_error("agent", str(e), intent.iteration, story.id)
            return

        if intent.phase is not None:
            self.console.print(
                f"[cyan]Phase {intent.phase.value} ({intent.role.value if intent.role else '-'}: {intent.agent})[/cyan]"
            )
            self._append(
                PhaseStarted(
                    data=PhaseStartedData(
                        iteration=intent.iteration,
                        story_id=story.id,
                        phase=intent.phase,
                        role=intent.role,
                        agent=intent.agent,
                    )
                )
            )
        else:
            self._append(
                AgentDispatched(
                    data=AgentDispatchedData(
                        iteration=intent.iteration, story_id=story.id, command=tuple(command)
                    )
                )
            )

        try:
            result = self.runner.run_agent(
                command,
                intent.prompt,
                self.working_dir,
                self._environment(intent),
                self.capabilities,
            )
        except AgentInvocationError as e:
            self._record_error("agent", str(e), intent.iteration, story.id)
            return

        signal = detect_completion_signal(result.stdout)
        if intent.phase is not None:
            self._append(
                PhaseCompleted(
                    data=PhaseCompletedData(
                        iteration=intent.iteration,
                        story_id=story.id,
                        phase=intent.phase,
                        role=intent.role,
                        agent=intent.agent,
                        exit_code=result.exit_code,
                        stdout=result.stdout,
                        completion_signal=signal,
                    )
                )
            )
        else:
            self._append(
                AgentCompleted(
                    data=AgentCompletedData(
                        iteration=intent.iteration,
                        story_id=story.id,
                        exit_code=result.exit_code,
                        stdout=result.stdout,
                        stderr=result.stderr,
                        completion_signal=signal,
                    )
                )
            )
        if result.exit_code != 0:
            self.console.print(f"[red]Agent exited with code {result.exit_code}[/red]")

    def _run_gate(self, intent: RunGate) -> None:
        opened = open_iteration(self.thread)
        iteration = opened.data.iteration if opened is not None else 0
        gate = intent.gate
        self._append(
            GateStarted(
                data=GateStartedData(
                    iteration=iteration,
                    story_id=intent.story_id,
                    gate_index=intent.gate_index,
                    name=gate.name,
                )
            )
        )
        try:
            result = run_gate(gate, self.gate_runner, self.working_dir)
        except OSError as e:
            result = GateResult(name=gate.name, exit_code=1, stderr=str(e), passed=False)

        status = "[green]PASS[/green]" if result.passed else "[red]FAIL[/red]"
        self.console.print(f"Gate {gate.name}: {status}")
        self._append(
            GateCompleted(
                data=GateCompletedData(
                    iteration=iteration,
                    story_id=intent.story_id,
                    gate_index=intent.gate_index,
                    result=result,
                )
            )
        )

    def _commit(self, intent: Commit) -> None:
        opened = open_iteration(self.thread)
        iteration = opened.data.iteration if opened is not None else 0
        message = commit_message(intent.story_id, intent.story_title)
        try:
            ok = self.committer.commit(self.working_dir, message)
        except OSError as e:
            logger.warning("Commit raised: %s", e)
            ok = False

        if not ok:
            self._record_error("commit", f"Commit failed for story {intent.story_id}", iteration, intent.story_id)
            return

        self.store.write_prd_mirror(
            current_prd(self.thread).with_passed([intent.story_id]), self._prd_path()
        )
        self.console.print(f"[green]Committed: {message}[/green]")
        self._append(
            CommitCompleted(
                data=CommitCompletedData(
                    iteration=iteration, story_id=intent.story_id, success=True, message=message
                )
            )
        )

    def _mark_passed(self, intent: MarkPassed) -> None:
        opened = open_iteration(self.thread)
        self._append(
            StoryPassed(
                data=StoryPassedData(
                    iteration=opened.data.iteration if opened is not None else 0,
                    story_id=intent.story_id,
                )
            )
        )
        self.store.write_prd_mirror(current_prd(self.thread), self._prd_path())
        if opened is not None:
            self._close_iteration(opened, passed=True)

    def _wait_delay(self, intent: WaitDelay) -> None:
        opened = open_iteration(self.thread)
        if opened is None:
            raise ThreadCorruptedError(
                f"Nothing to wait on after {last_event(self.thread).type}: no iteration is open"
            )
        self._close_iteration(opened, passed=False)

    def _request_human_input(self, intent: RequestHumanInput) -> None:
        opened = open_iteration(self.thread)
        self._append(
            HumanInputRequested(
                data=HumanInputRequestedData(
                    reason=intent.reason,
                    context=intent.context,
                    iteration=opened.data.iteration if opened is not None else None,
                    story_id=intent.story_id or (opened.data.story_id if opened is not None else None),
                    phase=intent.phase,
                    awaiting_approval=intent.awaiting_approval,
                )
            )
        )
        self._append(ThreadCompleted(data=ThreadCompletedData(reason="human_input")))
        self.console.print(f"\n[yellow]Human input requested: {intent.reason}[/yellow]")
        if intent.context:
            self.console.print(intent.context)

    def _complete(self, intent: Complete) -> None:
        if is_terminal(self.thread):
            return
        opened = open_iteration(self.thread)
        if opened is not None:
            self._close_iteration(opened, self._story_passed_in(opened))
        self._append(ThreadCompleted(data=ThreadCompletedData(reason=intent.reason)))

    def _pause(self) -> None:
        self._append(ThreadCompleted(data=ThreadCompletedData(reason="paused")))
        self.console.print("\n[yellow]Paused. Run 'ralph resume' to continue.[/yellow]")

    # -- loop ---------------------------------------------------------------

    def run(self, pause_token: Optional[PauseToken] = None) -> RalphState:
        """Run the loop until the thread completes or needs a human.

        Args:
            pause_token: Checked at iteration boundaries; when set, the run
                ends with ``thread_completed{paused}``

        Returns:
            The legacy state snapshot of the final thread

        Raises:
            ThreadCorruptedError: If the thread is structurally invalid
        """
        token = pause_token or PauseToken()
        token.clear()
        self.store.paths.ensure_dirs()
        self.store.save_thread(self.thread)

        prd = current_prd(self.thread)
        self.console.print("\n[bold cyan]Starting Ralph[/bold cyan]")
        self.console.print(f"Project: {prd.project}")
        self.console.print(f"Stories: {len(prd.user_stories)}")
        self.console.print(f"Max iterations: {self.config.max_iterations}\n")

        handlers = {
            RunAgent: self._run_agent,
            RunGate: self._run_gate,
            Commit: self._commit,
            MarkPassed: self._mark_passed,
            WaitDelay: self._wait_delay,
            RequestHumanInput: self._request_human_input,
            Complete: self._complete,
        }

        while True:
            intent = determine_next_step(self.thread, self.config)

            if isinstance(intent, RunAgent) and open_iteration(self.thread) is None:
                last = last_event(self.thread)
                delay = self.config.inter_iteration_delay
                if last is not None and last.type == "iteration_completed" and delay > 0:
                    token.wait(delay)
                if token.is_set():
                    self._pause()
                    break

            handlers[type(intent)](intent)
            if isinstance(intent, TERMINAL_INTENTS):
                break

        state = thread_to_state(self.thread)
        self._print_summary(state)
        return state

    def _print_summary(self, state: RalphState) -> None:
        prd = state.prd
        completed = sum(1 for s in prd.user_stories if s.passes)
        self.console.print(
            f"\nFinished ({state.termination_reason}): "
            f"{completed}/{len(prd.user_stories)} stories complete after "
            f"{len(state.iterations)} iteration(s)"
        )
