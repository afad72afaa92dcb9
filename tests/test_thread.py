"""Tests for the Ralph thread and its query helpers."""

import pytest

from ralph.models.config import RalphConfig
from ralph.models.events import EVENT_ADAPTER, EVENT_TYPES, make_event
from ralph.models.prd import Prd, Story
from ralph.models.results import GateResult
from ralph.phases import Phase
from ralph.thread import (
    THREAD_SCHEMA,
    Thread,
    append_event,
    completed_iteration_count,
    consecutive_failures,
    create_thread,
    current_iteration_number,
    current_iteration_phases,
    detect_completion_signal,
    detect_human_input_request,
    is_terminal,
    last_completed_phase,
    last_event,
    last_event_of_type,
    open_iteration,
    phase_completion_count,
)


def _prd():
    return Prd(
        project="Demo",
        user_stories=(
            Story(id="US-001", title="One", priority=1),
            Story(id="US-002", title="Two", priority=2),
        ),
    )


def _thread(*events):
    thread = create_thread(_prd(), RalphConfig())
    for event in events:
        thread = append_event(thread, event)
    return thread


def _iteration(n, story_id, passed):
    return [
        make_event("iteration_started", iteration=n, story_id=story_id, story_title=story_id),
        make_event("iteration_completed", iteration=n, story_id=story_id, all_gates_passed=passed),
    ]


class TestEvents:
    """Tests for the event model."""

    def test_all_event_types_known(self):
        """Test the closed set of fifteen event types."""
        assert len(EVENT_TYPES) == 15
        assert "thread_started" in EVENT_TYPES
        assert "human_input_received" in EVENT_TYPES

    def test_make_event_accepts_camel_case(self):
        """Test payload fields may use wire names."""
        event = make_event("agent_completed", iteration=1, storyId="US-001", exitCode=2)
        assert event.data.story_id == "US-001"
        assert event.data.exit_code == 2

    def test_make_event_unknown_type(self):
        """Test unknown event types are rejected."""
        with pytest.raises(ValueError, match="Unknown event type"):
            make_event("not_an_event")

    def test_wire_format_round_trip(self):
        """Test an event parses back from its JSON form by type."""
        event = make_event(
            "gate_completed",
            iteration=1,
            story_id="US-001",
            gate_index=0,
            result=GateResult(name="test", exit_code=1, stderr="boom", passed=False),
        )
        wire = event.to_json_dict()

        assert wire["type"] == "gate_completed"
        assert wire["data"]["gateIndex"] == 0
        assert wire["data"]["result"]["exitCode"] == 1
        assert EVENT_ADAPTER.validate_python(wire) == event


class TestThread:
    """Tests for thread construction and appending."""

    def test_create_thread(self):
        """Test a new thread holds exactly one thread_started."""
        thread = create_thread(_prd(), RalphConfig(), meta={"agent": "claude"})

        assert thread.schema_id == THREAD_SCHEMA
        assert len(thread.events) == 1
        assert thread.events[0].type == "thread_started"
        assert thread.events[0].data.meta == {"agent": "claude"}

    def test_append_is_pure(self):
        """Test appending leaves the original thread unchanged."""
        thread = create_thread(_prd(), RalphConfig())
        event = make_event("iteration_started", iteration=1, story_id="US-001")

        appended = append_event(thread, event)

        assert len(thread.events) == 1
        assert appended.events == thread.events + (event,)

    def test_serialized_schema_key(self):
        """Test the thread serializes its schema under 'schema'."""
        wire = create_thread(_prd(), RalphConfig()).to_json_dict()
        assert wire["schema"] == THREAD_SCHEMA
        assert Thread.model_validate(wire).events[0].data.prd == _prd()


class TestQueries:
    """Tests for thread query helpers."""

    def test_last_event_helpers(self):
        """Test last_event and last_event_of_type."""
        thread = _thread(*_iteration(1, "US-001", False))

        assert last_event(thread).type == "iteration_completed"
        assert last_event_of_type(thread, "iteration_started").data.iteration == 1
        assert last_event_of_type(thread, "gate_started") is None

    def test_iteration_numbers(self):
        """Test open and completed iteration tracking."""
        thread = _thread()
        assert current_iteration_number(thread) == 1
        assert open_iteration(thread) is None

        thread = _thread(*_iteration(1, "US-001", False))
        assert completed_iteration_count(thread) == 1
        assert current_iteration_number(thread) == 2
        assert open_iteration(thread) is None

        thread = append_event(
            thread, make_event("iteration_started", iteration=2, story_id="US-001")
        )
        assert open_iteration(thread).data.iteration == 2
        assert current_iteration_number(thread) == 2

    def test_consecutive_failures(self):
        """Test trailing failures are counted per story."""
        thread = _thread(
            *_iteration(1, "US-001", False),
            *_iteration(2, "US-002", True),
            *_iteration(3, "US-001", False),
            *_iteration(4, "US-001", False),
        )

        assert consecutive_failures(thread, "US-001") == 2
        assert consecutive_failures(thread, "US-002") == 0

    def test_success_breaks_failure_streak(self):
        """Test a passing iteration resets the streak."""
        thread = _thread(*_iteration(1, "US-001", False), *_iteration(2, "US-001", True))
        assert consecutive_failures(thread, "US-001") == 0

    def test_is_terminal(self):
        """Test only a trailing thread_completed is terminal."""
        assert not is_terminal(_thread())
        assert is_terminal(_thread(make_event("thread_completed", reason="paused")))


class TestMarkers:
    """Tests for agent output markers."""

    def test_completion_signal(self):
        """Test the completion marker is found anywhere in output."""
        assert detect_completion_signal("done\n<promise>COMPLETE</promise>\n")
        assert not detect_completion_signal("<promise>complete</promise>")
        assert not detect_completion_signal("")

    def test_human_input_request(self):
        """Test the request-input marker content is extracted."""
        output = "thinking...\n<request-input>\n  Which database?\n</request-input>\nmore"
        assert detect_human_input_request(output) == "Which database?"
        assert detect_human_input_request("<REQUEST-INPUT>x</REQUEST-INPUT>") is None
        assert detect_human_input_request("") is None


class TestPhaseQueries:
    """Tests for multi-agent phase queries."""

    def _phase(self, phase, exit_code=0):
        return make_event(
            "phase_completed", iteration=1, story_id="US-001", phase=phase, exit_code=exit_code
        )

    def test_phases_of_current_iteration_only(self):
        """Test phase queries ignore earlier iterations."""
        thread = _thread(
            make_event("iteration_started", iteration=1, story_id="US-001"),
            self._phase("brainstorm"),
            make_event("iteration_completed", iteration=1, story_id="US-001"),
            make_event("iteration_started", iteration=2, story_id="US-001"),
            self._phase("brainstorm", exit_code=1),
            self._phase("brainstorm"),
            self._phase("clarify"),
        )

        assert [e.data.phase for e in current_iteration_phases(thread)] == [
            Phase.BRAINSTORM,
            Phase.BRAINSTORM,
            Phase.CLARIFY,
        ]
        assert last_completed_phase(thread) == Phase.CLARIFY
        assert phase_completion_count(thread, Phase.BRAINSTORM) == 2
        assert phase_completion_count(thread, Phase.PLAN) == 0
