"""Quality gates for Ralph - runs the configured verification commands."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterable, Protocol

from ralph.agents.runner import ProcessResult
from ralph.models.config import QualityGate
from ralph.models.results import GateResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


class GateRunner(Protocol):
    """Runs a shell command line and reports how it went."""

    def run_shell(self, command: str, working_dir: Path) -> ProcessResult:
        ...


class ShellGateRunner:
    """Runs gate commands through ``bash -lc``.

    Each command gets the project's login-shell environment, so tools
    installed through version managers resolve the same way they would in a
    terminal.
    """

    def __init__(self, timeout: int = 600, shell: str = "bash"):
        """Initialize the runner.

        Args:
            timeout: Timeout in seconds for each command
            shell: Shell executable used to interpret gate commands
        """
        self.timeout = timeout
        self.shell = shell

    def run_shell(self, command: str, working_dir: Path) -> ProcessResult:
        """Run a command and return its exit status and output.

        A timeout or a missing shell is reported as a failed result rather
        than raised.
        """
        logger.debug("Running gate command: %s", command)
        try:
            result = subprocess.run(
                [self.shell, "-lc", command],
                cwd=working_dir,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired:
            return ProcessResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Command timed out after {self.timeout}s",
            )
        except FileNotFoundError:
            return ProcessResult(
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=f"Shell not found: {self.shell}",
            )
        return ProcessResult(result.returncode, result.stdout, result.stderr)


def run_gate(gate: QualityGate, runner: GateRunner, working_dir: Path) -> GateResult:
    """Run one gate and fold the process outcome into a :class:`GateResult`."""
    outcome = runner.run_shell(gate.command, working_dir)
    return GateResult(
        name=gate.name,
        exit_code=outcome.exit_code,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        passed=outcome.exit_code == 0,
    )


def summarize_gate_results(results: Iterable[GateResult]) -> str:
    """Get a human-readable summary of gate results."""
    lines = [f"{r.name}: {'PASS' if r.passed else 'FAIL'}" for r in results]
    return "\n".join(lines) if lines else "No quality gates configured"
