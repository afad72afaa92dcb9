"""Agent execution port and its subprocess implementation."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from rich.console import Console
from rich.markup import escape

from ralph.errors import AgentInvocationError, ConfigError

logger = logging.getLogger(__name__)

# Known agent CLIs; the prompt is appended as the final argument.
DEFAULT_AGENT_COMMANDS: dict[str, tuple[str, ...]] = {
    "claude": ("claude", "-p", "--dangerously-skip-permissions"),
    "codex": ("codex", "exec"),
}


@dataclass
class ProcessResult:
    """Exit status and fully captured output of an external process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class AgentRunner(Protocol):
    """Runs one agent invocation to completion."""

    def run_agent(
        self,
        command: Sequence[str],
        prompt: str,
        working_dir: Path,
        env: Mapping[str, str],
        capabilities: Optional[Mapping[str, Any]] = None,
    ) -> ProcessResult:
        ...


def default_agent_command(agent: Optional[str] = None, override: Optional[str] = None) -> list[str]:
    """Resolve the argv prefix used to launch an agent.

    Args:
        agent: Agent identity (``claude``, ``codex`` or ``custom``)
        override: Explicit command line; takes precedence when given

    Returns:
        The command as an argv list, without the prompt

    Raises:
        ConfigError: If the agent is unknown or ``custom`` has no command
    """
    if override:
        return shlex.split(override)
    kind = agent or "claude"
    try:
        return list(DEFAULT_AGENT_COMMANDS[kind])
    except KeyError:
        if kind == "custom":
            raise ConfigError("Agent 'custom' requires an explicit command") from None
        raise ConfigError(f"Unknown agent: {kind}") from None


class SubprocessAgentRunner:
    """Launch the agent as a child process, streaming stdout as it arrives.

    Every stdout line is echoed to the operator console while also being
    captured, so the agent's full output is available to the reducer.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        on_output: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the runner.

        Args:
            console: Rich console used to echo agent output
            on_output: Replaces console echo when provided
            timeout: Default wall-clock limit in seconds (None for no limit)
        """
        self.console = console or Console()
        self.on_output = on_output
        self.timeout = timeout

    def _emit(self, line: str) -> None:
        if self.on_output is not None:
            self.on_output(line)
        else:
            self.console.print(f"[dim]{escape(line)}[/dim]")

    def run_agent(
        self,
        command: Sequence[str],
        prompt: str,
        working_dir: Path,
        env: Mapping[str, str],
        capabilities: Optional[Mapping[str, Any]] = None,
    ) -> ProcessResult:
        """Run ``command + [prompt]`` in ``working_dir``.

        ``capabilities`` may carry a ``timeout`` (seconds) overriding the
        runner default; other keys are ignored by this runner.

        Raises:
            AgentInvocationError: If the process cannot be started
        """
        argv = [*command, prompt]
        timeout = (capabilities or {}).get("timeout", self.timeout)
        logger.debug("Launching agent: %s (cwd=%s)", command, working_dir)

        try:
            process = subprocess.Popen(
                argv,
                cwd=str(working_dir),
                env={**os.environ, **env},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time streaming
                start_new_session=True,  # Keep terminal SIGINT away from the agent
            )
        except OSError as e:
            raise AgentInvocationError(f"Failed to start agent {command[0] if command else '?'}: {e}") from e

        stderr_chunks: list[str] = []
        reader = threading.Thread(
            target=lambda: stderr_chunks.append(process.stderr.read()), daemon=True
        )
        reader.start()

        timer: Optional[threading.Timer] = None
        if timeout:
            timer = threading.Timer(timeout, process.kill)
            timer.start()

        stdout_lines: list[str] = []
        try:
            for line in process.stdout:
                stdout_lines.append(line)
                self._emit(line.rstrip("\n"))
            exit_code = process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            reader.join()

        logger.debug("Agent exited with code %s", exit_code)
        return ProcessResult(
            exit_code=exit_code,
            stdout="".join(stdout_lines),
            stderr="".join(stderr_chunks),
        )
