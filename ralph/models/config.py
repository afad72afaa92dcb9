"""Configuration models for Ralph runs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field

from ralph.errors import ConfigError
from ralph.models.base import RalphModel

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_INTER_ITERATION_DELAY = 2.0

# Agent identities with a known default command line
AGENT_KINDS = ("claude", "codex", "custom")


class QualityGate(RalphModel):
    """An external verification command run after the agent succeeds."""

    name: str
    command: str = Field(
        validation_alias=AliasChoices("command", "cmd"),
        serialization_alias="command",
    )
    continue_on_fail: Optional[bool] = None


class MultiAgentConfig(RalphModel):
    """Agent identities (and optional command overrides) for both roles."""

    agent_a: str = "claude"
    agent_b: str = "codex"
    cmd_a: Optional[str] = None
    cmd_b: Optional[str] = None


class RalphConfig(RalphModel):
    """Run configuration, fixed for the lifetime of a thread."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    quality_gates: tuple[QualityGate, ...] = ()
    inter_iteration_delay: float = DEFAULT_INTER_ITERATION_DELAY
    commit_on_pass: bool = True
    prompt_template: Optional[str] = None
    require_approval_before_commit: Optional[bool] = None
    max_consecutive_failures: Optional[int] = None
    multi_agent: Optional[MultiAgentConfig] = None

    @property
    def is_multi_agent(self) -> bool:
        return self.multi_agent is not None


def default_ralph_config() -> RalphConfig:
    return RalphConfig()


def _parse_gates(raw: Any) -> list[QualityGate]:
    gates: list[QualityGate] = []
    if not isinstance(raw, list):
        return gates
    for g in raw:
        if not isinstance(g, dict) or not isinstance(g.get("name"), str):
            continue
        command = g.get("command", g.get("cmd"))
        if not isinstance(command, str):
            continue
        cont = g.get("continueOnFail", g.get("continue_on_fail"))
        gates.append(
            QualityGate(
                name=g["name"],
                command=command,
                continue_on_fail=cont if isinstance(cont, bool) else None,
            )
        )
    return gates


def _parse_multi_agent(raw: Any) -> Optional[MultiAgentConfig]:
    if not isinstance(raw, dict) or raw.get("enabled") is not True:
        return None
    data: dict[str, Any] = {}
    for key, alt in (("agentA", "agent_a"), ("agentB", "agent_b"), ("cmdA", "cmd_a"), ("cmdB", "cmd_b")):
        value = raw.get(key, raw.get(alt))
        if isinstance(value, str) and value:
            data[alt] = value
    return MultiAgentConfig(**data)


def parse_ralph_config(raw: Any) -> RalphConfig:
    """Leniently parse a ``ralph`` config section, falling back to defaults.

    Invalid values are ignored field by field rather than rejecting the whole
    section, and invalid gate entries are skipped.
    """
    if not isinstance(raw, dict):
        return default_ralph_config()

    defaults = default_ralph_config()
    data: dict[str, Any] = {}

    max_iterations = raw.get("maxIterations", raw.get("max_iterations"))
    if isinstance(max_iterations, int) and not isinstance(max_iterations, bool) and max_iterations > 0:
        data["max_iterations"] = max_iterations

    delay = raw.get("interIterationDelay", raw.get("inter_iteration_delay"))
    if isinstance(delay, (int, float)) and not isinstance(delay, bool) and delay >= 0:
        data["inter_iteration_delay"] = float(delay)
    elif isinstance(raw.get("delayBetweenIterationsMs"), (int, float)):
        data["inter_iteration_delay"] = max(0.0, raw["delayBetweenIterationsMs"] / 1000.0)

    commit_on_pass = raw.get("commitOnPass", raw.get("commit_on_pass"))
    if isinstance(commit_on_pass, bool):
        data["commit_on_pass"] = commit_on_pass

    template = raw.get("promptTemplate", raw.get("prompt_template"))
    if isinstance(template, str):
        data["prompt_template"] = template

    approval = raw.get("requireApprovalBeforeCommit", raw.get("require_approval_before_commit"))
    if isinstance(approval, bool):
        data["require_approval_before_commit"] = approval

    max_failures = raw.get("maxConsecutiveFailures", raw.get("max_consecutive_failures"))
    if isinstance(max_failures, int) and not isinstance(max_failures, bool) and max_failures > 0:
        data["max_consecutive_failures"] = max_failures

    data["quality_gates"] = tuple(_parse_gates(raw.get("qualityGates", raw.get("quality_gates"))))
    multi = _parse_multi_agent(raw.get("multiAgent", raw.get("multi_agent")))
    if multi is not None:
        data["multi_agent"] = multi

    return defaults.model_copy(update=data)


def load_config_file(path: Path) -> RalphConfig:
    """Load a Ralph config from a JSON file.

    The file may hold the config at top level or under a ``ralph`` key
    (the shape of a preset file).

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If the file isn't valid JSON
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}") from e
    if isinstance(data, dict) and isinstance(data.get("ralph"), dict):
        data = data["ralph"]
    return parse_ralph_config(data)
