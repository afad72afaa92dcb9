"""State-directory layout for Ralph runs.

Example:
    from ralph.paths import RalphPaths

    paths = RalphPaths(Path.cwd())
    paths.thread_file   # <working_dir>/.ralph/thread.json
    paths.prd_mirror    # <working_dir>/prd.json
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Optional

# ============================================================================
# Constants
# ============================================================================

RALPH_DIR_NAME = ".ralph"
THREAD_FILE_NAME = "thread.json"
STATE_FILE_NAME = "state.json"
PROGRESS_FILE_NAME = "progress.txt"
CONFIG_FILE_NAME = "config.json"
PRD_FILE_NAME = "prd.json"

# Environment variable overriding the state directory
ENV_RALPH_DIR = "RALPH_DIR"


class RalphPaths:
    """Paths of one project's Ralph state.

    The state directory defaults to ``<working_dir>/.ralph`` and can be
    moved with the ``RALPH_DIR`` environment variable. The PRD mirror always
    lives at the project root.
    """

    def __init__(self, working_dir: Optional[Path] = None):
        self._working_dir = working_dir or Path.cwd()

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @cached_property
    def ralph_dir(self) -> Path:
        env_override = os.environ.get(ENV_RALPH_DIR)
        if env_override:
            return Path(env_override)
        return self._working_dir / RALPH_DIR_NAME

    @cached_property
    def thread_file(self) -> Path:
        return self.ralph_dir / THREAD_FILE_NAME

    @cached_property
    def state_file(self) -> Path:
        return self.ralph_dir / STATE_FILE_NAME

    @cached_property
    def progress_file(self) -> Path:
        return self.ralph_dir / PROGRESS_FILE_NAME

    @cached_property
    def config_file(self) -> Path:
        """Optional per-project config, read by the CLI when present."""
        return self.ralph_dir / CONFIG_FILE_NAME

    @cached_property
    def prd_mirror(self) -> Path:
        return self._working_dir / PRD_FILE_NAME

    def ensure_dirs(self) -> None:
        self.ralph_dir.mkdir(parents=True, exist_ok=True)
