"""Commit port and its git implementation."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class Committer(Protocol):
    def commit(self, working_dir: Path, message: str) -> bool:
        ...


def commit_message(story_id: str, story_title: str) -> str:
    return f"feat: {story_id} - {story_title}"


class GitCommitter:
    """Stage everything and commit, allowing empty commits."""

    def commit(self, working_dir: Path, message: str) -> bool:
        """Commit all changes in ``working_dir``.

        Args:
            working_dir: Repository working tree
            message: Commit message

        Returns:
            True if the commit succeeded
        """
        try:
            subprocess.run(
                ["git", "add", "-A"],
                cwd=working_dir,
                capture_output=True,
                check=True,
            )
            subprocess.run(
                ["git", "commit", "--allow-empty", "-m", message],
                cwd=working_dir,
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            logger.warning("Commit failed: %s", e.stderr or e)
            return False
        except FileNotFoundError:
            logger.warning("git executable not found")
            return False
        return True
