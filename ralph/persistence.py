"""On-disk persistence for Ralph runs.

``thread.json`` holds the full event log and is the only file the engine
reads back. ``state.json``, ``progress.txt`` and the ``prd.json`` mirror are
written for tooling that predates the event log.
"""

from __future__ import annotations

import json
import logging
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ralph.errors import ThreadCorruptedError
from ralph.models.prd import Prd
from ralph.paths import RalphPaths
from ralph.projections import thread_to_state
from ralph.thread import THREAD_SCHEMA, Thread

logger = logging.getLogger(__name__)

PROGRESS_HEADER = "# Ralph Progress Log"


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` so readers never observe a partial file.

    Writes to a temporary file in the same directory, then renames it over
    the target (atomic on POSIX).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.stem}-")
    try:
        with open(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        Path(tmp_path).replace(path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def thread_from_json(data: Any) -> Thread:
    """Validate a decoded ``thread.json`` document.

    Raises:
        ThreadCorruptedError: If the document is not a usable thread
    """
    if not isinstance(data, dict):
        raise ThreadCorruptedError("thread.json must contain an object")
    schema = data.get("schema")
    if schema != THREAD_SCHEMA:
        raise ThreadCorruptedError(f"Unsupported thread schema: {schema!r}")
    try:
        thread = Thread.model_validate(data)
    except ValidationError as e:
        raise ThreadCorruptedError(f"Malformed thread: {e}") from e
    if not thread.events or thread.events[0].type != "thread_started":
        raise ThreadCorruptedError("Thread must begin with a thread_started event")
    return thread


class RalphStore:
    """Reads and writes one project's Ralph state directory."""

    def __init__(self, paths: RalphPaths):
        self.paths = paths

    # -- thread -------------------------------------------------------------

    def has_thread(self) -> bool:
        return self.paths.thread_file.exists()

    def load_thread(self) -> Optional[Thread]:
        """Load the persisted thread.

        Returns:
            The thread, or None if no thread has been saved yet

        Raises:
            ThreadCorruptedError: If thread.json exists but cannot be used
        """
        path = self.paths.thread_file
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ThreadCorruptedError(f"Invalid JSON in {path}: {e}") from e
        return thread_from_json(data)

    def save_thread(self, thread: Thread) -> None:
        """Rewrite thread.json and the derived state.json snapshot."""
        atomic_write_json(self.paths.thread_file, thread.to_json_dict())
        atomic_write_json(self.paths.state_file, thread_to_state(thread).to_json_dict())

    # -- legacy mirrors -----------------------------------------------------

    def write_prd_mirror(self, prd: Prd, path: Optional[Path] = None) -> None:
        """Rewrite the PRD file the run was loaded from, or the default mirror."""
        atomic_write_json(path or self.paths.prd_mirror, prd.to_json_dict())

    def read_progress(self) -> str:
        path = self.paths.progress_file
        return path.read_text() if path.exists() else ""

    def append_progress(self, block: str) -> None:
        """Append one transcript block, creating the log with a header if needed."""
        path = self.paths.progress_file
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(
                f"{PROGRESS_HEADER}\nStarted: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n---\n"
            )
        with open(path, "a") as f:
            f.write(block)
        logger.debug("Appended progress block to %s", path)
