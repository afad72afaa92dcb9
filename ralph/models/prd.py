"""Pydantic models for the Ralph PRD (Product Requirements Document)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import Field

from ralph.errors import PrdValidationError
from ralph.models.base import RalphModel

AD_HOC_PROJECT = "ad-hoc"
_MAX_AD_HOC_TITLE = 80


class Story(RalphModel):
    """A single unit of work in the PRD.

    Stories are immutable. ``passes`` is never flipped in place; the current
    value is recomputed by replaying ``story_passed`` events over the base PRD.
    """

    id: str = Field(..., description="Unique story identifier (e.g., US-001)")
    title: str = Field(..., description="Short descriptive title")
    description: str = Field(default="", description="Full story description")
    acceptance_criteria: tuple[str, ...] = Field(
        default=(), description="Acceptance criteria that must be met"
    )
    priority: int = Field(default=1, description="Priority order (lower = more urgent)")
    passes: bool = Field(default=False, description="Whether the story has passed")
    notes: Optional[str] = Field(default=None, description="Implementation notes")


class Prd(RalphModel):
    """Ralph Product Requirements Document.

    One PRD is captured when a thread starts and is never edited afterwards;
    the "current" PRD is always a projection of the thread.
    """

    project: str = Field(..., description="Project name")
    description: str = Field(default="", description="High-level project description")
    user_stories: tuple[Story, ...] = Field(
        default=(), description="Stories to implement"
    )

    @classmethod
    def load(cls, path: Path) -> Prd:
        """Load and validate a PRD from a JSON file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            PrdValidationError: If the JSON or its structure is invalid
        """
        if not path.exists():
            raise FileNotFoundError(f"PRD file not found: {path}")

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise PrdValidationError(f"Invalid JSON in PRD file: {e}") from e
        return validate_prd(data)

    def save(self, path: Path) -> None:
        """Save the PRD to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_json_dict(), f, indent=2)
            f.write("\n")

    def get_next_story(self) -> Optional[Story]:
        """Return the most urgent story that hasn't passed yet."""
        return select_next_story(self)

    def is_complete(self) -> bool:
        """True when every story passes."""
        return all(s.passes for s in self.user_stories)

    def get_story_by_id(self, story_id: str) -> Optional[Story]:
        for story in self.user_stories:
            if story.id == story_id:
                return story
        return None

    def with_passed(self, story_ids: Iterable[str]) -> Prd:
        """Return a copy with the given stories marked as passing."""
        passed = set(story_ids)
        if not passed:
            return self
        stories = tuple(
            s.model_copy(update={"passes": True}) if s.id in passed else s
            for s in self.user_stories
        )
        return self.model_copy(update={"user_stories": stories})

    def get_progress_summary(self) -> str:
        """Get a human-readable summary of PRD progress."""
        total = len(self.user_stories)
        completed = sum(1 for s in self.user_stories if s.passes)
        remaining = total - completed

        lines = [
            f"Project: {self.project}",
            f"Progress: {completed}/{total} stories complete",
            "",
        ]

        if remaining > 0:
            lines.append("Remaining stories:")
            for story in sorted(
                [s for s in self.user_stories if not s.passes], key=lambda s: s.priority
            ):
                lines.append(f"  [{story.id}] {story.title} (priority: {story.priority})")
        else:
            lines.append("All stories complete!")

        return "\n".join(lines)


def select_next_story(prd: Prd) -> Optional[Story]:
    """Select the unpassed story with the lowest priority number.

    Ties are resolved by first occurrence in the PRD's story list.
    """
    best: Optional[Story] = None
    for story in prd.user_stories:
        if story.passes:
            continue
        if best is None or story.priority < best.priority:
            best = story
    return best


def validate_prd(raw: Any) -> Prd:
    """Validate a raw JSON object as a PRD.

    Missing ids and priorities are assigned from the story's position; a story
    without a title, or a PRD without stories, is rejected.

    Raises:
        PrdValidationError: If the document cannot be used
    """
    if not isinstance(raw, dict):
        raise PrdValidationError("prd must be an object")

    project = raw.get("project") if isinstance(raw.get("project"), str) else "unknown"
    description = raw.get("description") if isinstance(raw.get("description"), str) else ""
    stories_raw = raw.get("userStories", raw.get("user_stories"))
    if not isinstance(stories_raw, list) or not stories_raw:
        raise PrdValidationError("prd.userStories must be a non-empty array")

    stories: list[Story] = []
    for i, item in enumerate(stories_raw):
        if not isinstance(item, dict):
            raise PrdValidationError(f"prd.userStories[{i}] must be an object")
        title = item.get("title") if isinstance(item.get("title"), str) else ""
        if not title:
            raise PrdValidationError(f"prd.userStories[{i}] missing title")

        criteria_raw = item.get("acceptanceCriteria", item.get("acceptance_criteria", []))
        criteria = (
            tuple(c for c in criteria_raw if isinstance(c, str))
            if isinstance(criteria_raw, list)
            else ()
        )
        priority = item.get("priority")
        # bool is an int subclass; don't let `true` become priority 1
        if not isinstance(priority, (int, float)) or isinstance(priority, bool):
            priority = i + 1

        stories.append(
            Story(
                id=item["id"] if isinstance(item.get("id"), str) else f"US-{i + 1:03d}",
                title=title,
                description=(
                    item["description"] if isinstance(item.get("description"), str) else title
                ),
                acceptance_criteria=criteria,
                priority=int(priority),
                passes=item["passes"] if isinstance(item.get("passes"), bool) else False,
                notes=item["notes"] if isinstance(item.get("notes"), str) else None,
            )
        )

    return Prd(project=project, description=description, user_stories=tuple(stories))


def prompt_to_prd(prompt: str) -> Prd:
    """Wrap a free-form prompt into a single-story PRD."""
    if len(prompt) > _MAX_AD_HOC_TITLE:
        title = prompt[: _MAX_AD_HOC_TITLE - 3] + "..."
    else:
        title = prompt
    story = Story(
        id="US-001",
        title=title,
        description=prompt,
        acceptance_criteria=("Implementation matches the prompt requirements",),
        priority=1,
    )
    return Prd(project=AD_HOC_PROJECT, description=prompt, user_stories=(story,))
