"""Shared pydantic base for Ralph value types."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RalphModel(BaseModel):
    """Immutable model serialised with camelCase keys.

    Attributes are snake_case in Python; the JSON wire format (thread.json,
    prd.json, state.json) uses camelCase. Both spellings are accepted on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
