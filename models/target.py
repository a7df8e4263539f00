# models/target.py
from __future__ import annotations

from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from core.config import get_settings
from core.exceptions import ReconfigurationFailure


class Target(BaseModel):
    """
    A transit line at a stop whose arrival estimate is tracked.

    Targets are immutable: a reconfiguration replaces the whole set, it never
    edits a target in place.
    """

    id: str = Field(..., description="Opaque identifier (e.g. 'bus-1')")
    line: str = Field(..., description="Line number as shown on the site (e.g. '561')")
    stop: str = Field(..., description="Stop number (e.g. '50782')")

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={"example": {"id": "bus-1", "line": "561", "stop": "50782"}},
    )

    @field_validator("id", "line", "stop", mode="before")
    @classmethod
    def _strip_required(cls, v):
        if isinstance(v, int):
            v = str(v)
        if isinstance(v, str):
            v = v.strip()
        if not v:
            raise ValueError("must be a non-empty string")
        return v

    @computed_field  # type: ignore[misc]
    @property
    def locator(self) -> str:
        """Request URL built from the process-wide ``BASE_URL``."""
        return self.locator_for()

    def locator_for(self, base_url: Optional[str] = None) -> str:
        """Request URL built from ``base_url`` (defaults to the global template)."""
        template = base_url or get_settings().BASE_URL
        return template.format(stop=self.stop, line=self.line)


def validate_target_set(targets: Iterable[Target]) -> List[Target]:
    """
    Check a candidate target set before anything is torn down.

    Raises
    ------
    ReconfigurationFailure
        If two targets share an id.
    """
    checked: List[Target] = []
    seen: set[str] = set()
    for target in targets:
        if not isinstance(target, Target):
            raise ReconfigurationFailure(f"Not a target definition: {target!r}")
        if target.id in seen:
            raise ReconfigurationFailure(f"Duplicate target id '{target.id}'")
        seen.add(target.id)
        checked.append(target)
    return checked
