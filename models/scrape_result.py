# models/scrape_result.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Display sentinels shown by the site / the UI
NO_SERVICE_TEXT = "Sefer Yok"
NOT_FOUND_TEXT = "Bulunamadı"


class LoopPhase(str, Enum):
    """Lifecycle phase of a scrape loop."""

    STARTING = "starting"
    NAVIGATING = "navigating"
    INTERACTING = "interacting"
    EXTRACTING = "extracting"
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"
    STOPPED = "stopped"


class Outcome(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArrivalRow(BaseModel):
    """One line/estimate pair parsed from the stop's result table."""

    line: str
    line_name: str = ""
    time: str

    model_config = ConfigDict(frozen=True)


class PerfMetrics(BaseModel):
    """Timings of a single poll, in milliseconds."""

    navigation_ms: Optional[float] = None
    extraction_ms: Optional[float] = None
    total_ms: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class ScrapeResult(BaseModel):
    """
    Outcome of one poll for one target.

    ``found`` is True only when the table listed the target's line; ``time``
    then holds the human readable estimate (e.g. ``"4 dk"``), otherwise one
    of the sentinels above.  ``arrivals`` keeps every row the stop listed so
    consumers can show neighbouring lines too.
    """

    target_id: str
    outcome: Outcome
    found: bool
    time: str
    arrivals: List[ArrivalRow] = Field(default_factory=list)
    metrics: Optional[PerfMetrics] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def is_error(self) -> bool:
        return self.outcome is Outcome.ERROR

    # ------------------------------------------------------------------
    # Constructors used by the scrape loop
    # ------------------------------------------------------------------
    @classmethod
    def from_rows(
        cls,
        target_id: str,
        line: str,
        rows: List[ArrivalRow],
        metrics: Optional[PerfMetrics] = None,
    ) -> "ScrapeResult":
        """
        Build a SUCCESS result when a row for ``line`` is present, an EMPTY
        one otherwise (the table loaded but the line has no service due).
        """
        wanted = line.strip().upper()
        match = next((r for r in rows if r.line.strip().upper() == wanted), None)
        if match is None:
            return cls(
                target_id=target_id,
                outcome=Outcome.EMPTY,
                found=False,
                time=NO_SERVICE_TEXT,
                arrivals=rows,
                metrics=metrics,
            )
        return cls(
            target_id=target_id,
            outcome=Outcome.SUCCESS,
            found=True,
            time=match.time,
            arrivals=rows,
            metrics=metrics,
        )
