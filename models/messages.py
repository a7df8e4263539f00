# models/messages.py
"""
Messages carried by the result channel between the orchestrator and the
worker pool process.

The set of kinds is fixed by the ``kind`` literals below.  On the wire every
message is the JSON-mode dict of its model, tagged by ``kind``; the receiving
side rebuilds the typed model with a discriminated union.
"""

from __future__ import annotations

import os
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .scrape_result import LoopPhase, ScrapeResult
from .target import Target


# ----------------------------------------------------------------------
# Commands (orchestrator -> worker pool)
# ----------------------------------------------------------------------
class ReconfigureCommand(BaseModel):
    kind: Literal["reconfigure"] = "reconfigure"
    generation: int
    targets: List[Target] = Field(default_factory=list)


class ShutdownCommand(BaseModel):
    kind: Literal["shutdown"] = "shutdown"


# ----------------------------------------------------------------------
# Events (worker pool -> orchestrator)
# ----------------------------------------------------------------------
class ReadyEvent(BaseModel):
    kind: Literal["ready"] = "ready"
    pid: int = Field(default_factory=os.getpid)


class ResultEvent(BaseModel):
    kind: Literal["result"] = "result"
    generation: int
    target_id: str
    result: ScrapeResult


class StatusEvent(BaseModel):
    kind: Literal["status"] = "status"
    generation: int
    target_id: str
    phase: LoopPhase
    message: str = ""
    consecutive_errors: int = 0


class FaultEvent(BaseModel):
    """Pool-level problem that is not tied to a single target."""

    kind: Literal["fault"] = "fault"
    message: str
    generation: Optional[int] = None


Command = Annotated[
    Union[ReconfigureCommand, ShutdownCommand], Field(discriminator="kind")
]
Event = Annotated[
    Union[ReadyEvent, ResultEvent, StatusEvent, FaultEvent],
    Field(discriminator="kind"),
]

_command_adapter: TypeAdapter = TypeAdapter(Command)
_event_adapter: TypeAdapter = TypeAdapter(Event)


def encode(message: BaseModel) -> Dict[str, Any]:
    """Serialise a message to the picklable dict sent over the pipe."""
    return message.model_dump(mode="json")


def decode_command(payload: Dict[str, Any]) -> Union[ReconfigureCommand, ShutdownCommand]:
    return _command_adapter.validate_python(payload)


def decode_event(
    payload: Dict[str, Any],
) -> Union[ReadyEvent, ResultEvent, StatusEvent, FaultEvent]:
    return _event_adapter.validate_python(payload)
