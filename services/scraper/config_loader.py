# services/scraper/config_loader.py
"""
Loads the initial target set from ``configs/targets.yaml`` and validates it
with Pydantic models.  The file can contain a top-level ``targets`` key or
just the list of target mappings.

Public API:
* ``load_targets(path=None)`` – returns a validated list of ``Target`` or
  raises ``TargetsFileError``.
* ``parse_targets(raw)`` – same validation for an already-decoded payload
  (raises ``ReconfigurationFailure``).
"""

from pathlib import Path
from typing import Any, List, Optional, Union

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from core.config import get_settings
from core.exceptions import ReconfigurationFailure, TargetsFileError
from models.target import Target, validate_target_set


class TargetsFile(BaseModel):
    """Top-level container – the list of tracked targets."""
    targets: List[Target] = Field(default_factory=list)


# Resolve relative paths against the project root (two levels up)
PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _resolve(path: Optional[Union[str, Path]]) -> Path:
    candidate = Path(path or get_settings().TARGETS_FILE)
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return candidate


def _load_yaml(path: Path) -> Any:
    """Read the YAML file and return the inner ``targets`` list."""
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if isinstance(raw, dict):
        return raw.get("targets", [])
    return raw


def parse_targets(raw: Any) -> List[Target]:
    """
    Validate a decoded list of target mappings.

    Raises
    ------
    ReconfigurationFailure
        If the payload is not a list of well-formed, uniquely identified
        targets.
    """
    if not isinstance(raw, list):
        raise ReconfigurationFailure("Target list must be a list of {id, line, stop} mappings")
    try:
        parsed = TargetsFile(targets=raw)
    except ValidationError as exc:
        raise ReconfigurationFailure(f"Malformed target list: {exc.errors()}") from exc
    return validate_target_set(parsed.targets)


def load_targets(path: Optional[Union[str, Path]] = None) -> List[Target]:
    """
    Return the validated target list stored in the targets file.

    Raises
    ------
    TargetsFileError
        If the file is missing, is not valid YAML or fails validation.
    """
    resolved = _resolve(path)
    if not resolved.exists():
        raise TargetsFileError(f"Targets file not found: {resolved}")
    try:
        raw = _load_yaml(resolved)
        targets = parse_targets(raw)
    except yaml.YAMLError as exc:
        raise TargetsFileError(f"Targets file is not valid YAML: {exc}") from exc
    except ReconfigurationFailure as exc:
        raise TargetsFileError(f"{resolved}: {exc.message}") from exc

    logger.debug(f"Loaded {len(targets)} target(s) from {resolved}")
    return targets
