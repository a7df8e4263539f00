# core/exceptions.py
"""
Error taxonomy.

Per-target failures (navigation, interaction, extraction, session crash) are
raised by the browser layer and swallowed by the owning scrape loop, where
they drive the backoff state machine.  The remaining errors surface through
the HTTP layer, so every exception knows how to render itself as JSON.
"""

from typing import Any, Dict, List, Optional


class ScraperException(Exception):
    """Base class for every error the service raises on purpose."""

    code: str = "SCRAPER_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status_code,
            }
        }


# ----------------------------------------------------------------------
# Per-target errors (contained inside one scrape loop)
# ----------------------------------------------------------------------
class NavigationError(ScraperException):
    """Page unreachable or did not finish loading in time."""

    code = "NAVIGATION_ERROR"
    status_code = 502


class InteractionError(ScraperException):
    """The control that requests fresh data never became actionable."""

    code = "INTERACTION_ERROR"
    status_code = 502


class ExtractionTimeout(ScraperException):
    """The result table never materialized."""

    code = "EXTRACTION_TIMEOUT"
    status_code = 504


class SessionCrash(ScraperException):
    """The underlying browser process died or could not be launched."""

    code = "SESSION_CRASH"
    status_code = 502


# ----------------------------------------------------------------------
# Pool / orchestrator errors
# ----------------------------------------------------------------------
class ChannelLost(ScraperException):
    """The worker pool process is gone; an explicit relaunch is required."""

    code = "CHANNEL_LOST"
    status_code = 503


class ReconfigurationFailure(ScraperException):
    """A submitted target list was rejected."""

    code = "RECONFIGURATION_FAILURE"
    status_code = 422


class TargetNotFound(ScraperException):
    code = "TARGET_NOT_FOUND"
    status_code = 404

    def __init__(self, target_id: str):
        super().__init__(f"Target '{target_id}' is not tracked.")
        self.target_id = target_id


class TargetsFileError(ScraperException):
    """The targets file is missing or does not validate."""

    code = "TARGETS_FILE_ERROR"
    status_code = 500


class ValidationError(ScraperException):
    """Request body failed FastAPI validation."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, errors: List[Any]):
        super().__init__("Request validation failed")
        self.errors = errors

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"]["details"] = self.errors
        return body
