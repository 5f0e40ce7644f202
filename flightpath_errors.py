"""
Error taxonomy for the flightpath orchestrator.

Every exception that escapes an agent call is mapped onto one of five
classes. Only transient and unknown errors are worth retrying; the rest
indicate something an operator has to fix.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Union


class ErrorType(Enum):
    AUTHENTICATION = "authentication"
    MODEL = "model"
    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


SUGGESTED_ACTIONS = {
    ErrorType.AUTHENTICATION: "Check ANTHROPIC_API_KEY or log in again before retrying.",
    ErrorType.MODEL: "Check the configured model ids; the requested model is not available.",
    ErrorType.CONFIGURATION: "Check the working directory, file permissions and agent configuration.",
    ErrorType.TRANSIENT: "Provider is busy or unreachable; the request will be retried.",
    ErrorType.UNKNOWN: "Inspect the pipeline event log for details.",
}


@dataclass
class ErrorClassification:
    type: ErrorType
    retryable: bool
    message: str
    suggested_action: str

    def to_dict(self) -> dict:
        return {
            "type": self.type.value, "retryable": self.retryable,
            "message": self.message, "suggestedAction": self.suggested_action,
        }


def classify_error(error: Union[BaseException, str]) -> ErrorClassification:
    """Map a raw error (or its message) to an ErrorClassification. First match wins."""
    message = str(error) if error is not None else ""
    text = message.lower()

    if any(s in text for s in ("not logged in", "api key", "unauthorized", "401")):
        etype = ErrorType.AUTHENTICATION
    elif ("model not found" in text or "invalid model" in text
          or ("model" in text and "not available" in text)):
        etype = ErrorType.MODEL
    elif any(s in text for s in ("not found", "permission denied", "enoent",
                                 "eacces", "exited with code 1")):
        etype = ErrorType.CONFIGURATION
    elif any(s in text for s in ("timeout", "timed out", "etimedout", "econnreset",
                                 "rate limit", "429", "503", "502", "529", "overloaded")):
        etype = ErrorType.TRANSIENT
    else:
        etype = ErrorType.UNKNOWN

    return ErrorClassification(
        type=etype,
        retryable=etype in (ErrorType.TRANSIENT, ErrorType.UNKNOWN),
        message=message,
        suggested_action=SUGGESTED_ACTIONS[etype],
    )


class FlightpathError(Exception):
    """Base class for orchestrator errors."""


class PipelineNotFound(FlightpathError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline not found: {pipeline_id}")
        self.pipeline_id = pipeline_id


class ConfigurationError(FlightpathError):
    """Raised for misconfiguration. The message always classifies as configuration."""

    def __init__(self, message: str):
        if "not found" not in message.lower():
            message = f"{message} (configuration not found or invalid)"
        super().__init__(message)


class AgentError(FlightpathError):
    """The remote agent finished a turn with a non-success result."""

    def __init__(self, subtype: str, errors: List[str] = None):
        self.subtype = subtype
        self.errors = errors or []
        detail = "; ".join(self.errors) if self.errors else "no details"
        super().__init__(f"Agent error: {subtype} - {detail}")


class TurnLimitExceeded(FlightpathError):
    """The agent took more internal turns than a single send allows."""

    def __init__(self, limit: int, turns: int):
        self.limit = limit
        self.turns = turns
        super().__init__(f"Turn limit exceeded: {turns} turns (limit {limit})")


class PipelineAborted(FlightpathError):
    """Raised when an operator abort or pause is sampled inside a long wait."""

    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline {pipeline_id} stopped by operator")
        self.pipeline_id = pipeline_id


class ExplorerTimeout(FlightpathError):
    def __init__(self, lane: str, seconds: float):
        super().__init__(f"Explorer {lane} timeout after {seconds:g}s")
        self.lane = lane
        self.seconds = seconds


class AllExplorersFailedError(FlightpathError):
    """All three explorer lanes failed; carries each lane's classified error."""

    def __init__(self, failures: List[dict]):
        self.failures = failures
        parts = [
            f"{f['type']}: {f['error']} ({f['errorType']})" for f in failures
        ]
        message = "All parallel explorers failed: " + ", ".join(parts)
        if any(f["errorType"] == ErrorType.CONFIGURATION.value for f in failures):
            message += ". " + SUGGESTED_ACTIONS[ErrorType.CONFIGURATION]
        super().__init__(message)
