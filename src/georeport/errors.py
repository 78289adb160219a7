"""Request-level failures of a report run.

Adapter failures never show up here: they are absorbed into tagged results
and limitation entries. Only structural failures of the orchestration loop
propagate to the caller.
"""


class ReportError(Exception):
    """Base class for errors surfaced to the caller as ``{ok: false, error}``."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInputError(ReportError):
    """Malformed request: neither an address nor a coordinate pair."""

    status_code = 400


class GeocodingFailedError(ReportError):
    """The address could not be resolved to coordinates at all."""

    status_code = 422


class StepLimitExceededError(ReportError):
    """The model did not produce a compliant report within the step bound."""

    status_code = 502


class ModelProtocolError(ReportError):
    """The model provider returned no message or rejected the request."""

    status_code = 502


class RateLimitedError(ReportError):
    """Too many report requests from one client inside the current window."""

    status_code = 429

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after
