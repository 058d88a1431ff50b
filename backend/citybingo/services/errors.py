"""Typed failures for the image generation pipeline.

Every failure a single generation job can hit is a ``GenerationError``
subclass with a stable ``code`` that the API returns as ``errorCode``.
Duplicate submissions are not errors: the deduplicator answers them with
a rejected ``AcquireDecision`` instead.
"""
from __future__ import annotations


class GenerationError(Exception):
    """Base class for failures of one generation job."""

    code = "GenerationError"

    def __init__(self, message: str = "", *, detail: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class EmptyResult(GenerationError):
    """The generator or the fetched payload returned no data."""

    code = "EmptyResult"


class FetchTimeout(GenerationError):
    """Downloading a remote artifact exceeded the fetch timeout."""

    code = "FetchTimeout"


class FetchFailure(GenerationError):
    """Downloading a remote artifact failed (non-2xx or transport error)."""

    code = "FetchFailure"


class InvalidPayloadFormat(GenerationError):
    """The raw source is neither a valid data URI nor an http(s) URL."""

    code = "InvalidPayloadFormat"


class StorageFailure(GenerationError):
    """Writing or verifying the artifact on disk failed."""

    code = "StorageFailure"


class PersistenceFailure(GenerationError):
    """The durable reference could not be written and verified."""

    code = "PersistenceFailure"

    def __init__(self, message: str = "", *, reason: str = "VerificationFailed",
                 attempts: int = 0, detail: str | None = None):
        super().__init__(message, detail=detail)
        self.reason = reason
        self.attempts = attempts


class UpstreamGenerationError(GenerationError):
    """The external generation service failed (HTTP error, rate limit, network)."""

    code = "UpstreamError"


class GenerationTimeout(GenerationError):
    """The job did not finish within the request's time budget.

    The job itself keeps running and still records its result.
    """

    code = "GenerationTimeout"


class ReferenceNotFound(LookupError):
    """The durable store has no row for the given item key."""


class SchedulerAggregateFailure(Exception):
    """A batch run could not start (e.g. its item list could not be read)."""
