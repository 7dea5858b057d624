"""Error taxonomy for the pipeline."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class ServiceUnavailable(PipelineError):
    """Raised when a provider has no credentials/configuration.

    This is a routing decision (skip the phase), not a call failure.
    """


class TransientCallFailure(PipelineError):
    """Timeout, rate limit, network or 5xx error from an external call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentItemFailure(PipelineError):
    """Input the provider rejected and will keep rejecting (4xx, bad shape)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageFailure(PipelineError):
    """Queue/cluster persistence is unreachable or a write failed."""
