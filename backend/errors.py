"""
Error taxonomy for the question pipeline.

Every error carries a ``kind`` so the job record (and the client) can tell
a provider failure from a timeout, a configuration problem or a storage
outage without parsing messages.
"""

from typing import Any, Dict, Optional


class FranklinError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "internal"

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self, stage: Optional[str] = None) -> Dict[str, Any]:
        """Structured form stored in a failed job's ``error`` field."""
        return {
            "message": self.message,
            "details": repr(self.cause) if self.cause is not None else None,
            "kind": self.kind,
            "stage": stage,
            "provider": getattr(self, "provider", None),
        }


class InputError(FranklinError):
    """The question was rejected before any job was created."""

    kind = "input"


class ConfigurationError(FranklinError):
    """Required provider credentials are missing or the provider set is unusable."""

    kind = "configuration"


class JobStoreError(FranklinError):
    """The job store could not be read or written. Not the same as 'job not found'."""

    kind = "store"


class ProviderError(FranklinError):
    """An external provider call failed or returned something unusable."""

    kind = "provider"

    def __init__(
        self,
        provider: str,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{provider}: {message}", cause)
        self.provider = provider


class VideoGenerationError(ProviderError):
    """The video provider reported the render as failed."""


class VideoTimeoutError(ProviderError):
    """The video provider never reached ``done`` within the allowed number of polls."""

    kind = "timeout"
