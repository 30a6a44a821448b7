"""Exception taxonomy shared by the transport, tools and orchestrator."""

from __future__ import annotations

__all__ = [
    "TurnkitError",
    "TransportError",
    "QuotaExceeded",
    "ToolExecutionError",
    "UploadError",
    "AnalysisError",
    "ImageGenerationError",
    "VoiceError",
    "TurnCancelled",
    "GuardRejected",
]


class TurnkitError(RuntimeError):
    """Base class for every error raised by turnkit."""


class TransportError(TurnkitError):
    """The completion stream failed; partial text is kept by the caller."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceeded(TurnkitError):
    """The plan's daily allowance for ``kind`` is used up."""

    def __init__(self, kind: str, plan: str, *, limit: int | None = None) -> None:
        super().__init__(f"Daily {kind} limit reached for plan '{plan}'")
        self.kind = kind
        self.plan = plan
        self.limit = limit


class ToolExecutionError(TurnkitError):
    """A side-channel tool fetch failed; the continuation round is skipped."""

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class UploadError(TurnkitError):
    """Uploading an attachment failed."""


class AnalysisError(TurnkitError):
    """Analyzing an attachment or image failed."""


class ImageGenerationError(TurnkitError):
    """The image endpoint rejected the request or returned no URL."""


class VoiceError(TurnkitError):
    """Transcribing a voice note or synthesizing speech failed."""


class TurnCancelled(TurnkitError):
    """The owning cancellation token fired."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "cancelled")
        self.reason = reason


class GuardRejected(TurnkitError):
    """A single-flight lock is already held."""

    def __init__(self, resource: str, holder: str | None = None) -> None:
        super().__init__(f"{resource} is busy" + (f" (held by {holder})" if holder else ""))
        self.resource = resource
        self.holder = holder
