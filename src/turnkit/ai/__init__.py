"""Completion client, backend gateway, plan catalog and error taxonomy."""

from .errors import (
    AnalysisError,
    GuardRejected,
    ImageGenerationError,
    QuotaExceeded,
    ToolExecutionError,
    TransportError,
    TurnCancelled,
    TurnkitError,
    UploadError,
)
from .client import ChatRequest, CompletionClient, EventStreamDecoder, extract_delta
from .gateway import BackendGateway
from .plans import Capabilities, capabilities_for_plan, normalize_plan, resolve_model

__all__ = [
    "AnalysisError",
    "BackendGateway",
    "Capabilities",
    "ChatRequest",
    "CompletionClient",
    "EventStreamDecoder",
    "GuardRejected",
    "ImageGenerationError",
    "QuotaExceeded",
    "ToolExecutionError",
    "TransportError",
    "TurnCancelled",
    "TurnkitError",
    "UploadError",
    "capabilities_for_plan",
    "extract_delta",
    "normalize_plan",
    "resolve_model",
]
