"""Optimistic client for the Blind Canvas placement API."""

from canvas_client.api import (
    CanvasApiClient,
    CanvasClientError,
    NotFoundError,
    NotRevealedError,
    PlacementResult,
    RevealResult,
    TransientError,
    ValidationError,
)
from canvas_client.session import CanvasSession
from canvas_client.state import CanvasState, LedgerSnapshot, Mark, PlacementNotAllowedError, SessionPhase
from canvas_client.submitter import PlacementSubmitter

__all__ = [
    "CanvasApiClient",
    "CanvasClientError",
    "CanvasSession",
    "CanvasState",
    "LedgerSnapshot",
    "Mark",
    "NotFoundError",
    "NotRevealedError",
    "PlacementNotAllowedError",
    "PlacementResult",
    "PlacementSubmitter",
    "RevealResult",
    "SessionPhase",
    "TransientError",
    "ValidationError",
]
