"""Exceptions raised by the event applier and its control surface."""
from __future__ import annotations


class EngineError(Exception):
    """Base error for the stats engine."""


class EngineAlreadyRunningError(EngineError):
    """Initialization refused because the processor is already running."""


class WatermarkConflictError(EngineError):
    """Watermark moved underneath a tick (compare-and-swap lost)."""


class EventValidationError(EngineError):
    """Producer payload rejected before it reached the event log."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
