"""Exception taxonomy for the StuffTracker integration.

Defines a small hierarchy of exceptions used across services and the
WebSocket API. These extend Home Assistant's HomeAssistantError to ensure
consistent behavior when surfaced through the platform.

All exceptions accept a human-readable message. ``str(exception)`` returns the
message unchanged.
"""

from __future__ import annotations

from typing import Any

from homeassistant.exceptions import HomeAssistantError


class StuffTrackerError(HomeAssistantError):
    """Base exception for StuffTracker-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(StuffTrackerError):
    """Raised when input payloads fail validation."""


class NotFoundError(StuffTrackerError):
    """Raised when a resource does not exist or belongs to another owner."""


class InvalidOperationError(StuffTrackerError):
    """Raised for structurally invalid tree operations (self-move, cycles)."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class ConflictError(StuffTrackerError):
    """Raised when an operation conflicts with current state."""

    def as_data(self) -> dict[str, Any]:
        """Return structured details for API error envelopes."""

        return {}


class LocationNotEmptyError(ConflictError):
    """Raised when a non-forced delete targets a location with contents."""

    def __init__(
        self, message: str, *, child_count: int, item_count: int, total_descendant_items: int
    ) -> None:
        super().__init__(message)
        self.child_count = child_count
        self.item_count = item_count
        self.total_descendant_items = total_descendant_items

    def as_data(self) -> dict[str, Any]:
        return {
            "child_count": self.child_count,
            "item_count": self.item_count,
            "total_descendant_items": self.total_descendant_items,
        }


class StorageError(StuffTrackerError):
    """Raised when storage operations fail or data is corrupted.

    The transaction that raised it has been rolled back; retrying is safe.
    """
