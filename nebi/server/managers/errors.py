"""Domain error categories shared by the managers.

The API layer maps each category to one HTTP status; specific errors
subclass the category that describes them.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Request is well-formed but semantically invalid (400)."""


class ForbiddenError(PermissionError):
    """Caller may see the resource but not perform the action (403)."""


class NotFoundError(LookupError):
    """Resource absent, or hidden from the caller (404)."""

    resource = "Resource"


class ConflictError(ValueError):
    """Name collision or duplicate grant (409)."""
