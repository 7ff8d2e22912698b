"""Typed failures raised by the asset, queue and workflow core.

The core never maps these to HTTP; routers do that in one place
(``assetflow.routers.http_errors.raise_http_error``).
"""

from __future__ import annotations


class AssetFlowError(Exception):
    """Base class carrying a short machine-readable reason."""

    reason = "error"

    def __init__(self, message: str, *, reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class NotFoundError(AssetFlowError):
    """Record does not exist or does not belong to the expected parent."""

    reason = "not_found"


class ValidationError(AssetFlowError):
    """Input is structurally invalid for the requested operation."""

    reason = "validation_failed"


class InvalidStateError(AssetFlowError):
    """Operation would violate a stored-state invariant."""

    reason = "invalid_state"


class InvalidTransitionError(AssetFlowError):
    """Workflow target step is not a permitted move from the current step."""

    reason = "invalid_transition"


class ForbiddenError(AssetFlowError):
    """Actor is not allowed to perform the operation."""

    reason = "forbidden"


class TransientStorageError(AssetFlowError):
    """A processing attempt failed in a way that is worth retrying."""

    reason = "transient_storage_error"
