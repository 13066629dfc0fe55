"""Error taxonomy for Flux.

Entity lookups that miss are not errors: mutators return ``None`` or
``False`` and the caller decides how to report it. Everything raised by the
core derives from :class:`FluxError`.
"""

from __future__ import annotations


class FluxError(Exception):
    """Base class for all Flux errors."""


class ValidationError(FluxError, ValueError):
    """Input that cannot be applied: unknown fields, bad values, unresolvable references."""


class InvalidTransitionError(ValidationError):
    """A task status move that the transition table forbids."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        if current == "planning" and requested == "in_progress":
            message = 'Cannot start a task that is still in planning. Move the task to "todo" first.'
        else:
            message = f"Cannot move a task from '{current}' to '{requested}'."
        super().__init__(message)


class ConflictError(FluxError, ValueError):
    """A uniqueness rule (SKU, customer email) would be broken."""


class PersistenceError(FluxError, RuntimeError):
    """The storage adapter failed to read or write."""


class LockTimeoutError(PersistenceError):
    """The data-file lock could not be acquired in time."""


class WebhookDeliveryError(FluxError):
    """A dispatch handler could not deliver a payload."""
