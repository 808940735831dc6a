"""
Registration error taxonomy.

All errors raised by the registration subsystem derive from RegistrationError
so that callers can treat any of them as "alignment unavailable for this
request" without catching unrelated exceptions.
"""


class RegistrationError(Exception):
    """Base class for recoverable, request-level registration failures."""


class InsufficientPointsError(RegistrationError):
    """Fewer than three valid point pairs were available for a rigid fit."""

    def __init__(self, n_valid: int, required: int = 3):
        self.n_valid = n_valid
        self.required = required
        super().__init__(
            f"Need at least {required} valid point pairs, got {n_valid}"
        )


class DegenerateGeometryError(RegistrationError):
    """Points are collinear or coincident, so the fitted rotation is meaningless."""


class EmptyCloudError(RegistrationError):
    """No valid (finite) points remained after filtering."""


class GPUContextError(RegistrationError):
    """A GPU context was used from a thread that does not own it."""
