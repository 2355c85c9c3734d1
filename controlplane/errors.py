"""Controller error taxonomy: conflicts, transient failures, fatal conditions."""


class ControlPlaneError(Exception):
    """Base class for every error the controller raises on purpose."""


# --- conflicts: resolved locally, never crash a loop ---


class ConflictError(ControlPlaneError):
    """Request collides with current state; rejected or treated as a no-op."""


class AlreadyBound(ConflictError):
    """Volume is attached to a different instance."""

    def __init__(self, volume_id: str, holder_id: str, requester_id: str) -> None:
        self.volume_id = volume_id
        self.holder_id = holder_id
        self.requester_id = requester_id
        super().__init__(
            f"volume {volume_id} is bound to {holder_id}; refusing bind to {requester_id}"
        )


class InstanceNotRunning(ConflictError):
    """Bind target is unknown to the pool or not in the running state."""


class ReleaseInFlight(ConflictError):
    """Service already has a release attempt in flight."""


class StaleWriteError(ConflictError):
    """Stored record version moved on since it was read."""

    def __init__(self, key: str, expected: int, actual: int | None) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"stale write to {key!r}: expected version {expected}, found {actual}")


# --- transient: retried with backoff ---


class TransientError(ControlPlaneError):
    """Collaborator call failed in a way worth retrying (timeout, throttling, 5xx)."""


# --- fatal: not retried, surfaced via the notification channel ---


class FatalError(ControlPlaneError):
    """Condition that needs an operator; the controller stays in a safe state."""


class RetryBudgetExhausted(FatalError):
    """Transient failures persisted past the retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


class SizeCapExceeded(FatalError):
    """Requested volume size is above the configured maximum."""

    def __init__(self, volume_id: str, requested_bytes: int, max_bytes: int) -> None:
        self.volume_id = volume_id
        self.requested_bytes = requested_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"resize of {volume_id} to {requested_bytes} bytes exceeds maximum {max_bytes} bytes"
        )


class InvariantViolation(FatalError):
    """Stored state contradicts a controller invariant (e.g. two holders for one volume)."""


class CollaboratorError(FatalError):
    """Collaborator rejected the call outright (validation, permissions, limits)."""
