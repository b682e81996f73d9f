"""Error taxonomy for the medication engine."""

from typing import List, Optional


class MedicationError(Exception):
    """Base class for all medication engine errors."""

    retryable = False


class ValidationError(MedicationError):
    """Bad input shape or invariant violation. Never retried."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class NotFoundError(MedicationError):
    """Missing command or event."""


class ConflictError(MedicationError):
    """Lost a terminal-event race or attempted an illegal state transition."""


class PermissionDeniedError(MedicationError):
    """Acting user may not perform the action for this patient."""


class TransientStoreError(MedicationError):
    """Infrastructure hiccup; safe to retry the whole atomic unit."""

    retryable = True


class FatalError(MedicationError):
    """Retries exhausted or unrecoverable failure of an atomic unit."""

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        operations: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.correlation_id = correlation_id
        self.operations = operations or []
