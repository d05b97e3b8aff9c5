from typing import List, Optional


class LedgerOutboxError(Exception):
    """Base class for errors raised by the outbox and projection core."""


class ValidationError(LedgerOutboxError):
    """A command or event payload is malformed. Never retried."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class TransientInfrastructureError(LedgerOutboxError):
    """Timeouts, connection failures and ledger answers that are safe to retry."""


class PermanentLedgerRejection(LedgerOutboxError):
    """The ledger refused the transaction on business grounds."""

    def __init__(self, reason: str, code: Optional[str] = None):
        super().__init__(reason)
        # Preserved verbatim for operator triage
        self.reason = reason
        self.code = code


class ConsistencyViolation(LedgerOutboxError):
    """Read model or checkpoint state disagrees with the event being applied."""


class CheckpointConflict(ConsistencyViolation):
    """The stored checkpoint moved under the projector: another writer owns the channel."""
