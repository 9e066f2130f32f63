"""Exception hierarchy for ledger commands, replay and alert delivery."""


class ArLedgerError(Exception):
    """Base class for all domain errors raised by this package."""


class CommandValidationError(ArLedgerError, ValueError):
    """Command input is malformed; nothing was appended."""


class ArNotFound(ArLedgerError, LookupError):
    """No snapshot exists for the requested AR."""

    def __init__(self, ar_id: str) -> None:
        super().__init__(f"AR not found: {ar_id}")
        self.ar_id = ar_id


class BusinessRuleViolation(ArLedgerError, ValueError):
    """Command is well-formed but breaks a lifecycle rule."""


class AlreadyPaid(BusinessRuleViolation):
    def __init__(self, ar_id: str) -> None:
        super().__init__(f"AR {ar_id} is already marked as paid")
        self.ar_id = ar_id


class InvalidStatusTransition(BusinessRuleViolation):
    """Alert queue row asked to move to a status it cannot reach."""


class InvalidEventSequence(ArLedgerError, ValueError):
    """Event history cannot be folded into a snapshot."""


class ConcurrentModification(ArLedgerError, RuntimeError):
    """Snapshot was updated by another writer since it was read.

    The event is already durable; reload the snapshot and retry.
    """

    def __init__(self, ar_id: str, expected_version: int) -> None:
        super().__init__(
            f"optimistic concurrency conflict for AR {ar_id} (expected version {expected_version})"
        )
        self.ar_id = ar_id
        self.expected_version = expected_version


class ChannelError(ArLedgerError, RuntimeError):
    """Notification channel could not deliver a message."""
