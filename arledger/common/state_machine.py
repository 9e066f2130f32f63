"""Alert queue status transitions enforced by the delivery service."""

from arledger.common.domain import AlertStatus
from arledger.common.errors import InvalidStatusTransition

ALLOWED_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.QUEUED: {AlertStatus.PROCESSING},
    AlertStatus.PROCESSING: {AlertStatus.SENT, AlertStatus.QUEUED, AlertStatus.FAILED},
    AlertStatus.SENT: set(),
    AlertStatus.FAILED: set(),
}


def validate_transition(current: AlertStatus | str, new: AlertStatus | str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    current_status = AlertStatus(current)
    new_status = AlertStatus(new)
    if new_status not in ALLOWED_TRANSITIONS.get(current_status, set()):
        raise InvalidStatusTransition(
            f"Invalid transition: {current_status.value} -> {new_status.value}"
        )
