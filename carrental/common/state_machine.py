"""License and car status transitions enforced by the rental service."""

from enum import StrEnum

from carrental.common.errors import InvalidState


class LicenseStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class CarStatus(StrEnum):
    AVAILABLE = "AVAILABLE"
    SELECTED = "SELECTED"
    DELIVERED = "DELIVERED"
    CHECKED = "CHECKED"
    DAMAGED = "DAMAGED"
    RETURNED = "RETURNED"


LICENSE_TRANSITIONS: dict[str, set[str]] = {
    LicenseStatus.PENDING: {LicenseStatus.APPROVED, LicenseStatus.REJECTED},
    LicenseStatus.APPROVED: set(),
    LicenseStatus.REJECTED: set(),
    LicenseStatus.EXPIRED: set(),
    LicenseStatus.REVOKED: set(),
}

CAR_TRANSITIONS: dict[str, set[str]] = {
    CarStatus.AVAILABLE: {CarStatus.SELECTED},
    CarStatus.SELECTED: {CarStatus.DELIVERED},
    CarStatus.DELIVERED: {CarStatus.CHECKED},
    CarStatus.CHECKED: {CarStatus.RETURNED},
    CarStatus.RETURNED: {CarStatus.SELECTED},
    CarStatus.DAMAGED: set(),
}

# Statuses in which a car can be picked up by a new renter.
AVAILABLE_STATUSES = frozenset({CarStatus.AVAILABLE, CarStatus.RETURNED})

_MACHINES = {"license": LICENSE_TRANSITIONS, "car": CAR_TRANSITIONS}


def required_states(entity: str, new: str) -> set[str]:
    """Return every status from which `new` can be reached."""

    return {state for state, targets in _MACHINES[entity].items() if new in targets}


def validate_transition(entity: str, entity_id: str, current: str, new: str) -> None:
    """Raise when a transition is not allowed by the entity's state machine."""

    if new not in _MACHINES[entity].get(current, set()):
        raise InvalidState(entity, entity_id, current, required_states(entity, new))


def is_available(status: str) -> bool:
    return status in AVAILABLE_STATUSES
