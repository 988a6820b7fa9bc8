"""Typed failures raised by rental operations.

Every error is raised before the owning session commits, so a failed operation
never leaves partial state behind.
"""


class CarRentalError(Exception):
    """Base class for all domain failures."""


class NotFound(CarRentalError):
    """Referenced record is absent from its registry."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidArgument(CarRentalError, ValueError):
    """Malformed or missing input."""


class AlreadyExists(InvalidArgument):
    """Duplicate identifier on creation."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} already exists")
        self.entity = entity
        self.entity_id = entity_id


class InvalidState(CarRentalError):
    """Operation attempted from a status that forbids it."""

    def __init__(self, entity: str, entity_id: str, current: str, expected, message: str | None = None) -> None:
        if isinstance(expected, str):
            expected = [expected]
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.expected = sorted(expected)
        super().__init__(
            message
            or f"{entity} {entity_id} is {current}; required status: {', '.join(self.expected) or 'none'}"
        )


class ExtraPaymentRequired(InvalidState):
    """Inspection found damage; the customer must settle an extra payment first."""

    def __init__(self, car_id: str, current: str) -> None:
        super().__init__(
            "car",
            car_id,
            current,
            [current],
            message=f"car {car_id} is damaged; the customer must make an extra payment",
        )


class ConcurrentModification(InvalidState):
    """A conditional update lost against a concurrent change to the same record."""

    def __init__(self, entity: str, entity_id: str, current: str, version: int) -> None:
        super().__init__(
            entity,
            entity_id,
            current,
            [current],
            message=f"optimistic concurrency conflict for {entity} {entity_id} (expected version {version})",
        )
