"""Rental lifecycle logic.

Owns the license and car state machines: every operation validates the current
status, applies one conditional update, appends to the status timeline and
queues its event in the outbox, all inside a single session commit.
"""

import asyncio
from contextlib import contextmanager

from sqlalchemy import func

from carrental.common.config import settings
from carrental.common.errors import CarRentalError, ExtraPaymentRequired, InvalidArgument, InvalidState, NotFound
from carrental.common.events import EventEnvelope, KafkaBus
from carrental.common.logging import entity_id_ctx, entity_type_ctx, logger
from carrental.common.metrics import batch_items_total, transitions_total
from carrental.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from carrental.common.state_machine import (
    AVAILABLE_STATUSES,
    CarStatus,
    LicenseStatus,
    validate_transition,
)
from carrental.common.tracing import tracer
from carrental.services.rental.models import Car, License, OutboxEvent, Participant
from carrental.services.rental.store import RentalStore


DEMO_PARTICIPANTS = [
    ("alice", "CUSTOMER", "Alice", "Hamilton"),
    ("bob", "CUSTOMER", "Bob", "Appleton"),
    ("matias", "MANAGER", "Matias", "Manager"),
    ("ella", "SALES_MANAGER", "Ella", "SalesManager"),
    ("charlie", "CUSTOMER_SUPPORT", "Charlie", "CustomerSupport"),
]
DEMO_LICENSES = [("license1", "alice"), ("license2", "bob")]
DEMO_CARS = [
    ("car1", "Toyota", "Camry", "Blue", 2022, 50.0),
    ("car2", "Honda", "Accord", "Red", 2021, 45.0),
]


def _require(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field} is required")
    return value


def _car_attributes(car: Car) -> dict:
    return {
        "car_id": car.car_id,
        "brand": car.brand,
        "model": car.model,
        "color": car.color,
        "year": car.year,
        "rental_rate": car.rental_rate,
    }


class RentalService:
    """License approval and car rental cycle over an injected session factory."""

    def __init__(self, session_factory, service_name: str = "rental") -> None:
        self.session_factory = session_factory
        self.kafka = KafkaBus()
        self.service_name = service_name

    @contextmanager
    def _unit(self, entity: str, transition: str, entity_id: str, trace_id: str = ""):
        """One all-or-nothing unit of work; commits only if the body returns."""

        type_token = entity_type_ctx.set(entity)
        entity_token = entity_id_ctx.set(entity_id)
        try:
            with tracer.start_as_current_span(f"{entity}.{transition}"), self.session_factory() as db:
                try:
                    yield RentalStore(db, trace_id)
                    db.commit()
                except CarRentalError as exc:
                    db.rollback()
                    transitions_total.labels(
                        service=self.service_name, entity=entity, transition=transition, outcome=type(exc).__name__
                    ).inc()
                    logger.warning(
                        "transition_rejected entity=%s id=%s transition=%s error=%s",
                        entity,
                        entity_id,
                        transition,
                        exc,
                    )
                    raise
            transitions_total.labels(
                service=self.service_name, entity=entity, transition=transition, outcome="ok"
            ).inc()
        finally:
            entity_id_ctx.reset(entity_token)
            entity_type_ctx.reset(type_token)

    def _apply(
        self,
        store: RentalStore,
        registry,
        record,
        new_status: str,
        event_name: str,
        reason: str,
        payload: dict,
        **changes,
    ) -> None:
        """Validate, conditionally update, record timeline, and queue the event."""

        entity = registry.entity
        entity_id = getattr(record, registry.key)
        from_status = record.status
        validate_transition(entity, entity_id, from_status, new_status)
        registry.update(record, status=new_status, **changes)
        event = store.emit(event_name, entity, entity_id, {**payload, "status": new_status})
        store.record_transition(entity, entity_id, from_status, new_status, reason, event.event_id)
        logger.info(
            "transition_applied entity=%s id=%s from=%s to=%s", entity, entity_id, from_status, new_status
        )

    # Licenses

    def upload_license(self, license_id: str, customer_id: str, trace_id: str = "") -> License:
        """Create a license in `PENDING` for the given customer."""

        _require(license_id, "license_id")
        _require(customer_id, "customer_id")
        with self._unit("license", "upload", license_id, trace_id) as store:
            license = License(license_id=license_id, customer_id=customer_id, status=LicenseStatus.PENDING)
            store.licenses.add(license)
            if store.participants.find(customer_id) is None:
                logger.warning("license_customer_unknown license_id=%s customer_id=%s", license_id, customer_id)
            event = store.emit(
                "LicenseUploaded",
                "license",
                license_id,
                {"license_id": license_id, "customer_id": customer_id, "status": license.status},
            )
            store.record_transition("license", license_id, None, license.status, "license_uploaded", event.event_id)
        return license

    def approve_license(self, license_id: str, trace_id: str = "") -> License:
        with self._unit("license", "approve", license_id, trace_id) as store:
            license = store.licenses.get(license_id)
            self._apply(
                store,
                store.licenses,
                license,
                LicenseStatus.APPROVED,
                "LicenseApproved",
                "license_approved",
                {"license_id": license_id, "customer_id": license.customer_id},
            )
        return license

    def reject_license(self, license_id: str, reason: str, trace_id: str = "") -> License:
        """Reject a pending license; the reason travels with the event."""

        _require(reason, "reason")
        with self._unit("license", "reject", license_id, trace_id) as store:
            license = store.licenses.get(license_id)
            self._apply(
                store,
                store.licenses,
                license,
                LicenseStatus.REJECTED,
                "LicenseRejected",
                f"license_rejected:{reason}",
                {"license_id": license_id, "customer_id": license.customer_id, "reason": reason},
            )
        return license

    def get_license(self, license_id: str) -> License:
        with self.session_factory() as db:
            return RentalStore(db).licenses.get(license_id)

    # Cars

    def create_car(
        self,
        car_id: str,
        brand: str,
        model: str,
        color: str,
        year: int,
        rental_rate: float,
        trace_id: str = "",
    ) -> Car:
        """Add a car to the fleet in `AVAILABLE`."""

        for value, field in ((car_id, "car_id"), (brand, "brand"), (model, "model"), (color, "color")):
            _require(value, field)
        if isinstance(year, bool) or not isinstance(year, int) or year <= 0:
            raise InvalidArgument("year must be a positive integer")
        if isinstance(rental_rate, bool) or not isinstance(rental_rate, (int, float)) or rental_rate < 0:
            raise InvalidArgument("rental_rate must be a non-negative number")

        with self._unit("car", "create", car_id, trace_id) as store:
            car = Car(
                car_id=car_id,
                brand=brand,
                model=model,
                color=color,
                year=year,
                rental_rate=float(rental_rate),
                status=CarStatus.AVAILABLE,
            )
            store.cars.add(car)
            event = store.emit("CarCreated", "car", car_id, {**_car_attributes(car), "status": car.status})
            store.record_transition("car", car_id, None, car.status, "car_created", event.event_id)
        return car

    def select_car(self, customer_id: str, car_id: str, trace_id: str = "") -> Car:
        """Reserve an available car for a customer holding an approved license.

        The car row is written with a version-guarded update, so of two
        concurrent selections of the same car only one can commit.
        """

        _require(customer_id, "customer_id")
        with self._unit("car", "select", car_id, trace_id) as store:
            car = store.cars.get(car_id)
            if not car.available:
                raise InvalidState("car", car_id, car.status, AVAILABLE_STATUSES)
            licenses = store.licenses.query(License.customer_id == customer_id)
            if not licenses:
                raise NotFound("license for customer", customer_id)
            approved = [lic for lic in licenses if lic.status == LicenseStatus.APPROVED]
            if not approved:
                raise InvalidState(
                    "license",
                    licenses[0].license_id,
                    licenses[0].status,
                    LicenseStatus.APPROVED,
                    message=f"customer {customer_id} has no approved license "
                    f"(license {licenses[0].license_id} is {licenses[0].status})",
                )
            self._apply(
                store,
                store.cars,
                car,
                CarStatus.SELECTED,
                "CarSelected",
                "car_selected",
                {"car_id": car_id, "customer_id": customer_id, "license_id": approved[0].license_id},
                rented_by=customer_id,
            )
        return car

    def deliver_car(self, car_id: str, trace_id: str = "") -> Car:
        with self._unit("car", "deliver", car_id, trace_id) as store:
            car = store.cars.get(car_id)
            self._apply(
                store,
                store.cars,
                car,
                CarStatus.DELIVERED,
                "CarDelivered",
                "car_delivered",
                {"car_id": car_id, "customer_id": car.rented_by},
            )
        return car

    def inspect_car(self, car_id: str, damaged: bool = False, trace_id: str = "") -> Car:
        """Check a delivered car.

        A damaged car is not checked in: the call fails with
        `ExtraPaymentRequired` and the car stays `DELIVERED`.
        """

        with self._unit("car", "inspect", car_id, trace_id) as store:
            car = store.cars.get(car_id)
            validate_transition("car", car_id, car.status, CarStatus.CHECKED)
            if damaged:
                raise ExtraPaymentRequired(car_id, car.status)
            self._apply(
                store,
                store.cars,
                car,
                CarStatus.CHECKED,
                "CarInspected",
                "car_inspected",
                {"car_id": car_id, "customer_id": car.rented_by, "damaged": False},
            )
        return car

    def return_car(self, car_id: str, trace_id: str = "") -> Car:
        with self._unit("car", "return", car_id, trace_id) as store:
            car = store.cars.get(car_id)
            customer_id = car.rented_by
            self._apply(
                store,
                store.cars,
                car,
                CarStatus.RETURNED,
                "CarReturned",
                "car_returned",
                {"car_id": car_id, "customer_id": customer_id},
                rented_by=None,
            )
        return car

    def get_car(self, car_id: str) -> Car:
        with self.session_factory() as db:
            return RentalStore(db).cars.get(car_id)

    def remove_cars_above_rate(self, threshold: float | None = None, trace_id: str = "") -> dict:
        """Delete every car whose rental rate is strictly above `threshold`.

        Each car is removed in its own unit of work. A failing item is reported
        and skipped; earlier removals stay committed.
        """

        if threshold is None:
            threshold = settings.high_rental_rate_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            raise InvalidArgument("threshold must be a non-negative number")

        with self.session_factory() as db:
            candidates = [car.car_id for car in RentalStore(db).cars.query(Car.rental_rate > threshold)]

        removed: list[str] = []
        failed: list[dict] = []
        for car_id in candidates:
            try:
                with self._unit("car", "remove", car_id, trace_id) as store:
                    car = store.cars.get(car_id)
                    from_status = car.status
                    payload = {**_car_attributes(car), "threshold": threshold}
                    store.cars.remove(car_id)
                    event = store.emit("CarRemoved", "car", car_id, payload)
                    store.record_transition(
                        "car", car_id, from_status, "REMOVED", f"rental_rate_above:{threshold}", event.event_id
                    )
            except CarRentalError as exc:
                failed.append({"car_id": car_id, "error": str(exc)})
                batch_items_total.labels(
                    service=self.service_name, operation="remove_above_rate", outcome="failed"
                ).inc()
                continue
            removed.append(car_id)
            batch_items_total.labels(service=self.service_name, operation="remove_above_rate", outcome="ok").inc()

        logger.info(
            "cars_removed_above_rate threshold=%s removed=%s failed=%s", threshold, len(removed), len(failed)
        )
        return {"threshold": float(threshold), "removed": removed, "failed": failed}

    def select_cars_by_color(self, color: str) -> list[Car]:
        """Return cars of one color (case-insensitive); statuses are untouched."""

        _require(color, "color")
        with self.session_factory() as db:
            cars = RentalStore(db).cars.query(func.lower(Car.color) == color.strip().lower())
        batch_items_total.labels(service=self.service_name, operation="select_by_color", outcome="ok").inc(
            len(cars)
        )
        logger.info("cars_selected_by_color color=%s matched=%s", color, len(cars))
        return cars

    # Participants, timeline, demo data

    def get_participant(self, participant_id: str) -> Participant:
        with self.session_factory() as db:
            return RentalStore(db).participants.get(participant_id)

    def timeline(self, entity_type: str, entity_id: str) -> list:
        """Return the ordered audit trail; unknown ids yield NotFound."""

        with self.session_factory() as db:
            store = RentalStore(db)
            entries = store.timeline(entity_type, entity_id)
            if not entries:
                registry = store.licenses if entity_type == "license" else store.cars
                registry.get(entity_id)
            return entries

    def seed_demo(self, trace_id: str = "") -> dict:
        """Create the demo participants, pending licenses and available cars."""

        with self._unit("demo", "seed", "demo", trace_id) as store:
            for participant_id, role, first_name, last_name in DEMO_PARTICIPANTS:
                store.participants.add(
                    Participant(
                        participant_id=participant_id,
                        role=role,
                        first_name=first_name,
                        last_name=last_name,
                        country="UK",
                    )
                )
            for license_id, customer_id in DEMO_LICENSES:
                license = License(license_id=license_id, customer_id=customer_id, status=LicenseStatus.PENDING)
                store.licenses.add(license)
                event = store.emit(
                    "LicenseUploaded",
                    "license",
                    license_id,
                    {"license_id": license_id, "customer_id": customer_id, "status": license.status},
                )
                store.record_transition("license", license_id, None, license.status, "demo_seed", event.event_id)
            for car_id, brand, model, color, year, rate in DEMO_CARS:
                car = Car(
                    car_id=car_id,
                    brand=brand,
                    model=model,
                    color=color,
                    year=year,
                    rental_rate=rate,
                    status=CarStatus.AVAILABLE,
                )
                store.cars.add(car)
                event = store.emit("CarCreated", "car", car_id, {**_car_attributes(car), "status": car.status})
                store.record_transition("car", car_id, None, car.status, "demo_seed", event.event_id)
            seeded = {
                "participants": [row[0] for row in DEMO_PARTICIPANTS],
                "licenses": [row[0] for row in DEMO_LICENSES],
                "cars": [row[0] for row in DEMO_CARS],
            }
            store.emit("DemoDataCreated", "demo", "demo", seeded)
        return seeded

    # Outbox

    async def publish_pending(self, limit: int = 100) -> int:
        """Publish one claimed outbox batch; returns how many rows were sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("outbox publish failed: %s", exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
        return sent

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            try:
                await self.publish_pending()
            except Exception as exc:
                logger.exception("outbox poll failed service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(settings.outbox_poll_interval_seconds)
