"""Keyed registries over the rental database.

A `RentalStore` is built per unit of work around one session; the state
machines only see its registries and `emit`, never the session directly.
"""

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from carrental.common.errors import AlreadyExists, ConcurrentModification, NotFound
from carrental.common.events import EventEnvelope, topic_for
from carrental.common.logging import logger
from carrental.services.rental.models import Car, License, OutboxEvent, Participant, StatusTimeline


class Registry:
    """get/add/update/remove/query for one entity type, keyed by its id column."""

    def __init__(self, db, model, entity: str, key: str) -> None:
        self.db = db
        self.model = model
        self.entity = entity
        self.key = key

    def _key_column(self):
        return getattr(self.model, self.key)

    def find(self, entity_id: str):
        return self.db.get(self.model, entity_id)

    def get(self, entity_id: str):
        record = self.find(entity_id)
        if record is None:
            raise NotFound(self.entity, entity_id)
        return record

    def add(self, record) -> None:
        entity_id = getattr(record, self.key)
        if self.find(entity_id) is not None:
            raise AlreadyExists(self.entity, entity_id)
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Lost a race against a concurrent add of the same id.
            raise AlreadyExists(self.entity, entity_id) from exc

    def update(self, record, **changes) -> None:
        """Write `changes` only if the stored row still has the version we read.

        The in-session record is synchronized with the new values and version.
        """

        entity_id = getattr(record, self.key)
        current_version = record.state_version
        result = self.db.execute(
            update(self.model)
            .where(
                self._key_column() == entity_id,
                self.model.state_version == current_version,
            )
            .values(**changes, state_version=current_version + 1)
        )
        if result.rowcount != 1:
            stored = self.db.execute(
                select(self.model.status).where(self._key_column() == entity_id)
            ).first()
            if stored is None:
                raise NotFound(self.entity, entity_id)
            raise ConcurrentModification(self.entity, entity_id, stored.status, current_version)

    def remove(self, entity_id: str) -> None:
        result = self.db.execute(delete(self.model).where(self._key_column() == entity_id))
        if result.rowcount != 1:
            raise NotFound(self.entity, entity_id)

    def query(self, *criteria) -> list:
        return list(
            self.db.execute(select(self.model).where(*criteria).order_by(self._key_column())).scalars().all()
        )


class RentalStore:
    """Registries plus event emission bound to one session and trace id."""

    def __init__(self, db, trace_id: str = "") -> None:
        self.db = db
        self.trace_id = trace_id
        self.licenses = Registry(db, License, "license", "license_id")
        self.cars = Registry(db, Car, "car", "car_id")
        self.participants = Registry(db, Participant, "participant", "participant_id")

    def emit(self, event_name: str, aggregate_type: str, aggregate_id: str, payload: dict) -> EventEnvelope:
        """Queue an event in the outbox; it is published only if the session commits."""

        topic = topic_for(event_name)
        event = EventEnvelope(
            event_type=event_name,
            aggregate_id=aggregate_id,
            trace_id=self.trace_id,
            payload=payload,
        )
        self.db.add(
            OutboxEvent(
                id=event.event_id,
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_name,
                topic=topic,
                payload=event.model_dump(),
            )
        )
        logger.debug("event_queued event_type=%s aggregate_id=%s", event_name, aggregate_id)
        return event

    def record_transition(
        self,
        entity_type: str,
        entity_id: str,
        from_state: str | None,
        to_state: str,
        reason: str,
        event_id: str | None,
    ) -> None:
        self.db.add(
            StatusTimeline(
                entity_type=entity_type,
                entity_id=entity_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                event_id=event_id,
            )
        )

    def timeline(self, entity_type: str, entity_id: str) -> list[StatusTimeline]:
        return list(
            self.db.execute(
                select(StatusTimeline)
                .where(StatusTimeline.entity_type == entity_type, StatusTimeline.entity_id == entity_id)
                .order_by(StatusTimeline.created_at, StatusTimeline.timeline_id)
            )
            .scalars()
            .all()
        )
