"""Notification consumer for license and car transition events."""

import asyncio

from sqlalchemy import select

from carrental.common.events import CAR_TOPIC, LICENSE_TOPIC, EventEnvelope, consume_forever
from carrental.common.logging import logger
from carrental.common.metrics import duplicate_events_skipped_total
from carrental.services.notification.models import InboxEvent, NotificationLog


MESSAGES = {
    "LicenseUploaded": "License {aggregate_id} received and pending review",
    "LicenseApproved": "License {aggregate_id} approved",
    "LicenseRejected": "License {aggregate_id} rejected: {reason}",
    "CarCreated": "Car {aggregate_id} added to the fleet",
    "CarSelected": "Car {aggregate_id} reserved for {customer_id}",
    "CarDelivered": "Car {aggregate_id} delivered to {customer_id}",
    "CarInspected": "Car {aggregate_id} inspected",
    "CarReturned": "Car {aggregate_id} returned by {customer_id}",
    "CarRemoved": "Car {aggregate_id} removed from the fleet",
}


def render_message(event: EventEnvelope) -> str:
    """Human-readable text for one event; unknown types fall back to a generic line."""

    template = MESSAGES.get(event.event_type)
    if template is None:
        return f"{event.event_type} for {event.aggregate_id}"
    fields = {"reason": "", "customer_id": "customer", **event.payload, "aggregate_id": event.aggregate_id}
    return template.format(**fields)


class NotificationService:
    """Writes one notification log per rental event, skipping redeliveries."""

    def __init__(self, session_factory, service_name: str = "notification", channel: str = "webhook") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.channel = channel

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def handle_event(self, event: EventEnvelope) -> None:
        """Persist one notification log, skipping duplicate events safely."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(
                    service=self.service_name,
                    topic=event.event_type,
                ).inc()
                return
            message = render_message(event)
            db.add(
                NotificationLog(
                    aggregate_id=event.aggregate_id,
                    event_type=event.event_type,
                    recipient=event.payload.get("customer_id"),
                    channel=self.channel,
                    message=message,
                )
            )
            self._mark_inbox(db, event.event_id)
            db.commit()
            logger.info(message)

    def list_logs(self, aggregate_id: str, limit: int = 100) -> list[NotificationLog]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(NotificationLog)
                    .where(NotificationLog.aggregate_id == aggregate_id)
                    .order_by(NotificationLog.created_at.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    async def start_consumers(self) -> None:
        """Start license and car event consumers."""

        await asyncio.gather(
            consume_forever(LICENSE_TOPIC, "notification-licenses", self.handle_event),
            consume_forever(CAR_TOPIC, "notification-cars", self.handle_event),
        )
