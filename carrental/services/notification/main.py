"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from carrental.common.config import settings
from carrental.common.db import SessionLocal, init_db
from carrental.common.logging import configure_logging
from carrental.common.metrics import metrics_response
from carrental.common.startup import log_startup_config
from carrental.common.tracing import instrument_app, setup_tracing
from carrental.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "DATABASE_URL", "KAFKA_BOOTSTRAP_SERVERS"],
)
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loops with FastAPI application lifecycle."""

    init_db()
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="Car Rental Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{aggregate_id}")
def list_notifications(aggregate_id: str, limit: int = 100):
    """Notifications sent for one license or car, oldest first."""

    return [
        {
            "event_type": row.event_type,
            "recipient": row.recipient,
            "channel": row.channel,
            "message": row.message,
        }
        for row in service.list_logs(aggregate_id, limit=limit)
    ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
