"""Shared fixtures: a throwaway SQLite database per test."""

import pytest
from sqlalchemy import select, text
from sqlalchemy.orm import sessionmaker

from carrental.common.db import build_engine, init_db
from carrental.services.notification import models as notification_models  # noqa: F401
from carrental.services.rental.models import OutboxEvent
from carrental.services.rental.service import RentalService


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'carrental.db'}")
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def service(session_factory):
    return RentalService(session_factory)


@pytest.fixture
def approved_alice(service):
    """License L1 for alice, already approved."""

    service.upload_license("L1", "alice")
    return service.approve_license("L1")


@pytest.fixture
def outbox(session_factory):
    """Return a callable listing queued event types, optionally for one aggregate."""

    def _events(aggregate_id: str | None = None) -> list[OutboxEvent]:
        with session_factory() as db:
            query = select(OutboxEvent)
            if aggregate_id is not None:
                query = query.where(OutboxEvent.aggregate_id == aggregate_id)
            return list(db.execute(query.order_by(text("rowid"))).scalars().all())

    return _events
