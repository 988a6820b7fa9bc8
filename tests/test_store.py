"""Registry semantics: keyed CRUD, conditional updates, outbox atomicity."""

import pytest

from carrental.common.errors import AlreadyExists, ConcurrentModification, InvalidState, NotFound
from carrental.services.rental.models import Car
from carrental.services.rental.store import RentalStore


def _car(car_id="C1", rate=50.0, color="Blue"):
    return Car(car_id=car_id, brand="Honda", model="Accord", color=color, year=2021, rental_rate=rate, status="AVAILABLE")


def test_add_get_remove(session_factory):
    with session_factory() as db:
        store = RentalStore(db)
        store.cars.add(_car())
        db.commit()

    with session_factory() as db:
        store = RentalStore(db)
        assert store.cars.get("C1").brand == "Honda"
        with pytest.raises(AlreadyExists):
            store.cars.add(_car())
        db.rollback()
        store.cars.remove("C1")
        db.commit()

    with session_factory() as db:
        store = RentalStore(db)
        with pytest.raises(NotFound):
            store.cars.get("C1")
        with pytest.raises(NotFound):
            store.cars.remove("C1")


def test_query_orders_by_key(session_factory):
    with session_factory() as db:
        store = RentalStore(db)
        for car_id, rate in (("C3", 30.0), ("C1", 50.0), ("C2", 45.0)):
            store.cars.add(_car(car_id, rate))
        db.commit()
        assert [car.car_id for car in store.cars.query(Car.rental_rate > 40)] == ["C1", "C2"]


def test_update_bumps_version(session_factory):
    with session_factory() as db:
        RentalStore(db).cars.add(_car())
        db.commit()

    with session_factory() as db:
        store = RentalStore(db)
        car = store.cars.get("C1")
        store.cars.update(car, status="SELECTED", rented_by="alice")
        db.commit()
        assert (car.status, car.state_version) == ("SELECTED", 1)

    with session_factory() as db:
        stored = RentalStore(db).cars.get("C1")
        assert (stored.status, stored.rented_by, stored.state_version) == ("SELECTED", "alice", 1)


def test_stale_update_loses(session_factory):
    """Two writers read version 0; only the first to commit wins."""

    with session_factory() as db:
        RentalStore(db).cars.add(_car())
        db.commit()

    with session_factory() as first, session_factory() as second:
        stale = RentalStore(first).cars.get("C1")
        fresh = RentalStore(second).cars.get("C1")
        RentalStore(second).cars.update(fresh, status="SELECTED", rented_by="alice")
        second.commit()

        with pytest.raises(ConcurrentModification) as excinfo:
            RentalStore(first).cars.update(stale, status="SELECTED", rented_by="bob")
        first.rollback()

    assert isinstance(excinfo.value, InvalidState)
    assert excinfo.value.current == "SELECTED"
    with session_factory() as db:
        assert RentalStore(db).cars.get("C1").rented_by == "alice"


def test_update_of_deleted_row(session_factory):
    with session_factory() as db:
        RentalStore(db).cars.add(_car())
        db.commit()

    with session_factory() as first, session_factory() as second:
        stale = RentalStore(first).cars.get("C1")
        RentalStore(second).cars.remove("C1")
        second.commit()

        with pytest.raises(NotFound):
            RentalStore(first).cars.update(stale, status="SELECTED")
        first.rollback()


def test_concurrent_select_only_one_wins(service, session_factory, monkeypatch):
    """A selection that read the car before a competing commit is refused."""

    service.create_car("C1", "Toyota", "Camry", "Blue", 2022, 50.0)
    for license_id, customer in (("L1", "alice"), ("L2", "bob")):
        service.upload_license(license_id, customer)
        service.approve_license(license_id)

    from carrental.services.rental import store as store_module

    original_get = store_module.Registry.get
    raced = []

    def get_then_race(self, entity_id):
        record = original_get(self, entity_id)
        if self.entity == "car" and not raced:
            raced.append(entity_id)
            # bob's selection commits between alice's read and write
            service.select_car("bob", entity_id)
        return record

    monkeypatch.setattr(store_module.Registry, "get", get_then_race)

    with pytest.raises(ConcurrentModification):
        service.select_car("alice", "C1")

    monkeypatch.undo()
    car = service.get_car("C1")
    assert (car.status, car.rented_by) == ("SELECTED", "bob")


def test_emit_is_discarded_with_rollback(session_factory, outbox):
    with session_factory() as db:
        store = RentalStore(db, trace_id="t-1")
        event = store.emit("CarCreated", "car", "C1", {"car_id": "C1"})
        db.rollback()

    assert event.trace_id == "t-1"
    assert outbox("C1") == []
