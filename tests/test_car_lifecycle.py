"""Car creation and the select -> deliver -> inspect -> return cycle."""

import pytest

from carrental.common.errors import AlreadyExists, ExtraPaymentRequired, InvalidArgument, InvalidState, NotFound


def _add_car(service, car_id="C1", color="Blue", rate=50.0):
    return service.create_car(car_id, "Toyota", "Camry", color, 2022, rate)


def test_create_then_fetch_round_trip(service):
    """Descriptive fields come back unchanged; new cars are available."""

    _add_car(service)

    car = service.get_car("C1")

    assert (car.brand, car.model, car.color, car.year, car.rental_rate) == ("Toyota", "Camry", "Blue", 2022, 50.0)
    assert car.status == "AVAILABLE"
    assert car.available is True


def test_duplicate_car_id(service):
    _add_car(service)
    with pytest.raises(AlreadyExists):
        _add_car(service, rate=10.0)
    assert service.get_car("C1").rental_rate == 50.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"car_id": ""},
        {"brand": " "},
        {"year": 0},
        {"year": "2022"},
        {"rental_rate": -1},
    ],
)
def test_create_validates_input(service, kwargs):
    fields = {
        "car_id": "C1",
        "brand": "Toyota",
        "model": "Camry",
        "color": "Blue",
        "year": 2022,
        "rental_rate": 50.0,
        **kwargs,
    }
    with pytest.raises(InvalidArgument):
        service.create_car(**fields)


def test_select_requires_a_license(service):
    _add_car(service)

    with pytest.raises(NotFound):
        service.select_car("alice", "C1")
    assert service.get_car("C1").status == "AVAILABLE"


def test_scenario_select_after_approval(service):
    """Selection fails while alice's license is pending and succeeds once approved."""

    _add_car(service)
    service.upload_license("L1", "alice")

    with pytest.raises(InvalidState) as excinfo:
        service.select_car("alice", "C1")
    assert excinfo.value.current == "PENDING"
    assert service.get_car("C1").available is True

    service.approve_license("L1")
    car = service.select_car("alice", "C1")

    assert car.status == "SELECTED"
    assert car.available is False
    assert car.rented_by == "alice"
    assert service.get_car("C1").status == "SELECTED"


def test_rejected_license_cannot_select(service):
    _add_car(service)
    service.upload_license("L1", "alice")
    service.reject_license("L1", "blurry")

    with pytest.raises(InvalidState):
        service.select_car("alice", "C1")


def test_any_approved_license_of_the_customer_qualifies(service):
    _add_car(service)
    service.upload_license("L1", "alice")
    service.reject_license("L1", "blurry")
    service.upload_license("L2", "alice")
    service.approve_license("L2")

    assert service.select_car("alice", "C1").status == "SELECTED"


def test_selected_car_cannot_be_selected_again(service, approved_alice):
    _add_car(service)
    service.upload_license("L2", "bob")
    service.approve_license("L2")
    service.select_car("alice", "C1")

    with pytest.raises(InvalidState) as excinfo:
        service.select_car("bob", "C1")

    assert excinfo.value.current == "SELECTED"
    assert service.get_car("C1").rented_by == "alice"


def test_full_rental_cycle(service, approved_alice, outbox):
    """AVAILABLE -> SELECTED -> DELIVERED -> CHECKED -> RETURNED, then available again."""

    _add_car(service)

    assert service.select_car("alice", "C1").status == "SELECTED"
    delivered = service.deliver_car("C1")
    assert (delivered.status, delivered.available) == ("DELIVERED", False)
    checked = service.inspect_car("C1")
    assert (checked.status, checked.available) == ("CHECKED", False)
    returned = service.return_car("C1")
    assert (returned.status, returned.available, returned.rented_by) == ("RETURNED", True, None)

    assert [event.event_type for event in outbox("C1")] == [
        "CarCreated",
        "CarSelected",
        "CarDelivered",
        "CarInspected",
        "CarReturned",
    ]
    timeline = service.timeline("car", "C1")
    assert [entry.to_state for entry in timeline] == ["AVAILABLE", "SELECTED", "DELIVERED", "CHECKED", "RETURNED"]

    assert service.select_car("alice", "C1").status == "SELECTED"


@pytest.mark.parametrize(
    "operation, status",
    [
        ("deliver_car", "AVAILABLE"),
        ("inspect_car", "AVAILABLE"),
        ("return_car", "AVAILABLE"),
    ],
)
def test_out_of_order_calls_leave_status_unchanged(service, operation, status):
    _add_car(service)

    with pytest.raises(InvalidState) as excinfo:
        getattr(service, operation)("C1")

    assert excinfo.value.current == status
    assert service.get_car("C1").status == status


def test_cannot_skip_inspection(service, approved_alice):
    _add_car(service)
    service.select_car("alice", "C1")
    service.deliver_car("C1")

    with pytest.raises(InvalidState) as excinfo:
        service.return_car("C1")

    assert excinfo.value.expected == ["CHECKED"]
    assert service.get_car("C1").status == "DELIVERED"


def test_damaged_inspection_requires_extra_payment(service, approved_alice, outbox):
    """A damaged report fails the inspection and keeps the car DELIVERED."""

    _add_car(service)
    service.select_car("alice", "C1")
    service.deliver_car("C1")
    queued = len(outbox("C1"))

    with pytest.raises(ExtraPaymentRequired) as excinfo:
        service.inspect_car("C1", damaged=True)

    assert isinstance(excinfo.value, InvalidState)
    assert "extra payment" in str(excinfo.value)
    assert service.get_car("C1").status == "DELIVERED"
    assert len(outbox("C1")) == queued

    assert service.inspect_car("C1", damaged=False).status == "CHECKED"


def test_damaged_flag_is_checked_after_status(service):
    """An undelivered car is refused for its status, not for damage."""

    _add_car(service)

    with pytest.raises(InvalidState) as excinfo:
        service.inspect_car("C1", damaged=True)

    assert not isinstance(excinfo.value, ExtraPaymentRequired)


def test_unknown_car(service, approved_alice):
    for call in (
        lambda: service.get_car("nope"),
        lambda: service.select_car("alice", "nope"),
        lambda: service.deliver_car("nope"),
        lambda: service.timeline("car", "nope"),
    ):
        with pytest.raises(NotFound):
            call()
