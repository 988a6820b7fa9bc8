"""HTTP surface of the rental service."""

import pytest
from fastapi.testclient import TestClient

from carrental.services.rental import main


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


@pytest.fixture
def manager():
    return {"x-api-key": main.settings.api_key}


def test_license_endpoints(client, manager):
    resp = client.post("/licenses", json={"license_id": "L1", "customer_id": "alice"})
    assert resp.status_code == 201
    assert resp.json() == {"license_id": "L1", "customer_id": "alice", "status": "PENDING"}

    assert client.post("/licenses", json={"license_id": "L1", "customer_id": "bob"}).status_code == 409
    assert client.post("/licenses/L1/approve").status_code == 401
    assert client.post("/licenses/L1/approve", headers=manager).json()["status"] == "APPROVED"

    resp = client.post("/licenses/L1/reject", json={"reason": "x"}, headers=manager)
    assert resp.status_code == 409
    assert "APPROVED" in resp.json()["detail"]

    timeline = client.get("/licenses/L1/timeline").json()
    assert [entry["to_state"] for entry in timeline] == ["PENDING", "APPROVED"]
    assert client.get("/licenses/missing").status_code == 404


def test_rental_cycle_over_http(client, manager):
    client.post("/licenses", json={"license_id": "L1", "customer_id": "alice"})
    car = {"car_id": "C1", "brand": "Toyota", "model": "Camry", "color": "Blue", "year": 2022, "rental_rate": 50.0}

    created = client.post("/cars", json=car)
    assert created.status_code == 201
    assert created.json() == {**car, "status": "AVAILABLE", "available": True, "rented_by": None}

    assert client.post("/cars/C1/select", json={"customer_id": "alice"}).status_code == 409
    client.post("/licenses/L1/approve", headers=manager)
    selected = client.post("/cars/C1/select", json={"customer_id": "alice"}).json()
    assert (selected["status"], selected["available"]) == ("SELECTED", False)

    assert client.post("/cars/C1/inspect").status_code == 409
    assert client.post("/cars/C1/deliver").json()["status"] == "DELIVERED"
    assert client.post("/cars/C1/inspect", json={"damaged": True}).status_code == 402
    assert client.get("/cars/C1").json()["status"] == "DELIVERED"
    assert client.post("/cars/C1/inspect").json()["status"] == "CHECKED"
    returned = client.post("/cars/C1/return").json()
    assert (returned["status"], returned["available"]) == ("RETURNED", True)

    assert [entry["to_state"] for entry in client.get("/cars/C1/timeline").json()] == [
        "AVAILABLE",
        "SELECTED",
        "DELIVERED",
        "CHECKED",
        "RETURNED",
    ]


def test_validation_errors(client):
    assert client.post("/cars", json={"car_id": "C1"}).status_code == 422
    assert client.post("/cars/C1/select", json={"customer_id": "alice"}).status_code == 404
    assert client.post("/cars/select-by-color", json={"color": ""}).status_code == 422


def test_batch_endpoints(client, manager):
    for car_id, color, rate in (("C50", "Blue", 50.0), ("C45", "Red", 45.0), ("C30", "Blue", 30.0)):
        client.post(
            "/cars",
            json={"car_id": car_id, "brand": "b", "model": "m", "color": color, "year": 2020, "rental_rate": rate},
        )

    blue = client.post("/cars/select-by-color", json={"color": "blue"}).json()
    assert [car["car_id"] for car in blue] == ["C30", "C50"]

    assert client.post("/cars/remove-above-rate", json={"threshold": 40}).status_code == 401
    report = client.post("/cars/remove-above-rate", json={"threshold": 40}, headers=manager).json()
    assert report == {"threshold": 40.0, "removed": ["C45", "C50"], "failed": []}
    assert client.get("/cars/C50").status_code == 404
    assert client.get("/cars/C30").status_code == 200


def test_demo_seed_endpoint(client, manager):
    assert client.post("/demo/seed").status_code == 401
    resp = client.post("/demo/seed", headers=manager)
    assert resp.status_code == 201
    assert resp.json()["cars"] == ["car1", "car2"]
    assert client.post("/demo/seed", headers=manager).status_code == 409
    assert client.get("/participants/ella").json()["role"] == "SALES_MANAGER"


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
