"""Drive one full rental cycle against a running rental service.

Approves the customer's license, then walks a car through
select -> deliver -> inspect -> return and prints each resulting status.
"""

import argparse

import httpx


def step(client: httpx.Client, method: str, path: str, **kwargs) -> dict:
    resp = client.request(method, path, **kwargs)
    if resp.status_code >= 400:
        raise SystemExit(f"{method} {path} failed status={resp.status_code} detail={resp.text}")
    return resp.json()


def main() -> None:
    """Parse CLI args and run the walkthrough."""

    parser = argparse.ArgumentParser(description="Run a full license + car rental cycle.")
    parser.add_argument("--rental-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="local-dev-key")
    parser.add_argument("--license-id", default="license1")
    parser.add_argument("--customer-id", default="alice")
    parser.add_argument("--car-id", default="car1")
    args = parser.parse_args()

    manager_headers = {"x-api-key": args.api_key}
    with httpx.Client(base_url=args.rental_url, timeout=10.0) as client:
        license = step(client, "GET", f"/licenses/{args.license_id}")
        if license["status"] == "PENDING":
            license = step(client, "POST", f"/licenses/{args.license_id}/approve", headers=manager_headers)
        print(f"license {license['license_id']} status={license['status']}")

        car = step(client, "POST", f"/cars/{args.car_id}/select", json={"customer_id": args.customer_id})
        print(f"car {car['car_id']} status={car['status']} available={car['available']}")
        for action, body in (("deliver", None), ("inspect", {"damaged": False}), ("return", None)):
            car = step(client, "POST", f"/cars/{args.car_id}/{action}", json=body)
            print(f"car {car['car_id']} status={car['status']} available={car['available']}")


if __name__ == "__main__":
    main()
