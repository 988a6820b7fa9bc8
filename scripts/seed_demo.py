"""Seed the demo participants, licenses and cars through the rental service."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for demo seeding."""

    parser = argparse.ArgumentParser(description="Create demo data via POST /demo/seed.")
    parser.add_argument("--rental-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="local-dev-key")
    args = parser.parse_args()

    resp = httpx.post(f"{args.rental_url}/demo/seed", headers={"x-api-key": args.api_key}, timeout=10.0)
    if resp.status_code == 409:
        raise SystemExit(f"Demo data already present: {resp.json()['detail']}")
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
