"""
Telemetry Seed and Smoke Test Script.

Posts a simulated fleet feed to a running server, then checks that the
main query paths answer:
1. Health Check
2. Batch ingestion
3. Range, geofence and aggregate queries
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone

import requests

from fleetstore.app.domain.fleet.reference import ReferenceData, simulate_feed

BATCH_SIZE = 1000


def print_step(step, msg):
    print(f"[{step}] {msg}")


def fail(msg):
    print(f"FAILURE: {msg}")
    sys.exit(1)


def success(msg):
    print(f"OK: {msg}")


def post_batches(base_url, records):
    accepted = rejected = 0
    for i in range(0, len(records), BATCH_SIZE):
        batch = records[i:i + BATCH_SIZE]
        response = requests.post(f"{base_url}/v1/telemetry", json={"records": batch}, timeout=60)
        if response.status_code != 202:
            fail(f"Ingest returned {response.status_code}: {response.text}")
        report = response.json()
        accepted += report["accepted"]
        rejected += len(report["rejected"])
    return accepted, rejected


def main():
    parser = argparse.ArgumentParser(description="Seed a fleet telemetry server with simulated trucks")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--entities", type=int, default=10)
    parser.add_argument("--hours", type=float, default=2)
    parser.add_argument("--step-seconds", type=int, default=30)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")

    print_step("HEALTH", "Checking /health...")
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
    except requests.RequestException as e:
        fail(f"Server not reachable: {e}")
    if response.status_code != 200:
        fail(f"Health check returned {response.status_code}")
    success("Server healthy")

    end = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    start = end - timedelta(hours=args.hours)
    entity_ids = list(range(1, args.entities + 1))

    print_step("INGEST", f"Simulating {len(entity_ids)} trucks from {start.isoformat()} to {end.isoformat()}...")
    feed = simulate_feed(
        ReferenceData(), entity_ids, start, end,
        step=timedelta(seconds=args.step_seconds), seed=args.seed,
    )
    records = [point.model_dump(mode="json") for point in feed]
    accepted, rejected = post_batches(base_url, records)
    if accepted == 0:
        fail("No records accepted")
    success(f"{accepted} records accepted, {rejected} rejected")

    window = {"start": start.isoformat(), "end": end.isoformat()}

    print_step("QUERY", "Range query for the first truck...")
    response = requests.get(f"{base_url}/v1/telemetry", params={**window, "entity_id": entity_ids[0]}, timeout=30)
    if response.status_code != 200:
        fail(f"Range query returned {response.status_code}: {response.text}")
    success(f"{response.json()['count']} points")

    print_step("QUERY", "Geofence around Seattle...")
    response = requests.get(f"{base_url}/v1/geo/within", params={**window, "place": "Seattle"}, timeout=30)
    if response.status_code != 200:
        fail(f"Geofence query returned {response.status_code}: {response.text}")
    success(f"{response.json()['count']} points within the geofence")

    print_step("QUERY", "Daily distance aggregate...")
    response = requests.get(f"{base_url}/v1/aggregates/daily_distance", params=window, timeout=30)
    if response.status_code != 200:
        fail(f"Aggregate query returned {response.status_code}: {response.text}")
    body = response.json()
    success(f"{len(body['rows'])} buckets answered from {body['source']} ({body['reason']})")

    print("Seeding complete.")


if __name__ == "__main__":
    main()
