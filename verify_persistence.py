import time
import subprocess
import httpx
import sys
import os
import signal
from datetime import datetime, timedelta, timezone

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"

# Old enough to be compacted right away
START = (datetime.now(timezone.utc) - timedelta(days=30)).replace(hour=0, minute=0, second=0, microsecond=0)
END = START + timedelta(days=1)


def start_server(env=None):
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "fleetstore.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={**os.environ, **(env or {})},
    )


def wait_for_server(retries=10, delay=2):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for i in range(retries):
        try:
            resp = httpx.get(url)
            if resp.status_code == 200 and resp.json()["status"] == "healthy":
                print("✅ Server is up!")
                return True
        except httpx.ConnectError:
            pass
        time.sleep(delay)
    print("❌ Server failed to start.")
    return False


def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()


def snapshot():
    window = {"start": START.isoformat(), "end": END.isoformat()}
    points = httpx.get(f"{BASE_URL}{API_PREFIX}/telemetry", params=window).json()
    rollup = httpx.get(f"{BASE_URL}{API_PREFIX}/aggregates/daily_distance", params=window).json()
    return points["count"], rollup["rows"], rollup["source"]


def run_verification():
    # 1. Start Server (First Run)
    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server({"DB_ECHO": "False", "MAINTENANCE_ENABLED": "False"})

    try:
        if not wait_for_server():
            server_logs = proc.communicate(timeout=2)
            print("Server Stdout:", server_logs[0].decode())
            print("Server Stderr:", server_logs[1].decode())
            raise Exception("Server start failed")

        # 2. Ingest a day of positions for two trucks
        print("\n--- [Step 2] Ingesting Telemetry ---")
        records = [
            {
                "entity_id": entity_id,
                "time": (START + timedelta(minutes=m)).isoformat(),
                "latitude": 47.60 + m * 0.001,
                "longitude": -122.33,
                "measurements": {"speed_kph": 60.0},
            }
            for entity_id in (1, 2)
            for m in range(0, 600, 5)
        ]
        resp = httpx.post(f"{BASE_URL}{API_PREFIX}/telemetry", json={"records": records})
        if resp.status_code != 202 or resp.json()["rejected"]:
            raise Exception(f"Ingest failed: {resp.status_code} {resp.text}")
        print(f"✅ Accepted {resp.json()['accepted']} points")

        # 3. Compact and refresh so the catalog holds the day
        print("\n--- [Step 3] Compacting and Refreshing ---")
        compacted = httpx.post(f"{BASE_URL}{API_PREFIX}/admin/ops/compact").json()
        print(f"Compacted: {compacted['compacted']}")
        httpx.post(f"{BASE_URL}{API_PREFIX}/admin/ops/refresh/daily_distance")
        before = snapshot()
        print(f"Before restart: {before[0]} points, {len(before[1])} buckets from {before[2]}")

    finally:
        print("\n--- [Step 4] Stopping Server ---")
        stop_server(proc)

    time.sleep(2)  # Wait for port release

    # 4. Restart Server
    print("\n--- [Step 5] Restarting Server (Verification) ---")
    proc2 = start_server({"MAINTENANCE_ENABLED": "False"})

    try:
        if not wait_for_server():
            raise Exception("Server restart failed")

        after = snapshot()
        print(f"After restart: {after[0]} points, {len(after[1])} buckets from {after[2]}")
        if after == before:
            print("✅ Compacted partitions and rollups persisted")
        else:
            print("❌ State differs after restart (persistence issue?)")
            raise Exception("Restart lost state")

    finally:
        print("\n--- [Step 6] Stopping Server ---")
        stop_server(proc2)


if __name__ == "__main__":
    run_verification()
