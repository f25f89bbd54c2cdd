"""
API Tests.

End-to-end requests against the FastAPI app with an in-memory catalog.
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from fleetstore.app.models.dlq import DeadLetterQueue, DLQStatus
from fleetstore.app.services.dead_letter import INGEST_TASK

from conftest import T0


def _iso(delta=timedelta(0)):
    return (T0 + delta).isoformat()


def _record(entity_id=1, seconds=0, latitude=47.60, longitude=-122.33, **measurements):
    return {
        "entity_id": entity_id,
        "time": _iso(timedelta(seconds=seconds)),
        "latitude": latitude,
        "longitude": longitude,
        "measurements": measurements,
    }


async def _ingest(client, records):
    response = await client.post("/v1/telemetry", json={"records": records})
    assert response.status_code == 202
    return response.json()


@pytest.mark.asyncio
async def test_health_and_root(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    response = await client.get("/")
    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"]


@pytest.mark.asyncio
async def test_ingest_reports_and_dead_letters_rejections(client, db_session):
    report = await _ingest(client, [
        _record(seconds=0, speed_kph=50),
        {"entity_id": 1, "time": _iso(), "latitude": 200, "longitude": 0},
    ])

    assert report["received"] == 2
    assert report["accepted"] == 1
    assert report["rejected"][0]["index"] == 1
    assert report["rejected"][0]["error_code"] == "ERR_VALIDATION_001"

    response = await client.get("/v1/admin/ops/dlq")
    assert response.status_code == 200
    items = response.json()
    assert len(items) == 1
    assert items[0]["task_name"] == INGEST_TASK
    assert items[0]["status"] == "FAILED"
    assert items[0]["payload"]["record"]["latitude"] == 200
    assert items[0]["entity_id"] == 1
    assert items[0]["record_index"] == 1

    response = await client.get("/v1/admin/ops/dlq", params={"entity_id": 2})
    assert response.json() == []


@pytest.mark.asyncio
async def test_range_query(client):
    await _ingest(client, [
        _record(entity_id=1, seconds=0, speed_kph=50),
        _record(entity_id=2, seconds=0),
        _record(entity_id=1, seconds=10, speed_kph=55),
    ])

    response = await client.get("/v1/telemetry", params={
        "entity_id": 1, "start": _iso(), "end": _iso(timedelta(minutes=1)), "fields": "speed_kph",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [p["measurements"]["speed_kph"] for p in body["points"]] == [50, 55]


@pytest.mark.asyncio
async def test_inverted_range_is_422(client):
    response = await client.get("/v1/telemetry", params={"start": _iso(timedelta(hours=1)), "end": _iso()})
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION_001"


@pytest.mark.asyncio
async def test_geo_within_and_contains(client):
    await _ingest(client, [
        _record(entity_id=1, latitude=47.6062, longitude=-122.3321),
        _record(entity_id=2, latitude=41.8781, longitude=-87.6298),
    ])

    response = await client.get("/v1/geo/within", params={"place": "Chicago", "radius_m": 1000})
    assert response.status_code == 200
    body = response.json()
    assert body["latitude"] == pytest.approx(41.8781)
    assert [h["entity_id"] for h in body["hits"]] == [2]

    response = await client.get("/v1/geo/within", params={"latitude": 47.6, "longitude": -122.3})
    assert [h["entity_id"] for h in response.json()["hits"]] == [1]

    response = await client.post("/v1/geo/contains", json={
        "polygon": [
            {"latitude": 47.0, "longitude": -123.0},
            {"latitude": 48.0, "longitude": -123.0},
            {"latitude": 48.0, "longitude": -122.0},
            {"latitude": 47.0, "longitude": -122.0},
        ],
    })
    assert response.status_code == 200
    assert response.json()["count"] == 1


@pytest.mark.asyncio
async def test_geo_within_bad_radius(client):
    response = await client.get("/v1/geo/within", params={"latitude": 0, "longitude": 0, "radius_m": -5})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_aggregates_route_and_label_source(client):
    await _ingest(client, [
        _record(entity_id=1, seconds=0, latitude=47.60),
        _record(entity_id=1, seconds=5, latitude=47.61),
    ])

    response = await client.get("/v1/aggregates")
    assert response.status_code == 200
    assert {a["name"] for a in response.json()} == {
        "daily_distance", "daily_avg_speed", "hourly_max_engine_temp", "daily_last_fuel",
    }

    window = {"start": _iso(), "end": _iso(timedelta(days=1))}
    response = await client.get("/v1/aggregates/daily_distance", params=window)
    assert response.json()["source"] == "raw"

    response = await client.post("/v1/admin/ops/refresh/daily_distance")
    assert response.status_code == 200
    assert response.json()["buckets_updated"] == 1

    response = await client.get("/v1/aggregates/daily_distance", params=window)
    body = response.json()
    assert body["source"] == "rollup"
    assert body["rows"][0]["value"] == pytest.approx(1111.95, abs=0.5)

    response = await client.get("/v1/admin/ops/routing-stats")
    assert response.json()["by_source"] == {"rollup": 1, "raw": 1}


@pytest.mark.asyncio
async def test_unknown_aggregate_is_404(client):
    response = await client.get("/v1/aggregates/weekly_mood")
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_QUERY_001"

    response = await client.get("/v1/aggregates/daily_distance", params={"source": "rollup"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_retention_and_compaction(client):
    await _ingest(client, [_record(seconds=0), _record(seconds=86400 * 8)])

    response = await client.post("/v1/admin/ops/compact")
    assert response.status_code == 200
    assert response.json()["compacted"] == [_iso().replace("+00:00", "Z")]

    response = await client.get("/v1/admin/ops/retention")
    body = response.json()
    assert body["compact_after_seconds"] == 7 * 86400
    assert body["retention_seconds"] is None
    assert [p["state"] for p in body["partitions"]] == ["COMPACTED", "OPEN"]


@pytest.mark.asyncio
async def test_reference_endpoints(client):
    await _ingest(client, [_record(entity_id=1)])

    response = await client.get("/v1/reference/places")
    assert len(response.json()) == 5

    response = await client.get("/v1/reference/entities")
    assert response.json() == [{"id": 1, "origin_id": 2, "destination_id": 4}]

    response = await client.get("/v1/reference/entities/1/position", params={"at": _iso(), "route_start": _iso()})
    body = response.json()
    assert body["fraction"] == 0.0
    assert body["latitude"] == pytest.approx(37.7749)

    response = await client.get("/v1/reference/entities/99/position")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_dlq_retry_replays_record(client, db_session, telemetry):
    item = DeadLetterQueue(
        task_name=INGEST_TASK,
        error_code="ERR_INGEST_002",
        error_message="Point is older than the grace window allows",
        payload={"record": _record(entity_id=5, seconds=30)},
        status=DLQStatus.FAILED,
    )
    db_session.add(item)
    await db_session.commit()

    response = await client.post(f"/v1/admin/ops/dlq/{item.id}/retry")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PROCESSED"
    assert body["retry_count"] == 1
    assert [p.entity_id for p in telemetry.store.scan()] == [5]

    response = await client.post("/v1/admin/ops/dlq/9999/retry")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_dlq_retry_keeps_failing_record(client, db_session):
    await _ingest(client, [{"entity_id": 1, "time": _iso(), "latitude": 200, "longitude": 0}])
    result = await db_session.execute(select(DeadLetterQueue))
    item = result.scalar_one()

    response = await client.post(f"/v1/admin/ops/dlq/{item.id}/retry")
    body = response.json()
    assert body["status"] == "FAILED"
    assert body["retry_count"] == 1
    assert body["error_code"] == "ERR_VALIDATION_001"


@pytest.mark.asyncio
async def test_engine_calls_run_off_the_event_loop(client, telemetry, mocker):
    loop_thread = threading.get_ident()
    threads = []

    def _tracking(method):
        def _call(*args, **kwargs):
            threads.append(threading.get_ident())
            return method(*args, **kwargs)
        return _call

    mocker.patch.object(telemetry, "ingest_many", side_effect=_tracking(telemetry.ingest_many))
    mocker.patch.object(telemetry, "range_query", side_effect=_tracking(telemetry.range_query))
    mocker.patch.object(telemetry, "aggregate_query", side_effect=_tracking(telemetry.aggregate_query))

    await _ingest(client, [_record(seconds=0)])
    await client.get("/v1/telemetry", params={"entity_id": 1})
    await client.get("/v1/aggregates/daily_distance", params={"start": _iso(), "end": _iso(timedelta(days=1))})

    assert len(threads) == 3
    assert loop_thread not in threads
