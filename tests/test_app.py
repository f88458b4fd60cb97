import io

import pytest

from slabmeter.app import create_app


@pytest.fixture
def client(service):
    app = create_app(service)
    app.config["TESTING"] = True
    return app.test_client()


def start(client, date="2025-11-01T00:00:00Z"):
    return client.post("/billing-cycles/start", json={"start_date": date, "notes": "first"})


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok", "storage": "local"}


def test_cycle_lifecycle(client):
    res = start(client)
    assert res.status_code == 201
    first_id = res.get_json()["cycle_id"]

    assert start(client).status_code == 409

    res = client.post("/billing-cycles/close-current", json={"government_collection_date": "2025-10-01"})
    assert res.status_code == 400

    res = client.post("/billing-cycles/close-current", json={"government_collection_date": "2026-01-03"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["closed_cycle"]["cycle_id"] == first_id
    assert body["closed_cycle"]["status"] == "closed"
    assert body["new_active_cycle"]["status"] == "active"

    assert client.get("/billing-cycles/active").get_json()["cycle_id"] == body["new_active_cycle"]["cycle_id"]
    assert len(client.get("/billing-cycles").get_json()) == 2


def test_close_without_active_cycle(client):
    res = client.post("/billing-cycles/close-current", json={"government_collection_date": "2026-01-03"})
    assert res.status_code == 404
    assert res.get_json()["error"] == "No active billing cycle found."


def test_missing_start_date(client):
    assert client.post("/billing-cycles/start", json={}).status_code == 400


def test_delete_cycle_with_readings(client):
    cycle_id = start(client).get_json()["cycle_id"]
    res = client.post("/readings", json={"meter_id": "main", "timestamp": "2025-11-02T08:00:00Z", "value": 120})
    assert res.status_code == 201
    reading_id = res.get_json()["reading_id"]

    assert client.delete(f"/billing-cycles/{cycle_id}").status_code == 409
    assert client.delete(f"/readings/{reading_id}").status_code == 200
    assert client.delete(f"/billing-cycles/{cycle_id}").status_code == 200
    assert client.get(f"/billing-cycles/{cycle_id}").status_code == 404


def test_dashboard_and_export(client):
    cycle_id = start(client).get_json()["cycle_id"]
    client.post("/readings", json={"meter_id": "main", "timestamp": "2025-11-02T08:00:00Z", "value": 250})
    client.post("/readings", json={"meter_id": "shop", "timestamp": "2025-11-02T08:00:00Z", "value": 600})

    summary = client.get("/dashboard/summary").get_json()
    assert summary["current_cycle_total_bill"] == 3850.0

    export = client.get(f"/billing-cycles/{cycle_id}/export-data").get_json()
    # the export reports the same numbers as the dashboard
    assert export["total_cost"] == summary["current_cycle_total_bill"]
    assert export["total_units"] == 850

    res = client.get(f"/billing-cycles/{cycle_id}/export.csv")
    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    assert b"Main Meter" in res.data

    analytics = client.get("/analytics/cycle-summary").get_json()
    assert analytics[0]["total_cost"] == 3850.0
    breakdown = client.get("/analytics/meter-breakdown").get_json()
    assert breakdown[0]["Shop Meter"] == 600


def test_upload_readings(client):
    start(client)
    csv_text = (
        "meter_id,timestamp,value\n"
        "main,2025-11-10T00:00:00Z,1100\n"
        "main,2025-11-01T00:00:00Z,1000\n"
    )
    res = client.post(
        "/readings/upload",
        data={"file": (io.BytesIO(csv_text.encode("utf-8")), "readings.csv")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 201
    assert res.get_json()["processed_count"] == 2
    readings = client.get("/readings?meter_id=main").get_json()
    assert [r["units_consumed_since_previous"] for r in readings] == [1000, 100]


def test_upload_requires_file(client):
    assert client.post("/readings/upload").status_code == 400


def test_failed_upload_stores_nothing(client):
    start(client)
    csv_text = (
        "meter_id,timestamp,value\n"
        "main,2025-11-02T00:00:00Z,1000\n"
        "main,2025-11-05T00:00:00Z,900\n"
    )
    res = client.post(
        "/readings/upload",
        data={"file": (io.BytesIO(csv_text.encode("utf-8")), "readings.csv")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 400
    assert client.get("/readings").get_json() == []


def test_upload_rejects_non_utf8_file(client):
    start(client)
    res = client.post(
        "/readings/upload",
        data={"file": (io.BytesIO(b"meter_id,timestamp,value\n\xff\xfe,2025-11-02,10\n"), "readings.csv")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 400
    assert "UTF-8" in res.get_json()["error"]


def test_slab_configs_and_settings(client):
    res = client.post("/slab-configs", json={
        "config_name": "Flat",
        "effective_date": "2026-04-01",
        "slabs_up_to_500": [{"from_unit": 1, "to_unit": None, "rate": 1.5}],
        "slabs_above_500": [{"from_unit": 1, "to_unit": None, "rate": 2}],
    })
    assert res.status_code == 201
    config_id = res.get_json()["config_id"]
    assert res.get_json()["is_currently_active"] is False

    assert client.post(f"/slab-configs/{config_id}/activate").status_code == 200
    active = [c for c in client.get("/slab-configs").get_json() if c["is_currently_active"]]
    assert [c["config_id"] for c in active] == [config_id]

    assert client.get("/estimate?units=100").get_json()["estimated_cost"] == 150.0
    assert client.get("/estimate").status_code == 400
    for bad in ("inf", "-inf", "nan", "abc"):
        assert client.get(f"/estimate?units={bad}").status_code == 400
    assert client.post("/slab-configs/missing/activate").status_code == 404

    overlapping = client.post("/slab-configs", json={
        "config_name": "Broken",
        "slabs_up_to_500": [{"from_unit": 1, "to_unit": 100, "rate": 1}, {"from_unit": 50, "to_unit": 200, "rate": 2}],
        "slabs_above_500": [{"from_unit": 1, "to_unit": None, "rate": 2}],
    })
    assert overlapping.status_code == 400

    assert client.get("/settings").get_json() == {"consumption_target": 500}
    assert client.put("/settings", json={"consumption_target": 300}).get_json() == {"consumption_target": 300}
    assert client.put("/settings", json={"consumption_target": 0}).status_code == 400
