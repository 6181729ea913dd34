from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from app import create_app
from venue_pricing.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        seed_demo_data=True,
        start_consumers=False,
        consumer_poll_timeout_seconds=0.05,
        **overrides,
    )


def _tomorrow_at(hour: int) -> datetime:
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=1, hours=hour)


def _seeded_ids(app) -> dict[str, str]:
    store = app.state.repository.store
    return {
        "sublocation": store.find("sublocations")[0]["_id"],
        "surge_config": store.find("surge_configs")[0]["_id"],
    }


def test_calculate_hourly_returns_segments_and_decision_log(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_pricing.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        start = _tomorrow_at(14)
        response = client.post(
            "/pricing/calculate-hourly",
            json={
                "subLocationId": ids["sublocation"],
                "startTime": start.isoformat(),
                "endTime": (start + timedelta(hours=3)).isoformat(),
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert len(body["segments"]) == 3
    assert body["totalHours"] == 3
    assert body["totalPrice"] == 360
    assert body["currency"] == "USD"
    assert body["timezone"] == "America/Detroit"
    assert body["segments"][0]["winningRule"]["name"] == "Main Hall Standard Hours"
    assert body["breakdown"] == {"ratesheetSegments": 3, "defaultRateSegments": 0}
    assert body["ratesheetUsage"][0]["timesApplied"] == 3
    assert len(body["decisionLog"]) == 3
    assert body["decisionLog"][0]["winnerReason"].startswith("Highest ranked")


def test_calculate_hourly_validation_and_not_found(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_errors.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        start = _tomorrow_at(14)
        inverted = client.post(
            "/pricing/calculate-hourly",
            json={
                "subLocationId": ids["sublocation"],
                "startTime": start.isoformat(),
                "endTime": (start - timedelta(hours=1)).isoformat(),
            },
        )
        bad_zone = client.post(
            "/pricing/calculate-hourly",
            json={
                "subLocationId": ids["sublocation"],
                "startTime": start.isoformat(),
                "endTime": (start + timedelta(hours=1)).isoformat(),
                "timezone": "Mars/Olympus",
            },
        )
        missing = client.post(
            "/pricing/calculate-hourly",
            json={
                "subLocationId": "does-not-exist",
                "startTime": start.isoformat(),
                "endTime": (start + timedelta(hours=1)).isoformat(),
            },
        )
        malformed = client.post("/pricing/calculate-hourly", json={"startTime": start.isoformat()})

    assert inverted.status_code == 400
    assert bad_zone.status_code == 400
    assert missing.status_code == 404
    assert malformed.status_code == 422


def test_surge_preview_endpoint(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_surge.db"))
    with TestClient(app) as client:
        response = client.post(
            "/surge-pricing/calculate",
            json={"demand": 20, "supply": 10, "historicalAvgPressure": 1.0, "basePrice": 100},
        )
        invalid = client.post(
            "/surge-pricing/calculate",
            json={"demand": 20, "supply": 10, "minMultiplier": 2.0, "maxMultiplier": 1.0},
        )

    assert response.status_code == 200
    body = response.json()
    assert round(body["surge_factor"], 3) == 1.208
    assert round(body["final_price"], 1) == 120.8
    assert invalid.status_code == 422


def test_materialize_then_approve_surge_ratesheet(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_materialize.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        created = client.post(f"/surge-pricing/configs/{ids['surge_config']}/materialize")
        ratesheet_id = created.json()["ratesheetId"]
        status_before = client.get(f"/surge-pricing/configs/{ids['surge_config']}/ratesheet")
        premature = client.post(f"/ratesheets/{ratesheet_id}/approve", json={"approvedBy": "ops"})
        submitted = client.post(f"/ratesheets/{ratesheet_id}/submit", json={"submittedBy": "ops"})
        approved = client.post(f"/ratesheets/{ratesheet_id}/approve", json={"approvedBy": "lead"})
        status_after = client.get(f"/surge-pricing/configs/{ids['surge_config']}/ratesheet")
        unknown = client.post("/surge-pricing/configs/missing/materialize")
        unknown_rule = client.post("/ratesheets/missing/submit")

    assert created.status_code == 201
    assert created.json()["approvalStatus"] == "DRAFT"
    assert created.json()["isActive"] is False
    assert created.json()["priority"] == 10_700
    assert status_before.json()["status"] == "draft"
    assert premature.status_code == 409
    assert submitted.json()["approvalStatus"] == "PENDING_APPROVAL"
    assert approved.json() == {
        "id": ratesheet_id,
        "previousStatus": "PENDING_APPROVAL",
        "approvalStatus": "APPROVED",
        "isActive": True,
    }
    assert status_after.json()["status"] == "approved"
    assert unknown.status_code == 404
    assert unknown_rule.status_code == 404


def test_approved_surge_multiplies_hourly_price(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_surge_price.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        app.state.repository.update_surge_config(
            ids["surge_config"], {"demandSupplyParams.currentDemand": 20}
        )
        ratesheet_id = client.post(f"/surge-pricing/configs/{ids['surge_config']}/materialize").json()[
            "ratesheetId"
        ]
        client.post(f"/ratesheets/{ratesheet_id}/submit")
        client.post(f"/ratesheets/{ratesheet_id}/approve", json={"approvedBy": "lead"})
        start = _tomorrow_at(14)
        payload = {
            "subLocationId": ids["sublocation"],
            "startTime": start.isoformat(),
            "endTime": (start + timedelta(hours=1)).isoformat(),
        }
        surged = client.post("/pricing/calculate-hourly", json=payload).json()
        without = client.post("/pricing/calculate-hourly", json={**payload, "includeSurge": False}).json()

    segment = surged["segments"][0]
    assert segment["source"] == "SURGE"
    assert segment["basePricePerHour"] == 120
    assert round(segment["surgeMultiplier"], 3) == 1.208
    assert segment["baseRule"]["name"] == "Main Hall Standard Hours"
    assert round(surged["totalPrice"], 2) == round(120 * segment["surgeMultiplier"], 2)
    assert without["totalPrice"] == 120


def test_event_ratesheet_endpoint(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_event.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        start = _tomorrow_at(15)
        event_id = app.state.repository.create_event(
            "Launch Party",
            start,
            start + timedelta(hours=3),
            subLocationId=ids["sublocation"],
            gracePeriodBefore=60,
            defaultHourlyRate=300.0,
        )
        created = client.post(f"/events/{event_id}/ratesheet")
        missing = client.post("/events/missing/ratesheet")

    assert created.status_code == 201
    body = created.json()
    assert body["eventId"] == event_id
    assert body["hourlyRate"] == 300
    assert [window["pricePerHour"] for window in body["timeWindows"]] == [0.0, 300.0]
    assert missing.status_code == 404


def test_health_reports_consumers(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_health.db"))
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["consumers"] == {"demand-aggregator": False, "surge-updater": False}


def test_materialize_without_demand_is_rejected(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_no_demand.db"))
    with TestClient(app) as client:
        ids = _seeded_ids(app)
        app.state.repository.update_surge_config(
            ids["surge_config"], {"demandSupplyParams.currentDemand": 0}
        )
        materialized = client.post(f"/surge-pricing/configs/{ids['surge_config']}/materialize")
        recalculated = client.post(f"/surge-pricing/configs/{ids['surge_config']}/recalculate")
        rules = app.state.repository.count_rules({"surgeConfigId": ids["surge_config"]})

    assert materialized.status_code == 409
    assert recalculated.status_code == 409
    assert rules == 0
