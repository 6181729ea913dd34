from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app import create_app
from venue_pricing.domain.models import ApprovalStatus
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.event_pipeline import (
    ChannelUnavailableError,
    ConsumerWorker,
    EventChannel,
    EventPipeline,
)
from venue_pricing.utils.config import get_settings
from venue_pricing.utils.time_utils import floor_hour, utc_now


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        consumer_poll_timeout_seconds=0.05,
        publish_timeout_seconds=0.05,
        **overrides,
    )


def _booking_payload(event_id: str, sublocation_id: str, hours_ahead: int = 2) -> dict[str, object]:
    start = floor_hour(utc_now()) + timedelta(hours=hours_ahead)
    return {
        "eventId": event_id,
        "action": "CREATED",
        "subLocationId": sublocation_id,
        "startDate": start.isoformat(),
        "endDate": (start + timedelta(hours=2)).isoformat(),
        "attendees": 25,
        "timestamp": utc_now().isoformat(),
    }


def test_channel_rejects_when_full_or_closed():
    channel = EventChannel("test", maxsize=1, publish_timeout=0.01)
    channel.publish("k", {"n": 1})

    with pytest.raises(ChannelUnavailableError):
        channel.publish("k", {"n": 2})

    channel.close()
    with pytest.raises(ChannelUnavailableError):
        channel.publish("k", {"n": 3})
    assert channel.pending() == 1


def test_worker_drains_backlog_and_survives_handler_errors():
    channel = EventChannel("test", maxsize=10, publish_timeout=0.01)
    handled: list[int] = []
    release = threading.Event()

    def _handler(payload):
        release.wait(1.0)
        if payload["n"] == 2:
            raise RuntimeError("boom")
        handled.append(payload["n"])

    worker = ConsumerWorker("test-group", channel, _handler, poll_timeout=0.01)
    for n in range(4):
        channel.publish("k", {"n": n})
    worker.start()
    release.set()
    worker.stop(drain=True, timeout=5.0)

    assert worker.running is False
    assert handled == [0, 1, 3]
    assert worker.processed == 3
    assert worker.failed == 1
    assert channel.pending() == 0


def test_pipeline_feeds_observations_into_surge_configs(tmp_path):
    settings = _build_test_settings(tmp_path, "pipeline.db")
    repository = PricingRepository(settings)
    repository.initialize_database()
    repository.seed_demo_data()
    sublocation_id = repository.store.find("sublocations")[0]["_id"]
    config_id = repository.store.find("surge_configs")[0]["_id"]

    pipeline = EventPipeline(repository=repository, settings=settings)
    pipeline.start()
    pipeline.publish_booking_event(_booking_payload("b1", sublocation_id))
    pipeline.publish_booking_event({"eventId": "broken", "subLocationId": sublocation_id})
    pipeline.stop(drain=True, timeout=10.0)

    assert repository.count_demand_history(sublocation_id) == 1
    config = repository.get_surge_config(config_id)
    assert config.demand_supply.current_demand == 1
    rules = repository.list_rules_for_surge_config(config_id, [ApprovalStatus.DRAFT])
    assert len(rules) == 1
    assert rules[0].effective_from > utc_now()
    with pytest.raises(ChannelUnavailableError):
        pipeline.publish_booking_event(_booking_payload("b2", sublocation_id))


def test_demand_endpoint_enqueues_and_shutdown_drains(tmp_path):
    settings = _build_test_settings(tmp_path, "pipeline_api.db", seed_demo_data=True, start_consumers=True)
    app = create_app(settings)
    with TestClient(app) as client:
        sublocation_id = app.state.repository.store.find("sublocations")[0]["_id"]
        accepted = client.post("/demand/events", json=_booking_payload("b1", sublocation_id))
        invalid = client.post(
            "/demand/events",
            json={**_booking_payload("b2", sublocation_id), "action": "CANCELLED"},
        )
        health = client.get("/health").json()

    assert accepted.status_code == 202
    assert accepted.json()["eventId"] == "b1"
    assert accepted.json()["partitionKey"] == sublocation_id
    assert invalid.status_code == 422
    assert health["consumers"] == {"demand-aggregator": True, "surge-updater": True}
    assert app.state.repository.count_demand_history(sublocation_id) == 1
    assert app.state.repository.count_rules({"createdBy": "surge-materializer"}) == 1
