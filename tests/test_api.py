from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from src.fleet_alerts.state import get_state


def _iso(ts) -> str:
    return ts.isoformat()


@pytest.mark.anyio
async def test_root_health_ok(async_client: httpx.AsyncClient):
    res = await async_client.get("/")
    assert res.status_code == 200
    body = res.json()
    assert body.get("status") == "ok"
    assert "timestamp" in body


@pytest.mark.anyio
async def test_mongo_connectivity_check_masks_uri(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/health/mongo")
    assert res.status_code == 200
    body = res.json()

    assert isinstance(body["ok"], bool)
    assert body["mongo_uri_source"] == "default"
    assert body["mongo_uri_sanitized"].startswith("mongodb://")
    assert body["database"] == "fleet_alerts_test"


@pytest.mark.anyio
async def test_sweeper_diagnostics_shape(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/health/sweeper")
    assert res.status_code == 200
    body = res.json()

    assert body["enabled"] is False
    assert body["running"] is False
    assert body["interval_sec"] == 1
    assert body["batch_size"] == 500
    assert body["alert_expiry_hours"] == 24
    assert body["last_run"] is None


@pytest.mark.anyio
async def test_create_escalates_group_through_api(async_client: httpx.AsyncClient, now):
    ids = []
    for minutes in (50, 25, 0):
        res = await async_client.post(
            "/api/alerts",
            json={
                "sourceType": "overspeed",
                "timestamp": _iso(now - timedelta(minutes=minutes)),
                "metadata": {"driverId": "D1"},
            },
        )
        assert res.status_code == 201, res.text
        ids.append(res.json()["alertId"])

    assert res.json()["status"] == "ESCALATED"
    assert res.json()["severity"] == "CRITICAL"

    res = await async_client.get("/api/alerts", params={"status": "escalated", "driverId": "D1"})
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 3
    assert sorted(a["alertId"] for a in body["items"]) == sorted(ids)

    res = await async_client.get(f"/api/alerts/{ids[0]}")
    assert res.status_code == 200
    alert = res.json()
    assert [h["state"] for h in alert["history"]] == ["OPEN", "ESCALATED"]
    assert alert["lastTransitionReason"] == "RULE_COUNT_3_IN_60MIN"

    res = await async_client.get("/api/events", params={"type": "escalated"})
    assert res.status_code == 200
    assert res.json()["total"] == 3

    res = await async_client.get("/api/events/counts")
    assert res.status_code == 200
    assert res.json()["counts"] == {"CREATED": 3, "ESCALATED": 3, "INFO": 1}


@pytest.mark.anyio
async def test_metadata_patch_auto_closes(async_client: httpx.AsyncClient, now):
    res = await async_client.post(
        "/api/alerts",
        json={"alertId": "doc-1", "sourceType": "compliance", "timestamp": _iso(now), "metadata": {"document_valid": False}},
    )
    assert res.status_code == 201
    assert res.json()["status"] == "OPEN"

    res = await async_client.patch("/api/alerts/doc-1/metadata", json={"metadata": {"document_renewed": True}})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["evaluation"]["action"] == "AUTO_CLOSE"
    assert body["alert"]["status"] == "AUTO_CLOSED"
    assert body["alert"]["lastTransitionReason"] == "DOCUMENT_RENEWED"

    res = await async_client.post("/api/alerts/doc-1/evaluate")
    assert res.status_code == 200
    assert res.json()["action"] == "NONE"


@pytest.mark.anyio
async def test_resolve_with_and_without_body(async_client: httpx.AsyncClient, now):
    for alert_id in ("res-1", "res-2"):
        res = await async_client.post(
            "/api/alerts", json={"alertId": alert_id, "sourceType": "fatigue", "timestamp": _iso(now)}
        )
        assert res.status_code == 201

    res = await async_client.post("/api/alerts/res-1/resolve", json={"reason": "driver coached"})
    assert res.status_code == 200
    assert res.json()["status"] == "RESOLVED"
    assert res.json()["lastTransitionReason"] == "driver coached"

    res = await async_client.post("/api/alerts/res-2/resolve")
    assert res.status_code == 200
    assert res.json()["lastTransitionReason"] == "MANUAL_RESOLVE"

    res = await async_client.get("/api/events", params={"alertId": "res-1", "type": "RESOLVED"})
    assert res.json()["total"] == 1


@pytest.mark.anyio
async def test_error_responses(async_client: httpx.AsyncClient, now):
    res = await async_client.get("/api/alerts/missing")
    assert res.status_code == 404
    assert res.json()["code"] == "alert_not_found"

    res = await async_client.post("/api/alerts/missing/resolve")
    assert res.status_code == 404

    res = await async_client.patch("/api/alerts/missing/metadata", json={"metadata": {"a": 1}})
    assert res.status_code == 404

    res = await async_client.post("/api/alerts", json={"metadata": {}})
    assert res.status_code == 400
    assert res.json()["code"] == "validation_failed"

    payload = {"alertId": "twice", "sourceType": "fatigue", "timestamp": _iso(now)}
    assert (await async_client.post("/api/alerts", json=payload)).status_code == 201
    res = await async_client.post("/api/alerts", json=payload)
    assert res.status_code == 409
    assert res.json()["code"] == "alert_exists"

    res = await async_client.patch("/api/alerts/twice/metadata", json={"metadata": {"$set": 1}})
    assert res.status_code == 400

    res = await async_client.get("/api/alerts", params={"status": "sleeping"})
    assert res.status_code == 400


@pytest.mark.anyio
async def test_rules_endpoints_report_and_reload(async_client: httpx.AsyncClient, rules_file, write_rules):
    res = await async_client.get("/api/rules")
    assert res.status_code == 200
    body = res.json()
    assert body["source_format"] == "legacy"
    assert body["escalation"]["overspeed"]["escalate_if_count"] == 3
    assert body["auto_close"]["compliance"] == {"auto_close_if": ["document_valid"]}

    rules_file.write_text("[]", encoding="utf-8")
    res = await async_client.post("/api/rules/reload")
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is False
    assert body["error"]
    assert body["ruleset"]["escalation"]["overspeed"]["escalate_if_count"] == 3

    write_rules(rules_file, {"escalation": {"overspeed": {"escalate_if_count": 4, "window_mins": 15}}})
    res = await async_client.post("/api/rules/reload")
    body = res.json()
    assert body["ok"] is True
    assert body["error"] is None
    assert body["ruleset"]["source_format"] == "structured"
    assert body["ruleset"]["escalation"]["overspeed"]["window_mins"] == 15


@pytest.mark.anyio
async def test_list_total_counts_every_match_not_the_page(async_client: httpx.AsyncClient, now):
    for i in range(3):
        res = await async_client.post(
            "/api/alerts", json={"alertId": f"page-{i}", "sourceType": "fatigue", "timestamp": _iso(now)}
        )
        assert res.status_code == 201

    res = await async_client.get("/api/alerts", params={"sourceType": "fatigue", "limit": 1})
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 3
    assert len(body["items"]) == 1

    res = await async_client.get("/api/alerts", params={"sourceType": "fatigue", "limit": 2, "skip": 2})
    body = res.json()
    assert body["total"] == 3
    assert len(body["items"]) == 1


@pytest.mark.anyio
async def test_bad_query_values_are_reported_as_validation_failures(async_client: httpx.AsyncClient):
    for path, params in (
        ("/api/alerts", {"status": "sleeping"}),
        ("/api/events", {"type": "exploded"}),
        ("/api/events", {"since": "not-a-date"}),
        ("/api/alerts", {"limit": 0}),
    ):
        res = await async_client.get(path, params=params)
        assert res.status_code == 400, (path, params)
        assert res.json()["code"] == "validation_failed"


@pytest.mark.anyio
async def test_unreadable_stored_alert_is_a_server_error(app, now):
    assert ValidationError not in app.exception_handlers
    assert RequestValidationError in app.exception_handlers

    get_state(app).store.insert(
        {
            "alertId": "corrupt",
            "sourceType": "fatigue",
            "severity": "LOUD",
            "status": "OPEN",
            "timestamp": now,
            "metadata": {},
            "history": [],
        }
    )

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        res = await client.get("/api/alerts/corrupt")
    assert res.status_code == 500
