from __future__ import annotations

import routes.health as health


def test_health_reports_rail_mode(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["rail_mode"] == "mock"


def test_healthz_reports_db_failure(client, monkeypatch):
    monkeypatch.setattr(health, "_check_db", lambda: (False, "OperationalError"))
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["db_ok"] is False
    assert r.json()["db_error"] == "OperationalError"


def test_readyz_requires_latest_migration(client, monkeypatch):
    monkeypatch.setattr(health, "_check_db", lambda: (True, None))
    monkeypatch.setattr(health, "_current_revision", lambda: "0004_disputes_and_chats")
    body = client.get("/readyz").json()
    assert body["ready"] is False
    assert body["expected_revision"] == health.MIGRATION_REVISION

    monkeypatch.setattr(health, "_current_revision", lambda: health.MIGRATION_REVISION)
    assert client.get("/readyz").json()["ready"] is True


def test_metrics_endpoint_renders_counters(client):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert 'http_requests_total{route="/health",status="200"}' in r.text
