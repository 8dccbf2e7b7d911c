# tests/test_endpoints.py
from __future__ import annotations

import base64

import pytest

from skycal.core.service import YearEventsService
from skycal.main import create_app
from skycal.utils.cache import ResultCache
from skycal.utils.config import EngineSettings
from skycal.utils.ratelimit import reset_buckets

MOTIONS = {"sun": (280.0, 0.9856), "mercury": (250.0, 1.3)}

SETTINGS = EngineSettings(
    sample_interval_hours=24.0,
    bodies=("sun", "mercury"),
    lunations_enabled=False,
    refine_max_workers=1,
)


def _client(oracle_factory, monkeypatch, *, rl_disabled=True):
    if rl_disabled:
        monkeypatch.setenv("SKYCAL_RL_DISABLE", "1")
    else:
        monkeypatch.delenv("SKYCAL_RL_DISABLE", raising=False)
    reset_buckets()
    svc = YearEventsService(oracle_factory, ResultCache(), SETTINGS)
    app = create_app(service=svc)
    app.testing = True
    return app.test_client()


@pytest.fixture
def client(fake_oracle, monkeypatch):
    return _client(lambda lat, lon: fake_oracle(MOTIONS), monkeypatch)


@pytest.fixture
def broken_client(fake_oracle, monkeypatch):
    return _client(lambda lat, lon: fake_oracle(MOTIONS, fail=lambda b, w: True), monkeypatch)


def test_health(client):
    rv = client.get("/api/health")
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["ok"] is True and data["status"] == "up"
    assert client.get("/healthz").get_json()["status"] == "ok"


def test_year_events_success_shape(client):
    rv = client.post("/api/year-events", json={"year": 2024, "tz": "America/New_York"})
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["ok"] is True
    assert data["year"] == 2024
    assert data["location"] == {"latitude": 40.7128, "longitude": -74.006, "tz": "America/New_York"}
    assert data["sample_interval_hours"] == 24.0
    assert data["from_cache"] is False
    assert data["complete"] is True
    assert data["count"] == len(data["events"]) > 0
    for ev in data["events"]:
        assert ev["type"] in ("ingress", "station", "aspect")
        assert ev["utc"].endswith("Z")
        assert ev["local"][-6:] in ("-05:00", "-04:00")
        assert ev["id"].startswith(ev["type"] + "-")
    assert [e["utc"] for e in data["events"]] == sorted(e["utc"] for e in data["events"])

    again = client.post("/api/year-events", json={"year": 2024, "tz": "America/New_York"}).get_json()
    assert again["from_cache"] is True
    assert again["events"] == data["events"]


def test_family_filter(client):
    data = client.post("/api/year-events", json={"year": 2024, "families": ["ingress"]}).get_json()
    assert data["count"] > 0
    assert {e["type"] for e in data["events"]} == {"ingress"}


def test_refresh_endpoint_bypasses_cache(client):
    client.post("/api/year-events", json={"year": 2024})
    data = client.post("/api/year-events/refresh", json={"year": 2024}).get_json()
    assert data["ok"] is True
    assert data["from_cache"] is False


@pytest.mark.parametrize(
    "payload, loc",
    [
        ({}, ["year"]),
        ({"year": "soon"}, ["year"]),
        ({"year": 1700}, ["year"]),
        ({"year": 2024, "latitude": 95}, ["latitude"]),
        ({"year": 2024, "tz": "Mars/Olympus_Mons"}, ["tz"]),
        ({"year": 2024, "families": ["eclipse"]}, ["families"]),
        ({"year": 2024, "refresh": "maybe"}, ["refresh"]),
    ],
)
def test_validation_errors(client, payload, loc):
    rv = client.post("/api/year-events", json=payload)
    assert rv.status_code == 400
    data = rv.get_json()
    assert data["ok"] is False and data["error"] == "validation_error"
    assert any(d["loc"] == loc for d in data["details"])


def test_provider_failure_is_502(broken_client):
    rv = broken_client.post("/api/year-events", json={"year": 2024})
    assert rv.status_code == 502
    assert rv.get_json() == {"ok": False, "error": "failed_to_load_events"}


def test_config_endpoint(client):
    data = client.get("/api/config").get_json()
    assert data["ok"] is True
    assert data["settings"]["aspect_orb_deg"] == 0.5
    assert data["settings"]["cache"]["eviction"] == "expire"
    assert data["cache"]["entries"] == 0


def test_ephemeris_info_uses_oracle(client):
    data = client.get("/api/ephemeris-info").get_json()
    assert data["ok"] is True
    assert data["ephemeris"] == {"oracle": "FakeOracle"}


def test_metrics_requires_basic_auth(client, monkeypatch):
    assert client.get("/metrics").status_code == 401
    monkeypatch.setenv("METRICS_USER", "ops")
    monkeypatch.setenv("METRICS_PASS", "s3cret")
    token = base64.b64encode(b"ops:s3cret").decode()
    rv = client.get("/metrics", headers={"Authorization": f"Basic {token}"})
    assert rv.status_code == 200
    assert b"skycal_api_requests_total" in rv.data


def test_unknown_route_is_json_404(client):
    rv = client.get("/api/nope")
    assert rv.status_code == 404
    assert rv.get_json()["error"] == "http_error"


def test_debug_routes_lists_year_events(client):
    rules = {r["rule"] for r in client.get("/__debug/routes").get_json()["rules"]}
    assert {"/api/year-events", "/api/year-events/refresh", "/metrics"} <= rules


def test_rate_limit_returns_429(fake_oracle, monkeypatch):
    c = _client(lambda lat, lon: fake_oracle(MOTIONS), monkeypatch, rl_disabled=False)
    codes = [c.post("/api/year-events/refresh", json={}).status_code for _ in range(7)]
    assert codes[:6] == [400] * 6
    assert codes[6] == 429
    rv = c.post("/api/year-events/refresh", json={})
    assert rv.headers["X-RateLimit-Remaining"] == "0"
    assert int(rv.headers["Retry-After"]) >= 1
