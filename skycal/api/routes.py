# skycal/api/routes.py
"""
SkyCal API routes
- Year events: POST /api/year-events, POST /api/year-events/refresh
- Ops: /api/health, /api/config, /api/ephemeris-info

The service lives in `current_app.extensions["skycal"]` (see main.create_app).
Events are cached in UTC; the caller's local mirror is applied per response.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request

from skycal.version import VERSION
from skycal.core.aggregator import with_local
from skycal.core.ephemeris_adapter import EphemerisError
from skycal.core.sampling import SampleProviderError
from skycal.core.service import YearEventsService
from skycal.core.validators import ValidationError, parse_year_events_payload
from skycal.utils.ratelimit import rate_limit

log = logging.getLogger(__name__)
api = Blueprint("api", __name__)

DEBUG_VERBOSE = os.getenv("SKYCAL_DEBUG_VERBOSE", "0").lower() in ("1", "true", "yes", "on")

# ── per-endpoint rate-limit caps (calls per minute, env-overridable) ───────────
_RL = lambda k, d: int(os.getenv(k, str(d)))  # noqa: E731
RL_YEAR_EVENTS = _RL("SKYCAL_RL_YEAR_EVENTS_PER_MIN", 30)
RL_REFRESH     = _RL("SKYCAL_RL_REFRESH_PER_MIN",      6)
RL_OPS         = _RL("SKYCAL_RL_OPS_PER_MIN",         30)


# ───────────────────────── helpers ─────────────────────────
def _json_error(code: str, details: Any = None, http: int = 400):
    out: Dict[str, Any] = {"ok": False, "error": code}
    if details is not None:
        out["details"] = details
    return jsonify(out), http


def _service() -> YearEventsService:
    return current_app.extensions["skycal"]


def _year_events(force_refresh: bool):
    svc = _service()
    body = request.get_json(silent=True)
    try:
        req = parse_year_events_payload(
            body,
            default_latitude=svc.settings.default_latitude,
            default_longitude=svc.settings.default_longitude,
        )
    except ValidationError as e:
        return _json_error("validation_error", e.errors(), 400)

    try:
        result = svc.events_for(
            req.year, req.latitude, req.longitude, refresh=force_refresh or req.refresh
        )
    except (SampleProviderError, EphemerisError) as e:
        log.error("year events %s (%s, %s) failed: %s", req.year, req.latitude, req.longitude, e)
        return _json_error("failed_to_load_events", str(e) if DEBUG_VERBOSE else None, 502)

    events = [e for e in result.events if e.kind in req.families]
    events = with_local(events, req.tz)
    return jsonify({
        "ok": True,
        "year": req.year,
        "location": {"latitude": req.latitude, "longitude": req.longitude, "tz": req.tz},
        "sample_interval_hours": svc.settings.sample_interval_hours,
        "from_cache": result.from_cache,
        "complete": result.complete,
        "count": len(events),
        "events": [e.as_dict() for e in events],
        "warnings": list(result.warnings),
    }), 200


def _refresh_cost(req) -> float:
    body: Optional[Dict[str, Any]] = req.get_json(silent=True)
    return 3.0 if isinstance(body, dict) and body.get("refresh") is True else 1.0


# ───────────────────────── health / ops ─────────────────────────
@api.get("/api/health")
def health():
    return jsonify({"ok": True, "status": "up", "version": VERSION}), 200


@api.get("/api/config")
@rate_limit(RL_OPS)
def config_info():
    svc = _service()
    return jsonify({
        "ok": True,
        "settings": svc.settings.as_dict(),
        "cache": svc.cache.stats(),
        "version": VERSION,
    }), 200


@api.get("/api/ephemeris-info")
@rate_limit(RL_OPS)
def ephemeris_info():
    try:
        diag = _service().diagnostics()
    except EphemerisError as e:
        return _json_error("ephemeris_unavailable", {"stage": e.stage, "message": str(e)}, 503)
    return jsonify({"ok": True, "ephemeris": diag}), 200


# ───────────────────────── year events ─────────────────────────
@api.post("/api/year-events")
@rate_limit(RL_YEAR_EVENTS, cost_fn=_refresh_cost)
def year_events():
    return _year_events(force_refresh=False)


@api.post("/api/year-events/refresh")
@rate_limit(RL_REFRESH)
def year_events_refresh():
    return _year_events(force_refresh=True)
