# skycal/main.py
from __future__ import annotations

import logging
import os
from time import perf_counter
from typing import Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from skycal.api.routes import api as _routes_bp
from skycal.core import ephemeris_adapter as eph
from skycal.core.service import YearEventsService
from skycal.utils.cache import ResultCache
from skycal.utils.config import EngineSettings, load_config
from skycal.utils.metrics import GAUGE_APP_UP, MET_REQUESTS, REQ_LATENCY
from skycal.version import VERSION

_METERED = ("/", "/health", "/healthz", "/metrics")

# ───────────────────────── helpers: logging & errors ─────────────────────────
def _configure_logging(app: Flask) -> None:
    gerr = logging.getLogger("gunicorn.error")
    if gerr.handlers:
        app.logger.handlers = gerr.handlers
        app.logger.setLevel(gerr.level)
    else:
        logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

def _error_body(error: str, status: int, **extra) -> tuple[Response, int]:
    body = {"ok": False, "error": error, "path": request.path}
    body.update({k: v for k, v in extra.items() if v is not None})
    return jsonify(body), status

def _register_errors(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http(e: HTTPException):
        status = e.code or 500
        app.logger.warning("%s %s -> %d (%s)", request.method, request.path, status, e.name)
        return _error_body("http_error", status, code=status, name=e.name, message=e.description)

    @app.errorhandler(Exception)
    def _any(e: Exception):
        app.logger.exception("unhandled %s on %s %s", type(e).__name__, request.method, request.path)
        verbose = os.getenv("SKYCAL_DEBUG_VERBOSE", "0").lower() in ("1", "true", "yes", "on")
        return _error_body("internal_error", 500, type=type(e).__name__, message=str(e) if verbose else None)

# ───────────────────────── health & metrics ─────────────────────────
def _register_health(app: Flask) -> None:
    @app.route("/", methods=["GET"])
    def root():
        return jsonify(ok=True, service="skycal-backend", version=VERSION, health="/health"), 200

    @app.route("/health", methods=["GET"])
    @app.route("/healthz", methods=["GET"])
    def health():
        return jsonify(ok=True, status="ok"), 200

def _metrics_auth_ok() -> bool:
    auth = request.authorization
    user = os.getenv("METRICS_USER", "")
    pw = os.getenv("METRICS_PASS", "")
    return bool(
        auth and auth.type == "basic" and auth.username == user and auth.password == pw and user and pw
    )

def _register_metrics(app: Flask) -> None:
    for route in (*_METERED, "/api/year-events", "/api/year-events/refresh", "/api/health"):
        MET_REQUESTS.labels(route=route).inc(0)
        REQ_LATENCY.labels(route=route).observe(0.0)
    GAUGE_APP_UP.set(1.0)

    @app.before_request
    def _before():
        p = request.path or ""
        if p.startswith("/api/") or p in _METERED:
            MET_REQUESTS.labels(route=p).inc()
            request.environ["skycal.t0"] = perf_counter()

    @app.after_request
    def _after(resp):
        t0 = request.environ.get("skycal.t0")
        if t0 is not None:
            REQ_LATENCY.labels(route=request.path or "").observe(perf_counter() - t0)
        return resp

    @app.route("/metrics", methods=["GET"])
    def metrics_endpoint():
        if not _metrics_auth_ok():
            return Response("Unauthorized", 401, {"WWW-Authenticate": 'Basic realm="metrics"'})
        GAUGE_APP_UP.set(1.0)
        return Response(generate_latest(REGISTRY), mimetype=CONTENT_TYPE_LATEST)

# ───────────────────────── service wiring ─────────────────────────
def _build_service(app: Flask) -> YearEventsService:
    cfg = load_config()
    settings = EngineSettings.from_config(cfg)
    cache = ResultCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
        eviction=settings.cache_eviction,
    )
    topocentric = os.getenv("SKYCAL_TOPOCENTRIC", "1").lower() in ("1", "true", "yes", "on")

    def oracle_factory(lat: float, lon: float) -> eph.SkyfieldOracle:
        return eph.SkyfieldOracle(lat, lon, topocentric=topocentric)

    app.config["SKYCAL_SETTINGS"] = settings.as_dict()
    return YearEventsService(oracle_factory, cache, settings)

# ───────────────────────── app factory ─────────────────────────
def create_app(service: Optional[YearEventsService] = None) -> Flask:
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.json.sort_keys = False  # type: ignore[attr-defined]
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    _configure_logging(app)

    app.extensions["skycal"] = service if service is not None else _build_service(app)

    _register_metrics(app)
    _register_health(app)
    _register_errors(app)
    app.register_blueprint(_routes_bp)

    # Debug endpoints
    @app.get("/__debug/routes")
    def __debug_routes():
        rules = sorted(
            (
                {"rule": r.rule, "endpoint": r.endpoint, "methods": sorted((r.methods or set()) - {"HEAD", "OPTIONS"})}
                for r in app.url_map.iter_rules()
                if r.endpoint != "static"
            ),
            key=lambda x: x["rule"],
        )
        return jsonify(count=len(rules), rules=rules), 200

    @app.get("/__debug/ephem")
    def __debug_ephem():
        svc: YearEventsService = app.extensions["skycal"]
        return jsonify(
            kernel=os.getenv("SKYCAL_EPHEMERIS") or None,
            diagnostics=svc.diagnostics(),
        ), 200

    @app.get("/favicon.ico")
    def _noop_favicon():
        return ("", 204)

    # CORS for browser UIs
    CORS(
        app,
        resources={r"/api/*": {"origins": os.environ.get("CORS_ALLOW_ORIGIN") or "*"}},
        supports_credentials=False,
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=600,
    )

    app.logger.info("App initialized; version=%s, blueprints=%s", VERSION, list(app.blueprints))
    return app


# ───────────────────────── app instance ─────────────────────────
app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
