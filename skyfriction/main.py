# skyfriction/main.py
from __future__ import annotations

import logging
import os
import traceback
from time import perf_counter
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from skyfriction.api.deps import EXTENSION_KEY, Services, build_services
from skyfriction.api.routes import api as _routes_bp
from skyfriction.core.errors import EngineError
from skyfriction.core.validators import ValidationError
from skyfriction.utils.config import load_config
from skyfriction.utils.metrics import GAUGE_APP_UP, MET_REQUESTS, REQ_LATENCY
from skyfriction.version import ENGINE_VERSION, VERSION

# routes seeded at zero so dashboards see them before first traffic
_TRACKED = (
    "/", "/health", "/healthz", "/metrics",
    "/api/health",
    "/api/v1/admin/compute-day",
    "/api/engine/daily-weather/recompute",
    "/api/engine/friction/recompute",
    "/api/v1/frags/today",
    "/api/v1/assets/<asset_hash>",
)

# ───────────────────────── logging ─────────────────────────
def _configure_logging(app: Flask) -> None:
    gerr = logging.getLogger("gunicorn.error")
    if not gerr.handlers:
        logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
        return
    # under gunicorn: app and package loggers write through its handlers
    for name in (app.logger.name, "skyfriction"):
        lg = logging.getLogger(name)
        lg.handlers = gerr.handlers
        lg.setLevel(gerr.level)


# ───────────────────────── error mapping ─────────────────────────
def _error_body(code: str, http: int, details: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"ok": False, "error": code}
    if details:
        body["details"] = details
    return jsonify(body), http


def _register_errors(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def _invalid(e: ValidationError):
        app.logger.info("validation failed at %s %s: %s", request.method, request.path, e)
        return jsonify({"ok": False, "error": "validation_error", "details": e.errors()}), 400

    @app.errorhandler(EngineError)
    def _engine(e: EngineError):
        # upstream data problems surface as 503; stage only, never raw values
        app.logger.error("engine failure stage=%s at %s: %s", e.stage, request.path, e.message)
        return _error_body("DATA_UNAVAILABLE", 503, {"stage": e.stage})

    @app.errorhandler(HTTPException)
    def _http(e: HTTPException):
        app.logger.warning("HTTP %s at %s %s: %s", e.code, request.method, request.path, e.description)
        return _error_body("http_error", e.code or 500,
                           {"name": e.name, "message": e.description, "path": request.path})

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        app.logger.error("UNHANDLED %s at %s %s\n%s",
                         type(e).__name__, request.method, request.path, traceback.format_exc())
        return _error_body("internal_error", 500, {"type": type(e).__name__, "path": request.path})


# ───────────────────────── health ─────────────────────────
def _register_health(app: Flask) -> None:
    @app.get("/")
    def root():
        return jsonify(ok=True, service="skyfriction", health="/health"), 200

    @app.get("/health")
    @app.get("/healthz")
    def health():
        svc: Services = app.extensions[EXTENSION_KEY]
        return jsonify(
            ok=True,
            status="ok",
            version=VERSION,
            engine_version=ENGINE_VERSION,
            storage=svc.cfg.storage.backend,
            batch=svc.orchestrator.describe(),
        ), 200


# ───────────────────────── metrics ─────────────────────────
def _metrics_auth_ok() -> bool:
    user = os.getenv("METRICS_USER", "")
    pw = os.getenv("METRICS_PASS", "")
    if not (user and pw):
        return False
    auth = request.authorization
    return bool(auth and auth.type == "basic" and auth.username == user and auth.password == pw)


def _route_label() -> str:
    # rule, not path: asset hashes would otherwise explode label cardinality
    return request.url_rule.rule if request.url_rule is not None else request.path


def _register_metrics(app: Flask) -> None:
    for route in _TRACKED:
        MET_REQUESTS.labels(route=route).inc(0)
        REQ_LATENCY.labels(route=route).observe(0.0)
    GAUGE_APP_UP.set(1.0)

    @app.before_request
    def _count():
        if request.path.startswith("/api/") or request.path in _TRACKED:
            MET_REQUESTS.labels(route=_route_label()).inc()
            request._t0 = perf_counter()

    @app.after_request
    def _time(resp):
        t0 = getattr(request, "_t0", None)
        if t0 is not None and request.path != "/metrics":
            REQ_LATENCY.labels(route=_route_label()).observe(perf_counter() - t0)
        return resp

    @app.get("/metrics")
    def metrics_endpoint():
        if not _metrics_auth_ok():
            return Response("Unauthorized", 401, {"WWW-Authenticate": 'Basic realm="metrics"'})
        GAUGE_APP_UP.set(1.0)
        return Response(generate_latest(REGISTRY), mimetype=CONTENT_TYPE_LATEST)


# ───────────────────────── app factory ─────────────────────────
def create_app(cfg: Optional[Any] = None, services: Optional[Services] = None) -> Flask:
    """
    Build the Flask app. Tests pass a prepared `services` bundle (fake
    Horizons session, fixed clock); production builds one from config.
    """
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    _configure_logging(app)

    if services is None:
        services = build_services(cfg if cfg is not None else load_config())
    app.cfg = services.cfg  # type: ignore[attr-defined]
    app.extensions[EXTENSION_KEY] = services
    app.extensions["limiter"] = services.limiter

    _register_metrics(app)
    _register_health(app)
    _register_errors(app)
    app.register_blueprint(_routes_bp)

    app.logger.info("skyfriction %s up; engine=%s storage=%s workers=%s",
                    VERSION, ENGINE_VERSION, services.cfg.storage.backend, services.cfg.batch.max_workers)
    return app


# ───────────────────────── app instance ─────────────────────────
app = create_app()

# CORS for the dashboard and cron callers
CORS(
    app,
    resources={r"/.*": {"origins": os.environ.get("CORS_ALLOW_ORIGIN") or "*"}},
    supports_credentials=False,
    methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Key"],
    max_age=600,
)

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
