# skyfriction/api/routes.py
"""
skyfriction API routes
- Batch trigger:   POST /api/v1/admin/compute-day
- Recompute:       POST /api/engine/daily-weather/recompute
                   POST /api/engine/friction/recompute
- Frags:           GET  /api/v1/frags/today?userId=
- Assets:          GET  /api/v1/assets/<hash>
- Ops:             GET  /api/health

Admin routes accept `X-Admin-Key: <SKYF_ADMIN_KEY>`; the batch trigger also
accepts `Authorization: Bearer <CRON_SECRET>`. ValidationError (400) and
EngineError (503 DATA_UNAVAILABLE) are mapped by the app-level handlers.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request

from skyfriction.api.deps import EXTENSION_KEY, Services
from skyfriction.core.models import Subject
from skyfriction.core.validators import (
    validate_asset_hash,
    validate_compute_day_params,
    validate_daily_weather_request,
    validate_friction_request,
    validate_frag_today_params,
)
from skyfriction.utils.ratelimit import rate_limit, scoped_ip_key
from skyfriction.version import ENGINE_VERSION, VERSION

log = logging.getLogger(__name__)
api = Blueprint("api", __name__)


# ───────────────────────── helpers ─────────────────────────
def _svc() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def _json_error(code: str, details: Any = None, http: int = 400):
    out: Dict[str, Any] = {"ok": False, "error": code}
    if details is not None:
        out["details"] = details
    return jsonify(out), http


def _same(given: str, expected: Optional[str]) -> bool:
    # an unset secret never matches
    return bool(given) and bool(expected) and hmac.compare_digest(given.encode("utf-8"), str(expected).encode("utf-8"))


def _admin_ok() -> bool:
    return _same(request.headers.get("X-Admin-Key", ""), _svc().cfg.auth.admin_key)


def _cron_ok() -> bool:
    secret = _svc().cfg.auth.cron_secret
    return bool(secret) and _same(request.headers.get("Authorization", ""), f"Bearer {secret}")


def _unauthorized():
    log.warning("rejected %s %s: bad or missing credentials", request.method, request.path)
    return _json_error("UNAUTHORIZED", None, 401)


def _location(svc: Services, user_id: str, baseline: Optional[Subject]) -> Tuple[str, Optional[str]]:
    """Zone and city for a user's daily weather: stored context first, birth place as the city fallback."""
    ctx = svc.store.get_user_context(user_id)
    tz_name = ctx.timezone if ctx else "UTC"
    city = (ctx.city if ctx else None) or (baseline.birth_place if baseline else None)
    return tz_name, city


# ───────────────────────── ops ─────────────────────────
@api.get("/api/health")
def health():
    return jsonify({"ok": True, "status": "up", "version": VERSION, "engine_version": ENGINE_VERSION}), 200


# ───────────────────────── batch ─────────────────────────
@api.post("/api/v1/admin/compute-day")
@rate_limit(scoped_ip_key("compute-day"))
def compute_day():
    if not (_admin_ok() or _cron_ok()):
        return _unauthorized()
    svc = _svc()
    utc_date, run_at = validate_compute_day_params(request.args, svc.clock())
    log.info("compute-day requested for %s (run at %s)", utc_date.isoformat(), run_at.isoformat())
    summary = svc.orchestrator.run(utc_date, run_at)
    return jsonify(summary.to_dict()), 200


# ───────────────────────── recompute ─────────────────────────
@api.post("/api/engine/daily-weather/recompute")
@rate_limit(scoped_ip_key("recompute"))
def recompute_daily_weather():
    if not _admin_ok():
        return _unauthorized()
    req = validate_daily_weather_request(request.get_json(silent=True))
    svc = _svc()
    user_id = req["user_id"]
    baseline = svc.store.get_user_baseline(user_id)
    if baseline is None:
        return _json_error("not_found", "baseline missing", 404)
    tz_name, city = _location(svc, user_id, baseline)
    dw = svc.engine.get_daily_weather(user_id, req["date_local"], tz_name, city)
    return jsonify(dw.to_dict()), 200


@api.post("/api/engine/friction/recompute")
@rate_limit(scoped_ip_key("recompute"))
def recompute_friction():
    if not _admin_ok():
        return _unauthorized()
    req = validate_friction_request(request.get_json(silent=True))
    svc = _svc()
    user_id, connection_id, date_local = req["user_id"], req["connection_id"], req["date_local"]

    user_subject = svc.store.get_user_baseline(user_id)
    connection = svc.store.get_connection(user_id, connection_id)
    if user_subject is None or connection is None:
        return _json_error("not_found", "baseline or connection missing", 404)

    tz_name, city = _location(svc, user_id, user_subject)
    daily = svc.engine.get_daily_weather(user_id, date_local, tz_name, city)
    user_base = svc.engine.get_baseline_vector(user_id, user_subject)
    conn_base = svc.engine.get_baseline_vector(user_id, connection, connection_id)
    result = svc.engine.get_friction(user_id, connection_id, date_local, daily, user_base, conn_base)
    return jsonify(result.to_dict()), 200


# ───────────────────────── frags ─────────────────────────
@api.get("/api/v1/frags/today")
@rate_limit(scoped_ip_key("frags"))
def frag_today():
    """Today's frag in the user's own zone, joined with its public asset status."""
    if not _admin_ok():
        return _unauthorized()
    user_id = validate_frag_today_params(request.args)["user_id"]
    svc = _svc()
    ctx = svc.store.get_user_context(user_id)
    tz_name = ctx.timezone if ctx else "UTC"
    local_date = svc.orchestrator.converter.local_date(svc.clock(), tz_name).isoformat()

    frag = svc.store.get_frag(user_id, local_date, svc.orchestrator.engine_version)
    if frag is None:
        # batch has not materialized this day yet
        return jsonify({"status": "PENDING", "local_date": local_date}), 200

    asset = svc.store.get_public_asset(frag.asset_hash)
    out = frag.to_dict()
    out["asset_status"] = asset.status if asset else "MISSING"
    out["asset_url"] = asset.url if asset else None
    return jsonify({"status": "READY", "frag": out}), 200


# ───────────────────────── assets ─────────────────────────
@api.get("/api/v1/assets/<asset_hash>")
def get_asset(asset_hash: str):
    h = validate_asset_hash(asset_hash)
    asset = _svc().store.get_public_asset(h)
    if asset is None:
        return _json_error("not_found", None, 404)
    # public record only: hash, type, status
    return jsonify({"hash": asset.hash, "type": asset.type, "status": asset.status}), 200
