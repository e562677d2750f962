# skyfriction/core/validators.py
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple, Union

# ───────────────────────── errors ─────────────────────────

class ValidationError(ValueError):
    """Structured validator error; routes render .errors() into the 400 body."""
    def __init__(self, details: Union[str, Dict[str, Any], List[Dict[str, Any]]]):
        if isinstance(details, str):
            self._details = [{"loc": [], "msg": details, "type": "value_error"}]
            super().__init__(details)
        elif isinstance(details, dict):
            self._details = [details]
            super().__init__(details.get("msg", "validation_error"))
        elif isinstance(details, list):
            self._details = details
            super().__init__(self._details[0]["msg"] if self._details else "validation_error")
        else:
            self._details = [{"loc": [], "msg": "validation_error", "type": "value_error"}]
            super().__init__("validation_error")

    def errors(self) -> List[Dict[str, Any]]:
        return list(self._details)


# ───────────────────────── helpers ─────────────────────────

def _err(loc: List[str] | str, msg: str, typ: str = "value_error") -> Dict[str, Any]:
    return {"loc": [loc] if isinstance(loc, str) else loc, "msg": msg, "type": typ}


_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


# ───────────────────────── atomic parsers ─────────────────────────

def parse_date(value: Any, loc: str = "date") -> date:
    """Strict 'YYYY-MM-DD'."""
    s = str(value or "").strip()
    if not _DATE_RE.match(s):
        raise ValidationError(_err(loc, "must be a date like 'YYYY-MM-DD'"))
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError(_err(loc, "not a valid calendar date"))


def parse_instant(value: Any, loc: str = "timestamp") -> datetime:
    """
    ISO-8601 instant → aware UTC datetime. A trailing 'Z' is accepted; a
    timestamp without an offset is read as UTC.
    """
    s = str(value or "").strip()
    if not s:
        raise ValidationError(_err(loc, "must be an ISO-8601 timestamp"))
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ValidationError(_err(loc, "must be an ISO-8601 timestamp"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def require_id(value: Any, loc: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValidationError(_err(loc, "field required", "missing"))
    if not _ID_RE.match(s):
        raise ValidationError(_err(loc, "must be an identifier of letters, digits, '_', '-', '.', ':'"))
    return s


def validate_asset_hash(value: Any) -> str:
    s = str(value or "").strip().lower()
    if not _HASH_RE.match(s):
        raise ValidationError(_err("hash", "must be a 64-character hex SHA-256"))
    return s


# ───────────────────────── request payloads ─────────────────────────

def _body(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(_err([], "request body must be a JSON object"))
    return payload


def _collect(*thunks) -> List[Any]:
    """Run each parser, gathering every failure into one ValidationError."""
    out: List[Any] = []
    errs: List[Dict[str, Any]] = []
    for fn in thunks:
        try:
            out.append(fn())
        except ValidationError as e:
            errs.extend(e.errors())
            out.append(None)
    if errs:
        raise ValidationError(errs)
    return out


def validate_daily_weather_request(payload: Any) -> Dict[str, Any]:
    body = _body(payload)
    user_id, d = _collect(
        lambda: require_id(body.get("userId"), "userId"),
        lambda: parse_date(body.get("dateLocal"), "dateLocal"),
    )
    return {"user_id": user_id, "date_local": d.isoformat()}


def validate_friction_request(payload: Any) -> Dict[str, Any]:
    body = _body(payload)
    user_id, connection_id, d = _collect(
        lambda: require_id(body.get("userId"), "userId"),
        lambda: require_id(body.get("connectionId"), "connectionId"),
        lambda: parse_date(body.get("dateLocal"), "dateLocal"),
    )
    return {"user_id": user_id, "connection_id": connection_id, "date_local": d.isoformat()}


def validate_compute_day_params(args: Mapping[str, Any], now_utc: datetime) -> Tuple[date, datetime]:
    """
    utcRunTs defaults to `now_utc`; utcDate defaults to the UTC calendar date
    of the run timestamp.
    """
    raw_ts = args.get("utcRunTs")
    raw_date = args.get("utcDate")
    run_at, utc_d = _collect(
        lambda: parse_instant(raw_ts, "utcRunTs") if raw_ts else now_utc.astimezone(timezone.utc),
        lambda: parse_date(raw_date, "utcDate") if raw_date else None,
    )
    return (utc_d or run_at.date()), run_at


def validate_frag_today_params(args: Mapping[str, Any]) -> Dict[str, Any]:
    (user_id,) = _collect(lambda: require_id(args.get("userId"), "userId"))
    return {"user_id": user_id}
