# skyfriction/core/models.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from skyfriction.core.constants import BODIES, Body, SOURCE_TAG

__all__ = [
    "EphemerisSample", "EphemerisRun",
    "Provenance", "PairSeparation",
    "DailyWeather", "BaselineVector", "FrictionResult",
    "Subject", "UserContext",
    "FrictionEvent", "Frag", "PublicAsset", "PrivateAsset",
    "ConnectionScores", "BatchSummary",
    "iso_utc",
]


def iso_utc(dt: datetime) -> str:
    """ISO-8601 UTC with a trailing 'Z' and millisecond precision."""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


# ───────────────────────── ephemeris ─────────────────────────

@dataclass(frozen=True)
class EphemerisSample:
    t_utc: datetime
    # one slot per BODIES entry; None when the source did not report that body
    longitudes: Tuple[Optional[float], ...]

    def lon(self, body: Body) -> Optional[float]:
        return self.longitudes[body.index]

    @classmethod
    def from_mapping(cls, t_utc: datetime, lons: Dict[Body, float]) -> "EphemerisSample":
        return cls(t_utc=t_utc, longitudes=tuple(lons.get(b) for b in BODIES))


@dataclass(frozen=True)
class EphemerisRun:
    start_utc: str          # YYYY-MM-DD, inclusive
    stop_utc: str           # YYYY-MM-DD, exclusive
    step: str               # e.g. "60m"
    kind: str               # purpose, e.g. "daily_shared" | "baseline"
    request: Dict[str, Any]
    raw_text: str
    raw_hash: str
    samples: Tuple[EphemerisSample, ...]
    dropped_rows: Dict[str, int] = field(default_factory=dict)
    run_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.start_utc, self.stop_utc, self.step, self.kind)


# ───────────────────────── engine outputs ─────────────────────────

@dataclass(frozen=True)
class Provenance:
    horizons_request: Dict[str, Any]
    horizons_response_hash: str
    engine_version: str
    computed_at_utc: str
    source: str = SOURCE_TAG
    extra: Dict[str, Any] = field(default_factory=dict)

    def with_extra(self, **kv: Any) -> "Provenance":
        merged = dict(self.extra)
        merged.update(kv)
        return Provenance(
            horizons_request=self.horizons_request,
            horizons_response_hash=self.horizons_response_hash,
            engine_version=self.engine_version,
            computed_at_utc=self.computed_at_utc,
            source=self.source,
            extra=merged,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "source": self.source,
            "horizons_request": dict(self.horizons_request),
            "horizons_response_hash": self.horizons_response_hash,
            "engine_version": self.engine_version,
            "computed_at_utc": self.computed_at_utc,
        }
        out.update(self.extra)
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Provenance":
        core = ("source", "horizons_request", "horizons_response_hash", "engine_version", "computed_at_utc")
        return cls(
            horizons_request=dict(d.get("horizons_request") or {}),
            horizons_response_hash=str(d.get("horizons_response_hash", "")),
            engine_version=str(d.get("engine_version", "")),
            computed_at_utc=str(d.get("computed_at_utc", "")),
            source=str(d.get("source", SOURCE_TAG)),
            extra={k: v for k, v in d.items() if k not in core},
        )


@dataclass(frozen=True)
class PairSeparation:
    pair: str
    sep_deg: float
    c: float

    def as_dict(self) -> Dict[str, Any]:
        return {"pair": self.pair, "c": self.c, "sep_deg": self.sep_deg}


@dataclass(frozen=True)
class DailyWeather:
    date_local: str
    timezone: str
    pressure_score: int
    weather_band: str
    signals: List[Dict[str, Any]]
    drivers: List[Dict[str, Any]]
    max_step: Dict[str, Any]        # {"t_utc": str, "weighted_sum": float}
    provenance: Provenance

    @property
    def max_weighted_sum(self) -> float:
        return float(self.max_step["weighted_sum"])

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["provenance"] = self.provenance.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DailyWeather":
        return cls(
            date_local=d["date_local"],
            timezone=d["timezone"],
            pressure_score=int(d["pressure_score"]),
            weather_band=d["weather_band"],
            signals=list(d.get("signals") or []),
            drivers=list(d.get("drivers") or []),
            max_step=dict(d["max_step"]),
            provenance=Provenance.from_dict(d.get("provenance") or {}),
        )


@dataclass(frozen=True)
class BaselineVector:
    baseline_vector: List[float]
    sample_t_utc: str
    provenance: Provenance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_vector": list(self.baseline_vector),
            "sample_t_utc": self.sample_t_utc,
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BaselineVector":
        return cls(
            baseline_vector=[float(x) for x in d["baseline_vector"]],
            sample_t_utc=str(d.get("sample_t_utc", "")),
            provenance=Provenance.from_dict(d.get("provenance") or {}),
        )


@dataclass(frozen=True)
class FrictionResult:
    friction_score: int
    baseline_distance: float
    daily_component: float
    drivers: List[Dict[str, Any]]
    provenance: Provenance

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["provenance"] = self.provenance.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FrictionResult":
        return cls(
            friction_score=int(d["friction_score"]),
            baseline_distance=float(d["baseline_distance"]),
            daily_component=float(d["daily_component"]),
            drivers=list(d.get("drivers") or []),
            provenance=Provenance.from_dict(d.get("provenance") or {}),
        )


# ───────────────────────── subjects ─────────────────────────

@dataclass(frozen=True)
class Subject:
    """Birth data for a user or one of their connections."""
    subject_id: str
    dob: str                          # YYYY-MM-DD
    birth_time: Optional[str] = None  # HH:MM[:SS], local to `timezone`
    birth_place: Optional[str] = None
    timezone: str = "UTC"


@dataclass(frozen=True)
class UserContext:
    user_id: str
    timezone: str = "UTC"
    city: Optional[str] = None


# ───────────────────────── persisted records ─────────────────────────

@dataclass(frozen=True)
class FrictionEvent:
    user_id: str
    connection_id: str
    event_date: str
    engine_version: str
    pressure_score: int
    friction_score: int
    friction_delta: int
    fidelity_bucket: str
    asset_hash: str
    provenance_hash: str
    primary_gate: str = "NONE"
    event_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.user_id, self.connection_id, self.event_date, self.engine_version)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Frag:
    user_id: str
    local_date: str
    engine_version: str
    top_event_id: Optional[str]
    simple_text_state: str
    simple_text_action: str
    asset_hash: str

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.user_id, self.local_date, self.engine_version)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PublicAsset:
    hash: str
    type: str = "STILL"
    status: str = "MISSING"
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PrivateAsset:
    hash: str
    canonical: str
    user_class: str
    target_class: str
    pressure_bucket: str
    fidelity_bucket: str
    friction_bracket10: int
    asset_version: str


# ───────────────────────── batch ─────────────────────────

@dataclass(frozen=True)
class ConnectionScores:
    pressure_score: int
    friction_score: int
    provenance_hash: Optional[str] = None


@dataclass
class BatchSummary:
    utc_date: str
    shared_run_hash: Optional[str]
    users_processed: int = 0
    events_written: int = 0
    frags_written: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "utc_date": self.utc_date,
            "shared_run_hash": self.shared_run_hash,
            "users_processed": self.users_processed,
            "events_written": self.events_written,
            "frags_written": self.frags_written,
            "errors": list(self.errors),
        }
