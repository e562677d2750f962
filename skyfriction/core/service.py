# skyfriction/core/service.py
from __future__ import annotations

"""
Read-through engine service.

    ProvenanceCache.get ─hit─▶ output
          │ miss
          ▼
    Store (ephemeris run by window/step/kind) ─miss─▶ EphemerisClient.fetch
          ▼
    signals.* (pure) ─▶ ProvenanceCache.put ─▶ output

FetchError and MissingSampleDataError propagate to the caller; cache write
failures are absorbed by ProvenanceCache.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from skyfriction.core.errors import MissingSampleDataError
from skyfriction.core.horizons import EphemerisClient
from skyfriction.core.models import (
    BaselineVector,
    ConnectionScores,
    DailyWeather,
    EphemerisRun,
    FrictionResult,
    Provenance,
    Subject,
    UserContext,
    iso_utc,
)
from skyfriction.core.provenance import ProvenanceCache, canonical_json, hash_inputs, sha256_hex
from skyfriction.core.signals import (
    compute_baseline_vector,
    compute_daily_weather,
    compute_friction,
    samples_for_local_date,
    select_baseline_sample,
)
from skyfriction.core.store import Store
from skyfriction.core.timezones import LOCAL_NOON, TimezoneConverter
from skyfriction.utils.metrics import EPHEM_FETCHES, EPHEM_RUN_REUSE
from skyfriction.version import ENGINE_VERSION

log = logging.getLogger(__name__)

__all__ = ["EngineService", "KIND_DAILY", "KIND_BASELINE", "KIND_FRICTION", "RUN_SHARED", "RUN_BASELINE"]

# cache kinds
KIND_DAILY = "daily_weather"
KIND_BASELINE = "baseline_vector"
KIND_FRICTION = "friction"

# ephemeris run purposes
RUN_SHARED = "daily_shared"
RUN_BASELINE = "baseline"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_birth_time(s: str) -> time:
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(s.strip(), fmt).time()
        except ValueError:
            continue
    raise ValueError(f"birth_time must be 'HH:MM' or 'HH:MM:SS', got {s!r}")


class EngineService:
    def __init__(
        self,
        client: EphemerisClient,
        cache: ProvenanceCache,
        store: Store,
        *,
        converter: Optional[TimezoneConverter] = None,
        clock: Callable[[], datetime] = _utcnow,
        step: str = "60m",
        engine_version: str = ENGINE_VERSION,
    ):
        self.client = client
        self.cache = cache
        self.store = store
        self.converter = converter or TimezoneConverter()
        self.clock = clock
        self.step = step
        self.engine_version = engine_version

    # ───────────────────────── ephemeris runs ─────────────────────────

    def get_or_fetch_run(self, start: date, stop: date, kind: str) -> EphemerisRun:
        start_s, stop_s = start.isoformat(), stop.isoformat()
        existing = self.store.find_ephemeris_run(start_s, stop_s, self.step, kind)
        if existing is not None:
            EPHEM_RUN_REUSE.labels(kind=kind).inc()
            log.debug("reusing ephemeris run %s (%s..%s %s)", existing.run_id, start_s, stop_s, kind)
            return existing

        try:
            fetched = self.client.fetch(start_s, stop_s, self.step)
        except Exception:
            EPHEM_FETCHES.labels(kind=kind, outcome="error").inc()
            raise
        EPHEM_FETCHES.labels(kind=kind, outcome="ok").inc()

        run = EphemerisRun(
            start_utc=start_s,
            stop_utc=stop_s,
            step=self.step,
            kind=kind,
            request=fetched.request,
            raw_text=fetched.raw_text,
            raw_hash=fetched.raw_hash,
            samples=fetched.samples,
            dropped_rows=fetched.dropped_rows,
        )
        return self.store.insert_ephemeris_run(run)

    def get_or_fetch_shared_run(self, utc_date: date) -> EphemerisRun:
        """[utc_date − 1d, utc_date + 2d): covers the civil day of utc_date in every IANA zone."""
        return self.get_or_fetch_run(utc_date - timedelta(days=1), utc_date + timedelta(days=2), RUN_SHARED)

    def _provenance(self, run: Optional[EphemerisRun]) -> Provenance:
        return Provenance(
            horizons_request=dict(run.request) if run else {},
            horizons_response_hash=run.raw_hash if run else "DERIVED",
            engine_version=self.engine_version,
            computed_at_utc=iso_utc(self.clock()),
        )

    # ───────────────────────── daily weather ─────────────────────────

    def daily_weather_inputs(self, date_local: str, tz_name: str, city: Optional[str]) -> Dict[str, Any]:
        return {"dateLocal": date_local, "timezone": tz_name, "city": city, "engine": self.engine_version}

    def get_daily_weather(
        self,
        user_id: str,
        date_local: str,
        tz_name: str,
        city: Optional[str],
        run: Optional[EphemerisRun] = None,
    ) -> DailyWeather:
        inputs_hash = hash_inputs(self.daily_weather_inputs(date_local, tz_name, city))
        cached = self.cache.get(user_id, KIND_DAILY, self.engine_version, inputs_hash, date_local)
        if cached is not None:
            return DailyWeather.from_dict(cached)

        d = date.fromisoformat(date_local)
        run = run or self.get_or_fetch_shared_run(d)
        samples = samples_for_local_date(run.samples, d, tz_name, self.converter)
        if not samples:
            dropped = sum(run.dropped_rows.values())
            raise MissingSampleDataError(
                f"No samples for local date {date_local} in {tz_name} "
                f"(run {run.run_id}, {dropped} rows dropped at parse)",
                date_local=date_local,
                timezone=tz_name,
                run_id=run.run_id,
            )

        prov = self._provenance(run).with_extra(inputs_hash=inputs_hash, city=city, horizons_run_id=run.run_id)
        out = compute_daily_weather(samples, date_local, tz_name, prov)
        self.cache.put(user_id, KIND_DAILY, self.engine_version, inputs_hash, out.to_dict(),
                       date_key=date_local, run_id=run.run_id)
        return out

    # ───────────────────────── baseline ─────────────────────────

    def baseline_inputs(self, subject: Subject) -> Dict[str, Any]:
        return {
            "dob": subject.dob,
            "birthTime": subject.birth_time,
            "birthPlace": subject.birth_place,
            "timezone": subject.timezone,
            "engine": self.engine_version,
        }

    def baseline_target_utc(self, subject: Subject) -> datetime:
        t = _parse_birth_time(subject.birth_time) if subject.birth_time else LOCAL_NOON
        return self.converter.to_utc(date.fromisoformat(subject.dob), t, subject.timezone)

    def get_baseline_vector(
        self,
        owner_user_id: str,
        subject: Subject,
        secondary_subject_key: Optional[str] = None,
    ) -> BaselineVector:
        inputs_hash = hash_inputs(self.baseline_inputs(subject))
        cached = self.cache.get(owner_user_id, KIND_BASELINE, self.engine_version, inputs_hash,
                                None, secondary_subject_key)
        if cached is not None:
            return BaselineVector.from_dict(cached)

        target = self.baseline_target_utc(subject)
        day = target.date()
        run = self.get_or_fetch_run(day, day + timedelta(days=1), RUN_BASELINE)
        sample = select_baseline_sample(run.samples, target)

        prov = self._provenance(run).with_extra(
            inputs_hash=inputs_hash,
            birth_place=subject.birth_place,
            birth_time_assumption="EXACT" if subject.birth_time else "LOCAL_NOON",
            horizons_run_id=run.run_id,
        )
        out = compute_baseline_vector(sample, prov)
        self.cache.put(owner_user_id, KIND_BASELINE, self.engine_version, inputs_hash, out.to_dict(),
                       secondary_subject_key=secondary_subject_key, run_id=run.run_id)
        return out

    # ───────────────────────── friction ─────────────────────────

    def get_friction(
        self,
        user_id: str,
        connection_id: str,
        date_local: str,
        daily: DailyWeather,
        user_base: BaselineVector,
        conn_base: BaselineVector,
    ) -> FrictionResult:
        inputs = {
            "dateLocal": date_local,
            "dailyHash": daily.provenance.extra.get("inputs_hash"),
            "uBaseHash": user_base.provenance.extra.get("inputs_hash"),
            "cBaseHash": conn_base.provenance.extra.get("inputs_hash"),
            "engine": self.engine_version,
        }
        inputs_hash = hash_inputs(inputs)

        def _compute() -> Dict[str, Any]:
            prov = self._provenance(None).with_extra(
                inputs_hash=inputs_hash,
                daily_weather_inputs_hash=inputs["dailyHash"],
                user_baseline_inputs_hash=inputs["uBaseHash"],
                connection_baseline_inputs_hash=inputs["cBaseHash"],
            )
            return compute_friction(daily, user_base.baseline_vector, conn_base.baseline_vector, prov).to_dict()

        out = self.cache.read_through(
            user_id, KIND_FRICTION, self.engine_version, inputs_hash, _compute,
            date_key=date_local, secondary_subject_key=connection_id,
        )
        return FrictionResult.from_dict(out)

    def compute_friction_for_connection(
        self,
        run: EphemerisRun,
        user: UserContext,
        user_subject: Subject,
        connection: Subject,
        date_local: str,
    ) -> ConnectionScores:
        daily = self.get_daily_weather(user.user_id, date_local, user.timezone, user.city, run=run)
        user_base = self.get_baseline_vector(user.user_id, user_subject)
        conn_base = self.get_baseline_vector(user.user_id, connection, connection.subject_id)
        friction = self.get_friction(user.user_id, connection.subject_id, date_local, daily, user_base, conn_base)
        provenance_hash = sha256_hex(canonical_json({
            "engine": self.engine_version,
            "run": run.raw_hash,
            "friction": friction.provenance.extra.get("inputs_hash"),
        }))
        return ConnectionScores(
            pressure_score=daily.pressure_score,
            friction_score=friction.friction_score,
            provenance_hash=provenance_hash,
        )
