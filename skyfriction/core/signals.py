# skyfriction/core/signals.py
from __future__ import annotations

"""
Pure signal engine: samples → pressure / baseline / friction.

Every function here is deterministic and side-effect free; the computation
timestamp travels in the caller-supplied Provenance, never from the clock.
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence

from skyfriction.core.constants import (
    BAND_HIGH_MIN,
    BAND_LOAD_MIN,
    CONTRIBUTION_STEPS,
    DRIVER_THRESHOLD,
    PAIRS,
    PAIR_WEIGHT,
    SIGNAL_THRESHOLD,
)
from skyfriction.core.errors import InvalidVectorError, MissingSampleDataError
from skyfriction.core.models import (
    BaselineVector,
    DailyWeather,
    EphemerisSample,
    FrictionResult,
    PairSeparation,
    Provenance,
    iso_utc,
)
from skyfriction.core.timezones import TimezoneConverter

__all__ = [
    "angular_separation",
    "contribution",
    "round_half_up",
    "weather_band",
    "pair_separations",
    "compute_daily_weather",
    "select_baseline_sample",
    "compute_baseline_vector",
    "compute_friction",
    "samples_for_local_date",
]

VECTOR_LEN = len(PAIRS)


# ───────────────────────── scalar helpers ─────────────────────────

def angular_separation(a: float, b: float) -> float:
    """Smallest separation on circle in [0, 180]."""
    d = abs(float(a) - float(b)) % 360.0
    return 360.0 - d if d > 180.0 else d


def contribution(separation: float) -> float:
    for max_sep, c in CONTRIBUTION_STEPS:
        if separation <= max_sep:
            return c
    return 0.0


def round_half_up(x: float) -> int:
    # 9 dp first so 17.4999999999 float noise from 0.25-weighted sums lands on 17.5
    return int(Decimal(f"{x:.9f}").quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def weather_band(pressure_score: int) -> str:
    if pressure_score >= BAND_HIGH_MIN:
        return "High Gravity"
    if pressure_score >= BAND_LOAD_MIN:
        return "Load"
    return "Clear"


def pair_separations(sample: EphemerisSample) -> List[PairSeparation]:
    """Separation + contribution for each fixed pair, in PAIRS order."""
    out: List[PairSeparation] = []
    for p in PAIRS:
        lon_a = sample.lon(p.a)
        lon_b = sample.lon(p.b)
        if lon_a is None or lon_b is None:
            raise MissingSampleDataError(
                f"Missing body data for pair {p.name} at {iso_utc(sample.t_utc)}",
                pair=p.name,
                t_utc=iso_utc(sample.t_utc),
            )
        s = angular_separation(lon_a, lon_b)
        out.append(PairSeparation(pair=p.name, sep_deg=s, c=contribution(s)))
    return out


# ───────────────────────── daily weather ─────────────────────────

def compute_daily_weather(
    samples: Sequence[EphemerisSample],
    date_local: str,
    timezone: str,
    provenance: Provenance,
) -> DailyWeather:
    """
    Pick the sample with the strictly largest weighted sum (first one wins a
    tie) and derive score, band, signals and drivers from it.
    """
    if not samples:
        raise MissingSampleDataError(
            f"No samples for local date {date_local} in {timezone}",
            date_local=date_local,
            timezone=timezone,
        )

    max_sum = -1.0
    best_sample: Optional[EphemerisSample] = None
    best: List[PairSeparation] = []

    for sample in samples:
        seps = pair_separations(sample)
        weighted = sum(s.c * PAIR_WEIGHT for s in seps)
        if weighted > max_sum:
            max_sum = weighted
            best_sample = sample
            best = seps

    assert best_sample is not None
    pressure = round_half_up(100.0 * max_sum)

    by_name = {p.name: p for p in PAIRS}
    signals = [
        {"key": by_name[s.pair].signal, "strength": s.c}
        for s in best if s.c >= SIGNAL_THRESHOLD
    ]
    drivers = [s.as_dict() for s in best if s.c >= DRIVER_THRESHOLD]

    return DailyWeather(
        date_local=date_local,
        timezone=timezone,
        pressure_score=pressure,
        weather_band=weather_band(pressure),
        signals=signals,
        drivers=drivers,
        max_step={"t_utc": iso_utc(best_sample.t_utc), "weighted_sum": max_sum},
        provenance=provenance,
    )


def samples_for_local_date(
    samples: Iterable[EphemerisSample],
    d: date,
    tz_name: str,
    converter: TimezoneConverter,
) -> List[EphemerisSample]:
    start, end = converter.day_bounds_utc(d, tz_name)
    return [s for s in samples if start <= s.t_utc < end]


# ───────────────────────── baseline ─────────────────────────

def select_baseline_sample(samples: Sequence[EphemerisSample], target_utc: datetime) -> EphemerisSample:
    """Sample nearest to target_utc; the earlier sample wins an equal distance."""
    if not samples:
        raise MissingSampleDataError(
            f"No samples around {iso_utc(target_utc)}", target_utc=iso_utc(target_utc)
        )
    best = samples[0]
    best_diff = abs(best.t_utc - target_utc)
    for s in samples[1:]:
        diff = abs(s.t_utc - target_utc)
        if diff < best_diff:
            best, best_diff = s, diff
    return best


def compute_baseline_vector(sample: EphemerisSample, provenance: Provenance) -> BaselineVector:
    return BaselineVector(
        baseline_vector=[s.sep_deg for s in pair_separations(sample)],
        sample_t_utc=iso_utc(sample.t_utc),
        provenance=provenance,
    )


# ───────────────────────── friction ─────────────────────────

def compute_friction(
    daily: DailyWeather,
    vector_a: Sequence[float],
    vector_b: Sequence[float],
    provenance: Provenance,
) -> FrictionResult:
    if len(vector_a) != VECTOR_LEN or len(vector_b) != VECTOR_LEN:
        raise InvalidVectorError(
            "Invalid baseline vector length",
            expected=VECTOR_LEN,
            got=[len(vector_a), len(vector_b)],
        )

    daily_component = daily.max_weighted_sum
    mean_diff = sum(abs(float(a) - float(b)) for a, b in zip(vector_a, vector_b)) / VECTOR_LEN
    baseline_distance = mean_diff / 180.0

    raw = 0.6 * daily_component + 0.4 * baseline_distance
    return FrictionResult(
        friction_score=round_half_up(100.0 * raw),
        baseline_distance=baseline_distance,
        daily_component=daily_component,
        drivers=list(daily.drivers),
        provenance=provenance,
    )
