# tests/test_signals.py
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from skyfriction.core.constants import Body
from skyfriction.core.errors import InvalidVectorError, MissingSampleDataError
from skyfriction.core.models import EphemerisSample
from skyfriction.core.signals import (
    angular_separation,
    compute_baseline_vector,
    compute_daily_weather,
    compute_friction,
    contribution,
    round_half_up,
    samples_for_local_date,
    select_baseline_sample,
    weather_band,
)
from skyfriction.core.timezones import TimezoneConverter

T0 = datetime(2024, 3, 10, 0, 0, tzinfo=timezone.utc)
angles = st.floats(min_value=-720.0, max_value=720.0, allow_nan=False, allow_infinity=False)


def sample(t: datetime, sun=0.0, moon=90.0, mercury=180.0, mars=45.0, saturn=300.0) -> EphemerisSample:
    return EphemerisSample.from_mapping(t, {
        Body.SUN: sun, Body.MOON: moon, Body.MERCURY: mercury, Body.MARS: mars, Body.SATURN: saturn,
    })


# ───────────────────────── separation / contribution ─────────────────────────

@given(angles, angles)
def test_separation_symmetric_and_bounded(a, b):
    s = angular_separation(a, b)
    assert s == pytest.approx(angular_separation(b, a), abs=1e-9)
    assert 0.0 <= s <= 180.0


@given(angles)
def test_separation_to_self_is_zero(a):
    assert angular_separation(a, a) == 0.0


def test_separation_wraps_across_zero():
    assert angular_separation(359.0, 1.0) == pytest.approx(2.0)
    assert angular_separation(10.0, 190.0) == pytest.approx(180.0)


@pytest.mark.parametrize("sep,expected", [
    (0.0, 1.0), (2.0, 1.0), (2.0001, 0.7), (6.0, 0.7), (6.5, 0.35), (10.0, 0.35), (10.01, 0.0), (180.0, 0.0),
])
def test_contribution_breakpoints(sep, expected):
    assert contribution(sep) == expected


@given(st.floats(0, 180), st.floats(0, 180))
def test_contribution_non_increasing(a, b):
    lo, hi = min(a, b), max(a, b)
    assert contribution(lo) >= contribution(hi)


def test_round_half_up_handles_float_noise():
    assert round_half_up(100 * 0.175) == 18
    assert round_half_up(0.5) == 1
    assert round_half_up(70.0) == 70


@pytest.mark.parametrize("score,band", [(0, "Clear"), (39, "Clear"), (40, "Load"), (69, "Load"), (70, "High Gravity")])
def test_weather_band_thresholds(score, band):
    assert weather_band(score) == band


# ───────────────────────── daily weather ─────────────────────────

def test_all_pairs_conjunct_is_full_pressure(provenance):
    s = sample(T0, sun=10, moon=10, mercury=50, mars=50, saturn=50)
    dw = compute_daily_weather([s], "2024-03-10", "UTC", provenance)
    assert dw.pressure_score == 100
    assert dw.weather_band == "High Gravity"
    assert len(dw.drivers) == 4
    assert {x["key"] for x in dw.signals} == {
        "emotional_tide", "communication_volatility", "constraint_load", "friction_pressure",
    }


def test_single_pair_at_five_degrees_scores_eighteen(provenance):
    # Sun–Moon 5°, every other pair > 10°
    s = sample(T0, sun=0, moon=5, mercury=180, mars=45, saturn=300)
    dw = compute_daily_weather([s], "2024-03-10", "UTC", provenance)
    assert dw.max_weighted_sum == pytest.approx(0.175)
    assert dw.pressure_score == 18
    assert dw.weather_band == "Clear"
    assert dw.signals == [{"key": "emotional_tide", "strength": 0.7}]
    assert [d["pair"] for d in dw.drivers] == ["SUN_MOON"]


def test_best_sample_first_wins_tie(provenance):
    a = sample(T0, sun=0, moon=5)
    b = sample(T0 + timedelta(hours=1), sun=0, moon=5)
    dw = compute_daily_weather([a, b], "2024-03-10", "UTC", provenance)
    assert dw.max_step["t_utc"] == "2024-03-10T00:00:00.000Z"


def test_best_sample_is_peak(provenance):
    quiet = sample(T0)
    peak = sample(T0 + timedelta(hours=5), sun=0, moon=1)
    dw = compute_daily_weather([quiet, peak, quiet], "2024-03-10", "UTC", provenance)
    assert dw.pressure_score == 25
    assert dw.max_step["t_utc"] == "2024-03-10T05:00:00.000Z"


def test_missing_body_raises(provenance):
    s = EphemerisSample.from_mapping(T0, {Body.SUN: 0.0, Body.MOON: 1.0, Body.MERCURY: 3.0, Body.MARS: 4.0})
    with pytest.raises(MissingSampleDataError, match="MERCURY_SATURN"):
        compute_daily_weather([s], "2024-03-10", "UTC", provenance)


def test_no_samples_raises(provenance):
    with pytest.raises(MissingSampleDataError, match="2024-03-10"):
        compute_daily_weather([], "2024-03-10", "Europe/Berlin", provenance)


def test_samples_for_local_date_respects_zone():
    conv = TimezoneConverter()
    samples = [sample(T0 + timedelta(hours=h)) for h in range(-24, 48)]
    tokyo = samples_for_local_date(samples, date(2024, 3, 10), "Asia/Tokyo", conv)
    assert len(tokyo) == 24
    assert tokyo[0].t_utc == datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)
    # DST starts in New York on 2024-03-10: 23-hour local day
    ny = samples_for_local_date(samples, date(2024, 3, 10), "America/New_York", conv)
    assert len(ny) == 23


# ───────────────────────── baseline ─────────────────────────

def test_baseline_vector_order_and_determinism(provenance):
    s = sample(T0, sun=0, moon=30, mercury=100, mars=110, saturn=250)
    v1 = compute_baseline_vector(s, provenance)
    v2 = compute_baseline_vector(s, provenance)
    assert v1 == v2
    # SUN_MOON, MERCURY_MARS, MERCURY_SATURN, MARS_SATURN
    assert v1.baseline_vector == pytest.approx([30.0, 10.0, 150.0, 140.0])
    assert v1.sample_t_utc == "2024-03-10T00:00:00.000Z"


def test_select_baseline_sample_nearest_and_tie():
    a = sample(T0)
    b = sample(T0 + timedelta(hours=1))
    assert select_baseline_sample([a, b], T0 + timedelta(minutes=40)) is b
    assert select_baseline_sample([a, b], T0 + timedelta(minutes=30)) is a


def test_select_baseline_sample_empty():
    with pytest.raises(MissingSampleDataError):
        select_baseline_sample([], T0)


# ───────────────────────── friction ─────────────────────────

def _daily(provenance, **lons):
    return compute_daily_weather([sample(T0, **lons)], "2024-03-10", "UTC", provenance)


def test_identical_vectors_friction_is_daily_only(provenance):
    dw = _daily(provenance, sun=0, moon=5)
    v = [30.0, 10.0, 150.0, 140.0]
    fr = compute_friction(dw, v, list(v), provenance)
    assert fr.baseline_distance == 0.0
    assert fr.friction_score == round_half_up(100 * 0.6 * dw.max_weighted_sum) == 11


def test_opposite_vectors_max_distance(provenance):
    dw = _daily(provenance)
    fr = compute_friction(dw, [0, 0, 0, 0], [180, 180, 180, 180], provenance)
    assert fr.baseline_distance == 1.0
    assert fr.friction_score == 40
    assert fr.drivers == []


def test_friction_rejects_bad_vector_length(provenance):
    dw = _daily(provenance)
    with pytest.raises(InvalidVectorError):
        compute_friction(dw, [1, 2, 3], [1, 2, 3, 4], provenance)
