# tests/test_disclosure.py
from __future__ import annotations

import hashlib

import pytest

from skyfriction.core.disclosure import (
    DEFAULT_TEMPLATES,
    compose_frag_text,
    derive_asset,
    fallback_text,
    fidelity_bucket,
    friction_bracket10,
    pressure_bucket,
    violates_disclosure,
)
from skyfriction.core.models import Subject


@pytest.mark.parametrize("score,bucket", [(0, "LOW"), (33, "LOW"), (34, "MED"), (66, "MED"), (67, "HIGH"), (100, "HIGH")])
def test_pressure_bucket(score, bucket):
    assert pressure_bucket(score) == bucket


@pytest.mark.parametrize("score,bracket", [(0, 0), (9, 0), (10, 10), (82, 80), (99, 90), (100, 100), (130, 100), (-5, 0)])
def test_friction_bracket10(score, bracket):
    assert friction_bracket10(score) == bracket


def test_fidelity_bucket():
    assert fidelity_bucket(Subject("c", "1990-01-01", "08:15", "Lisbon")) == "HIGH"
    assert fidelity_bucket(Subject("c", "1990-01-01", None, "Lisbon")) == "MEDIUM"
    assert fidelity_bucket(Subject("c", "1990-01-01", "08:15", None)) == "LOW"
    assert fidelity_bucket(Subject("c", "1990-01-01")) == "LOW"


def test_asset_hash_from_buckets_only():
    a = derive_asset(70, 82, "HIGH")
    canonical = "NEBULA_VARIABLE-NEBULA_VARIABLE-80-NONE-HIGH-v1_stills"
    assert a.canonical == canonical
    assert a.hash == hashlib.sha256(canonical.encode()).hexdigest()
    assert a.pressure_bucket == "HIGH"
    # same decile, different raw score and pressure: same public identity
    assert derive_asset(12, 89, "HIGH").hash == a.hash


def test_private_record_carries_buckets():
    rec = derive_asset(50, 41, "MEDIUM").private_record()
    assert rec.pressure_bucket == "MED"
    assert rec.friction_bracket10 == 40
    assert rec.fidelity_bucket == "MEDIUM"
    assert rec.asset_version == "v1_stills"
    assert rec.user_class == rec.target_class == "NEBULA_VARIABLE"


@pytest.mark.parametrize("text", [
    "Your friction score is high.",
    "Saturn transit ahead.",
    "Pressure at 0.72 today.",
    "Computed from NASA data.",
])
def test_disclosure_blocklist(text):
    assert violates_disclosure(text)


def test_plain_text_passes():
    assert not violates_disclosure("Hold big talks for tomorrow. Day 3 of 7.")


def test_default_templates_are_clean():
    for rows in DEFAULT_TEMPLATES.values():
        for _, state, action in rows:
            assert not violates_disclosure(f"{state} {action}")


def test_compose_picks_first_matching_row():
    assert compose_frag_text("HIGH", 80, "HIGH") == {
        "state": "System locked.", "action": "Do not force an outcome today.",
    }
    assert compose_frag_text("LOW", 0, "LOW")["state"] == "The field is clear."


def test_compose_falls_back_on_violation():
    leaky = {"MED": [[100, "Your score is 0.55.", "Check the algorithm."]]}
    assert compose_frag_text("MED", 60, "HIGH", leaky) == fallback_text("MED", 60, "HIGH")


def test_compose_falls_back_when_no_row_matches():
    assert compose_frag_text("LOW", 50, "LOW", {"LOW": [[10, "Calm.", "Go."]]}) == fallback_text("LOW", 50, "LOW")


def test_fallback_is_deterministic_and_clean():
    for p in ("LOW", "MED", "HIGH"):
        for b in range(0, 101, 10):
            for f in ("LOW", "MEDIUM", "HIGH"):
                t = fallback_text(p, b, f)
                assert t == fallback_text(p, b, f)
                assert not violates_disclosure(f"{t['state']} {t['action']}")
