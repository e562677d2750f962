# tests/test_store.py
from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import FakeHorizonsSession
from skyfriction.core.horizons import EphemerisClient
from skyfriction.core.models import (
    EphemerisRun,
    Frag,
    FrictionEvent,
    PrivateAsset,
    PublicAsset,
    Subject,
    UserContext,
)
from skyfriction.core.store import MemoryStore, SQLiteStore, Store, event_id_for, run_id_for


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(str(tmp_path / "db" / "skyf.sqlite3"))


def _run(lon: float = 0.0) -> EphemerisRun:
    fetched = EphemerisClient(
        FakeHorizonsSession(lambda body, t: lon), base_url="https://horizons.test/api"
    ).fetch("2024-03-09", "2024-03-10", "60m")
    return EphemerisRun(
        start_utc="2024-03-09", stop_utc="2024-03-10", step="60m", kind="daily_shared",
        request=fetched.request, raw_text=fetched.raw_text, raw_hash=fetched.raw_hash,
        samples=fetched.samples, dropped_rows=fetched.dropped_rows,
    )


def _event(**kw) -> FrictionEvent:
    base = dict(
        user_id="u1", connection_id="c1", event_date="2024-03-10", engine_version="v1.0.0-frags",
        pressure_score=40, friction_score=55, friction_delta=0, fidelity_bucket="HIGH",
        asset_hash="a" * 64, provenance_hash="p" * 64,
    )
    base.update(kw)
    return FrictionEvent(**base)


def test_run_insert_or_ignore_converges(any_store):
    first = _run(lon=1.0)
    loser = _run(lon=2.0)
    assert first.raw_hash != loser.raw_hash

    stored = any_store.insert_ephemeris_run(first)
    again = any_store.insert_ephemeris_run(loser)
    assert stored.run_id == again.run_id == run_id_for(first.key)
    assert again.raw_hash == first.raw_hash

    found = any_store.find_ephemeris_run("2024-03-09", "2024-03-10", "60m", "daily_shared")
    assert found.raw_hash == first.raw_hash
    assert found.samples == first.samples
    assert any_store.find_ephemeris_run("2024-03-09", "2024-03-10", "60m", "baseline") is None


def test_pins_keep_order_and_limit(any_store):
    for i in range(7):
        any_store.pin_connection("u1", f"c{i}")
    any_store.pin_connection("u1", "c0")  # re-pin is a no-op
    assert any_store.pinned_connection_ids("u1", limit=5) == ["c0", "c1", "c2", "c3", "c4"]
    assert any_store.pinned_connection_ids("nobody") == []


def test_users_with_pins_default_context(any_store):
    any_store.pin_connection("u1", "c1")
    any_store.pin_connection("u2", "c9")
    any_store.put_user_context(UserContext("u2", "Asia/Tokyo", "Osaka"))
    any_store.put_user_context(UserContext("u3", "Europe/Paris"))  # no pins
    users = sorted(any_store.users_with_pins(), key=lambda u: u.user_id)
    assert users == [UserContext("u1", "UTC", None), UserContext("u2", "Asia/Tokyo", "Osaka")]


def test_subjects_round_trip(any_store):
    me = Subject("u1", "1990-05-17", "08:15", "New York", "America/New_York")
    them = Subject("c1", "1988-11-02", None, "Boston", "America/New_York")
    any_store.put_user_baseline("u1", me)
    any_store.put_connection("u1", them)
    assert any_store.get_user_baseline("u1") == me
    assert any_store.get_connection("u1", "c1") == them
    assert any_store.get_connection("u2", "c1") is None


def test_event_upsert_is_idempotent(any_store):
    e1 = any_store.upsert_friction_event(_event())
    e2 = any_store.upsert_friction_event(_event(friction_score=60, friction_delta=5))
    assert e1.event_id == e2.event_id == event_id_for(_event().key)
    got = any_store.get_friction_event("u1", "c1", "2024-03-10", "v1.0.0-frags")
    assert got.friction_score == 60 and got.friction_delta == 5
    assert any_store.get_friction_event("u1", "c1", "2024-03-10", "other") is None


def test_frag_upsert_replaces(any_store):
    frag = Frag("u1", "2024-03-10", "v1.0.0-frags", "evt_x", "Load is increasing.", "Simplification is required.", "a" * 64)
    any_store.upsert_frag(frag)
    any_store.upsert_frag(replace(frag, simple_text_state="Friction is active."))
    assert any_store.get_frag("u1", "2024-03-10", "v1.0.0-frags").simple_text_state == "Friction is active."


def test_public_asset_is_insert_if_absent(any_store):
    any_store.insert_public_asset_if_absent(PublicAsset("h" * 64, status="READY", url="https://cdn.test/x.png"))
    any_store.insert_public_asset_if_absent(PublicAsset("h" * 64))
    got = any_store.get_public_asset("h" * 64)
    assert got.status == "READY" and got.url == "https://cdn.test/x.png"


def test_private_asset_upsert(any_store):
    rec = PrivateAsset("h" * 64, "canon", "NEBULA_VARIABLE", "NEBULA_VARIABLE", "HIGH", "HIGH", 80, "v1_stills")
    any_store.upsert_private_asset(rec)
    any_store.upsert_private_asset(rec)
    # private records are never exposed through the public lookup
    assert any_store.get_public_asset("h" * 64) is None


def test_incomplete_backend_cannot_be_built():
    class RunsOnly(Store):
        def find_ephemeris_run(self, *args, **kwargs):
            return None

    with pytest.raises(TypeError):
        RunsOnly()
