# tests/conftest.py
from __future__ import annotations

"""
Pytest configuration for the skyfriction suite.

- Registers Hypothesis profiles for local dev and CI.
- Freezes the process TZ to UTC (we always pass IANA zones explicitly).
- Forces the in-memory storage backend before the app module is imported.
- Provides a fake Horizons session so no test touches the network.
"""

import os

os.environ.setdefault("SKYF_STORAGE", "memory")
os.environ.setdefault("SKYF_CONFIG", os.path.join(os.path.dirname(__file__), "no-such-config.yaml"))

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest
from hypothesis import settings, HealthCheck

from skyfriction.core.constants import Body
from skyfriction.core.horizons import EphemerisClient
from skyfriction.core.models import Provenance
from skyfriction.core.provenance import ProvenanceCache
from skyfriction.core.service import EngineService
from skyfriction.core.store import MemoryStore
from skyfriction.utils.cache import MemoryCacheBackend


# ──────────────────────────────────────────────────────────────────────────────
# Hypothesis profiles
# ──────────────────────────────────────────────────────────────────────────────
settings.register_profile(
    "dev",
    settings(
        deadline=None,
        max_examples=60,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)
settings.register_profile(
    "ci",
    settings(
        deadline=None,
        max_examples=120,
        suppress_health_check=[HealthCheck.too_slow],
    ),
)

_profile = (
    "ci"
    if (os.getenv("CI") or os.getenv("GITHUB_ACTIONS"))
    else os.getenv("HYPOTHESIS_PROFILE", "dev")
)
settings.load_profile(_profile)


def pytest_report_header(config: pytest.Config) -> str:
    return f"Hypothesis profile: '{_profile}'"


@pytest.fixture(scope="session", autouse=True)
def freeze_tz_env():
    prev = os.environ.get("TZ")
    os.environ["TZ"] = "UTC"
    try:
        yield
    finally:
        if prev is None:
            os.environ.pop("TZ", None)
        else:
            os.environ["TZ"] = prev


# ──────────────────────────────────────────────────────────────────────────────
# Fake Horizons
# ──────────────────────────────────────────────────────────────────────────────

# Default sky: every tracked pair far apart (pressure 0).
QUIET_SKY: Dict[Body, float] = {
    Body.SUN: 0.0,
    Body.MOON: 90.0,
    Body.MERCURY: 180.0,
    Body.MARS: 45.0,
    Body.SATURN: 300.0,
}

LonFn = Callable[[Body, datetime], Optional[float]]


def quiet_sky(body: Body, t: datetime) -> Optional[float]:
    return QUIET_SKY[body]


def _unquote(v: str) -> str:
    return v.strip().strip("'")


def horizons_text(rows: List[str]) -> str:
    return (
        "*******************************************************************************\n"
        "Ephemeris / API_USER\n"
        " Date__(UT)__HR:MN, , , ObsEcLon, ObsEcLat,\n"
        "$$SOE\n"
        + "".join(f"{r}\n" for r in rows)
        + "$$EOE\n"
    )


def horizons_row(t: datetime, lon: float, lat: float = 0.0) -> str:
    return f" {t.strftime('%Y-%b-%d %H:%M')}, , , {lon:.6f}, {lat:.6f},"


class FakeResponse:
    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


class FakeHorizonsSession:
    """
    Stands in for requests.Session: answers one body per GET with hourly
    rows from START_TIME to STOP_TIME inclusive, as Horizons does.
    """

    def __init__(self, lon_fn: LonFn = quiet_sky, *, status: int = 200, text: Optional[str] = None):
        self.lon_fn = lon_fn
        self.status = status
        self.text = text
        self.calls: List[Dict[str, str]] = []

    def get(self, url, params=None, timeout=None):
        params = dict(params or {})
        self.calls.append(params)
        if self.text is not None or self.status != 200:
            return FakeResponse(self.status, self.text or "error")

        body = Body(_unquote(params["COMMAND"]))
        start = datetime.fromisoformat(_unquote(params["START_TIME"])).replace(tzinfo=timezone.utc)
        stop = datetime.fromisoformat(_unquote(params["STOP_TIME"])).replace(tzinfo=timezone.utc)
        rows = []
        t = start
        while t <= stop:
            lon = self.lon_fn(body, t)
            if lon is not None:
                rows.append(horizons_row(t, lon % 360.0))
            t += timedelta(hours=1)
        return FakeResponse(200, horizons_text(rows))


# ──────────────────────────────────────────────────────────────────────────────
# Engine fixtures
# ──────────────────────────────────────────────────────────────────────────────

FIXED_NOW = datetime(2024, 3, 10, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def provenance() -> Provenance:
    return Provenance(
        horizons_request={"startUtc": "2024-03-09", "stopUtc": "2024-03-12", "step": "60m"},
        horizons_response_hash="0" * 64,
        engine_version="1.0.0",
        computed_at_utc="2024-03-10T06:00:00.000Z",
    )


@pytest.fixture
def fake_session() -> FakeHorizonsSession:
    return FakeHorizonsSession()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def engine(fake_session, store, cache_backend) -> EngineService:
    client = EphemerisClient(fake_session, base_url="https://horizons.test/api")
    return EngineService(client, ProvenanceCache(cache_backend), store, clock=lambda: FIXED_NOW)
