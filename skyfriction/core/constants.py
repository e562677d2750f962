# skyfriction/core/constants.py
# -*- coding: utf-8 -*-
"""
skyfriction core constants

Purpose
-------
Single source of truth for:
- the locked body set (Horizons command ids) and its version tag
- the four tracked body pairs, their weight and signal names
- contribution breakpoints and weather-band thresholds

Design
------
- Pure-Python, no external dependencies.
- Adding or removing a body or pair is an engine-version change
  (see `skyfriction.version.ENGINE_VERSION`), never a silent edit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

__all__ = [
    "Body", "BODIES", "BODY_INDEX", "BODY_SET_VERSION",
    "Pair", "PAIRS", "PAIR_WEIGHT",
    "CONTRIBUTION_STEPS", "SIGNAL_THRESHOLD", "DRIVER_THRESHOLD",
    "BAND_LOAD_MIN", "BAND_HIGH_MIN",
    "SOURCE_TAG",
]

# ── bodies ───────────────────────────────────────────────────────────────────
BODY_SET_VERSION: str = "v1"


class Body(str, Enum):
    """Horizons COMMAND ids for the locked body set."""
    SUN = "10"
    MOON = "301"
    MERCURY = "199"
    MARS = "499"
    SATURN = "699"

    @property
    def index(self) -> int:
        return BODY_INDEX[self]


BODIES: Tuple[Body, ...] = (Body.SUN, Body.MOON, Body.MERCURY, Body.MARS, Body.SATURN)
BODY_INDEX: Dict[Body, int] = {b: i for i, b in enumerate(BODIES)}

# ── pairs ────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Pair:
    name: str
    a: Body
    b: Body
    signal: str


PAIRS: Tuple[Pair, ...] = (
    Pair("SUN_MOON", Body.SUN, Body.MOON, "emotional_tide"),
    Pair("MERCURY_MARS", Body.MERCURY, Body.MARS, "communication_volatility"),
    Pair("MERCURY_SATURN", Body.MERCURY, Body.SATURN, "constraint_load"),
    Pair("MARS_SATURN", Body.MARS, Body.SATURN, "friction_pressure"),
)

PAIR_WEIGHT: float = 0.25

# (max separation in degrees, contribution); first match wins, else 0.0
CONTRIBUTION_STEPS: Tuple[Tuple[float, float], ...] = (
    (2.0, 1.00),
    (6.0, 0.70),
    (10.0, 0.35),
)

SIGNAL_THRESHOLD: float = 0.70
DRIVER_THRESHOLD: float = 0.35

# pressure_score bands: <40 Clear, 40–69 Load, ≥70 High Gravity
BAND_LOAD_MIN: int = 40
BAND_HIGH_MIN: int = 70

SOURCE_TAG: str = "NASA_JPL_HORIZONS"
