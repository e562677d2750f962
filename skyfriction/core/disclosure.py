# skyfriction/core/disclosure.py
from __future__ import annotations

"""
Everything that may leave the engine for a renderer or a reader is derived
here from coarse buckets only: pressure bucket, friction decile, fidelity
bucket and the asset schema version. Raw angles, raw scores and cache input
hashes never enter a canonical string or a text template.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from skyfriction.core.models import PrivateAsset, Subject
from skyfriction.version import ASSET_VERSION

__all__ = [
    "USER_CLASS", "TARGET_CLASS", "PRIMARY_GATE",
    "FORBIDDEN_TOKENS", "DEFAULT_TEMPLATES",
    "pressure_bucket", "friction_bracket10", "fidelity_bucket",
    "AssetDerivation", "derive_asset",
    "violates_disclosure", "fallback_text", "compose_frag_text",
]

USER_CLASS = "NEBULA_VARIABLE"
TARGET_CLASS = "NEBULA_VARIABLE"
PRIMARY_GATE = "NONE"

# Mechanism vocabulary that must never reach a reader.
FORBIDDEN_TOKENS: Tuple[str, ...] = (
    "algorithm", "formula", "computed", "calculated", "weights", "threshold", "mapping",
    "score", "scoring", "framework",
    "nasa", "horizons", "jpl", "ephemeris", "longitude", "degrees", "aspect",
    "astrology", "zodiac", "planet", "human design", "chakra", "vibration", "frequency", "quantum",
    "gate 22", "channel", "transit", "retrograde", "shadow", "manifestation",
    "openai", "gpt", "model", "prompt", "json",
)
_FORBIDDEN_RE = re.compile("|".join(re.escape(t) for t in FORBIDDEN_TOKENS), re.IGNORECASE)
_DECIMAL_RE = re.compile(r"\d+\.\d+")

# pressure bucket -> [(max friction decile, state, action), ...], first match wins
DEFAULT_TEMPLATES: Dict[str, List[Tuple[int, str, str]]] = {
    "LOW": [
        (30, "The field is clear.", "Move forward with your plan."),
        (60, "Minor resistance detected.", "Check your pacing before speaking."),
        (100, "Small snags are likely.", "Keep requests short and specific."),
    ],
    "MED": [
        (30, "Load is building slowly.", "Finish one thing before starting another."),
        (50, "Load is increasing.", "Simplification is required."),
        (100, "Friction is active.", "Wait for a clearer signal."),
    ],
    "HIGH": [
        (40, "High gravity environment.", "Reduce speed and observe."),
        (70, "Heavy day for this connection.", "Hold big talks for tomorrow."),
        (100, "System locked.", "Do not force an outcome today."),
    ],
}


# ───────────────────────── buckets ─────────────────────────

def pressure_bucket(score: int) -> str:
    if score <= 33:
        return "LOW"
    if score <= 66:
        return "MED"
    return "HIGH"


def friction_bracket10(score: int) -> int:
    x = max(0, min(100, int(score)))
    return (x // 10) * 10


def fidelity_bucket(subject: Subject) -> str:
    if subject.birth_time and subject.birth_place:
        return "HIGH"
    if subject.birth_place:
        return "MEDIUM"
    return "LOW"


# ───────────────────────── asset identity ─────────────────────────

@dataclass(frozen=True)
class AssetDerivation:
    canonical: str
    hash: str
    pressure_bucket: str
    friction_bracket10: int
    fidelity_bucket: str
    asset_version: str

    def private_record(self) -> PrivateAsset:
        return PrivateAsset(
            hash=self.hash,
            canonical=self.canonical,
            user_class=USER_CLASS,
            target_class=TARGET_CLASS,
            pressure_bucket=self.pressure_bucket,
            fidelity_bucket=self.fidelity_bucket,
            friction_bracket10=self.friction_bracket10,
            asset_version=self.asset_version,
        )


def derive_asset(pressure_score: int, friction_score: int, fidelity: str,
                 asset_version: str = ASSET_VERSION) -> AssetDerivation:
    bracket = friction_bracket10(friction_score)
    canonical = f"{USER_CLASS}-{TARGET_CLASS}-{bracket}-{PRIMARY_GATE}-{fidelity}-{asset_version}"
    return AssetDerivation(
        canonical=canonical,
        hash=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
        pressure_bucket=pressure_bucket(pressure_score),
        friction_bracket10=bracket,
        fidelity_bucket=fidelity,
        asset_version=asset_version,
    )


# ───────────────────────── text ─────────────────────────

def violates_disclosure(text: str) -> bool:
    return bool(_FORBIDDEN_RE.search(text) or _DECIMAL_RE.search(text))


def fallback_text(p_bucket: str, bracket10: int, fidelity: str) -> Dict[str, str]:
    """Fixed text per bucket combination; used whenever a template is rejected."""
    if p_bucket == "LOW":
        if bracket10 <= 30:
            return {"state": "The field is clear.", "action": "Move forward with your plan."}
        return {"state": "Minor resistance detected.", "action": "Check your pacing before speaking."}
    if p_bucket == "MED":
        if bracket10 <= 50:
            return {"state": "Load is increasing.", "action": "Simplification is required."}
        return {"state": "Friction is active.", "action": "Wait for a clearer signal."}
    if bracket10 <= 40:
        return {"state": "High gravity environment.", "action": "Reduce speed and observe."}
    return {"state": "System locked.", "action": "Do not force an outcome today."}


def compose_frag_text(
    p_bucket: str,
    bracket10: int,
    fidelity: str,
    templates: Optional[Mapping[str, Sequence[Sequence]]] = None,
) -> Dict[str, str]:
    table = templates or DEFAULT_TEMPLATES
    chosen: Optional[Dict[str, str]] = None
    for row in table.get(p_bucket, ()):
        max_bracket, state, action = row[0], row[1], row[2]
        if bracket10 <= int(max_bracket):
            chosen = {"state": str(state), "action": str(action)}
            break
    if chosen is None or violates_disclosure(f"{chosen['state']} {chosen['action']}"):
        return fallback_text(p_bucket, bracket10, fidelity)
    return chosen
