# skyfriction/version.py
from __future__ import annotations
import os

# Single place to bump the service version (overridable via env for CI/preview)
VERSION = os.getenv("SKYF_VERSION", "0.1.0")

# Signal engine version: part of every cache key. Bump on any change to the
# body set, pair list, thresholds or scoring formulas.
ENGINE_VERSION = "1.0.0"

# Version of the persisted per-day records (friction events, frags).
BATCH_ENGINE_VERSION = "v1.0.0-frags"

# Renderer asset schema; part of the disclosure-safe canonical string.
ASSET_VERSION = "v1_stills"
