# skyfriction/core/horizons.py
# -----------------------------------------------------------------------------
# JPL Horizons ephemeris client
#
# • One GET per body per window (observer table, geocentric, QUANTITIES=31 CSV)
# • Fatal FetchError on transport failure, non-2xx status or missing $$SOE
# • Rows between $$SOE/$$EOE parsed to (t_utc, lon, lat); unparseable rows are
#   dropped and counted per body
# • Raw text of all bodies concatenated in BODIES order and SHA-256 hashed
# -----------------------------------------------------------------------------
from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from skyfriction.core.constants import BODIES, Body
from skyfriction.core.errors import FetchError
from skyfriction.core.models import EphemerisSample

log = logging.getLogger(__name__)

__all__ = [
    "HORIZONS_URL",
    "HorizonsRow",
    "EphemerisFetch",
    "EphemerisClient",
    "parse_horizons_response",
    "parse_timestamp",
    "split_raw_text",
    "merge_samples",
    "samples_from_raw",
    "hash_raw",
]

HORIZONS_URL = os.getenv("SKYF_HORIZONS_URL", "https://ssd.jpl.nasa.gov/api/horizons.api")
DEFAULT_TIMEOUT_S = float(os.getenv("SKYF_HORIZONS_TIMEOUT_S", "30"))

SOE = "$$SOE"
EOE = "$$EOE"
_BODY_HEADER_RE = re.compile(r"^--BODY (?P<id>\S+)--$", re.MULTILINE)

_TS_FORMATS = (
    "%Y-%b-%d %H:%M",
    "%Y-%b-%d %H:%M:%S",
    "%Y-%b-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
)


@dataclass(frozen=True)
class HorizonsRow:
    t_utc: datetime
    date: str      # timestamp exactly as Horizons printed it
    lon: float
    lat: float


@dataclass(frozen=True)
class EphemerisFetch:
    raw_text: str
    raw_hash: str
    request: Dict[str, Any]
    per_body: Dict[Body, List[HorizonsRow]]
    samples: Tuple[EphemerisSample, ...]
    dropped_rows: Dict[str, int] = field(default_factory=dict)


# ───────────────────────── parsing ─────────────────────────

def parse_timestamp(s: str) -> Optional[datetime]:
    s = s.strip()
    if s.startswith("A.D. "):
        s = s[5:]
    for fmt in _TS_FORMATS:
        try:
            return datetime.strptime(s, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _as_float(s: str) -> Optional[float]:
    try:
        x = float(s)
    except ValueError:
        return None
    return x if x == x else None  # NaN


def parse_horizons_response(text: str) -> Tuple[List[HorizonsRow], int]:
    """
    Parse the CSV block between $$SOE and $$EOE.

    Returns (rows, dropped). Horizons pads QUANTITIES=31 rows with blank or
    flagged solar/lunar presence columns, so lon/lat are the first two numeric
    fields after the timestamp.
    """
    start = text.find(SOE)
    end = text.find(EOE)
    if start == -1 or end == -1 or end < start:
        return [], 0

    block = text[start + len(SOE):end].strip()
    if not block:
        return [], 0

    rows: List[HorizonsRow] = []
    dropped = 0
    for line in block.splitlines():
        parts = [p.strip() for p in line.split(",")]
        t = parse_timestamp(parts[0]) if parts else None
        nums = [x for x in (_as_float(p) for p in parts[1:] if p) if x is not None]
        if t is None or len(nums) < 2:
            dropped += 1
            continue
        rows.append(HorizonsRow(t_utc=t, date=parts[0], lon=nums[0], lat=nums[1]))
    return rows, dropped


def hash_raw(raw_text: str) -> str:
    return hashlib.sha256(raw_text.encode("utf-8")).hexdigest()


def split_raw_text(raw_text: str) -> Dict[str, str]:
    """Inverse of the `--BODY <id>--` concatenation: body id → response text."""
    out: Dict[str, str] = {}
    matches = list(_BODY_HEADER_RE.finditer(raw_text))
    for i, m in enumerate(matches):
        stop = matches[i + 1].start() if i + 1 < len(matches) else len(raw_text)
        out[m.group("id")] = raw_text[m.end() + 1:stop]
    return out


def merge_samples(per_body: Dict[Body, Iterable[HorizonsRow]]) -> Tuple[EphemerisSample, ...]:
    """Join per-body rows on timestamp; a body absent at an instant stays None."""
    table: Dict[datetime, Dict[Body, float]] = {}
    for body, rows in per_body.items():
        for r in rows:
            table.setdefault(r.t_utc, {})[body] = r.lon
    return tuple(
        EphemerisSample.from_mapping(t, table[t]) for t in sorted(table)
    )


def samples_from_raw(raw_text: str) -> Tuple[Tuple[EphemerisSample, ...], Dict[str, int]]:
    """Rebuild samples from stored raw text (used when a run is reloaded)."""
    per_body: Dict[Body, List[HorizonsRow]] = {}
    dropped: Dict[str, int] = {}
    texts = split_raw_text(raw_text)
    for body in BODIES:
        rows, n = parse_horizons_response(texts.get(body.value, ""))
        per_body[body] = rows
        dropped[body.value] = n
    return merge_samples(per_body), dropped


# ───────────────────────── client ─────────────────────────

class EphemerisClient:
    """
    fetch(start_utc, stop_utc, step) -> EphemerisFetch

    `session` is anything with a requests-compatible `.get(url, params=, timeout=)`.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        base_url: str = HORIZONS_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ):
        self.session = session or requests.Session()
        self.base_url = base_url
        self.timeout_s = float(timeout_s)

    @staticmethod
    def request_params(start_utc: str, stop_utc: str, step: str) -> Dict[str, str]:
        return {"startUtc": start_utc, "stopUtc": stop_utc, "step": step}

    def _query(self, body: Body, start_utc: str, stop_utc: str, step: str) -> Dict[str, str]:
        return {
            "format": "text",
            "COMMAND": f"'{body.value}'",
            "OBJ_DATA": "'YES'",
            "MAKE_EPHEM": "'YES'",
            "EPHEM_TYPE": "'OBSERVER'",
            "CENTER": "'500@399'",
            "START_TIME": f"'{start_utc}'",
            "STOP_TIME": f"'{stop_utc}'",
            "STEP_SIZE": f"'{step}'",
            "QUANTITIES": "'31'",
            "CSV_FORMAT": "'YES'",
        }

    def _get_text(self, body: Body, params: Dict[str, str]) -> str:
        try:
            r = self.session.get(self.base_url, params=params, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise FetchError(f"Horizons API unreachable for body {body.value}: {e}", body=body.value) from e
        if not r.ok:
            raise FetchError(
                f"Horizons API HTTP {r.status_code} for body {body.value}",
                body=body.value,
                status=r.status_code,
            )
        text = r.text
        if SOE not in text:
            raise FetchError(f"Horizons API invalid response for body {body.value}", body=body.value)
        return text

    def fetch(self, start_utc: str, stop_utc: str, step: str) -> EphemerisFetch:
        per_body: Dict[Body, List[HorizonsRow]] = {}
        dropped: Dict[str, int] = {}
        chunks: List[str] = []

        for body in BODIES:
            text = self._get_text(body, self._query(body, start_utc, stop_utc, step))
            rows, n_dropped = parse_horizons_response(text)
            if n_dropped:
                log.warning("Horizons body %s: dropped %d unparseable rows (%s..%s)",
                            body.value, n_dropped, start_utc, stop_utc)
            per_body[body] = rows
            dropped[body.value] = n_dropped
            chunks.append(f"--BODY {body.value}--\n{text}\n")

        raw_text = "".join(chunks)
        raw_hash = hash_raw(raw_text)
        log.info("Horizons fetch %s..%s step=%s bodies=%d hash=%s",
                 start_utc, stop_utc, step, len(BODIES), raw_hash[:12])
        return EphemerisFetch(
            raw_text=raw_text,
            raw_hash=raw_hash,
            request=self.request_params(start_utc, stop_utc, step),
            per_body=per_body,
            samples=merge_samples(per_body),
            dropped_rows=dropped,
        )
