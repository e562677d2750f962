# skyfriction/core/store.py
from __future__ import annotations

"""
Persistence collaborator.

The engine only needs upsert-by-composite-key, equality-filtered reads and a
"yesterday" lookup. `Store` documents that surface; `MemoryStore` backs tests
and single-process runs, `SQLiteStore` a durable single-node deployment.

Ephemeris runs carry a unique key on (start, stop, step, kind). Inserts are
insert-or-ignore followed by a re-read, so two overlapping batch runs for the
same UTC date converge on one stored run.
"""

import hashlib
import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from skyfriction.core.horizons import samples_from_raw
from skyfriction.core.models import (
    EphemerisRun,
    Frag,
    FrictionEvent,
    PrivateAsset,
    PublicAsset,
    Subject,
    UserContext,
)

__all__ = ["Store", "MemoryStore", "SQLiteStore", "run_id_for", "event_id_for"]


def _short_hash(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:18]


def run_id_for(key: Tuple[str, str, str, str]) -> str:
    return "run_" + _short_hash(*key)


def event_id_for(key: Tuple[str, str, str, str]) -> str:
    return "evt_" + _short_hash(*key)


class Store(ABC):
    """Storage surface the engine and batch rely on; backends implement every method."""

    # ephemeris runs
    @abstractmethod
    def find_ephemeris_run(self, start_utc: str, stop_utc: str, step: str, kind: str) -> Optional[EphemerisRun]:
        raise NotImplementedError

    @abstractmethod
    def insert_ephemeris_run(self, run: EphemerisRun) -> EphemerisRun:
        """Insert unless the key exists; always returns the stored run."""
        raise NotImplementedError

    # subjects
    @abstractmethod
    def users_with_pins(self) -> List[UserContext]:
        raise NotImplementedError

    @abstractmethod
    def pinned_connection_ids(self, user_id: str, limit: int = 5) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def get_user_context(self, user_id: str) -> Optional[UserContext]:
        raise NotImplementedError

    @abstractmethod
    def get_user_baseline(self, user_id: str) -> Optional[Subject]:
        raise NotImplementedError

    @abstractmethod
    def get_connection(self, user_id: str, connection_id: str) -> Optional[Subject]:
        raise NotImplementedError

    @abstractmethod
    def put_user_context(self, ctx: UserContext) -> None:
        raise NotImplementedError

    @abstractmethod
    def put_user_baseline(self, user_id: str, subject: Subject) -> None:
        raise NotImplementedError

    @abstractmethod
    def put_connection(self, user_id: str, subject: Subject) -> None:
        raise NotImplementedError

    @abstractmethod
    def pin_connection(self, user_id: str, connection_id: str) -> None:
        raise NotImplementedError

    # daily records
    @abstractmethod
    def get_friction_event(self, user_id: str, connection_id: str, event_date: str,
                           engine_version: str) -> Optional[FrictionEvent]:
        raise NotImplementedError

    @abstractmethod
    def upsert_friction_event(self, event: FrictionEvent) -> FrictionEvent:
        raise NotImplementedError

    @abstractmethod
    def get_frag(self, user_id: str, local_date: str, engine_version: str) -> Optional[Frag]:
        raise NotImplementedError

    @abstractmethod
    def upsert_frag(self, frag: Frag) -> Frag:
        raise NotImplementedError

    # assets
    @abstractmethod
    def insert_public_asset_if_absent(self, asset: PublicAsset) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_public_asset(self, asset_hash: str) -> Optional[PublicAsset]:
        raise NotImplementedError

    @abstractmethod
    def upsert_private_asset(self, asset: PrivateAsset) -> None:
        raise NotImplementedError


# ───────────────────────── in-memory ─────────────────────────

class MemoryStore(Store):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.runs: Dict[Tuple[str, str, str, str], EphemerisRun] = {}
        self.contexts: Dict[str, UserContext] = {}
        self.baselines: Dict[str, Subject] = {}
        self.connections: Dict[Tuple[str, str], Subject] = {}
        self.pins: Dict[str, List[str]] = {}
        self.events: Dict[Tuple[str, str, str, str], FrictionEvent] = {}
        self.frags: Dict[Tuple[str, str, str], Frag] = {}
        self.public_assets: Dict[str, PublicAsset] = {}
        self.private_assets: Dict[str, PrivateAsset] = {}

    def find_ephemeris_run(self, start_utc, stop_utc, step, kind):
        with self._lock:
            return self.runs.get((start_utc, stop_utc, step, kind))

    def insert_ephemeris_run(self, run):
        with self._lock:
            existing = self.runs.get(run.key)
            if existing is not None:
                return existing
            stored = replace(run, run_id=run_id_for(run.key))
            self.runs[run.key] = stored
            return stored

    def users_with_pins(self):
        with self._lock:
            return [
                self.contexts.get(uid) or UserContext(user_id=uid)
                for uid, pins in self.pins.items() if pins
            ]

    def pinned_connection_ids(self, user_id, limit=5):
        with self._lock:
            return list(self.pins.get(user_id, []))[:limit]

    def get_user_context(self, user_id):
        with self._lock:
            return self.contexts.get(user_id)

    def get_user_baseline(self, user_id):
        with self._lock:
            return self.baselines.get(user_id)

    def get_connection(self, user_id, connection_id):
        with self._lock:
            return self.connections.get((user_id, connection_id))

    def put_user_context(self, ctx):
        with self._lock:
            self.contexts[ctx.user_id] = ctx

    def put_user_baseline(self, user_id, subject):
        with self._lock:
            self.baselines[user_id] = subject

    def put_connection(self, user_id, subject):
        with self._lock:
            self.connections[(user_id, subject.subject_id)] = subject

    def pin_connection(self, user_id, connection_id):
        with self._lock:
            pins = self.pins.setdefault(user_id, [])
            if connection_id not in pins:
                pins.append(connection_id)

    def get_friction_event(self, user_id, connection_id, event_date, engine_version):
        with self._lock:
            return self.events.get((user_id, connection_id, event_date, engine_version))

    def upsert_friction_event(self, event):
        stored = replace(event, event_id=event_id_for(event.key))
        with self._lock:
            self.events[event.key] = stored
        return stored

    def get_frag(self, user_id, local_date, engine_version):
        with self._lock:
            return self.frags.get((user_id, local_date, engine_version))

    def upsert_frag(self, frag):
        with self._lock:
            self.frags[frag.key] = frag
        return frag

    def insert_public_asset_if_absent(self, asset):
        with self._lock:
            self.public_assets.setdefault(asset.hash, asset)

    def get_public_asset(self, asset_hash):
        with self._lock:
            return self.public_assets.get(asset_hash)

    def upsert_private_asset(self, asset):
        with self._lock:
            self.private_assets[asset.hash] = asset


# ───────────────────────── SQLite ─────────────────────────

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS ephemeris_runs (
        run_id TEXT NOT NULL,
        start_utc TEXT NOT NULL, stop_utc TEXT NOT NULL, step TEXT NOT NULL, kind TEXT NOT NULL,
        request_json TEXT NOT NULL, raw_text TEXT NOT NULL, raw_hash TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (start_utc, stop_utc, step, kind)
    )""",
    """CREATE TABLE IF NOT EXISTS user_context (
        user_id TEXT PRIMARY KEY, timezone TEXT NOT NULL DEFAULT 'UTC', city TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS baselines (
        user_id TEXT PRIMARY KEY, dob TEXT NOT NULL, birth_time TEXT, birth_city TEXT,
        timezone TEXT NOT NULL DEFAULT 'UTC'
    )""",
    """CREATE TABLE IF NOT EXISTS connections (
        id TEXT NOT NULL, user_id TEXT NOT NULL, dob TEXT NOT NULL, birth_time TEXT, birth_city TEXT,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        PRIMARY KEY (user_id, id)
    )""",
    """CREATE TABLE IF NOT EXISTS pinned_connections (
        user_id TEXT NOT NULL, connection_id TEXT NOT NULL, seq INTEGER NOT NULL,
        PRIMARY KEY (user_id, connection_id)
    )""",
    """CREATE TABLE IF NOT EXISTS friction_events (
        id TEXT NOT NULL,
        user_id TEXT NOT NULL, connection_id TEXT NOT NULL, event_date TEXT NOT NULL, engine_version TEXT NOT NULL,
        pressure_score INTEGER NOT NULL, friction_score INTEGER NOT NULL, friction_delta INTEGER NOT NULL,
        primary_gate TEXT NOT NULL, fidelity_bucket TEXT NOT NULL,
        asset_hash TEXT NOT NULL, provenance_hash TEXT NOT NULL,
        PRIMARY KEY (user_id, connection_id, event_date, engine_version)
    )""",
    """CREATE TABLE IF NOT EXISTS daily_frags (
        user_id TEXT NOT NULL, local_date TEXT NOT NULL, engine_version TEXT NOT NULL,
        top_event_id TEXT, simple_text_state TEXT NOT NULL, simple_text_action TEXT NOT NULL,
        asset_hash TEXT NOT NULL,
        PRIMARY KEY (user_id, local_date, engine_version)
    )""",
    """CREATE TABLE IF NOT EXISTS asset_cache_public (
        hash TEXT PRIMARY KEY, type TEXT NOT NULL, status TEXT NOT NULL, url TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS asset_cache_private (
        hash TEXT PRIMARY KEY, canonical TEXT NOT NULL, user_class TEXT NOT NULL, target_class TEXT NOT NULL,
        pressure_bucket TEXT NOT NULL, fidelity_bucket TEXT NOT NULL, friction_bracket10 INTEGER NOT NULL,
        asset_version TEXT NOT NULL
    )""",
)

_EVENT_COLS = (
    "id", "user_id", "connection_id", "event_date", "engine_version",
    "pressure_score", "friction_score", "friction_delta",
    "primary_gate", "fidelity_bucket", "asset_hash", "provenance_hash",
)


class SQLiteStore(Store):
    def __init__(self, path: str):
        self.path = path
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.lock = threading.Lock()
        with self.lock:
            cur = self.conn.cursor()
            for ddl in _SCHEMA:
                cur.execute(ddl)
            self.conn.commit()

    def _one(self, sql: str, args: tuple):
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(sql, args)
            return cur.fetchone()

    def _all(self, sql: str, args: tuple = ()):
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(sql, args)
            return cur.fetchall()

    def _write(self, sql: str, args: tuple) -> None:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(sql, args)
            self.conn.commit()

    # ephemeris runs
    def find_ephemeris_run(self, start_utc, stop_utc, step, kind):
        row = self._one(
            "SELECT run_id, request_json, raw_text, raw_hash FROM ephemeris_runs"
            " WHERE start_utc=? AND stop_utc=? AND step=? AND kind=?",
            (start_utc, stop_utc, step, kind),
        )
        if not row:
            return None
        samples, dropped = samples_from_raw(row[2])
        return EphemerisRun(
            start_utc=start_utc, stop_utc=stop_utc, step=step, kind=kind,
            request=json.loads(row[1]), raw_text=row[2], raw_hash=row[3],
            samples=samples, dropped_rows=dropped, run_id=row[0],
        )

    def insert_ephemeris_run(self, run):
        self._write(
            "INSERT OR IGNORE INTO ephemeris_runs (run_id,start_utc,stop_utc,step,kind,request_json,raw_text,raw_hash)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (run_id_for(run.key), run.start_utc, run.stop_utc, run.step, run.kind,
             json.dumps(run.request, sort_keys=True), run.raw_text, run.raw_hash),
        )
        stored = self.find_ephemeris_run(*run.key)
        assert stored is not None
        return stored

    # subjects
    def users_with_pins(self):
        rows = self._all(
            "SELECT DISTINCT p.user_id, COALESCE(c.timezone, 'UTC'), c.city FROM pinned_connections p"
            " LEFT JOIN user_context c ON c.user_id = p.user_id ORDER BY p.user_id"
        )
        return [UserContext(user_id=r[0], timezone=r[1], city=r[2]) for r in rows]

    def pinned_connection_ids(self, user_id, limit=5):
        rows = self._all(
            "SELECT connection_id FROM pinned_connections WHERE user_id=? ORDER BY seq LIMIT ?",
            (user_id, int(limit)),
        )
        return [r[0] for r in rows]

    def get_user_context(self, user_id):
        row = self._one("SELECT timezone, city FROM user_context WHERE user_id=?", (user_id,))
        return UserContext(user_id=user_id, timezone=row[0], city=row[1]) if row else None

    def get_user_baseline(self, user_id):
        row = self._one("SELECT dob, birth_time, birth_city, timezone FROM baselines WHERE user_id=?", (user_id,))
        if not row:
            return None
        return Subject(subject_id=user_id, dob=row[0], birth_time=row[1], birth_place=row[2], timezone=row[3])

    def get_connection(self, user_id, connection_id):
        row = self._one(
            "SELECT dob, birth_time, birth_city, timezone FROM connections WHERE user_id=? AND id=?",
            (user_id, connection_id),
        )
        if not row:
            return None
        return Subject(subject_id=connection_id, dob=row[0], birth_time=row[1], birth_place=row[2], timezone=row[3])

    def put_user_context(self, ctx):
        self._write("REPLACE INTO user_context (user_id, timezone, city) VALUES (?,?,?)",
                    (ctx.user_id, ctx.timezone, ctx.city))

    def put_user_baseline(self, user_id, subject):
        self._write(
            "REPLACE INTO baselines (user_id, dob, birth_time, birth_city, timezone) VALUES (?,?,?,?,?)",
            (user_id, subject.dob, subject.birth_time, subject.birth_place, subject.timezone),
        )

    def put_connection(self, user_id, subject):
        self._write(
            "REPLACE INTO connections (id, user_id, dob, birth_time, birth_city, timezone) VALUES (?,?,?,?,?,?)",
            (subject.subject_id, user_id, subject.dob, subject.birth_time, subject.birth_place, subject.timezone),
        )

    def pin_connection(self, user_id, connection_id):
        self._write(
            "INSERT OR IGNORE INTO pinned_connections (user_id, connection_id, seq)"
            " VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM pinned_connections WHERE user_id=?))",
            (user_id, connection_id, user_id),
        )

    # daily records
    def get_friction_event(self, user_id, connection_id, event_date, engine_version):
        row = self._one(
            f"SELECT {','.join(_EVENT_COLS)} FROM friction_events"
            " WHERE user_id=? AND connection_id=? AND event_date=? AND engine_version=?",
            (user_id, connection_id, event_date, engine_version),
        )
        if not row:
            return None
        d = dict(zip(_EVENT_COLS, row))
        d["event_id"] = d.pop("id")
        return FrictionEvent(**d)

    def upsert_friction_event(self, event):
        stored = replace(event, event_id=event_id_for(event.key))
        self._write(
            f"REPLACE INTO friction_events ({','.join(_EVENT_COLS)}) VALUES ({','.join('?' * len(_EVENT_COLS))})",
            (stored.event_id, stored.user_id, stored.connection_id, stored.event_date, stored.engine_version,
             stored.pressure_score, stored.friction_score, stored.friction_delta,
             stored.primary_gate, stored.fidelity_bucket, stored.asset_hash, stored.provenance_hash),
        )
        return stored

    def get_frag(self, user_id, local_date, engine_version):
        row = self._one(
            "SELECT top_event_id, simple_text_state, simple_text_action, asset_hash FROM daily_frags"
            " WHERE user_id=? AND local_date=? AND engine_version=?",
            (user_id, local_date, engine_version),
        )
        if not row:
            return None
        return Frag(user_id=user_id, local_date=local_date, engine_version=engine_version,
                    top_event_id=row[0], simple_text_state=row[1], simple_text_action=row[2], asset_hash=row[3])

    def upsert_frag(self, frag):
        self._write(
            "REPLACE INTO daily_frags (user_id, local_date, engine_version, top_event_id,"
            " simple_text_state, simple_text_action, asset_hash) VALUES (?,?,?,?,?,?,?)",
            (frag.user_id, frag.local_date, frag.engine_version, frag.top_event_id,
             frag.simple_text_state, frag.simple_text_action, frag.asset_hash),
        )
        return frag

    # assets
    def insert_public_asset_if_absent(self, asset):
        self._write(
            "INSERT OR IGNORE INTO asset_cache_public (hash, type, status, url) VALUES (?,?,?,?)",
            (asset.hash, asset.type, asset.status, asset.url),
        )

    def get_public_asset(self, asset_hash):
        row = self._one("SELECT hash, type, status, url FROM asset_cache_public WHERE hash=?", (asset_hash,))
        return PublicAsset(hash=row[0], type=row[1], status=row[2], url=row[3]) if row else None

    def upsert_private_asset(self, asset):
        self._write(
            "REPLACE INTO asset_cache_private (hash, canonical, user_class, target_class, pressure_bucket,"
            " fidelity_bucket, friction_bracket10, asset_version) VALUES (?,?,?,?,?,?,?,?)",
            (asset.hash, asset.canonical, asset.user_class, asset.target_class, asset.pressure_bucket,
             asset.fidelity_bucket, asset.friction_bracket10, asset.asset_version),
        )
