# skyfriction/core/orchestrator.py
from __future__ import annotations

"""
Daily batch: one invocation per UTC date.

FETCH_SHARED_RUN → PER_USER_LOOP → PER_CONNECTION_COMPUTE → RANK_AND_SELECT
→ PERSIST_FRAG → DONE

A failed shared fetch aborts the whole run (FetchError propagates so the HTTP
layer can answer DATA_UNAVAILABLE). Anything failing inside one user's loop is
recorded as "user:<id> <message>" and the batch moves on.
"""

import logging
import threading
import time as _time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from skyfriction.core.disclosure import compose_frag_text, derive_asset, fidelity_bucket
from skyfriction.core.models import (
    BatchSummary,
    ConnectionScores,
    EphemerisRun,
    Frag,
    FrictionEvent,
    PublicAsset,
    Subject,
    UserContext,
)
from skyfriction.core.provenance import sha256_hex
from skyfriction.core.store import Store
from skyfriction.core.timezones import TimezoneConverter
from skyfriction.utils.metrics import BATCH_ERRORS, BATCH_EVENTS, BATCH_FRAGS, BATCH_SECONDS, BATCH_USERS
from skyfriction.version import ASSET_VERSION, BATCH_ENGINE_VERSION

log = logging.getLogger(__name__)

__all__ = ["BatchState", "ScoringEngine", "Candidate", "BatchOrchestrator", "priority_of"]

PINNED_LIMIT = 5


class BatchState(str, Enum):
    FETCH_SHARED_RUN = "FETCH_SHARED_RUN"
    PER_USER_LOOP = "PER_USER_LOOP"
    PER_CONNECTION_COMPUTE = "PER_CONNECTION_COMPUTE"
    RANK_AND_SELECT = "RANK_AND_SELECT"
    PERSIST_FRAG = "PERSIST_FRAG"
    DONE = "DONE"


class ScoringEngine(Protocol):
    """What the batch needs from the engine service."""

    def get_or_fetch_shared_run(self, utc_date: date) -> EphemerisRun: ...

    def compute_friction_for_connection(
        self,
        run: EphemerisRun,
        user: UserContext,
        user_subject: Subject,
        connection: Subject,
        date_local: str,
    ) -> ConnectionScores: ...


@dataclass(frozen=True)
class Candidate:
    event: FrictionEvent
    priority: float
    pressure_bucket: str
    friction_bracket10: int


def priority_of(friction_score: int, friction_delta: int) -> float:
    return 0.7 * friction_score + 0.3 * abs(friction_delta)


class BatchOrchestrator:
    def __init__(
        self,
        engine: ScoringEngine,
        store: Store,
        *,
        converter: Optional[TimezoneConverter] = None,
        engine_version: str = BATCH_ENGINE_VERSION,
        asset_version: str = ASSET_VERSION,
        pinned_limit: int = PINNED_LIMIT,
        max_workers: int = 1,
        templates: Optional[Mapping[str, Sequence[Sequence[Any]]]] = None,
    ):
        self.engine = engine
        self.store = store
        self.converter = converter or TimezoneConverter()
        self.engine_version = engine_version
        self.asset_version = asset_version
        self.pinned_limit = int(pinned_limit)
        self.max_workers = max(1, int(max_workers))
        self.templates = templates
        self.state = BatchState.DONE
        self._pooled = False
        self._lock = threading.Lock()

    def _enter(self, state: BatchState) -> None:
        self.state = state
        log.debug("batch state -> %s", state.value)

    def _enter_user(self, state: BatchState, user_id: str) -> None:
        # workers share this orchestrator; a pooled batch reports PER_USER_LOOP until DONE
        if not self._pooled:
            self.state = state
        log.debug("batch user %s state -> %s", user_id, state.value)

    # ───────────────────────── entry point ─────────────────────────

    def run(self, utc_date: date, run_at_utc: datetime) -> BatchSummary:
        started = _time.perf_counter()

        self._enter(BatchState.FETCH_SHARED_RUN)
        run = self.engine.get_or_fetch_shared_run(utc_date)
        summary = BatchSummary(utc_date=utc_date.isoformat(), shared_run_hash=run.raw_hash)

        self._enter(BatchState.PER_USER_LOOP)
        users = self.store.users_with_pins()
        log.info("batch %s: %d users with pins (run %s)", utc_date.isoformat(), len(users), run.run_id)

        self._pooled = self.max_workers > 1 and len(users) > 1
        if self._pooled:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                list(pool.map(lambda u: self._process_user_safe(run, u, run_at_utc, summary), users))
        else:
            for user in users:
                self._process_user_safe(run, user, run_at_utc, summary)

        self._pooled = False
        self._enter(BatchState.DONE)
        BATCH_SECONDS.observe(_time.perf_counter() - started)
        log.info(
            "batch %s done: users=%d events=%d frags=%d errors=%d",
            summary.utc_date, summary.users_processed, summary.events_written,
            summary.frags_written, len(summary.errors),
        )
        return summary

    def _process_user_safe(self, run: EphemerisRun, user: UserContext, run_at_utc: datetime,
                           summary: BatchSummary) -> None:
        try:
            events, frags = self.process_user(run, user, run_at_utc)
        except Exception as e:
            log.error("batch user %s failed: %s", user.user_id, e, exc_info=True)
            BATCH_ERRORS.inc()
            with self._lock:
                summary.errors.append(f"user:{user.user_id} {e}")
            return
        BATCH_USERS.inc()
        BATCH_EVENTS.inc(events)
        BATCH_FRAGS.inc(frags)
        with self._lock:
            summary.users_processed += 1
            summary.events_written += events
            summary.frags_written += frags

    # ───────────────────────── per user ─────────────────────────

    def process_user(self, run: EphemerisRun, user: UserContext, run_at_utc: datetime) -> Tuple[int, int]:
        """Returns (events_written, frags_written) for one user."""
        local_date = self.converter.local_date(run_at_utc, user.timezone)
        date_local = local_date.isoformat()
        pinned = self.store.pinned_connection_ids(user.user_id, limit=self.pinned_limit)
        if not pinned:
            return 0, 0

        user_subject = self.store.get_user_baseline(user.user_id)
        if user_subject is None:
            log.warning("user %s has pins but no baseline; skipping", user.user_id)
            return 0, 0

        candidates: List[Candidate] = []
        for connection_id in pinned:
            connection = self.store.get_connection(user.user_id, connection_id)
            if connection is None:
                log.warning("user %s pinned unknown connection %s; skipping", user.user_id, connection_id)
                continue
            candidates.append(self.process_connection(run, user, user_subject, connection, local_date))

        if not candidates:
            return 0, 0

        self._enter_user(BatchState.RANK_AND_SELECT, user.user_id)
        top = self.select_top(candidates)

        self._enter_user(BatchState.PERSIST_FRAG, user.user_id)
        text = compose_frag_text(top.pressure_bucket, top.friction_bracket10, top.event.fidelity_bucket,
                                 self.templates)
        self.store.upsert_frag(Frag(
            user_id=user.user_id,
            local_date=date_local,
            engine_version=self.engine_version,
            top_event_id=top.event.event_id,
            simple_text_state=text["state"],
            simple_text_action=text["action"],
            asset_hash=top.event.asset_hash,
        ))
        return len(candidates), 1

    def process_connection(
        self,
        run: EphemerisRun,
        user: UserContext,
        user_subject: Subject,
        connection: Subject,
        local_date: date,
    ) -> Candidate:
        self._enter_user(BatchState.PER_CONNECTION_COMPUTE, user.user_id)
        date_local = local_date.isoformat()
        fidelity = fidelity_bucket(connection)
        scores = self.engine.compute_friction_for_connection(run, user, user_subject, connection, date_local)

        # yesterday is read before today's row is written
        yesterday = (local_date - timedelta(days=1)).isoformat()
        prior = self.store.get_friction_event(user.user_id, connection.subject_id, yesterday, self.engine_version)
        delta = scores.friction_score - prior.friction_score if prior is not None else 0

        asset = derive_asset(scores.pressure_score, scores.friction_score, fidelity, self.asset_version)
        provenance_hash = scores.provenance_hash or sha256_hex(
            f"{self.engine_version}|{run.raw_hash}|{user.user_id}|{connection.subject_id}|{date_local}"
        )

        event = self.store.upsert_friction_event(FrictionEvent(
            user_id=user.user_id,
            connection_id=connection.subject_id,
            event_date=date_local,
            engine_version=self.engine_version,
            pressure_score=scores.pressure_score,
            friction_score=scores.friction_score,
            friction_delta=delta,
            fidelity_bucket=fidelity,
            asset_hash=asset.hash,
            provenance_hash=provenance_hash,
        ))

        self.store.insert_public_asset_if_absent(PublicAsset(hash=asset.hash))
        self.store.upsert_private_asset(asset.private_record())

        return Candidate(
            event=event,
            priority=priority_of(event.friction_score, event.friction_delta),
            pressure_bucket=asset.pressure_bucket,
            friction_bracket10=asset.friction_bracket10,
        )

    @staticmethod
    def select_top(candidates: Sequence[Candidate]) -> Candidate:
        """Highest priority wins; on a tie the earlier pinned connection is kept."""
        best = candidates[0]
        for c in candidates[1:]:
            if c.priority > best.priority:
                best = c
        return best

    def describe(self) -> Dict[str, Any]:
        return {
            "engine_version": self.engine_version,
            "asset_version": self.asset_version,
            "pinned_limit": self.pinned_limit,
            "max_workers": self.max_workers,
        }
