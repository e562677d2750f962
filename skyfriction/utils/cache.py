from __future__ import annotations
from collections import OrderedDict
import json, sqlite3, time, os, threading
from typing import Any, Dict, Optional, Tuple

from skyfriction.core.errors import CacheWriteError

# (subject_scope, kind, engine_version, inputs_hash, date_key, secondary_key);
# absent optional parts are stored as "".
CacheKey = Tuple[str, str, str, str, str, str]


class LRUCache:
    """Bounded in-process memo placed in front of a durable backend."""
    def __init__(self, capacity: int = 1024):
        self.capacity = capacity
        self.store: "OrderedDict[Any, Any]" = OrderedDict()
        self.lock = threading.Lock()

    def get(self, key):
        with self.lock:
            if key in self.store:
                self.store.move_to_end(key)
                return self.store[key]
            return None

    def set(self, key, value: Any):
        with self.lock:
            self.store[key] = value
            self.store.move_to_end(key)
            if len(self.store) > self.capacity:
                self.store.popitem(last=False)


class MemoryCacheBackend:
    """Unbounded dict backend; entries are never evicted."""
    def __init__(self):
        self.rows: Dict[CacheKey, Dict[str, Any]] = {}
        self.lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        with self.lock:
            row = self.rows.get(key)
            # hand out a decoded copy so callers cannot mutate the stored entry
            return json.loads(row["v"]) if row else None

    def set(self, key: CacheKey, value: Dict[str, Any], run_id: Optional[str] = None):
        try:
            s = json.dumps(value, separators=(',', ':'), sort_keys=True)
        except (TypeError, ValueError) as e:
            raise CacheWriteError(f"output not serializable: {e}", kind=key[1]) from e
        with self.lock:
            self.rows[key] = {"v": s, "run_id": run_id, "created_at": time.time()}

    def __len__(self) -> int:
        with self.lock:
            return len(self.rows)


class SQLiteCacheBackend:
    def __init__(self, path: str):
        self.path = path
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.lock = threading.Lock()
        self._init()

    def _init(self):
        with self.lock:
            cur = self.conn.cursor()
            cur.execute("""CREATE TABLE IF NOT EXISTS engine_outputs (
                subject_scope TEXT NOT NULL,
                kind TEXT NOT NULL,
                engine_version TEXT NOT NULL,
                inputs_hash TEXT NOT NULL,
                date_key TEXT NOT NULL DEFAULT '',
                secondary_key TEXT NOT NULL DEFAULT '',
                output_json TEXT NOT NULL,
                ephemeris_run_id TEXT,
                created_at REAL NOT NULL,
                PRIMARY KEY (subject_scope, kind, engine_version, inputs_hash, date_key, secondary_key)
            )""")
            self.conn.commit()

    def get(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT output_json FROM engine_outputs WHERE subject_scope=? AND kind=? AND engine_version=?"
                " AND inputs_hash=? AND date_key=? AND secondary_key=?",
                key,
            )
            row = cur.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            return None

    def set(self, key: CacheKey, value: Dict[str, Any], run_id: Optional[str] = None):
        try:
            s = json.dumps(value, separators=(',', ':'), sort_keys=True)
        except (TypeError, ValueError) as e:
            raise CacheWriteError(f"output not serializable: {e}", kind=key[1]) from e
        ts = time.time()
        try:
            with self.lock:
                cur = self.conn.cursor()
                cur.execute(
                    "REPLACE INTO engine_outputs (subject_scope,kind,engine_version,inputs_hash,date_key,"
                    "secondary_key,output_json,ephemeris_run_id,created_at) VALUES (?,?,?,?,?,?,?,?,?)",
                    (*key, s, run_id, ts),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise CacheWriteError(str(e), kind=key[1]) from e
