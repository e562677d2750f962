# skyfriction/utils/config.py
import copy
import os
import yaml

DEFAULT_CONFIG_PATH = "config/defaults.yaml"

# Baseline used when a key is absent from the YAML file.
DEFAULTS = {
    "mode": "production",
    "horizons": {
        "url": "https://ssd.jpl.nasa.gov/api/horizons.api",
        "timeout_s": 30,
        "step": "60m",
    },
    "batch": {
        "pinned_limit": 5,
        "max_workers": 1,
        "engine_version": None,   # None -> version.BATCH_ENGINE_VERSION
        "asset_version": None,    # None -> version.ASSET_VERSION
    },
    "storage": {
        "backend": "memory",
        "db_path": "data/skyfriction.sqlite3",
    },
    "ratelimit": {
        "per_minute": 10,
        "burst": 10,
        "max_keys": 10000,
    },
    "auth": {
        "admin_key": "",
        "cron_secret": "",
    },
    "text": {
        "templates": None,
    },
}


class AttrDict(dict):
    """Dict that also supports attribute access: cfg.batch and cfg['batch'] both work."""
    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as e:
            raise AttributeError(item) from e
    def __setattr__(self, key, value):
        self[key] = value

def _to_attr(obj):
    if isinstance(obj, dict):
        return AttrDict({k: _to_attr(v) for k, v in obj.items()})
    if isinstance(obj, list):
        return [_to_attr(x) for x in obj]
    return obj

def _merge(base, over):
    for k, v in (over or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _merge(base[k], v)
        else:
            base[k] = v
    return base

def _env_overrides(data):
    env_map = (
        ("SKYF_HORIZONS_URL", ("horizons", "url"), str),
        ("SKYF_HORIZONS_TIMEOUT_S", ("horizons", "timeout_s"), float),
        ("SKYF_DB_PATH", ("storage", "db_path"), str),
        ("SKYF_STORAGE", ("storage", "backend"), str),
        ("SKYF_MAX_WORKERS", ("batch", "max_workers"), int),
        ("SKYF_ADMIN_KEY", ("auth", "admin_key"), str),
        ("CRON_SECRET", ("auth", "cron_secret"), str),
        ("SKYF_ENGINE_MODE", ("mode",), str),
    )
    for var, path, cast in env_map:
        raw = os.getenv(var)
        if not raw:
            continue
        node = data
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = cast(raw)
    return data

def load_config(path: str = None):
    """
    Load YAML config from `path` (or SKYF_CONFIG, or config/defaults.yaml) on
    top of DEFAULTS, then apply environment overrides:
      - SKYF_HORIZONS_URL, SKYF_HORIZONS_TIMEOUT_S
      - SKYF_DB_PATH, SKYF_STORAGE
      - SKYF_MAX_WORKERS
      - SKYF_ADMIN_KEY, CRON_SECRET
      - SKYF_ENGINE_MODE (overrides config['mode'])
    A missing file is not an error; a malformed one is.
    Returns an AttrDict for convenient access.
    """
    path = path or os.getenv("SKYF_CONFIG") or DEFAULT_CONFIG_PATH
    data = copy.deepcopy(DEFAULTS)
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            _merge(data, yaml.safe_load(f) or {})
    return _to_attr(_env_overrides(data))
