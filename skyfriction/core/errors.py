# skyfriction/core/errors.py
from __future__ import annotations

from typing import Any

__all__ = [
    "EngineError",
    "FetchError",
    "MissingSampleDataError",
    "InvalidVectorError",
    "CacheWriteError",
]


class EngineError(RuntimeError):
    """Categorized error for engine callers."""
    def __init__(self, stage: str, message: str, **context: Any):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
        self.context = context


class FetchError(EngineError):
    """Ephemeris source unreachable or its response is malformed."""
    def __init__(self, message: str, **context: Any):
        super().__init__("fetch", message, **context)


class MissingSampleDataError(EngineError):
    """A sample lacks a longitude the pair list needs, or there are no samples at all."""
    def __init__(self, message: str, **context: Any):
        super().__init__("samples", message, **context)


class InvalidVectorError(EngineError):
    def __init__(self, message: str, **context: Any):
        super().__init__("baseline", message, **context)


class CacheWriteError(EngineError):
    """Raised by cache backends; ProvenanceCache logs it and carries on."""
    def __init__(self, message: str, **context: Any):
        super().__init__("cache_write", message, **context)
