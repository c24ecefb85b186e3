from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, TypedDict

from backend.cache import Cache


START_TIME = time.time()

FEEDS = ("transit", "vehicles", "weather", "drive")

HEALTHY = "healthy"
STALE = "stale"
ERROR = "error"


class SourceHealth(TypedDict):
    status: str
    age_seconds: Optional[int]
    fetch_count: int
    error_count: int
    stale_discard_count: int
    last_error: Optional[str]


class HealthStatus(TypedDict):
    status: str
    uptime_seconds: int
    sources: Dict[str, SourceHealth]
    diagnostics: Dict[str, int]
    warnings: List[str]


def classify_source(entry: Mapping[str, Any], now: int, warning_sec: int, critical_sec: int) -> str:
    """Grade one feed from its cache entry.

    A feed that never succeeded, or whose latest attempt failed, is an error
    regardless of age.
    """

    last_updated = entry.get("last_updated")
    if last_updated is None:
        return ERROR
    last_error_at = entry.get("last_error_at")
    if last_error_at is not None and last_error_at >= last_updated:
        return ERROR
    age = now - last_updated
    if age >= critical_sec:
        return ERROR
    return STALE if age >= warning_sec else HEALTHY


def _describe_source(entry: Mapping[str, Any], now: int, warning_sec: int, critical_sec: int) -> SourceHealth:
    last_updated = entry.get("last_updated")
    return {
        "status": classify_source(entry, now, warning_sec, critical_sec),
        "age_seconds": None if last_updated is None else max(0, now - last_updated),
        "fetch_count": int(entry.get("fetch_count", 0)),
        "error_count": int(entry.get("error_count", 0)),
        "stale_discard_count": int(entry.get("stale_discard_count", 0)),
        "last_error": entry.get("last_error"),
    }


def _transit_diagnostics(snapshot: Any) -> Dict[str, int]:
    counts = {"unknown_direction_count": 0, "decode_error_count": 0, "fallback_boards": 0}
    if not isinstance(snapshot, dict):
        return counts
    for boards in snapshot.values():
        for board in boards.values():
            counts["unknown_direction_count"] += board.unknown_direction_count
            counts["decode_error_count"] += board.decode_error_count
            counts["fallback_boards"] += int(board.is_fallback)
    return counts


def get_health_status(
    cache: Cache,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
    warnings: Sequence[str] = (),
) -> HealthStatus:
    now = int(time.time())
    metadata = cache.get_all_metadata()
    sources = {
        name: _describe_source(metadata.get(name, {}), now, staleness_warning_sec, staleness_critical_sec)
        for name in FEEDS
    }

    # Weather and drive always degrade to fallbacks, so only transit can take the board down.
    if sources["transit"]["status"] == ERROR:
        overall = "down"
    elif any(source["status"] != HEALTHY for source in sources.values()):
        overall = "degraded"
    else:
        overall = HEALTHY

    return {
        "status": overall,
        "uptime_seconds": int(now - START_TIME),
        "sources": sources,
        "diagnostics": _transit_diagnostics(metadata.get("transit", {}).get("data")),
        "warnings": list(warnings),
    }
