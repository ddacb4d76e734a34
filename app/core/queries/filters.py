import hashlib
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

# -----------------------------------------------------------------------------
# FILTERS MODULE
# Purpose: turn a caller's filter map into the canonical form used for caching.
# Filter maps are unordered; two permutations of the same pairs share one key.
# -----------------------------------------------------------------------------

QUERY_KEY_PREFIX = "validated_query"
FILTER_OPTIONS_PREFIX = "filter_options"

DATE_KEYS = ("start_date", "end_date")


def is_blank(value: Any) -> bool:
    """Absent, null and empty string all mean "no filter"."""
    return value is None or value == ""


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def normalize_filters(
    filters: Optional[Dict[str, Any]],
    today: Optional[date] = None,
    window_days: int = 30,
) -> Dict[str, Any]:
    """
    Apply the trailing date window when the caller did not pick one.

    Args:
        filters: Raw filter map from the caller (may be None)
        today: Reference day, defaults to the current UTC date
        window_days: Width of the default window

    Returns:
        New dict with `start_date` and `end_date` always set (YYYY-MM-DD)

    Example:
        normalize_filters({"region": "Cairo"}, today=date(2025, 7, 31))
        -> {"start_date": "2025-07-01", "end_date": "2025-07-31", "region": "Cairo"}
    """
    today = today or utc_today()
    defaults = {
        "start_date": (today - timedelta(days=window_days)).isoformat(),
        "end_date": today.isoformat(),
    }

    normalized = dict(filters or {})
    for key in DATE_KEYS:
        if is_blank(normalized.get(key)):
            normalized[key] = defaults[key]
    return normalized


def canonical_json(filters: Dict[str, Any]) -> str:
    # Sorted keys + compact separators give one encoding per filter set
    return json.dumps(filters, sort_keys=True, separators=(",", ":"), default=str)


def filter_hash(filters: Dict[str, Any]) -> str:
    return hashlib.md5(canonical_json(filters).encode("utf-8")).hexdigest()


def cache_key(query_id: str, filters: Dict[str, Any]) -> str:
    """Ephemeral cache key for one (query, filter combination)."""
    return f"{QUERY_KEY_PREFIX}:{query_id}:{filter_hash(filters)}"


def query_key_pattern(query_id: str) -> str:
    """Scan pattern matching every cached filter combination of a query."""
    return f"{QUERY_KEY_PREFIX}:{query_id}:*"


def filter_options_key(sql_param: str) -> str:
    # Option lists don't depend on the other filters
    return f"{FILTER_OPTIONS_PREFIX}:{sql_param}"


def filter_options_pattern() -> str:
    return f"{FILTER_OPTIONS_PREFIX}:*"


# Hash recorded in the invalidation log when every combination is dropped
ALL_FILTERS_HASH = hashlib.md5(b"*").hexdigest()
