from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, cast


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def utc_month_start_iso(now: datetime | None = None) -> str:
    current = now or datetime.now(UTC)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()


def load_json_object(raw: object) -> dict[str, Any]:
    if not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return {str(key): value for key, value in cast(dict[object, Any], parsed).items()}
    return {}
