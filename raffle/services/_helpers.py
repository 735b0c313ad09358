"""Shared utilities for the service layer."""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from uuid import uuid4

# JSON payloads stored in TEXT columns and cache values are always dicts.
JsonDict = dict[str, object]
Serializable = Mapping[str, object] | list[Mapping[str, object]]


def new_id() -> str:
    return str(uuid4())


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_iso(raw: str | None) -> datetime | None:
    """Parse an ISO timestamp column; naive values are taken as UTC."""
    if not raw:
        return None
    parsed: datetime = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def seconds_until(end_time: datetime | None) -> int | None:
    """Whole seconds until ``end_time`` (at least 1), or None when unbounded."""
    if end_time is None:
        return None
    return max(1, int((end_time - now_utc()).total_seconds()))


def load_json(raw: str | None) -> JsonDict | None:
    """Deserialize a JSON TEXT value. Always a dict or None in this codebase."""
    if not raw:
        return None
    result: object = json.loads(raw)
    if isinstance(result, dict):
        return dict(result)
    return None


def load_json_list(raw: str | None) -> list[JsonDict] | None:
    if not raw:
        return None
    result: object = json.loads(raw)
    if isinstance(result, list):
        return [dict(item) for item in result if isinstance(item, dict)]
    return None


def dump_json(obj: Serializable) -> str:
    return json.dumps(obj, default=str)


def split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]
