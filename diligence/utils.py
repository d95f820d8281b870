"""Shared utility functions used across diligence modules."""
from __future__ import annotations

import json
import random
import string
import time
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def as_text(value: Any) -> str:
    """Coerce anything (None, numbers, model output) to a string without raising."""
    if value is None or value is False:
        return ""
    return value if isinstance(value, str) else str(value)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_record_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"dd_{int(time.time() * 1000)}_{suffix}"


def generate_document_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"doc_{int(time.time() * 1000)}_{suffix}"
