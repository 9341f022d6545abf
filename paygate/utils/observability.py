"""Observability helpers (correlation IDs, safe logging contexts)."""
from __future__ import annotations
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"

def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())

def short_id(value: str | None, length: int = 8) -> str:
    """Truncated identifier for log lines and invoice memos."""
    if not value:
        return "unknown"
    return value[:length]

__all__ = ["ensure_request_id", "short_id", "REQUEST_ID_HEADER"]
