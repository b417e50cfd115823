"""Observability helpers (request ids, correlation ids)."""
from __future__ import annotations
import uuid
from typing import Mapping, Optional

from orders_service.config import ORDER_SETTINGS

REQUEST_ID_HEADER = "X-Request-ID"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # Starlette's Headers is already case-insensitive; plain dicts are not.
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target and value and value.strip():
            return value.strip()
    return None


def ensure_request_id(headers: Mapping[str, str]) -> str:
    return _header(headers, REQUEST_ID_HEADER) or str(uuid.uuid4())


def resolve_correlation_id(headers: Mapping[str, str], request_id: str) -> str:
    """Inbound correlation header wins, else the request's own id."""
    return _header(headers, ORDER_SETTINGS["correlation_header"]) or request_id


__all__ = ["ensure_request_id", "resolve_correlation_id", "REQUEST_ID_HEADER"]
