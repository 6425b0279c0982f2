"""
Shared observability helpers (telemetry, privacy utilities, etc.).

Services import from this package so request IDs, actor IDs and log redaction
behave the same way in every process.
"""

from .privacy import fingerprint_text, hash_payload, redact_fields
from .telemetry import (
    ACTOR_ID_HEADER,
    CORRELATION_ID_HEADER,
    RequestContextToken,
    bind_request_context,
    ensure_request_id,
    reset_request_context,
    resolve_actor_id,
    setup_telemetry,
)

__all__ = [
    "fingerprint_text",
    "hash_payload",
    "redact_fields",
    "ACTOR_ID_HEADER",
    "CORRELATION_ID_HEADER",
    "RequestContextToken",
    "bind_request_context",
    "ensure_request_id",
    "reset_request_context",
    "resolve_actor_id",
    "setup_telemetry",
]
