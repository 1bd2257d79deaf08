"""Boundary checks shared by the services.

Caller documents (task payloads, results, snapshots, state values) are opaque:
only presence and serialised size are checked.
"""

import json
from typing import Any, Optional, Union
from uuid import UUID

from agentsync.core.config import settings
from agentsync.core.exceptions import PayloadValidationError

EntityId = Union[str, UUID]


def as_uuid(value: EntityId) -> Optional[UUID]:
    """Parse an id, returning None when it is not a UUID."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def validate_document(document: Any, field_name: str = "payload") -> int:
    """Check that a caller document is present, JSON-serialisable and small enough.

    Returns:
        The serialised size in bytes
    """
    if document is None:
        raise PayloadValidationError(f"{field_name} is required")

    try:
        encoded = json.dumps(document).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(f"{field_name} is not JSON-serialisable: {e}")

    if len(encoded) > settings.max_payload_bytes:
        raise PayloadValidationError(
            f"{field_name} exceeds {settings.max_payload_bytes} bytes",
            size=len(encoded),
            limit=settings.max_payload_bytes,
        )
    return len(encoded)
