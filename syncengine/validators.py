"""
Input validation for operator-facing parameters (API and CLI).

All validators raise ValidationError on invalid input.
"""
from typing import Any, Dict, Optional

from syncengine.exceptions import ValidationError
from syncengine.models import ConflictResolution, SyncStatus

# Maximum allowed values
MAX_LIMIT = 500
MAX_ENTITY_ID_LENGTH = 128


def validate_limit(
    value: int,
    field: str = "limit",
    min_value: int = 1,
    max_value: int = MAX_LIMIT
) -> int:
    """
    Validate a limit/count parameter.

    Args:
        value: Limit value to validate
        field: Field name for error messages
        min_value: Minimum allowed value
        max_value: Maximum allowed value

    Returns:
        Validated limit

    Raises:
        ValidationError: If limit is out of range
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(field, "Must be an integer", value)

    if value < min_value:
        raise ValidationError(field, f"Must be at least {min_value}", value)

    if value > max_value:
        raise ValidationError(field, f"Cannot exceed {max_value}", value)

    return value


def validate_entity_id(value: Any, field: str = "entity_id") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "Entity id is required", value)
    if len(value) > MAX_ENTITY_ID_LENGTH:
        raise ValidationError(field, f"Cannot exceed {MAX_ENTITY_ID_LENGTH} characters", value)
    return value.strip()


def validate_status(
    value: Optional[str],
    field: str = "status",
    allow_none: bool = True
) -> Optional[SyncStatus]:
    """
    Validate a sync status filter (case-insensitive).

    Returns:
        SyncStatus or None

    Raises:
        ValidationError: If status is not a known sync status
    """
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(field, "Status is required")

    try:
        return SyncStatus(value.strip().upper())
    except ValueError:
        raise ValidationError(
            field,
            f"Must be one of: {', '.join(s.value for s in SyncStatus)}",
            value
        )


def validate_resolution(
    value: Optional[str],
    merged_payload: Optional[Dict[str, Any]] = None,
    field: str = "resolution",
) -> ConflictResolution:
    """
    Validate a conflict resolution strategy and its payload.

    Raises:
        ValidationError: Unknown strategy, or MERGE without a merged payload
    """
    if not value:
        raise ValidationError(field, "Resolution is required")

    try:
        resolution = ConflictResolution(value.strip().upper())
    except ValueError:
        raise ValidationError(
            field,
            f"Must be one of: {', '.join(r.value for r in ConflictResolution)}",
            value
        )

    if resolution == ConflictResolution.MERGE:
        if merged_payload is None:
            raise ValidationError("merged_payload", "Required for MERGE resolution")
        if not isinstance(merged_payload, dict):
            raise ValidationError("merged_payload", "Must be an object", merged_payload)

    return resolution
