"""
Conflict & validation engine.

Pure decision functions consumed by the state machine and the sweeper.
Nothing here touches the store or the network; every function is
deterministic for its inputs.
"""
import asyncio
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from syncengine.exceptions import RemoteAPIError, RemoteConnectionError, RemoteDataError
from syncengine.models import (
    Entity,
    EntitySchema,
    FieldError,
    FieldSpec,
    RemoteSnapshot,
    VersionComparison,
    parse_timestamp,
)
from syncengine.resilience import CircuitOpenError

_TYPE_CHECKS = {
    "str": lambda v: isinstance(v, str),
    "int": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "float": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "dict": lambda v: isinstance(v, dict),
    "list": lambda v: isinstance(v, list),
    "any": lambda v: True,
}


def compare_versions(local: Optional[int], remote: int) -> VersionComparison:
    """
    Compare a remote version against the locally stored one.

    A local version of None means the entity was never synced, so any remote
    version is NEWER.
    """
    if local is None or remote > local:
        return VersionComparison.NEWER
    if remote == local:
        return VersionComparison.SAME
    return VersionComparison.STALE


def detect_race_condition(entity: Entity, task_dispatched_at: Optional[datetime]) -> bool:
    """True if the entity was edited locally after the task was dispatched."""
    if task_dispatched_at is None or entity.local_modified_at is None:
        return False
    return entity.local_modified_at > task_dispatched_at


def _check_type(spec: FieldSpec, value: Any) -> Optional[str]:
    if spec.type == "datetime":
        try:
            parse_timestamp(value)
        except (ValueError, TypeError):
            return "Must be an ISO-8601 timestamp"
        return None
    check = _TYPE_CHECKS.get(spec.type)
    if check is None:
        return f"Unknown field type {spec.type!r}"
    if not check(value):
        return f"Must be of type {spec.type}"
    return None


def validate_shape(snapshot: RemoteSnapshot, schema: Optional[EntitySchema] = None) -> List[FieldError]:
    """
    Validate a decoded remote snapshot.

    Checks the core snapshot fields, anything the decoder could not coerce,
    then every FieldSpec in the schema: presence, nullability, type and
    enumerated-value membership.

    Returns:
        List of problems (empty when the snapshot is valid)
    """
    errors: List[FieldError] = list(snapshot.issues)
    reported = {e.field for e in errors}

    if snapshot.id is None and "id" not in reported:
        errors.append(FieldError("id", "Field is required"))
    elif snapshot.id is not None and not snapshot.id.strip():
        errors.append(FieldError("id", "Must not be empty", snapshot.id))

    if snapshot.version is None and "version" not in reported:
        errors.append(FieldError("version", "Field is required"))
    elif snapshot.version is not None and snapshot.version < 0:
        errors.append(FieldError("version", "Must not be negative", snapshot.version))

    if snapshot.updated_at is None and "updated_at" not in reported:
        errors.append(FieldError("updated_at", "Field is required"))

    if schema is None:
        return errors

    for spec in schema.fields:
        if spec.name not in snapshot.fields:
            if spec.required:
                errors.append(FieldError(spec.name, "Field is required"))
            continue

        value = snapshot.fields[spec.name]
        if value is None:
            if not spec.nullable:
                errors.append(FieldError(spec.name, "Must not be null"))
            continue

        type_error = _check_type(spec, value)
        if type_error:
            errors.append(FieldError(spec.name, type_error, value))
            continue

        if spec.choices and value not in spec.choices:
            errors.append(
                FieldError(spec.name, f"Must be one of {list(spec.choices)}", value)
            )

    return errors


def compute_checksum(fields: Mapping[str, Any], names: Sequence[str]) -> str:
    """
    SHA-256 over a canonical encoding of the named fields, in order.

    Missing fields hash as null so adding an empty field does not change the
    digest.
    """
    canonical = json.dumps(
        [[name, fields.get(name)] for name in names],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_checksum(
    snapshot: RemoteSnapshot,
    expected: Optional[str] = None,
    fields: Sequence[str] = (),
) -> bool:
    """
    Recompute the snapshot checksum and compare it with the expected value.

    Args:
        snapshot: Decoded remote snapshot
        expected: Digest to compare against (defaults to snapshot.checksum)
        fields: Ordered field subset (defaults to all domain fields, sorted)

    Returns:
        True when they match or when there is nothing to verify
    """
    expected = expected if expected is not None else snapshot.checksum
    if not expected:
        return True
    names = list(fields) or sorted(snapshot.fields)
    return compute_checksum(snapshot.fields, names) == expected.lower()


def diff_fields(
    local: Mapping[str, Any],
    remote: Mapping[str, Any],
    names: Iterable[str] = (),
) -> Dict[str, Dict[str, Any]]:
    """
    Field-level differences between local payload and remote fields.

    Returns:
        {field: {"local": ..., "remote": ...}} for every differing field
    """
    keys = list(names) or sorted(set(local) | set(remote))
    return {
        key: {"local": local.get(key), "remote": remote.get(key)}
        for key in keys
        if local.get(key) != remote.get(key)
    }


def is_transient(error: BaseException) -> bool:
    """
    Whether a failed remote call is worth retrying.

    Transient: network errors, timeouts, 5xx, 429, open circuit.
    Everything else (4xx, malformed bodies) needs data correction.
    """
    if isinstance(error, (RemoteConnectionError, CircuitOpenError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, RemoteAPIError):
        return error.is_transient
    return False


def error_code_for(error: BaseException) -> str:
    """Stable error code stored on the entity for a failed call."""
    if isinstance(error, RemoteAPIError) and error.error_code:
        return error.error_code
    if isinstance(error, RemoteAPIError) and error.status_code:
        return f"HTTP_{error.status_code}"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    if isinstance(error, RemoteConnectionError):
        return "CONNECTION_ERROR"
    if isinstance(error, CircuitOpenError):
        return "CIRCUIT_OPEN"
    if isinstance(error, RemoteDataError):
        return "INVALID_RESPONSE"
    return type(error).__name__.upper()
