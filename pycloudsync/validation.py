"""Structural validation of transfer and sync job specifications.

These checks run before a job is created and never contact a provider;
they are distinct from a transfer's ``dry_run`` execution mode.
"""

from typing import Any, Optional, Union

from .exceptions import ConfigError, ValidationError
from .models import (
    ConflictPolicy,
    FilterSpec,
    Schedule,
    ScheduleKind,
    SyncDirection,
    SyncJob,
    TransferJob,
    TransferOptions,
)
from .registry import ProviderRegistry
from .scheduler import cron_trigger
from .utils import normalize_path


def _result(errors: list[str], warnings: list[str]) -> dict[str, Any]:
    return {"valid": not errors, "errors": errors, "warnings": warnings}


def _check_path(label: str, value: Any, errors: list[str]) -> Optional[str]:
    if value is None:
        return "/"
    if not isinstance(value, str):
        errors.append(f"{label} must be a string")
        return None
    try:
        return normalize_path(value)
    except ValueError as e:
        errors.append(f"{label}: {e}")
        return None


def _check_connection(
    label: str,
    connection_id: Any,
    registry: ProviderRegistry,
    errors: list[str],
) -> bool:
    if not connection_id:
        errors.append(f"{label} is required")
        return False
    connection = registry.get_connection(str(connection_id))
    if connection is None:
        errors.append(f"{label} {connection_id} is not a known connection")
        return False
    if not registry.is_supported(connection.provider_type):
        errors.append(
            f"{label} {connection_id} uses unsupported provider type "
            f"{connection.provider_type}"
        )
        return False
    return True


def _paths_overlap(a: str, b: str) -> bool:
    return a == b or a.startswith(b.rstrip("/") + "/") or b.startswith(
        a.rstrip("/") + "/"
    )


def _check_filters(
    filters: FilterSpec, errors: list[str], warnings: list[str]
) -> None:
    for label, value in (
        ("min_size", filters.min_size),
        ("max_size", filters.max_size),
    ):
        if value is not None and (not isinstance(value, int) or value < 0):
            errors.append(f"filters.{label} must be a non-negative integer")
    if (
        isinstance(filters.min_size, int)
        and isinstance(filters.max_size, int)
        and filters.min_size > filters.max_size
    ):
        errors.append("filters.min_size is greater than filters.max_size")
    if (
        filters.modified_after
        and filters.modified_before
        and filters.modified_after > filters.modified_before
    ):
        errors.append("filters.modified_after is later than filters.modified_before")
    for pattern in filters.include_patterns + filters.exclude_patterns:
        if not str(pattern).strip():
            warnings.append("Empty filter pattern is ignored")
    for mime in filters.mime_types:
        if "/" not in mime:
            errors.append(f"Invalid MIME type in filters: {mime}")


def validate_transfer(
    spec: Union[dict[str, Any], TransferJob], registry: ProviderRegistry
) -> dict[str, Any]:
    """Check a transfer specification without creating the job.

    Args:
        spec: Request payload or an unsaved TransferJob
        registry: Registry used to resolve connection ids

    Returns:
        Dictionary with validation results containing:
        - valid: True if there are no errors
        - errors: Problems that prevent job creation
        - warnings: Settings that will not behave as the caller may expect
    """
    errors: list[str] = []
    warnings: list[str] = []

    if isinstance(spec, TransferJob):
        data: dict[str, Any] = {
            "source_connection_id": spec.source_connection_id,
            "source_path": spec.source_path,
            "destination_connection_id": spec.destination_connection_id,
            "destination_path": spec.destination_path,
        }
        filters, options = spec.filters, spec.options
    else:
        data = spec
        try:
            filters = FilterSpec.from_dict(data.get("filters"))
            options = TransferOptions.from_dict(data.get("options"))
        except (TypeError, ValueError, AttributeError) as e:
            errors.append(f"Invalid filters or options: {e}")
            return _result(errors, warnings)

    _check_connection(
        "source_connection_id", data.get("source_connection_id"), registry, errors
    )
    dest_ok = _check_connection(
        "destination_connection_id",
        data.get("destination_connection_id"),
        registry,
        errors,
    )
    source_path = _check_path("source_path", data.get("source_path"), errors)
    dest_path = _check_path("destination_path", data.get("destination_path"), errors)

    if (
        source_path
        and dest_path
        and data.get("source_connection_id") == data.get("destination_connection_id")
        and _paths_overlap(source_path, dest_path)
    ):
        errors.append("Source and destination paths overlap on the same connection")

    _check_filters(filters, errors, warnings)

    if options.dry_run and options.verify_integrity:
        warnings.append("verify_integrity has no effect in a dry run")
    if options.overwrite_existing:
        warnings.append("Existing destination files will be overwritten")

    if dest_ok:
        try:
            destination = registry.get_provider(str(data["destination_connection_id"]))
        except ConfigError as e:
            errors.append(str(e))
            destination = None
        if destination is not None:
            caps = destination.capabilities
            if options.preserve_timestamps and not caps.supports_timestamps:
                warnings.append(
                    f"{destination.provider_type} cannot preserve timestamps"
                )
            if options.verify_integrity and not caps.supports_checksums:
                warnings.append(
                    f"{destination.provider_type} exposes no checksums, "
                    "integrity is verified by size only"
                )
    return _result(errors, warnings)


def validate_sync(
    spec: Union[dict[str, Any], SyncJob], registry: ProviderRegistry
) -> dict[str, Any]:
    """Check a sync job specification without creating the job.

    Returns:
        Dictionary with keys valid, errors and warnings
    """
    errors: list[str] = []
    warnings: list[str] = []

    if isinstance(spec, SyncJob):
        data: dict[str, Any] = {
            "name": spec.name,
            "source_connection_id": spec.source_connection_id,
            "source_path": spec.source_path,
            "destination_connection_id": spec.destination_connection_id,
            "destination_path": spec.destination_path,
            "direction": spec.direction.value,
            "conflict_policy": spec.conflict_policy.value,
            "schedule": spec.schedule,
            "options": {
                "delete_orphaned": spec.options.delete_orphaned,
            },
        }
    else:
        data = spec

    if not str(data.get("name") or "").strip():
        errors.append("name is required")

    _check_connection(
        "source_connection_id", data.get("source_connection_id"), registry, errors
    )
    _check_connection(
        "destination_connection_id",
        data.get("destination_connection_id"),
        registry,
        errors,
    )
    source_path = _check_path("source_path", data.get("source_path"), errors)
    dest_path = _check_path("destination_path", data.get("destination_path"), errors)
    if (
        source_path
        and dest_path
        and data.get("source_connection_id") == data.get("destination_connection_id")
        and _paths_overlap(source_path, dest_path)
    ):
        errors.append("Source and destination paths overlap on the same connection")

    direction: Optional[SyncDirection] = None
    try:
        direction = SyncDirection(data.get("direction", "source_to_destination"))
    except ValueError:
        choices = ", ".join(d.value for d in SyncDirection)
        errors.append(f"Invalid direction: {data.get('direction')} (use {choices})")

    try:
        policy = ConflictPolicy(data.get("conflict_policy", "newest"))
    except ValueError:
        choices = ", ".join(p.value for p in ConflictPolicy)
        errors.append(
            f"Invalid conflict_policy: {data.get('conflict_policy')} (use {choices})"
        )
        policy = None

    schedule_errors = validate_schedule(data.get("schedule"))
    errors.extend(schedule_errors)

    options = data.get("options") or {}
    if options.get("delete_orphaned") and direction == SyncDirection.BIDIRECTIONAL:
        warnings.append("delete_orphaned has no effect on bidirectional syncs")
    if policy == ConflictPolicy.MANUAL:
        warnings.append("Conflicts will be reported and left for manual resolution")

    return _result(errors, warnings)


def validate_schedule(value: Any) -> list[str]:
    """Return errors for an unparseable schedule, bad interval or cron."""
    try:
        schedule = Schedule.parse(value)
    except (TypeError, ValueError) as e:
        return [f"Invalid schedule: {e}"]

    if schedule.kind == ScheduleKind.INTERVAL:
        minutes = schedule.interval_minutes
        if not isinstance(minutes, int) or minutes <= 0:
            return ["Schedule interval must be a positive number of minutes"]
    elif schedule.kind == ScheduleKind.CRON:
        if not schedule.cron:
            return ["Cron schedule requires an expression"]
        try:
            cron_trigger(schedule.cron)
        except ValueError as e:
            return [f"Invalid cron expression '{schedule.cron}': {e}"]
    return []


def raise_for_errors(result: dict[str, Any]) -> None:
    """Raise ValidationError if a validation result has errors."""
    if not result["valid"]:
        raise ValidationError(result["errors"])
