"""CLI interface for pycloudsync."""

import logging
from pathlib import Path
from typing import Any, Optional

import click

from .cli_progress import follow_run
from .config import Config
from .exceptions import CloudSyncError, ConflictUnresolved
from .models import (
    ConflictPolicy,
    JobSnapshot,
    JobStatus,
    ProviderConnection,
    SyncDirection,
    SyncJob,
)
from .output import OutputFormatter
from .service import CloudSyncService
from .sync import PlanAction
from .utils import normalize_path

logger = logging.getLogger(__name__)


def parse_location(value: str) -> tuple[str, str]:
    """Split ``CONNECTION_ID:/path`` into its parts.

    Examples:
        >>> parse_location("nas:/photos/2024")
        ('nas', '/photos/2024')
        >>> parse_location("nas")
        ('nas', '/')
    """
    connection_id, _, path = value.partition(":")
    if not connection_id:
        raise click.BadParameter(f"Missing connection id in '{value}'")
    try:
        return connection_id, normalize_path(path or "/")
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def parse_size(value: Optional[str]) -> Optional[int]:
    """Parse a size such as ``512``, ``10K``, ``1.5M`` or ``2G`` into bytes."""
    if value is None:
        return None
    units = {"K": 1024, "M": 1024**2, "G": 1024**3}
    text = value.strip().upper().rstrip("B")
    multiplier = 1
    if text and text[-1] in units:
        multiplier = units[text[-1]]
        text = text[:-1]
    try:
        return int(float(text) * multiplier)
    except ValueError as e:
        raise click.BadParameter(f"Invalid size: {value}") from e


def _get_service(ctx: Any) -> CloudSyncService:
    service = ctx.obj.get("service")
    if service is None:
        service = CloudSyncService.from_config(ctx.obj["config"])
        ctx.obj["service"] = service
        ctx.call_on_close(service.shutdown)
    return service


def _snapshot_summary(snapshot: JobSnapshot, out: OutputFormatter) -> list:
    c = snapshot.counters
    items = [
        ("Status", snapshot.status.value),
        ("Files", f"{c.files_done}/{c.files_total} done"),
        ("Failed", c.files_failed),
        ("Skipped", c.files_skipped),
        ("Transferred", out.format_size(c.bytes_done)),
        ("Elapsed", f"{snapshot.elapsed:.1f}s"),
    ]
    if snapshot.error_message:
        items.append(("Error", snapshot.error_message))
    return items


def _filter_options(func: Any) -> Any:
    """Filter options shared by transfer and validate."""
    func = click.option(
        "--max-size", help="Skip files larger than this (e.g. 100M)"
    )(func)
    func = click.option(
        "--min-size", help="Skip files smaller than this (e.g. 10K)"
    )(func)
    func = click.option(
        "--mime-type", "mime_types", multiple=True, help="Allowed MIME type"
    )(func)
    func = click.option(
        "--exclude", "-e", multiple=True, help="Glob pattern of files to exclude"
    )(func)
    func = click.option(
        "--include", "-i", multiple=True, help="Glob pattern of files to include"
    )(func)
    return func


def _transfer_spec(
    source: str,
    destination: str,
    include: tuple,
    exclude: tuple,
    mime_types: tuple,
    min_size: Optional[str],
    max_size: Optional[str],
    overwrite: bool = False,
    preserve_timestamps: bool = False,
    verify: bool = False,
    dry_run: bool = False,
) -> dict[str, Any]:
    src_id, src_path = parse_location(source)
    dst_id, dst_path = parse_location(destination)
    return {
        "source_connection_id": src_id,
        "source_path": src_path,
        "destination_connection_id": dst_id,
        "destination_path": dst_path,
        "filters": {
            "include_patterns": list(include),
            "exclude_patterns": list(exclude),
            "mime_types": list(mime_types),
            "min_size": parse_size(min_size),
            "max_size": parse_size(max_size),
        },
        "options": {
            "overwrite_existing": overwrite,
            "preserve_timestamps": preserve_timestamps,
            "verify_integrity": verify,
            "dry_run": dry_run,
        },
    }


@click.group()
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="PYCLOUDSYNC_CONFIG_DIR",
    help="Directory holding config.json and connections.json",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    config_dir: Optional[Path],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """PyCloudSync - Transfer and sync files between cloud storage accounts."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = Config(config_dir)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pycloudsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


# =============================================================================
# Connections
# =============================================================================


@main.group()
def connections() -> None:
    """Manage saved provider connections."""


@connections.command("list")
@click.pass_context
def connections_list(ctx: Any) -> None:
    """List saved connections."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        saved = ctx.obj["config"].load_connections()
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    if not saved:
        out.info("No connections configured. Add one with 'connections add'.")
        return
    out.output_table(
        [
            {
                "id": c.id,
                "provider_type": c.provider_type,
                "target": c.config.get("url", ""),
            }
            for c in saved
        ],
        ["id", "provider_type", "target"],
        {"id": "ID", "provider_type": "Type", "target": "Target"},
    )


@connections.command("add")
@click.argument("provider_type")
@click.option("--id", "connection_id", help="Connection id (generated if omitted)")
@click.option(
    "--option",
    "-o",
    "options",
    multiple=True,
    metavar="KEY=VALUE",
    help="Provider config value, e.g. -o url=https://nas/dav",
)
@click.option("--no-verify", is_flag=True, help="Save without authenticating")
@click.pass_context
def connections_add(
    ctx: Any,
    provider_type: str,
    connection_id: Optional[str],
    options: tuple,
    no_verify: bool,
) -> None:
    """Add a connection of PROVIDER_TYPE (e.g. webdav)."""
    out: OutputFormatter = ctx.obj["out"]
    settings: dict[str, Any] = {}
    for option in options:
        key, sep, value = option.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{option}'")
        settings[key.strip()] = value

    data: dict[str, Any] = {"provider_type": provider_type, "config": settings}
    if connection_id:
        data["id"] = connection_id
    connection = ProviderConnection.from_dict(data)

    try:
        if not no_verify:
            out.info(f"Authenticating {provider_type} connection...")
            service = CloudSyncService(
                settings=ctx.obj["config"].engine_settings()
            )
            try:
                service.connect(connection)
            finally:
                service.shutdown()
        ctx.obj["config"].save_connection(connection)
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    out.success(f"Saved connection {connection.id}")


@connections.command("remove")
@click.argument("connection_id")
@click.pass_context
def connections_remove(ctx: Any, connection_id: str) -> None:
    """Remove a saved connection."""
    out: OutputFormatter = ctx.obj["out"]
    if not ctx.obj["config"].remove_connection(connection_id):
        out.error(f"Connection not found: {connection_id}")
        ctx.exit(1)
    out.success(f"Removed connection {connection_id}")


@main.command()
@click.argument("connection_id")
@click.pass_context
def test(ctx: Any, connection_id: str) -> None:
    """Check that a saved connection is reachable."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        service = _get_service(ctx)
        reachable = service.registry.test_connection(connection_id)
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json({"connection_id": connection_id, "reachable": reachable})
    elif reachable:
        out.success(f"Connection {connection_id} is reachable")
    else:
        connection = service.registry.get_connection(connection_id)
        reason = connection.error_message if connection else "unknown connection"
        out.error(f"Connection {connection_id} is unreachable: {reason}")
    if not reachable:
        ctx.exit(1)


@main.command()
@click.argument("location")
@click.pass_context
def ls(ctx: Any, location: str) -> None:
    """List a remote directory, given as CONNECTION_ID:/path."""
    out: OutputFormatter = ctx.obj["out"]
    connection_id, path = parse_location(location)
    try:
        adapter = _get_service(ctx).registry.get_provider(connection_id)
        if adapter is None:
            out.error(f"Connection not found: {connection_id}")
            ctx.exit(1)
        entries = adapter.list_files(path)
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    out.output_table(
        [
            {
                "name": e.name + ("/" if e.is_folder else ""),
                "size": "" if e.is_folder else out.format_size(e.size),
                "modified": e.modified_at.strftime("%Y-%m-%d %H:%M")
                if e.modified_at
                else "",
            }
            for e in entries
        ],
        ["name", "size", "modified"],
        {"name": "Name", "size": "Size", "modified": "Modified"},
    )


# =============================================================================
# Jobs
# =============================================================================


@main.command()
@click.argument("source")
@click.argument("destination")
@_filter_options
@click.option("--overwrite", is_flag=True, help="Overwrite existing destination files")
@click.option(
    "--preserve-timestamps", is_flag=True, help="Keep source modification times"
)
@click.option("--verify", is_flag=True, help="Verify size/checksum after upload")
@click.option("--dry-run", is_flag=True, help="Show what would be transferred")
@click.option("--no-progress", is_flag=True, help="Disable progress display")
@click.pass_context
def transfer(
    ctx: Any,
    source: str,
    destination: str,
    include: tuple,
    exclude: tuple,
    mime_types: tuple,
    min_size: Optional[str],
    max_size: Optional[str],
    overwrite: bool,
    preserve_timestamps: bool,
    verify: bool,
    dry_run: bool,
    no_progress: bool,
) -> None:
    """Copy SOURCE to DESTINATION (both CONNECTION_ID:/path).

    Examples:
        pycloudsync transfer nas:/photos webdav:/backup/photos
        pycloudsync transfer nas:/docs box:/docs -i "*.pdf" --dry-run
    """
    out: OutputFormatter = ctx.obj["out"]
    spec = _transfer_spec(
        source,
        destination,
        include,
        exclude,
        mime_types,
        min_size,
        max_size,
        overwrite,
        preserve_timestamps,
        verify,
        dry_run,
    )

    try:
        service = _get_service(ctx)
        for warning in service.validate_transfer(spec)["warnings"]:
            out.warning(warning)
        job_id = service.create_transfer_job(spec, start=False)
        subscription = service.subscribe(job_id)
        service.start_transfer(job_id)
        if dry_run:
            out.info("Dry run: no files will be changed")
        snapshot = follow_run(
            service,
            subscription,
            job_id,
            show_progress=not (no_progress or out.quiet or out.json_output),
        )
    except KeyboardInterrupt:
        out.warning("\nTransfer cancelled by user")
        ctx.exit(130)
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    title = "Dry Run Complete" if dry_run else "Transfer Complete"
    if snapshot.status != JobStatus.COMPLETED:
        title = f"Transfer {snapshot.status.value.capitalize()}"
    out.print_summary(title, _snapshot_summary(snapshot, out))
    if snapshot.status != JobStatus.COMPLETED or snapshot.counters.files_failed:
        ctx.exit(1)


@main.command()
@click.argument("source")
@click.argument("destination")
@click.option("--name", default="cli-sync", help="Name of the sync job")
@click.option(
    "--direction",
    "-d",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.SOURCE_TO_DESTINATION.value,
    show_default=True,
    help="Which way changes propagate",
)
@click.option(
    "--policy",
    "-p",
    type=click.Choice([p.value for p in ConflictPolicy]),
    default=ConflictPolicy.NEWEST.value,
    show_default=True,
    help="How entries changed on both sides are resolved",
)
@click.option(
    "--delete-orphaned", is_flag=True, help="Delete entries missing on the other side"
)
@click.option("--skip-hidden", is_flag=True, help="Ignore dot files and folders")
@click.option(
    "--preserve-timestamps", is_flag=True, help="Keep source modification times"
)
@click.option("--dry-run", is_flag=True, help="Show the plan without executing it")
@click.option("--no-progress", is_flag=True, help="Disable progress display")
@click.pass_context
def sync(
    ctx: Any,
    source: str,
    destination: str,
    name: str,
    direction: str,
    policy: str,
    delete_orphaned: bool,
    skip_hidden: bool,
    preserve_timestamps: bool,
    dry_run: bool,
    no_progress: bool,
) -> None:
    """Reconcile SOURCE and DESTINATION once (both CONNECTION_ID:/path).

    Examples:
        pycloudsync sync nas:/docs webdav:/docs
        pycloudsync sync nas:/docs webdav:/docs -d bidirectional -p manual
    """
    out: OutputFormatter = ctx.obj["out"]
    src_id, src_path = parse_location(source)
    dst_id, dst_path = parse_location(destination)
    spec = {
        "name": name,
        "source_connection_id": src_id,
        "source_path": src_path,
        "destination_connection_id": dst_id,
        "destination_path": dst_path,
        "direction": direction,
        "conflict_policy": policy,
        "options": {
            "delete_orphaned": delete_orphaned,
            "skip_hidden": skip_hidden,
            "preserve_timestamps": preserve_timestamps,
        },
        "schedule": "manual",
    }

    try:
        service = _get_service(ctx)
        validation = service.validate_sync(spec)
        for warning in validation["warnings"]:
            out.warning(warning)

        if dry_run:
            if not validation["valid"]:
                out.error("; ".join(validation["errors"]))
                ctx.exit(1)
            plan = service.engine.plan_sync(SyncJob.from_dict(spec))
            _print_plan(out, plan)
            return

        sync_id = service.create_sync_job(spec)
        subscription = service.subscribe(sync_id)
        run_id = service.run_sync_now(sync_id)
        snapshot = follow_run(
            service,
            subscription,
            run_id,
            show_progress=not (no_progress or out.quiet or out.json_output),
        )
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    out.print_summary(
        f"Sync {snapshot.status.value.capitalize()}",
        _snapshot_summary(snapshot, out),
    )
    if snapshot.conflicts:
        out.warning(str(ConflictUnresolved(list(snapshot.conflicts))))
        for path in snapshot.conflicts:
            out.print(f"  [yellow]![/yellow] {path}")
    if (
        snapshot.status != JobStatus.COMPLETED
        or snapshot.counters.files_failed
        or snapshot.conflicts
    ):
        ctx.exit(1)


def _print_plan(out: OutputFormatter, plan: Any) -> None:
    if plan.is_empty:
        out.success("Trees are in sync, nothing to do")
        return
    out.output_table(
        [
            {"path": item.path, "action": item.action.value, "reason": item.reason}
            for item in plan.items
            if item.action != PlanAction.SKIP
        ],
        ["path", "action", "reason"],
        {"path": "Path", "action": "Action", "reason": "Reason"},
    )
    summary = plan.summary()
    out.print_summary(
        "Plan",
        [
            (action.replace("_", " ").capitalize(), count)
            for action, count in summary.items()
            if count
        ],
    )


@main.command()
@click.argument("source")
@click.argument("destination")
@_filter_options
@click.option("--overwrite", is_flag=True, help="Overwrite existing destination files")
@click.option("--verify", is_flag=True, help="Verify size/checksum after upload")
@click.pass_context
def validate(
    ctx: Any,
    source: str,
    destination: str,
    include: tuple,
    exclude: tuple,
    mime_types: tuple,
    min_size: Optional[str],
    max_size: Optional[str],
    overwrite: bool,
    verify: bool,
) -> None:
    """Check a transfer from SOURCE to DESTINATION without running it."""
    out: OutputFormatter = ctx.obj["out"]
    spec = _transfer_spec(
        source,
        destination,
        include,
        exclude,
        mime_types,
        min_size,
        max_size,
        overwrite=overwrite,
        verify=verify,
    )
    try:
        result = _get_service(ctx).validate_transfer(spec)
    except CloudSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(result)
    else:
        for error in result["errors"]:
            out.error(error)
        for warning in result["warnings"]:
            out.warning(warning)
        if result["valid"]:
            out.success("Transfer is valid")
    if not result["valid"]:
        ctx.exit(1)


if __name__ == "__main__":
    main()
