"""Thin CLI wrapper for rootfs_pack.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from rootfs_pack import __version__
from rootfs_pack.config import get_settings, print_settings_json
from rootfs_pack.errors import PackagingError
from rootfs_pack.types import BootPartitionFs, ImageFormat, RunStatus, format_size, parse_size

app = typer.Typer(
    name="rootfs-pack",
    help="Root filesystem packager - stage BusyBox roots and build bounded-size ext images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rootfs-pack version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def fail(error: PackagingError) -> typer.Exit:
    """Print a packaging error to stderr and return the exit to raise."""
    err_console.print(
        f"[red]Error [{error.error_code}]: {escape(error.message)}[/red]", soft_wrap=True
    )
    return typer.Exit(code=1)


def print_json(data: Any) -> None:
    """Print data as JSON without wrapping or markup."""
    console.print(
        json.dumps(data, indent=2, default=str), soft_wrap=True, markup=False, highlight=False
    )


def parse_size_option(value: str | None) -> int | None:
    """Parse a size option, exiting with a usage error if it is invalid."""
    if value is None:
        return None
    try:
        return parse_size(value)
    except ValueError as e:
        err_console.print(f"[red]Invalid size: {e}[/red]")
        raise typer.Exit(code=2) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Root filesystem packager - stage BusyBox roots and build bounded-size ext images."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    from rootfs_pack.packager.mkfs import MIN_MKE2FS_VERSION, find_mke2fs, get_mke2fs_version

    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    resolved = find_mke2fs(settings.mke2fs_path)
    version = get_mke2fs_version(settings.mke2fs_path) if resolved else None
    if resolved is None:
        mke2fs_display = f"{settings.mke2fs_path} [red](not found)[/red]"
    elif version is None:
        mke2fs_display = f"{resolved} (unknown version)"
    else:
        mke2fs_display = f"{resolved} ({'.'.join(str(p) for p in version)})"
        if version < MIN_MKE2FS_VERSION:
            mke2fs_display += " [red](too old, -d needs 1.43 or newer)[/red]"

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  mke2fs:              {mke2fs_display}")
    console.print(f"  debugfs:             {settings.debugfs_path}")
    console.print(f"  e2fsck:              {settings.e2fsck_path}")
    console.print()
    console.print("[bold]Image defaults:[/bold]")
    console.print(
        f"  Max size:            {format_size(settings.max_size_bytes)} "
        f"({settings.max_size_bytes} bytes)"
    )
    console.print(f"  Format:              {settings.fs_type}")
    console.print(f"  Block size:          {settings.block_size}")
    console.print(f"  Inode size:          {settings.inode_size}")
    console.print(f"  Headroom:            {settings.headroom_percent}%")
    console.print(f"  Timestamp:           {settings.source_date_epoch}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Record runs:         {settings.record_runs}")
    console.print(f"  Write manifests:     {settings.write_manifest}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  mkfs timeout (s):    {settings.mkfs_timeout}")


def _result_to_dict(result: Any) -> dict[str, Any]:
    return {
        "success": result.success,
        "dry_run": result.dry_run,
        "run_id": result.run_id,
        "output_path": result.output_path,
        "fs_type": result.fs_type.value,
        "max_size_bytes": result.max_size_bytes,
        "projected_bytes": result.projected_bytes,
        "image_size_bytes": result.image_size_bytes,
        "sha256": result.sha256,
        "tree_hash": result.tree_hash,
        "fs_uuid": result.fs_uuid,
        "manifest_path": result.manifest_path,
        "load_command": result.load_command,
        "notes": result.notes,
    }


@app.command("package")
def package_cmd(
    src: Annotated[
        Path | None,
        typer.Option("--src", "-s", help="Staging directory to package"),
    ] = None,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Output image path (replaced atomically)"),
    ] = None,
    max_size: Annotated[
        str | None,
        typer.Option("--max-size", "-m", help="Maximum image size (bytes, or 100M/100MiB)"),
    ] = None,
    fs_format: Annotated[
        ImageFormat | None,
        typer.Option("--format", "-f", help="Image filesystem format"),
    ] = None,
    label: Annotated[
        str | None,
        typer.Option("--label", "-L", help="Volume label"),
    ] = None,
    image_size: Annotated[
        str | None,
        typer.Option("--image-size", help="Fixed image size instead of the projected size"),
    ] = None,
    job_file: Annotated[
        Path | None,
        typer.Option("--job", "-j", help="Job file (YAML/JSON); flags override it"),
    ] = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Replace a non-empty staging dir when the job stages BusyBox"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Validate and project the size without writing"),
    ] = False,
    no_record: Annotated[
        bool,
        typer.Option("--no-record", help="Do not record the run in the database"),
    ] = False,
    no_manifest: Annotated[
        bool,
        typer.Option("--no-manifest", help="Do not write a manifest next to the image"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Package a staging directory into a filesystem image.

    Exits 0 on success and 1 on any packaging failure, printing the
    failure kind to stderr. An existing image at --out is only replaced
    by a complete, size-checked image.
    """
    from rootfs_pack.db import history_session
    from rootfs_pack.jobs.io import load_job, parse_job_data
    from rootfs_pack.packager.service import package_job

    settings = get_settings()

    overrides: dict[str, Any] = {
        "staging_dir": str(src) if src is not None else None,
        "output_path": str(out) if out is not None else None,
        "max_size_bytes": parse_size_option(max_size),
        "fs_type": fs_format.value if fs_format is not None else None,
        "label": label,
        "image_size_bytes": parse_size_option(image_size),
    }
    if no_manifest:
        overrides["write_manifest"] = False
    defaults: dict[str, Any] = {
        "max_size_bytes": settings.max_size_bytes,
        "fs_type": settings.fs_type,
        "block_size": settings.block_size,
        "inode_size": settings.inode_size,
        "headroom_percent": settings.headroom_percent,
        "source_date_epoch": settings.source_date_epoch,
        "write_manifest": settings.write_manifest,
    }

    if job_file is None and (src is None or out is None):
        err_console.print("[red]--src and --out are required without --job[/red]")
        raise typer.Exit(code=2)

    try:
        if job_file is not None:
            job = load_job(job_file, overrides=overrides, defaults=defaults)
        else:
            job = parse_job_data({}, overrides=overrides, defaults=defaults)
    except FileNotFoundError as e:
        err_console.print(f"[red]Job file not found: {e.filename}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        err_console.print(f"[red]Invalid job:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        err_console.print(f"[red]Invalid job: {escape(str(e))}[/red]", soft_wrap=True)
        raise typer.Exit(code=1) from None

    record = settings.record_runs and not no_record and not dry_run

    try:
        if record:
            with history_session(settings.db_url) as session:
                result = package_job(
                    job, session=session, settings=settings, clean_staging=clean
                )
        else:
            result = package_job(
                job, settings=settings, clean_staging=clean, dry_run=dry_run
            )
    except PackagingError as e:
        if json_output:
            print_json({"success": False, "error_code": e.error_code, "message": e.message})
        raise fail(e) from None

    if json_output:
        print_json(_result_to_dict(result))
        return

    if result.dry_run:
        console.print("[bold]Dry run - no image written[/bold]")
    else:
        console.print(f"[green]✓ Image written: {result.output_path}[/green]")
    console.print(f"  Format:     {result.fs_type.value}")
    console.print(
        f"  Size:       {format_size(result.image_size_bytes)} "
        f"of {format_size(result.max_size_bytes)} max"
    )
    console.print(f"  Projected:  {format_size(result.projected_bytes)}")
    console.print(f"  UUID:       {result.fs_uuid}")
    if result.sha256:
        console.print(f"  SHA-256:    {result.sha256}")
    if result.manifest_path:
        console.print(f"  Manifest:   {result.manifest_path}")
    if result.run_id is not None:
        console.print(f"  Run ID:     {result.run_id}")
    if result.load_command:
        console.print(f"  Load with:  {result.load_command}")
    for note in result.notes:
        console.print(f"[yellow]Note: {note}[/yellow]")


@app.command("stage")
def stage_cmd(
    busybox_dir: Annotated[
        Path,
        typer.Option("--busybox", "-b", help="BusyBox install directory (make install output)"),
    ],
    staging_dir: Annotated[
        Path,
        typer.Option("--staging", "-s", help="Staging directory to assemble"),
    ],
    hostname: Annotated[
        str,
        typer.Option("--hostname", help="Hostname written to /etc/hostname"),
    ] = "busybox",
    serial_console: Annotated[
        str,
        typer.Option("--console", help="Serial console tty for /etc/inittab"),
    ] = "ttyS0",
    baud_rate: Annotated[
        int,
        typer.Option("--baud", help="Console baud rate"),
    ] = 115200,
    device_nodes: Annotated[
        bool,
        typer.Option("--device-nodes", help="Create static device nodes (needs privilege)"),
    ] = False,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Replace a non-empty staging directory"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Assemble a staging directory from a BusyBox install."""
    from rootfs_pack.jobs.schema import SkeletonSpec
    from rootfs_pack.staging.skeleton import stage_rootfs

    try:
        skeleton = SkeletonSpec(
            hostname=hostname,
            console=serial_console,
            baud_rate=baud_rate,
            create_device_nodes=device_nodes,
        )
    except ValidationError as e:
        err_console.print(f"[red]Invalid skeleton settings:[/red]\n{e}")
        raise typer.Exit(code=1) from None

    try:
        result = stage_rootfs(busybox_dir, staging_dir, skeleton, clean=clean)
    except PackagingError as e:
        raise fail(e) from None

    if json_output:
        output = {
            "staging_dir": str(result.staging_dir),
            "copied_files": result.copied_files,
            "copied_symlinks": result.copied_symlinks,
            "written_files": result.written_files,
            "device_nodes": [str(p) for p in result.device_nodes],
        }
        print_json(output)
        return

    console.print(f"[green]✓ Staged root filesystem in {result.staging_dir}[/green]")
    console.print(f"  Files copied:    {result.copied_files}")
    console.print(f"  Symlinks copied: {result.copied_symlinks}")
    console.print(f"  Skeleton files:  {len(result.written_files)}")
    console.print(f"  Device nodes:    {len(result.device_nodes)}")


jobs_app = typer.Typer(help="Validate and inspect packaging job files")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("validate")
def jobs_validate(
    path: Annotated[
        Path,
        typer.Argument(help="Job file (YAML/JSON)"),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate a job file and print the resolved job."""
    from rootfs_pack.jobs.io import job_to_dict, job_to_yaml_string, load_job

    try:
        job = load_job(path)
    except FileNotFoundError:
        err_console.print(f"[red]Job file not found: {path}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        if json_output:
            print_json({"valid": False, "errors": e.errors(include_url=False)})
        else:
            err_console.print(f"[red]Invalid job:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        err_console.print(f"[red]Invalid job: {escape(str(e))}[/red]", soft_wrap=True)
        raise typer.Exit(code=1) from None

    if json_output:
        print_json({"valid": True, "job": job_to_dict(job)})
    else:
        console.print(f"[green]✓ Job is valid: {path}[/green]")
        console.print(job_to_yaml_string(job), markup=False)


boot_app = typer.Typer(help="Boot loader RAM window and load command helpers")
app.add_typer(boot_app, name="boot")


@boot_app.command("window")
def boot_window(
    start: Annotated[
        str,
        typer.Option("--start", help="Start address of the RAM window (e.g., 0x8900_0000)"),
    ],
    end: Annotated[
        str,
        typer.Option("--end", help="End address of the RAM window, exclusive"),
    ],
    image: Annotated[
        Path | None,
        typer.Option("--image", "-i", help="Image file to check against the window"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the size of a RAM load window and check an image fits."""
    from rootfs_pack.boot import RamWindow

    try:
        window = RamWindow.parse(start, end)
    except ValueError as e:
        err_console.print(f"[red]Invalid window: {e}[/red]")
        raise typer.Exit(code=1) from None

    image_size: int | None = None
    if image is not None:
        if not image.is_file():
            err_console.print(f"[red]Image not found: {image}[/red]")
            raise typer.Exit(code=1)
        image_size = image.stat().st_size
    fits = window.fits(image_size) if image_size is not None else None

    if json_output:
        output = {
            "start": f"{window.start:#x}",
            "end": f"{window.end:#x}",
            "size_bytes": window.size,
            "image_size_bytes": image_size,
            "fits": fits,
        }
        print_json(output)
    else:
        console.print(
            f"Window {window.start:#x}-{window.end:#x}: "
            f"{format_size(window.size)} ({window.size} bytes)"
        )
        if image_size is not None:
            if fits:
                console.print(f"[green]✓ {image} ({format_size(image_size)}) fits[/green]")
            else:
                console.print(
                    f"[red]✗ {image} ({format_size(image_size)}) does not fit[/red]"
                )

    if fits is False:
        raise typer.Exit(code=1)


@boot_app.command("command")
def boot_command(
    image_name: Annotated[
        str,
        typer.Option("--image", "-i", help="Image file name on the boot partition"),
    ],
    address: Annotated[
        str,
        typer.Option("--address", "-a", help="RAM load address"),
    ],
    partition_fs: Annotated[
        BootPartitionFs,
        typer.Option("--partition-fs", help="Filesystem of the boot partition"),
    ] = BootPartitionFs.FAT,
    interface: Annotated[
        str,
        typer.Option("--interface", help="Boot loader storage interface"),
    ] = "mmc",
    device_part: Annotated[
        str,
        typer.Option("--device-part", help="Device and partition, <dev>:<part>"),
    ] = "0:1",
    fs_format: Annotated[
        ImageFormat,
        typer.Option("--format", "-f", help="Image filesystem format"),
    ] = ImageFormat.EXT4,
) -> None:
    """Print the boot loader command that loads an image into RAM."""
    from rootfs_pack.boot import compose_load_command, note_format_mismatch, parse_address

    try:
        load_address = parse_address(address)
    except ValueError as e:
        err_console.print(f"[red]Invalid address: {e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(
        compose_load_command(
            image_name,
            load_address,
            partition_fs=partition_fs,
            interface=interface,
            device_part=device_part,
        ),
        markup=False,
    )
    note = note_format_mismatch(fs_format, partition_fs)
    if note:
        err_console.print(f"[yellow]Note: {note}[/yellow]")


runs_app = typer.Typer(help="Inspect the packaging run history")
app.add_typer(runs_app, name="runs")


def _run_to_dict(run: Any) -> dict[str, Any]:
    return {
        "id": run.id,
        "staging_dir": run.staging_dir,
        "output_path": run.output_path,
        "fs_type": run.fs_type,
        "label": run.label,
        "status": run.status,
        "max_size_bytes": run.max_size_bytes,
        "projected_bytes": run.projected_bytes,
        "image_size_bytes": run.image_size_bytes,
        "sha256": run.sha256,
        "tree_hash": run.tree_hash,
        "fs_uuid": run.fs_uuid,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "error_type": run.error_type,
        "error_message": run.error_message,
    }


@runs_app.command("list")
def runs_list(
    output_path: Annotated[
        str | None,
        typer.Option("--output", "-o", help="Filter by output image path"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List packaging runs, newest first."""
    from rootfs_pack.db import history_session
    from rootfs_pack.packager.service import get_package_runs

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            err_console.print(f"[red]Invalid status: {status}[/red]")
            err_console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with history_session() as session:
        runs = get_package_runs(
            session, output_path=output_path, status=status_filter, limit=limit
        )

        if not runs:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No packaging runs found[/yellow]")
            return

        if json_output:
            print_json([_run_to_dict(r) for r in runs])
            return

        console.print(f"[bold]Found {len(runs)} packaging run(s):[/bold]")
        console.print()
        for r in runs:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "yellow",
                "pending": "blue",
            }.get(r.status, "white")
            size = format_size(r.image_size_bytes) if r.image_size_bytes else "-"
            console.print(
                f"  [{status_color}]{r.status:10}[/{status_color}] "
                f"#{r.id} {r.output_path} ({r.fs_type}, {size})"
            )
            if r.error_type:
                console.print(f"             [red]{r.error_type}: {r.error_message}[/red]")


@runs_app.command("show")
def runs_show(
    run_id: Annotated[
        int,
        typer.Argument(help="Run ID"),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a packaging run."""
    from rootfs_pack.db import history_session
    from rootfs_pack.packager.service import get_package_run

    with history_session() as session:
        run = get_package_run(session, run_id)
        if run is None:
            err_console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1)

        data = _run_to_dict(run)
        if json_output:
            print_json(data)
            return

        console.print(f"[bold]Packaging run #{run.id}[/bold]")
        for key, value in data.items():
            if key == "id" or value is None:
                continue
            console.print(f"  {key + ':':18} {value}", markup=False)


if __name__ == "__main__":
    app()
