"""Image packager service layer.

This module provides the high-level packaging operations:
- plan_package: validate inputs and project the image size without writing
- package: build a bounded-size image from a staging directory
- package_job: stage (optionally) and package from a validated PackageJob
- PackageRun persistence

Packaging is all-or-nothing: the image is formatted into a temporary file
next to the output and renamed over it only after every check passed. On
failure the temporary file is removed and an existing output is untouched.
"""

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from rootfs_pack.boot import compose_load_command, effective_max_size, note_format_mismatch
from rootfs_pack.config import Settings, get_settings
from rootfs_pack.errors import (
    FormatFailureError,
    PackagingError,
    PermissionDeniedError,
    SizeExceededError,
)
from rootfs_pack.jobs.schema import BootSpec, PackageJob
from rootfs_pack.packager.manifest import (
    compute_file_hash,
    generate_manifest,
    manifest_path_for,
    write_manifest,
)
from rootfs_pack.packager.mkfs import (
    compose_mkfs_command,
    compose_mkfs_env,
    derive_image_uuid,
    find_mke2fs,
    pin_image_times,
    run_mkfs,
)
from rootfs_pack.packager.models import PackageRun
from rootfs_pack.packager.sizing import SizeEstimate, estimate_image_size
from rootfs_pack.staging.scan import compute_tree_hash, scan_tree, validate_staging_dir
from rootfs_pack.staging.skeleton import stage_rootfs
from rootfs_pack.types import ImageFormat, RunStatus, TreeStats

logger = logging.getLogger(__name__)


@dataclass
class PackagePlan:
    """Validated inputs and projected size of a packaging run.

    Attributes:
        staging_dir: Staging directory to package.
        output_path: Image path to write.
        max_size_bytes: Effective size limit.
        fs_type: Image filesystem format.
        label: Volume label.
        fs_uuid: Filesystem UUID.
        block_size: Block size in bytes.
        inode_size: Inode size in bytes.
        journal: Whether an ext4 image carries a journal.
        stats: Scan result of the staging directory.
        estimate: Projected size breakdown.
        image_size_bytes: Size the image file will have.
        tree_hash: Hash of the staging tree.
        notes: Operator notes collected during planning.
    """

    staging_dir: Path
    output_path: Path
    max_size_bytes: int
    fs_type: ImageFormat
    label: str
    fs_uuid: uuid.UUID
    block_size: int
    inode_size: int
    journal: bool
    stats: TreeStats
    estimate: SizeEstimate
    image_size_bytes: int
    tree_hash: str
    notes: list[str] = field(default_factory=list)


@dataclass
class PackageResult:
    """Result of a packaging run.

    Attributes:
        success: Whether an image was written (False for dry runs).
        run_id: ID of the PackageRun (if persisted).
        output_path: Path of the image.
        fs_type: Image filesystem format.
        max_size_bytes: Effective size limit.
        projected_bytes: Projected image size.
        image_size_bytes: Size of the written image (planned size on dry runs).
        sha256: SHA-256 of the image (None on dry runs).
        tree_hash: Hash of the staging tree.
        fs_uuid: Filesystem UUID.
        manifest_path: Path of the written manifest.
        load_command: Boot loader load command hint.
        notes: Operator notes.
        dry_run: Whether this was a dry run.
    """

    success: bool
    run_id: int | None
    output_path: str
    fs_type: ImageFormat
    max_size_bytes: int
    projected_bytes: int
    image_size_bytes: int
    sha256: str | None
    tree_hash: str
    fs_uuid: str
    manifest_path: str | None = None
    load_command: str | None = None
    notes: list[str] = field(default_factory=list)
    dry_run: bool = False


def plan_package(
    staging_dir: str | Path,
    output_path: str | Path,
    max_size_bytes: int,
    *,
    fs_type: ImageFormat = ImageFormat.EXT4,
    label: str = "rootfs",
    image_size_bytes: int | None = None,
    block_size: int = 4096,
    inode_size: int = 256,
    journal: bool = False,
    headroom_percent: int = 0,
    fs_uuid: uuid.UUID | None = None,
) -> PackagePlan:
    """Validate inputs and project the image size.

    Nothing is written. Useful for dry-run mode.

    Args:
        staging_dir: Staging directory (must exist and be non-empty).
        output_path: Image path to write.
        max_size_bytes: Size limit in bytes.
        fs_type: Image filesystem format.
        label: Volume label.
        image_size_bytes: Fixed image size; projected size when None.
        block_size: Block size in bytes.
        inode_size: Inode size in bytes.
        journal: Whether an ext4 image carries a journal.
        headroom_percent: Free space added on top of the payload.
        fs_uuid: Filesystem UUID; derived from the tree hash when None.

    Returns:
        PackagePlan for the run.

    Raises:
        StagingDirNotFoundError: Staging directory missing, not a dir, or empty.
        PermissionDeniedError: Part of the tree cannot be read.
        SizeExceededError: Projected size over the limit or a fixed image size.
    """
    staging_dir = Path(staging_dir)
    output_path = Path(output_path)

    validate_staging_dir(staging_dir)
    stats = scan_tree(staging_dir)

    # Fail fast on the logical payload before estimating metadata
    if stats.total_bytes > max_size_bytes:
        logger.error(
            "Staging payload %d bytes exceeds max size %d",
            stats.total_bytes,
            max_size_bytes,
        )
        raise SizeExceededError(stats.total_bytes, max_size_bytes, what="payload")

    estimate = estimate_image_size(
        stats,
        fs_type=fs_type,
        block_size=block_size,
        inode_size=inode_size,
        journal=journal,
        headroom_percent=headroom_percent,
    )
    logger.info(
        "Projected image size %d bytes for %d byte payload (max %d)",
        estimate.projected_bytes,
        estimate.payload_bytes,
        max_size_bytes,
    )

    if estimate.projected_bytes > max_size_bytes:
        raise SizeExceededError(estimate.projected_bytes, max_size_bytes)

    if image_size_bytes is None:
        final_size = estimate.projected_bytes
    else:
        if image_size_bytes > max_size_bytes:
            raise SizeExceededError(image_size_bytes, max_size_bytes, what="fixed image")
        if estimate.projected_bytes > image_size_bytes:
            raise SizeExceededError(estimate.projected_bytes, image_size_bytes)
        final_size = image_size_bytes

    tree_hash = compute_tree_hash(staging_dir)
    if fs_uuid is None:
        fs_uuid = derive_image_uuid(tree_hash, label)

    notes: list[str] = []
    if "dev/console" not in stats.device_nodes:
        notes.append(
            "No /dev/console in the staging tree; the kernel needs "
            "CONFIG_DEVTMPFS_MOUNT for early console output"
        )

    return PackagePlan(
        staging_dir=staging_dir,
        output_path=output_path,
        max_size_bytes=max_size_bytes,
        fs_type=fs_type,
        label=label,
        fs_uuid=fs_uuid,
        block_size=block_size,
        inode_size=inode_size,
        journal=journal,
        stats=stats,
        estimate=estimate,
        image_size_bytes=final_size,
        tree_hash=tree_hash,
        notes=notes,
    )


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _discard(fd: int, tmp_path: Path) -> None:
    if fd >= 0:
        os.close(fd)
    tmp_path.unlink(missing_ok=True)


def write_image(
    plan: PackagePlan,
    *,
    source_date_epoch: int = 0,
    mke2fs_path: str = "mke2fs",
    debugfs_path: str = "debugfs",
    e2fsck_path: str = "e2fsck",
    timeout: int | None = None,
) -> int:
    """Format the planned image and atomically move it into place.

    The image is formatted into a temporary file in the output directory,
    its timestamps are pinned, and only then is it renamed over the output.

    Args:
        plan: Plan from plan_package.
        source_date_epoch: Timestamp pinned into the image.
        mke2fs_path: mke2fs executable.
        debugfs_path: debugfs executable.
        e2fsck_path: e2fsck executable.
        timeout: Timeout of each e2fsprogs step in seconds.

    Returns:
        Size of the written image in bytes.

    Raises:
        FormatFailureError: A tool is missing or failed, or the output
            cannot be written.
        PermissionDeniedError: The tree cannot be read or the output
            directory is not writable.
        SizeExceededError: The formatted image is over the limit.
    """
    resolved_mke2fs = find_mke2fs(mke2fs_path)
    if resolved_mke2fs is None:
        raise FormatFailureError(
            f"mke2fs not found: {mke2fs_path}. Install e2fsprogs (1.43 or newer)."
        )

    output_dir = plan.output_path.parent
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=output_dir, prefix=f".{plan.output_path.name}.", suffix=".tmp"
        )
    except PermissionError as e:
        logger.error("Permission denied preparing %s: %s", output_dir, e)
        raise PermissionDeniedError(str(output_dir), action="write to") from e
    except OSError as e:
        logger.error("Cannot prepare output directory %s: %s", output_dir, e)
        raise FormatFailureError(f"Cannot create image in {output_dir}: {e}") from e

    tmp_path = Path(tmp_name)
    try:
        os.ftruncate(fd, plan.image_size_bytes)
        os.close(fd)
        fd = -1

        cmd = compose_mkfs_command(
            plan.staging_dir,
            tmp_path,
            total_blocks=plan.image_size_bytes // plan.block_size,
            inode_count=plan.estimate.inode_count,
            fs_uuid=plan.fs_uuid,
            fs_type=plan.fs_type,
            block_size=plan.block_size,
            inode_size=plan.inode_size,
            label=plan.label,
            journal=plan.journal,
            mke2fs_path=resolved_mke2fs,
        )
        run_mkfs(cmd, env=compose_mkfs_env(source_date_epoch), timeout=timeout)

        actual_size = tmp_path.stat().st_size
        if actual_size > plan.max_size_bytes:
            raise SizeExceededError(actual_size, plan.max_size_bytes)

        pin_image_times(
            tmp_path,
            plan.staging_dir,
            source_date_epoch=source_date_epoch,
            inode_size=plan.inode_size,
            debugfs_path=debugfs_path,
            e2fsck_path=e2fsck_path,
            timeout=timeout,
        )

        with tmp_path.open("rb+") as f:
            os.fsync(f.fileno())
        # mkstemp creates the file 0600
        tmp_path.chmod(0o644)
        os.replace(tmp_path, plan.output_path)
        _fsync_dir(output_dir)
    except PermissionError as e:
        _discard(fd, tmp_path)
        logger.error("Permission denied writing %s: %s", plan.output_path, e)
        raise PermissionDeniedError(str(plan.output_path), action="write") from e
    except OSError as e:
        _discard(fd, tmp_path)
        logger.error("I/O error writing %s: %s", plan.output_path, e)
        raise FormatFailureError(f"Error writing image {plan.output_path}: {e}") from e
    except BaseException:
        _discard(fd, tmp_path)
        raise

    logger.info("Wrote image %s (%d bytes)", plan.output_path, actual_size)
    return actual_size


def package(
    staging_dir: str | Path,
    output_path: str | Path,
    max_size_bytes: int | None = None,
    *,
    fs_type: ImageFormat | None = None,
    label: str = "rootfs",
    image_size_bytes: int | None = None,
    block_size: int | None = None,
    inode_size: int | None = None,
    journal: bool = False,
    headroom_percent: int | None = None,
    fs_uuid: uuid.UUID | None = None,
    source_date_epoch: int | None = None,
    boot: BootSpec | None = None,
    write_manifest_file: bool | None = None,
    session: Session | None = None,
    settings: Settings | None = None,
    dry_run: bool = False,
) -> PackageResult:
    """Package a staging directory into a bounded-size filesystem image.

    This is the main entry point for packaging. It:
    1. Validates the staging directory and scans it
    2. Projects the image size and fails fast if over the limit
    3. Formats the image into a temporary file with mke2fs
    4. Re-checks the size and atomically renames it onto ``output_path``
    5. Hashes the image and optionally writes a manifest
    6. Records the run when a session is given

    Unset options fall back to settings.

    Args:
        staging_dir: Staging directory (must exist and be non-empty).
        output_path: Image path; replaced atomically if present.
        max_size_bytes: Size limit in bytes.
        fs_type: Image filesystem format.
        label: Volume label.
        image_size_bytes: Fixed image size; projected size when None.
        block_size: Block size in bytes.
        inode_size: Inode size in bytes.
        journal: Whether an ext4 image carries a journal.
        headroom_percent: Free space added on top of the payload.
        fs_uuid: Filesystem UUID; derived from the tree hash when None.
        source_date_epoch: Timestamp pinned into the image.
        boot: RAM window and boot loader settings.
        write_manifest_file: Write a JSON manifest next to the image.
        session: Database session (optional, for PackageRun tracking).
        settings: Application settings (optional).
        dry_run: Validate and plan without writing.

    Returns:
        PackageResult with run details.

    Raises:
        StagingDirNotFoundError: Staging directory missing, not a dir, or empty.
        SizeExceededError: Image would exceed the limit.
        FormatFailureError: The format step failed.
        PermissionDeniedError: Insufficient privilege to read the tree.
    """
    if settings is None:
        settings = get_settings()

    if max_size_bytes is None:
        max_size_bytes = settings.max_size_bytes
    if fs_type is None:
        fs_type = ImageFormat(settings.fs_type)
    if block_size is None:
        block_size = settings.block_size
    if inode_size is None:
        inode_size = settings.inode_size
    if headroom_percent is None:
        headroom_percent = settings.headroom_percent
    if source_date_epoch is None:
        source_date_epoch = settings.source_date_epoch
    if write_manifest_file is None:
        write_manifest_file = settings.write_manifest

    staging_dir = Path(staging_dir)
    output_path = Path(output_path)
    window = boot.window if boot is not None else None
    max_size_bytes = effective_max_size(max_size_bytes, window)

    logger.info(
        "Package requested: staging=%s, output=%s, max=%d, format=%s, dry_run=%s",
        staging_dir,
        output_path,
        max_size_bytes,
        fs_type.value,
        dry_run,
    )

    run: PackageRun | None = None
    if session is not None and not dry_run:
        run = PackageRun(
            staging_dir=str(staging_dir),
            output_path=str(output_path),
            fs_type=fs_type.value,
            label=label,
            max_size_bytes=max_size_bytes,
        )
        session.add(run)
        session.flush()
        logger.debug("Created PackageRun id=%d", run.id)

    try:
        plan = plan_package(
            staging_dir,
            output_path,
            max_size_bytes,
            fs_type=fs_type,
            label=label,
            image_size_bytes=image_size_bytes,
            block_size=block_size,
            inode_size=inode_size,
            journal=journal,
            headroom_percent=headroom_percent,
            fs_uuid=fs_uuid,
        )

        load_command: str | None = None
        if boot is not None:
            load_command = compose_load_command(
                output_path.name,
                boot.window.start,
                partition_fs=boot.partition_fs,
                interface=boot.interface,
                device_part=boot.device_part,
            )
            mismatch = note_format_mismatch(fs_type, boot.partition_fs)
            if mismatch:
                plan.notes.append(mismatch)

        for note in plan.notes:
            logger.warning(note)

        if dry_run:
            logger.info("Dry-run mode: not formatting an image")
            return PackageResult(
                success=False,
                run_id=None,
                output_path=str(output_path),
                fs_type=fs_type,
                max_size_bytes=max_size_bytes,
                projected_bytes=plan.estimate.projected_bytes,
                image_size_bytes=plan.image_size_bytes,
                sha256=None,
                tree_hash=plan.tree_hash,
                fs_uuid=str(plan.fs_uuid),
                load_command=load_command,
                notes=plan.notes,
                dry_run=True,
            )

        if run is not None:
            run.projected_bytes = plan.estimate.projected_bytes
            run.tree_hash = plan.tree_hash
            run.fs_uuid = str(plan.fs_uuid)
            run.mark_running()
            session.flush()  # type: ignore[union-attr]

        actual_size = write_image(
            plan,
            source_date_epoch=source_date_epoch,
            mke2fs_path=settings.mke2fs_path,
            debugfs_path=settings.debugfs_path,
            e2fsck_path=settings.e2fsck_path,
            timeout=settings.mkfs_timeout,
        )

    except PackagingError as e:
        logger.error("Packaging failed: %s", e.message)
        if run is not None:
            run.mark_failed(error_type=e.error_code, message=e.message)
            session.flush()  # type: ignore[union-attr]
        raise

    sha256 = compute_file_hash(output_path)

    manifest_path: Path | None = None
    if write_manifest_file:
        manifest = generate_manifest(
            output_path,
            size_bytes=actual_size,
            sha256=sha256,
            fs_type=fs_type.value,
            label=label,
            fs_uuid=str(plan.fs_uuid),
            max_size_bytes=max_size_bytes,
            projected_bytes=plan.estimate.projected_bytes,
            tree_hash=plan.tree_hash,
            staging_dir=staging_dir,
            source_date_epoch=source_date_epoch,
            load_command=load_command,
        )
        manifest_path = write_manifest(manifest, manifest_path_for(output_path))

    if run is not None:
        run.image_size_bytes = actual_size
        run.sha256 = sha256
        run.mark_succeeded()
        session.flush()  # type: ignore[union-attr]

    logger.info(
        "Packaging succeeded: %s (%d of %d bytes)",
        output_path,
        actual_size,
        max_size_bytes,
    )

    return PackageResult(
        success=True,
        run_id=run.id if run is not None else None,
        output_path=str(output_path),
        fs_type=fs_type,
        max_size_bytes=max_size_bytes,
        projected_bytes=plan.estimate.projected_bytes,
        image_size_bytes=actual_size,
        sha256=sha256,
        tree_hash=plan.tree_hash,
        fs_uuid=str(plan.fs_uuid),
        manifest_path=str(manifest_path) if manifest_path else None,
        load_command=load_command,
        notes=plan.notes,
    )


def package_job(
    job: PackageJob,
    *,
    session: Session | None = None,
    settings: Settings | None = None,
    clean_staging: bool = False,
    dry_run: bool = False,
) -> PackageResult:
    """Run a packaging job, staging from BusyBox first when configured.

    Args:
        job: Validated PackageJob.
        session: Database session (optional, for PackageRun tracking).
        settings: Application settings (optional).
        clean_staging: Replace a non-empty staging directory when staging.
        dry_run: Validate and plan without writing the image.

    Returns:
        PackageResult with run details.

    Raises:
        PackagingError: Any staging or packaging failure.
    """
    if job.busybox_dir is not None:
        try:
            stage_rootfs(
                job.busybox_dir,
                job.staging_dir,
                job.skeleton,
                clean=clean_staging,
            )
        except PackagingError as e:
            logger.error("Staging failed: %s", e.message)
            if session is not None and not dry_run:
                window = job.boot.window if job.boot is not None else None
                run = PackageRun(
                    staging_dir=str(job.staging_dir),
                    output_path=str(job.output_path),
                    fs_type=job.fs_type.value,
                    label=job.label,
                    max_size_bytes=effective_max_size(job.max_size_bytes, window),
                )
                run.mark_failed(error_type=e.error_code, message=e.message)
                session.add(run)
                session.flush()
            raise

    return package(
        job.staging_dir,
        job.output_path,
        job.max_size_bytes,
        fs_type=job.fs_type,
        label=job.label,
        image_size_bytes=job.image_size_bytes,
        block_size=job.block_size,
        inode_size=job.inode_size,
        journal=job.journal,
        headroom_percent=job.headroom_percent,
        fs_uuid=job.uuid,
        source_date_epoch=job.source_date_epoch,
        boot=job.boot,
        write_manifest_file=job.write_manifest,
        session=session,
        settings=settings,
        dry_run=dry_run,
    )


def get_package_runs(
    session: Session,
    *,
    output_path: str | None = None,
    status: RunStatus | None = None,
    limit: int = 100,
) -> list[PackageRun]:
    """Query packaging runs with optional filters.

    Args:
        session: Database session.
        output_path: Filter by output image path.
        status: Filter by status.
        limit: Maximum number of records to return.

    Returns:
        List of PackageRun objects, newest first.
    """
    stmt = select(PackageRun)

    if output_path is not None:
        stmt = stmt.where(PackageRun.output_path == output_path)
    if status is not None:
        stmt = stmt.where(PackageRun.status == status.value)

    stmt = stmt.order_by(PackageRun.requested_at.desc(), PackageRun.id.desc()).limit(limit)

    result = session.execute(stmt)
    return list(result.scalars().all())


def get_package_run(session: Session, run_id: int) -> PackageRun | None:
    """Get a packaging run by ID."""
    return session.get(PackageRun, run_id)


__all__ = [
    "PackagePlan",
    "PackageResult",
    "get_package_run",
    "get_package_runs",
    "package",
    "package_job",
    "plan_package",
    "write_image",
]
