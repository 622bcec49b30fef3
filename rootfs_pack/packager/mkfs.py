"""Filesystem format step.

This module handles:
- Composing the `mke2fs -d` command that formats an image from a staging tree
- Pinning timestamps, UUID and directory hash seed for reproducible images
- Executing mke2fs with a timeout and mapping failures to packaging errors
- Rewriting inode and superblock times with debugfs and e2fsck afterwards

mke2fs copies inode times from the staging tree and stamps the superblock
and reserved inodes with the wall clock; releases before 1.47.1 ignore
E2FSPROGS_FAKE_TIME and SOURCE_DATE_EPOCH. pin_image_times rewrites every
time field so identical trees give identical images on any release.
"""

from __future__ import annotations

import logging
import math
import os
import re
import shlex
import shutil
import subprocess
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from rootfs_pack.errors import FormatFailureError, PermissionDeniedError
from rootfs_pack.packager.sizing import MIB, MIN_JOURNAL_BLOCKS, uses_journal
from rootfs_pack.types import ImageFormat

logger = logging.getLogger(__name__)

# Namespace for UUIDs derived from the tree hash when none is configured
IMAGE_UUID_NAMESPACE = uuid.UUID("6f1c8a52-3f4e-4d8b-9a57-0c6b2f1d9e34")

# Lines of mke2fs output kept in error messages
ERROR_TAIL_LINES = 5

_VERSION_PATTERN = re.compile(r"mke2fs (\d+)\.(\d+)(?:\.(\d+))?")

# `mke2fs -d` first appeared in e2fsprogs 1.43
MIN_MKE2FS_VERSION = (1, 43, 0)

# Inodes 1-10 are reserved; 11 is the first one mke2fs hands out (lost+found)
RESERVED_INODES = range(1, 11)

INODE_TIME_FIELDS = ("atime", "mtime", "ctime")
# Only inodes larger than 128 bytes carry creation time and nanoseconds
EXTRA_TIME_FIELDS = ("crtime",)
NSEC_FIELDS = ("atime_extra", "mtime_extra", "ctime_extra", "crtime_extra")


@dataclass
class MkfsResult:
    """Result of a format step.

    Attributes:
        exit_code: Process exit code.
        output: Combined stdout/stderr.
        command: The command that was executed.
        duration: Wall time in seconds.
    """

    exit_code: int
    output: str
    command: str
    duration: float


def derive_image_uuid(tree_hash: str, label: str) -> uuid.UUID:
    """Derive a stable filesystem UUID from the tree hash and label."""
    return uuid.uuid5(IMAGE_UUID_NAMESPACE, f"{label}:{tree_hash}")


def compose_mkfs_command(
    staging_dir: Path,
    image_path: Path,
    *,
    total_blocks: int,
    inode_count: int,
    fs_uuid: uuid.UUID,
    fs_type: ImageFormat = ImageFormat.EXT4,
    block_size: int = 4096,
    inode_size: int = 256,
    label: str = "rootfs",
    journal: bool = False,
    mke2fs_path: str = "mke2fs",
) -> list[str]:
    """Compose the mke2fs command that builds an image from a tree.

    Args:
        staging_dir: Directory whose contents become the filesystem root.
        image_path: Image file to format.
        total_blocks: Filesystem size in blocks.
        inode_count: Number of inodes to allocate.
        fs_uuid: Filesystem UUID (also used as directory hash seed).
        fs_type: Image filesystem format.
        block_size: Block size in bytes.
        inode_size: On-disk inode size in bytes.
        label: Volume label.
        journal: Whether an ext4 image carries a journal.
        mke2fs_path: mke2fs executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        mke2fs_path,
        "-t",
        fs_type.value,
        "-b",
        str(block_size),
        "-I",
        str(inode_size),
        "-N",
        str(inode_count),
        # no blocks reserved for root: the image is read into RAM as-is
        "-m",
        "0",
        "-L",
        label,
        "-U",
        str(fs_uuid),
        "-E",
        f"hash_seed={fs_uuid},root_owner=0:0,num_backup_sb=0",
    ]

    # No backup superblocks: e2fsck -p only rewrites the primary one, so
    # backups would keep the wall-clock time of the format run
    features = ["^resize_inode", "sparse_super2"]
    if uses_journal(fs_type, journal):
        journal_mib = max(1, math.ceil(MIN_JOURNAL_BLOCKS * block_size / MIB))
        cmd.extend(["-J", f"size={journal_mib}"])
    elif fs_type is not ImageFormat.EXT2:
        features.insert(0, "^has_journal")
    cmd.extend(["-O", ",".join(features)])

    cmd.extend(["-d", str(staging_dir), "-F", str(image_path), str(total_blocks)])
    return cmd


def compose_mkfs_env(
    source_date_epoch: int,
    base_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a reproducible mke2fs run.

    Releases that honour E2FSPROGS_FAKE_TIME and SOURCE_DATE_EPOCH use them
    for superblock times. pin_image_times does not rely on either.
    """
    env = dict(os.environ if base_env is None else base_env)
    env["E2FSPROGS_FAKE_TIME"] = str(source_date_epoch)
    env["SOURCE_DATE_EPOCH"] = str(source_date_epoch)
    # keep messages in English so failures can be classified
    env["LC_ALL"] = "C"
    return env


def find_mke2fs(mke2fs_path: str = "mke2fs") -> str | None:
    """Resolve the mke2fs executable, or None if it is not installed."""
    return shutil.which(mke2fs_path)


def get_mke2fs_version(mke2fs_path: str = "mke2fs", timeout: int = 30) -> tuple[int, ...] | None:
    """Return the mke2fs version as a tuple, or None if unavailable.

    Args:
        mke2fs_path: mke2fs executable.
        timeout: Command timeout in seconds.

    Returns:
        Version tuple like (1, 47, 0), or None.
    """
    try:
        result = subprocess.run(
            [mke2fs_path, "-V"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Could not query mke2fs version: %s", e)
        return None

    # mke2fs prints its version banner on stderr
    match = _VERSION_PATTERN.search(result.stderr + result.stdout)
    if not match:
        return None
    return tuple(int(part or 0) for part in match.groups())


def _tail(output: str, lines: int = ERROR_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


def run_mkfs(
    cmd: list[str],
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> MkfsResult:
    """Execute a composed mke2fs command.

    Args:
        cmd: Command from compose_mkfs_command.
        env: Environment from compose_mkfs_env.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        MkfsResult of a successful run.

    Raises:
        FormatFailureError: If mke2fs is missing, times out, or exits non-zero.
        PermissionDeniedError: If mke2fs could not read part of the tree.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Formatting image: %s", cmd_str)

    started = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        message = f"mke2fs timed out after {timeout} seconds"
        logger.error(message)
        raise FormatFailureError(message, exit_code=-1) from e
    except OSError as e:
        message = f"Failed to execute mke2fs: {e}"
        logger.error(message)
        raise FormatFailureError(message) from e

    duration = time.monotonic() - started
    output = result.stdout or ""
    logger.debug("mke2fs output:\n%s", output)

    if result.returncode != 0:
        if "Permission denied" in output:
            denied = next(
                line for line in output.splitlines() if "Permission denied" in line
            )
            logger.error("mke2fs could not read the staging tree: %s", denied)
            raise PermissionDeniedError(denied.strip(), action="copy")
        message = f"mke2fs failed with exit code {result.returncode}: {_tail(output)}"
        logger.error(message)
        raise FormatFailureError(message, exit_code=result.returncode, output=output)

    logger.info("Formatted image in %.1fs", duration)
    return MkfsResult(
        exit_code=result.returncode,
        output=output,
        command=cmd_str,
        duration=duration,
    )


def list_image_paths(staging_dir: Path) -> list[str]:
    """Absolute in-image paths of every entry mke2fs copies, plus lost+found."""
    paths = ["/", "/lost+found"]
    for dirpath, dirnames, filenames in os.walk(staging_dir):
        dirnames.sort()
        rel_dir = Path(dirpath).relative_to(staging_dir)
        for name in sorted(dirnames + filenames):
            paths.append("/" + (rel_dir / name).as_posix())
    return paths


def _debugfs_quote(path: str) -> str:
    if "\n" in path:
        raise FormatFailureError(f"Cannot pin timestamps of a path with a newline: {path!r}")
    return '"' + path.replace('"', '""') + '"'


def compose_pin_script(
    paths: list[str],
    *,
    source_date_epoch: int = 0,
    inode_size: int = 256,
) -> str:
    """Compose the debugfs script that pins all inode and superblock times.

    Args:
        paths: In-image paths from list_image_paths.
        source_date_epoch: Timestamp to write.
        inode_size: On-disk inode size; 128-byte inodes lack crtime.

    Returns:
        Script text for `debugfs -w -f`.
    """
    stamp = f"@{source_date_epoch}"
    targets = [f"<{ino}>" for ino in RESERVED_INODES]
    targets.extend(_debugfs_quote(path) for path in paths)

    lines = []
    for target in targets:
        fields = INODE_TIME_FIELDS
        if inode_size > 128:
            fields = INODE_TIME_FIELDS + EXTRA_TIME_FIELDS
        lines.extend(f"set_inode_field {target} {name} {stamp}" for name in fields)
        if inode_size > 128:
            lines.extend(f"set_inode_field {target} {name} 0" for name in NSEC_FIELDS)
    lines.append(f"set_super_value mkfs_time {stamp}")
    lines.append(f"set_super_value lastcheck {stamp}")
    return "\n".join(lines) + "\n"


def _run_tool(
    cmd: list[str], *, env: dict[str, str], timeout: int | None
) -> subprocess.CompletedProcess[str]:
    tool = Path(cmd[0]).name
    logger.debug("Running %s", shlex.join(cmd))
    try:
        return subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        message = f"{tool} timed out after {timeout} seconds"
        logger.error(message)
        raise FormatFailureError(message, exit_code=-1) from e
    except OSError as e:
        message = f"Failed to execute {tool}: {e}"
        logger.error(message)
        raise FormatFailureError(message) from e


def _debugfs_errors(output: str) -> list[str]:
    # debugfs exits 0 even when a command fails; anything besides the
    # banner, echoed commands and the 128-byte inode warning is an error
    return [
        line
        for line in output.splitlines()
        if line.strip()
        and not line.startswith("debugfs")
        and "deprecated" not in line
    ]


def pin_image_times(
    image_path: Path,
    staging_dir: Path,
    *,
    source_date_epoch: int = 0,
    inode_size: int = 256,
    debugfs_path: str = "debugfs",
    e2fsck_path: str = "e2fsck",
    timeout: int | None = None,
) -> None:
    """Overwrite every timestamp in a freshly formatted image.

    debugfs sets the a/m/c/crtime of every copied entry, lost+found and the
    reserved inodes, plus the superblock creation time. A forced e2fsck
    preen pass then writes the superblock once more with E2FSCK_TIME as its
    clock, which pins the write and last-check times.

    Args:
        image_path: Formatted image.
        staging_dir: Tree the image was formatted from.
        source_date_epoch: Timestamp to write.
        inode_size: On-disk inode size.
        debugfs_path: debugfs executable.
        e2fsck_path: e2fsck executable.
        timeout: Timeout per tool in seconds.

    Raises:
        FormatFailureError: A tool is missing, fails, or reports an error.
    """
    resolved_debugfs = shutil.which(debugfs_path)
    if resolved_debugfs is None:
        raise FormatFailureError(f"debugfs not found: {debugfs_path}. Install e2fsprogs.")
    resolved_e2fsck = shutil.which(e2fsck_path)
    if resolved_e2fsck is None:
        raise FormatFailureError(f"e2fsck not found: {e2fsck_path}. Install e2fsprogs.")

    script = compose_pin_script(
        list_image_paths(staging_dir),
        source_date_epoch=source_date_epoch,
        inode_size=inode_size,
    )
    env = compose_mkfs_env(source_date_epoch)

    with tempfile.NamedTemporaryFile("w", suffix=".debugfs", encoding="utf-8") as f:
        f.write(script)
        f.flush()
        result = _run_tool(
            [resolved_debugfs, "-w", "-f", f.name, str(image_path)],
            env=env,
            timeout=timeout,
        )

    output = result.stdout or ""
    errors = _debugfs_errors(output)
    if result.returncode != 0 or errors:
        detail = _tail("\n".join(errors) if errors else output)
        message = f"debugfs could not pin timestamps: {detail}"
        logger.error(message)
        raise FormatFailureError(message, exit_code=result.returncode, output=result.stdout)

    # E2FSCK_TIME=0 means "unset" to e2fsck, so the epoch itself is clamped to 1
    env["E2FSCK_TIME"] = str(max(source_date_epoch, 1))
    result = _run_tool(
        [resolved_e2fsck, "-f", "-p", str(image_path)],
        env=env,
        timeout=timeout,
    )
    # 0: clean, 1: preen corrected something (the superblock times)
    if result.returncode not in (0, 1):
        message = f"e2fsck failed with exit code {result.returncode}: {_tail(result.stdout or '')}"
        logger.error(message)
        raise FormatFailureError(message, exit_code=result.returncode, output=result.stdout)

    logger.info("Pinned image timestamps to %d", source_date_epoch)


__all__ = [
    "IMAGE_UUID_NAMESPACE",
    "MIN_MKE2FS_VERSION",
    "MkfsResult",
    "compose_mkfs_command",
    "compose_mkfs_env",
    "compose_pin_script",
    "derive_image_uuid",
    "find_mke2fs",
    "get_mke2fs_version",
    "list_image_paths",
    "pin_image_times",
    "run_mkfs",
]
