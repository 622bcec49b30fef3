"""Root filesystem staging from a BusyBox install tree.

This module handles:
- Copying BusyBox's `make install` output, keeping applet symlinks as links
- Creating the mount points and directories a bootable root needs
- Writing the init configuration BusyBox init reads at boot
- Optionally creating static device nodes

The resulting staging directory is the input of the image packager.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from rootfs_pack.errors import PermissionDeniedError, StagingError
from rootfs_pack.jobs.schema import SkeletonSpec
from rootfs_pack.staging.devices import create_device_nodes

logger = logging.getLogger(__name__)

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644
SCRIPT_MODE = 0o755

# Directories every root needs, with their modes
SKELETON_DIRS: dict[str, int] = {
    "bin": DEFAULT_DIR_MODE,
    "sbin": DEFAULT_DIR_MODE,
    "usr/bin": DEFAULT_DIR_MODE,
    "usr/sbin": DEFAULT_DIR_MODE,
    "dev": DEFAULT_DIR_MODE,
    "etc": DEFAULT_DIR_MODE,
    "etc/init.d": DEFAULT_DIR_MODE,
    "proc": 0o555,
    "sys": 0o555,
    "mnt": DEFAULT_DIR_MODE,
    "run": DEFAULT_DIR_MODE,
    "var": DEFAULT_DIR_MODE,
    "var/log": DEFAULT_DIR_MODE,
    "root": 0o700,
    "tmp": 0o1777,
}

INITTAB_TEMPLATE = """\
# /etc/inittab for BusyBox init
::sysinit:/etc/init.d/rcS
{console}::respawn:/sbin/getty -L {baud_rate} {console} vt100
::ctrlaltdel:/sbin/reboot
::shutdown:/bin/umount -a -r
::restart:/sbin/init
"""

RCS_SCRIPT = """\
#!/bin/sh
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t devtmpfs devtmpfs /dev 2>/dev/null || mdev -s
mkdir -p /dev/pts
mount -t devpts devpts /dev/pts
mount -t tmpfs tmpfs /tmp
hostname -F /etc/hostname
"""

FSTAB = """\
# <file system> <mount point> <type> <options> <dump> <pass>
proc            /proc         proc    defaults  0      0
sysfs           /sys          sysfs   defaults  0      0
tmpfs           /tmp          tmpfs   defaults  0      0
"""

PASSWD = "root::0:0:root:/root:/bin/sh\n"
GROUP = "root:x:0:\n"

PROFILE = """\
export PATH=/bin:/sbin:/usr/bin:/usr/sbin
export PS1='\\u@\\h:\\w\\$ '
"""


@dataclass
class StageResult:
    """Result of staging a root filesystem.

    Attributes:
        staging_dir: The assembled staging directory.
        copied_files: Regular files copied from the BusyBox install.
        copied_symlinks: Symlinks copied from the BusyBox install.
        written_files: Skeleton files written, relative to the root.
        device_nodes: Device nodes created.
    """

    staging_dir: Path
    copied_files: int = 0
    copied_symlinks: int = 0
    written_files: list[str] = field(default_factory=list)
    device_nodes: list[Path] = field(default_factory=list)


def symlink_escapes(rel_link: str, target: str) -> bool:
    """Return True if a symlink inside the tree points outside it.

    Absolute targets resolve inside the tree once it is mounted as /, so
    they never escape.

    Args:
        rel_link: Link path relative to the tree root (posix).
        target: Link target as stored in the link.
    """
    if target.startswith("/"):
        return False
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(rel_link), target))
    return resolved == ".." or resolved.startswith("../")


def copy_install_tree(source_dir: Path, dest_dir: Path, result: StageResult) -> None:
    """Copy a BusyBox install tree, preserving symlinks and modes.

    Args:
        source_dir: BusyBox install output (CONFIG_PREFIX).
        dest_dir: Staging directory.
        result: StageResult updated with counts.

    Raises:
        StagingError: If a symlink escapes the tree or copying fails.
        PermissionDeniedError: If a source entry cannot be read.
    """
    try:
        for dirpath, dirnames, filenames in os.walk(source_dir):
            current = Path(dirpath)
            rel_dir = current.relative_to(source_dir)
            target_dir = dest_dir / rel_dir
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copystat(current, target_dir, follow_symlinks=False)

            for name in sorted(dirnames + filenames):
                item = current / name
                dest_path = target_dir / name
                rel_path = (rel_dir / name).as_posix()

                if item.is_symlink():
                    link_target = os.readlink(item)
                    if symlink_escapes(rel_path, link_target):
                        raise StagingError(
                            f"Symlink {item} points outside source tree: {link_target}"
                        )
                    if dest_path.is_symlink() or dest_path.exists():
                        dest_path.unlink()
                    os.symlink(link_target, dest_path)
                    result.copied_symlinks += 1
                elif item.is_file():
                    shutil.copy2(item, dest_path, follow_symlinks=False)
                    result.copied_files += 1

    except PermissionError as e:
        raise PermissionDeniedError(str(e.filename), action="copy") from e
    except OSError as e:
        raise StagingError(f"Failed to copy install tree {source_dir}: {e}") from e


def write_skeleton_file(root: Path, rel_path: str, content: str, mode: int) -> bool:
    """Write one skeleton file unless the install tree already provides it."""
    path = root / rel_path
    if path.exists() or path.is_symlink():
        logger.debug("Keeping existing %s", rel_path)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(mode)
    return True


def write_skeleton(root: Path, skeleton: SkeletonSpec) -> list[str]:
    """Create skeleton directories and init configuration under ``root``.

    Existing files are left alone, so a BusyBox install that ships its own
    /etc/inittab keeps it.

    Returns:
        Relative paths of files written.
    """
    for rel_dir, mode in SKELETON_DIRS.items():
        path = root / rel_dir
        path.mkdir(parents=True, exist_ok=True)
        path.chmod(mode)

    files = {
        "etc/inittab": (
            INITTAB_TEMPLATE.format(console=skeleton.console, baud_rate=skeleton.baud_rate),
            DEFAULT_FILE_MODE,
        ),
        "etc/init.d/rcS": (RCS_SCRIPT, SCRIPT_MODE),
        "etc/fstab": (FSTAB, DEFAULT_FILE_MODE),
        "etc/passwd": (PASSWD, DEFAULT_FILE_MODE),
        "etc/group": (GROUP, DEFAULT_FILE_MODE),
        "etc/hostname": (skeleton.hostname + "\n", DEFAULT_FILE_MODE),
        "etc/profile": (PROFILE, DEFAULT_FILE_MODE),
    }

    return [
        rel_path
        for rel_path, (content, mode) in files.items()
        if write_skeleton_file(root, rel_path, content, mode)
    ]


def stage_rootfs(
    busybox_dir: Path,
    staging_dir: Path,
    skeleton: SkeletonSpec | None = None,
    *,
    clean: bool = False,
) -> StageResult:
    """Assemble a root filesystem staging directory.

    Args:
        busybox_dir: BusyBox `make install` output directory.
        staging_dir: Directory to assemble the root in.
        skeleton: Skeleton settings; defaults when None.
        clean: Remove an existing non-empty staging directory first.

    Returns:
        StageResult describing what was staged.

    Raises:
        StagingError: If inputs are invalid or staging fails.
        PermissionDeniedError: If device nodes cannot be created.
    """
    if skeleton is None:
        skeleton = SkeletonSpec()

    if not busybox_dir.is_dir():
        raise StagingError(f"BusyBox install directory not found: {busybox_dir}")
    busybox_bin = busybox_dir / "bin" / "busybox"
    if not busybox_bin.is_file() or busybox_bin.is_symlink():
        raise StagingError(f"BusyBox binary not found: {busybox_bin}")

    if staging_dir.exists() and any(staging_dir.iterdir()):
        if not clean:
            raise StagingError(
                f"Staging directory is not empty: {staging_dir} (use clean to replace)"
            )
        logger.info("Removing existing staging directory %s", staging_dir)
        shutil.rmtree(staging_dir)

    staging_dir.mkdir(parents=True, exist_ok=True)
    result = StageResult(staging_dir=staging_dir)

    logger.info("Staging BusyBox install %s into %s", busybox_dir, staging_dir)
    copy_install_tree(busybox_dir, staging_dir, result)

    # BusyBox init is looked up at /sbin/init
    init_path = staging_dir / "sbin" / "init"
    if not init_path.exists() and not init_path.is_symlink():
        init_path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink("../bin/busybox", init_path)
        result.copied_symlinks += 1

    result.written_files = write_skeleton(staging_dir, skeleton)

    if skeleton.create_device_nodes:
        result.device_nodes = create_device_nodes(
            staging_dir / "dev", skeleton.device_nodes
        )

    logger.info(
        "Staged %d files, %d symlinks, %d skeleton files, %d device nodes",
        result.copied_files,
        result.copied_symlinks,
        len(result.written_files),
        len(result.device_nodes),
    )
    return result


__all__ = [
    "SKELETON_DIRS",
    "StageResult",
    "copy_install_tree",
    "stage_rootfs",
    "symlink_escapes",
    "write_skeleton",
]
