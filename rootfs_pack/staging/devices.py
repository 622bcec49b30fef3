"""Static device node creation.

Static nodes let the kernel open /dev/console before init runs mdev.
Creating them needs CAP_MKNOD, which is the one step of building a root
filesystem that requires elevated privilege.
"""

from __future__ import annotations

import errno
import logging
import os
import stat
from collections.abc import Iterable
from pathlib import Path

from rootfs_pack.errors import PermissionDeniedError, StagingError
from rootfs_pack.jobs.schema import DeviceNodeSpec

logger = logging.getLogger(__name__)


def device_type_bits(kind: str) -> int:
    """Return the st_mode file type bits for a device kind ('c' or 'b')."""
    return stat.S_IFCHR if kind == "c" else stat.S_IFBLK


def node_matches(path: Path, spec: DeviceNodeSpec) -> bool:
    """Return True if ``path`` already is the node described by ``spec``."""
    try:
        st = path.lstat()
    except FileNotFoundError:
        return False
    if stat.S_IFMT(st.st_mode) != device_type_bits(spec.kind):
        return False
    return os.major(st.st_rdev) == spec.major and os.minor(st.st_rdev) == spec.minor


def create_device_node(dev_dir: Path, spec: DeviceNodeSpec) -> bool:
    """Create one device node below ``dev_dir``.

    Args:
        dev_dir: The staging tree's /dev directory.
        spec: Node to create.

    Returns:
        True if the node was created, False if a matching node already existed.

    Raises:
        PermissionDeniedError: If the process lacks the privilege to mknod.
        StagingError: If a different entry occupies the path or mknod fails.
    """
    path = dev_dir / spec.name
    if node_matches(path, spec):
        logger.debug("Device node exists: %s", path)
        return False
    if path.exists() or path.is_symlink():
        raise StagingError(f"Cannot create device node, path is taken: {path}")

    path.parent.mkdir(parents=True, exist_ok=True)
    mode = spec.mode_bits | device_type_bits(spec.kind)
    try:
        os.mknod(path, mode, os.makedev(spec.major, spec.minor))
        # mknod is subject to the umask
        os.chmod(path, spec.mode_bits)
    except PermissionError as e:
        logger.error("Permission denied creating device node %s", path)
        raise PermissionDeniedError(str(path), action="create device node") from e
    except OSError as e:
        if e.errno == errno.EPERM:
            raise PermissionDeniedError(str(path), action="create device node") from e
        raise StagingError(f"Failed to create device node {path}: {e}") from e

    logger.debug(
        "Created device node %s (%s %d:%d, mode=%s)",
        path,
        spec.kind,
        spec.major,
        spec.minor,
        spec.mode,
    )
    return True


def create_device_nodes(dev_dir: Path, specs: Iterable[DeviceNodeSpec]) -> list[Path]:
    """Create all nodes of a device table.

    Args:
        dev_dir: The staging tree's /dev directory.
        specs: Device table.

    Returns:
        Paths of the nodes that were created.

    Raises:
        PermissionDeniedError: On the first node that cannot be created
            for lack of privilege.
    """
    dev_dir.mkdir(parents=True, exist_ok=True)
    created = [dev_dir / spec.name for spec in specs if create_device_node(dev_dir, spec)]
    logger.info("Created %d device node(s) in %s", len(created), dev_dir)
    return created


__all__ = [
    "create_device_node",
    "create_device_nodes",
    "device_type_bits",
    "node_matches",
]
