"""Staging tree scanning and hashing.

This module handles:
- Validating that a staging directory exists and is non-empty
- Walking the tree without following symlinks to collect size statistics
- Computing a deterministic hash of the tree (paths, modes, owners,
  contents, symlink targets and device numbers)
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from pathlib import Path

from rootfs_pack.errors import PermissionDeniedError, StagingDirNotFoundError
from rootfs_pack.types import EntryKind, TreeStats

logger = logging.getLogger(__name__)

# Symlink targets shorter than this are stored inside the inode (fast symlinks)
INLINE_SYMLINK_MAX = 60

# ext directory entry header: inode(4) + rec_len(2) + name_len(1) + file_type(1)
DIRENT_HEADER_BYTES = 8

HASH_CHUNK_SIZE = 64 * 1024


def validate_staging_dir(staging_dir: Path) -> None:
    """Check that a staging directory exists, is a directory and is non-empty.

    Args:
        staging_dir: Path to validate.

    Raises:
        StagingDirNotFoundError: If any check fails.
        PermissionDeniedError: If the directory cannot be listed.
    """
    if not staging_dir.exists():
        raise StagingDirNotFoundError(str(staging_dir))
    if not staging_dir.is_dir():
        raise StagingDirNotFoundError(str(staging_dir), reason="is not a directory")
    try:
        with os.scandir(staging_dir) as it:
            empty = next(it, None) is None
    except PermissionError as e:
        raise PermissionDeniedError(str(staging_dir), action="list") from e
    if empty:
        raise StagingDirNotFoundError(str(staging_dir), reason="is empty")


def classify_mode(mode: int) -> EntryKind:
    """Classify an ``st_mode`` value.

    Args:
        mode: Raw st_mode from lstat.

    Returns:
        EntryKind for the mode.
    """
    if stat.S_ISLNK(mode):
        return EntryKind.SYMLINK
    if stat.S_ISDIR(mode):
        return EntryKind.DIRECTORY
    if stat.S_ISREG(mode):
        return EntryKind.FILE
    if stat.S_ISCHR(mode):
        return EntryKind.CHAR_DEVICE
    if stat.S_ISBLK(mode):
        return EntryKind.BLOCK_DEVICE
    if stat.S_ISFIFO(mode):
        return EntryKind.FIFO
    return EntryKind.SOCKET


def _dirent_size(name: str) -> int:
    # rec_len is padded to a 4 byte boundary
    length = DIRENT_HEADER_BYTES + len(name.encode("utf-8", "surrogateescape"))
    return (length + 3) & ~3


def scan_tree(staging_dir: Path) -> TreeStats:
    """Walk a staging tree and collect statistics used for size projection.

    Symlinks are never followed. Regular files must be readable and
    directories must be listable, since the format step copies them.

    Args:
        staging_dir: Root of the staging tree.

    Returns:
        TreeStats for the tree.

    Raises:
        PermissionDeniedError: If an entry cannot be read.
    """
    stats = TreeStats()
    root_st = staging_dir.lstat()
    stats.owners.add((root_st.st_uid, root_st.st_gid))

    def _on_error(err: OSError) -> None:
        if isinstance(err, PermissionError):
            raise PermissionDeniedError(str(err.filename), action="list") from err
        raise err

    for dirpath, dirnames, filenames in os.walk(staging_dir, onerror=_on_error):
        current = Path(dirpath)
        rel_dir = current.relative_to(staging_dir).as_posix()
        # "." and ".." entries
        entry_bytes = _dirent_size(".") + _dirent_size("..")

        for name in sorted(dirnames + filenames):
            path = current / name
            st = path.lstat()
            kind = classify_mode(st.st_mode)
            entry_bytes += _dirent_size(name)
            stats.owners.add((st.st_uid, st.st_gid))

            if kind is EntryKind.DIRECTORY:
                stats.directories += 1
                if not os.access(path, os.R_OK | os.X_OK):
                    raise PermissionDeniedError(str(path), action="list")
            elif kind is EntryKind.FILE:
                stats.files += 1
                stats.total_bytes += st.st_size
                stats.file_sizes.append(st.st_size)
                if not os.access(path, os.R_OK):
                    raise PermissionDeniedError(str(path), action="read")
            elif kind is EntryKind.SYMLINK:
                stats.symlinks += 1
                target_len = len(os.readlink(path))
                stats.total_bytes += target_len
                if target_len >= INLINE_SYMLINK_MAX:
                    stats.long_symlinks += 1
            else:
                stats.special += 1
                if kind in (EntryKind.CHAR_DEVICE, EntryKind.BLOCK_DEVICE):
                    stats.device_nodes.append(path.relative_to(staging_dir).as_posix())

        stats.dir_entry_bytes[rel_dir] = entry_bytes

    logger.debug(
        "Scanned %s: %d files, %d dirs, %d symlinks, %d special, %d bytes",
        staging_dir,
        stats.files,
        stats.directories,
        stats.symlinks,
        stats.special,
        stats.total_bytes,
    )
    return stats


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over, for every entry in sorted path order:
    - Path relative to the directory
    - Entry kind, permission bits (including setuid/setgid/sticky), uid, gid
    - File contents, symlink target, or device major/minor

    Timestamps are excluded; the image pins them separately.

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        st = path.lstat()
        kind = classify_mode(st.st_mode)
        rel_path = path.relative_to(directory).as_posix()

        # Hash: path\0kind\0mode\0uid:gid\0payload\0
        hasher.update(rel_path.encode("utf-8", "surrogateescape"))
        hasher.update(b"\0")
        hasher.update(kind.value.encode())
        hasher.update(b"\0")
        hasher.update(f"{stat.S_IMODE(st.st_mode):o}".encode())
        hasher.update(b"\0")
        hasher.update(f"{st.st_uid}:{st.st_gid}".encode())
        hasher.update(b"\0")

        if kind is EntryKind.FILE:
            with path.open("rb") as f:
                while chunk := f.read(HASH_CHUNK_SIZE):
                    hasher.update(chunk)
        elif kind is EntryKind.SYMLINK:
            hasher.update(os.fsencode(os.readlink(path)))
        elif kind in (EntryKind.CHAR_DEVICE, EntryKind.BLOCK_DEVICE):
            hasher.update(f"{os.major(st.st_rdev)},{os.minor(st.st_rdev)}".encode())
        hasher.update(b"\0")

    return hasher.hexdigest()


__all__ = [
    "DIRENT_HEADER_BYTES",
    "INLINE_SYMLINK_MAX",
    "classify_mode",
    "compute_tree_hash",
    "scan_tree",
    "validate_staging_dir",
]
