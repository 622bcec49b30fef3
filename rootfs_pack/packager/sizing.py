"""Projected image size computation.

The projection is block-accurate for the payload and conservative for
filesystem metadata, so that a tree which passes the check always fits in
an image of the projected size.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from rootfs_pack.types import ImageFormat, TreeStats

MIB = 1024 * 1024

# Inodes 1-10 are reserved on ext filesystems, 11 is lost+found
RESERVED_INODES = 11
# Extra free inodes kept on top of the entry count
INODE_RESERVE_PERCENT = 10

# Smallest journal mke2fs accepts, in blocks
MIN_JOURNAL_BLOCKS = 1024

# ext2/ext3 block map: 12 direct pointers in the inode
DIRECT_BLOCKS = 12

# Superblock/boot block slack, group descriptors, bitmaps
FIXED_OVERHEAD_BLOCKS = 16


@dataclass
class SizeEstimate:
    """Breakdown of a projected image size.

    Attributes:
        block_size: Filesystem block size in bytes.
        data_blocks: Blocks for regular file data (including indirect blocks).
        dir_blocks: Blocks for directory entries (root and lost+found included).
        symlink_blocks: Blocks for symlinks stored outside the inode.
        inode_count: Number of inodes to allocate.
        inode_table_blocks: Blocks taken by the inode tables.
        journal_blocks: Blocks reserved for the journal.
        overhead_blocks: Superblock copies, group descriptors and bitmaps.
        headroom_blocks: Free space added on top.
        payload_bytes: Logical payload size (file sizes + symlink targets).
        projected_bytes: Total image size in bytes, rounded up to 1 MiB.
    """

    block_size: int
    data_blocks: int
    dir_blocks: int
    symlink_blocks: int
    inode_count: int
    inode_table_blocks: int
    journal_blocks: int
    overhead_blocks: int
    headroom_blocks: int
    payload_bytes: int
    projected_bytes: int

    @property
    def total_blocks(self) -> int:
        """Image size in blocks."""
        return self.projected_bytes // self.block_size


def uses_journal(fs_type: ImageFormat, journal: bool) -> bool:
    """Return True if the image carries a journal.

    ext3 always has one. ext4 only when requested. ext2 never.
    """
    if fs_type is ImageFormat.EXT3:
        return True
    if fs_type is ImageFormat.EXT2:
        return False
    return journal


def file_blocks(size: int, block_size: int, fs_type: ImageFormat) -> int:
    """Blocks needed to store a regular file of ``size`` bytes.

    ext4 uses extents stored in the inode for the files a rootfs holds.
    ext2/ext3 need indirect blocks past the twelve direct pointers.
    """
    blocks = math.ceil(size / block_size)
    if fs_type is ImageFormat.EXT4 or blocks <= DIRECT_BLOCKS:
        return blocks

    pointers = block_size // 4
    remaining = blocks - DIRECT_BLOCKS
    # single indirect
    indirect = 1
    remaining -= pointers
    if remaining > 0:
        # double indirect: one top block plus one per `pointers` data blocks
        indirect += 1 + math.ceil(min(remaining, pointers * pointers) / pointers)
        remaining -= pointers * pointers
    if remaining > 0:
        # triple indirect
        second_level = math.ceil(remaining / (pointers * pointers))
        indirect += 1 + second_level + math.ceil(remaining / pointers)
    return blocks + indirect


def estimate_image_size(
    stats: TreeStats,
    *,
    fs_type: ImageFormat = ImageFormat.EXT4,
    block_size: int = 4096,
    inode_size: int = 256,
    journal: bool = False,
    headroom_percent: int = 0,
) -> SizeEstimate:
    """Project the size of an image built from a scanned tree.

    Args:
        stats: Scan result of the staging directory.
        fs_type: Image filesystem format.
        block_size: Filesystem block size in bytes.
        inode_size: On-disk inode size in bytes.
        journal: Whether an ext4 image carries a journal.
        headroom_percent: Free space added on top of the subtotal.

    Returns:
        SizeEstimate with the projected size.
    """
    data_blocks = sum(file_blocks(s, block_size, fs_type) for s in stats.file_sizes)

    # Every directory takes at least one block; lost+found is created with 4
    dir_blocks = sum(
        max(1, math.ceil(entry_bytes / block_size))
        for entry_bytes in stats.dir_entry_bytes.values()
    )
    dir_blocks += max(4, math.ceil(16384 / block_size))

    symlink_blocks = stats.long_symlinks

    inode_count = stats.entries + RESERVED_INODES
    inode_count += math.ceil(inode_count * INODE_RESERVE_PERCENT / 100)
    inode_table_blocks = math.ceil(inode_count * inode_size / block_size)

    journal_blocks = MIN_JOURNAL_BLOCKS if uses_journal(fs_type, journal) else 0

    subtotal = (
        data_blocks + dir_blocks + symlink_blocks + inode_table_blocks + journal_blocks
    )

    # One block group per 8 * block_size blocks: superblock backup,
    # descriptors, two bitmaps
    blocks_per_group = 8 * block_size
    groups = max(1, math.ceil(subtotal / blocks_per_group))
    overhead_blocks = FIXED_OVERHEAD_BLOCKS + groups * 4

    headroom_blocks = math.ceil(
        (subtotal + overhead_blocks) * headroom_percent / 100
    )

    total_bytes = (subtotal + overhead_blocks + headroom_blocks) * block_size
    projected_bytes = max(MIB, math.ceil(total_bytes / MIB) * MIB)

    return SizeEstimate(
        block_size=block_size,
        data_blocks=data_blocks,
        dir_blocks=dir_blocks,
        symlink_blocks=symlink_blocks,
        inode_count=inode_count,
        inode_table_blocks=inode_table_blocks,
        journal_blocks=journal_blocks,
        overhead_blocks=overhead_blocks,
        headroom_blocks=headroom_blocks,
        payload_bytes=stats.total_bytes,
        projected_bytes=projected_bytes,
    )


__all__ = [
    "MIB",
    "MIN_JOURNAL_BLOCKS",
    "SizeEstimate",
    "estimate_image_size",
    "file_blocks",
    "uses_journal",
]
