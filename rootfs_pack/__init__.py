"""rootfs-pack - package BusyBox root filesystems into bounded-size images.

This package stages a BusyBox install tree into a root filesystem layout and
formats it into a single ext2/ext3/ext4 image that fits a board's fixed RAM
load window.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
