"""Pydantic models for packaging job validation.

A job replaces hand-edited path variables in a packaging script with an
explicit, validated configuration object: where the staging tree is, where
the image goes, how large it may get, and optionally how to stage the tree
from a BusyBox install and how the boot loader will load it.
"""

import re
from pathlib import Path
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rootfs_pack.boot import RamWindow, parse_address
from rootfs_pack.types import BootPartitionFs, ImageFormat, parse_size

# ext2/3/4 volume labels are at most 16 bytes
LABEL_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,16}$")
DEVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+(/[A-Za-z0-9_.\-]+)*$")
TTY_PATTERN = re.compile(r"^tty[A-Za-z0-9]*$")


class DeviceNodeSpec(BaseModel):
    """Schema for a static device node under /dev.

    Attributes:
        name: Path below /dev (e.g., 'console', 'mtd/0').
        kind: 'c' for character, 'b' for block device.
        major: Major device number.
        minor: Minor device number.
        mode: Permission bits (octal string, e.g., '0600').
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Path below /dev")
    kind: Literal["c", "b"] = Field(default="c", description="Device type")
    major: int = Field(ge=0, le=4095, description="Major number")
    minor: int = Field(ge=0, le=1048575, description="Minor number")
    mode: str = Field(default="0600", description="Permission bits (octal string)")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is a relative path without traversal."""
        if not DEVICE_NAME_PATTERN.match(v) or ".." in v.split("/"):
            raise ValueError(f"invalid device node name '{v}'")
        return v

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate mode is a valid octal string."""
        if not re.match(r"^0?[0-7]{3,4}$", v):
            raise ValueError(
                f"mode must be a valid octal string (e.g., '0600'), got '{v}'"
            )
        return v

    @property
    def mode_bits(self) -> int:
        """Permission bits as int."""
        return int(self.mode, 8)


DEFAULT_DEVICE_NODES: list[DeviceNodeSpec] = [
    DeviceNodeSpec(name="console", kind="c", major=5, minor=1, mode="0600"),
    DeviceNodeSpec(name="null", kind="c", major=1, minor=3, mode="0666"),
    DeviceNodeSpec(name="zero", kind="c", major=1, minor=5, mode="0666"),
    DeviceNodeSpec(name="random", kind="c", major=1, minor=8, mode="0666"),
    DeviceNodeSpec(name="urandom", kind="c", major=1, minor=9, mode="0666"),
    DeviceNodeSpec(name="tty", kind="c", major=5, minor=0, mode="0666"),
    DeviceNodeSpec(name="ttyS0", kind="c", major=4, minor=64, mode="0620"),
]


class SkeletonSpec(BaseModel):
    """Schema for the root filesystem skeleton written around BusyBox.

    Attributes:
        hostname: Written to /etc/hostname.
        console: Serial console tty that gets a login shell in /etc/inittab.
        baud_rate: Console baud rate for getty.
        create_device_nodes: Create static nodes under /dev (needs privilege).
        device_nodes: Device table; defaults to a minimal console set.
    """

    model_config = ConfigDict(extra="forbid")

    hostname: Annotated[str, Field(min_length=1, max_length=64)] = "busybox"
    console: str = Field(default="ttyS0", description="Serial console device")
    baud_rate: int = Field(default=115200, gt=0, description="Console baud rate")
    create_device_nodes: bool = Field(
        default=False, description="Create static device nodes with mknod"
    )
    device_nodes: list[DeviceNodeSpec] = Field(
        default_factory=lambda: [n.model_copy() for n in DEFAULT_DEVICE_NODES]
    )

    @field_validator("console")
    @classmethod
    def validate_console(cls, v: str) -> str:
        """Validate console names a tty device."""
        if not TTY_PATTERN.match(v):
            raise ValueError(f"console must be a tty device name, got '{v}'")
        return v


class BootSpec(BaseModel):
    """Schema for how the boot loader loads the image.

    Attributes:
        ram_start: First byte of the RAM load window (e.g., '0x8900_0000').
        ram_end: End of the RAM load window, exclusive.
        partition_fs: Filesystem of the partition holding the image file.
        interface: Boot loader storage interface.
        device_part: Device and partition, '<dev>:<part>'.
    """

    model_config = ConfigDict(extra="forbid")

    ram_start: str | int = Field(description="Start address of the RAM window")
    ram_end: str | int = Field(description="End address of the RAM window")
    partition_fs: BootPartitionFs = Field(default=BootPartitionFs.FAT)
    interface: str = Field(default="mmc")
    device_part: str = Field(default="0:1", pattern=r"^\d+(:\d+)?$")

    @field_validator("ram_start", "ram_end")
    @classmethod
    def validate_address(cls, v: str | int) -> str | int:
        """Validate addresses parse."""
        parse_address(v)
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "BootSpec":
        """Validate the window is not empty."""
        RamWindow.parse(self.ram_start, self.ram_end)
        return self

    @property
    def window(self) -> RamWindow:
        """The RAM load window."""
        return RamWindow.parse(self.ram_start, self.ram_end)


class PackageJob(BaseModel):
    """Complete packaging job.

    Attributes:
        staging_dir: Root filesystem staging directory.
        output_path: Image file to write (replaced atomically).
        max_size_bytes: Hard upper bound for the image size.
        fs_type: Image filesystem format.
        label: Volume label.
        image_size_bytes: Fixed image size; projected size when unset.
        block_size: Filesystem block size.
        inode_size: On-disk inode size.
        journal: Keep a journal on ext4 images (ext3 always has one).
        headroom_percent: Extra free space in percent; none by default since
            the image is mounted read-only.
        uuid: Filesystem UUID; derived from the tree hash when unset.
        source_date_epoch: Timestamp pinned into the image.
        busybox_dir: BusyBox install dir; when set the staging dir is
            assembled from it before packaging.
        skeleton: Skeleton files written around BusyBox.
        boot: RAM window and boot loader settings.
        write_manifest: Write a JSON manifest next to the image.
    """

    model_config = ConfigDict(extra="forbid")

    staging_dir: Path
    output_path: Path
    max_size_bytes: int = Field(gt=0)
    fs_type: ImageFormat = ImageFormat.EXT4
    label: str = "rootfs"
    image_size_bytes: int | None = Field(default=None, gt=0)
    block_size: Literal[1024, 2048, 4096] = 4096
    inode_size: Literal[128, 256] = 256
    journal: bool = False
    headroom_percent: int = Field(default=0, ge=0, le=100)
    uuid: UUID | None = None
    source_date_epoch: int = Field(default=0, ge=0)
    busybox_dir: Path | None = None
    skeleton: SkeletonSpec = Field(default_factory=SkeletonSpec)
    boot: BootSpec | None = None
    write_manifest: bool = True

    @field_validator("max_size_bytes", "image_size_bytes", mode="before")
    @classmethod
    def parse_sizes(cls, v: object) -> object:
        """Accept sizes with binary suffixes ('100MiB')."""
        if isinstance(v, str):
            return parse_size(v)
        return v

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str) -> str:
        """Validate label fits an ext volume label."""
        if not LABEL_PATTERN.match(v):
            raise ValueError(
                f"label must match pattern {LABEL_PATTERN.pattern}, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_sizes(self) -> "PackageJob":
        """Validate that a fixed image size respects the maximum."""
        if self.image_size_bytes is not None:
            if self.image_size_bytes > self.max_size_bytes:
                raise ValueError(
                    f"image_size_bytes ({self.image_size_bytes}) exceeds "
                    f"max_size_bytes ({self.max_size_bytes})"
                )
            if self.image_size_bytes % self.block_size:
                raise ValueError(
                    f"image_size_bytes must be a multiple of block_size "
                    f"({self.block_size})"
                )
        return self


__all__ = [
    "DEFAULT_DEVICE_NODES",
    "BootSpec",
    "DeviceNodeSpec",
    "PackageJob",
    "SkeletonSpec",
]
