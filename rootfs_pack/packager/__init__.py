"""Filesystem image packaging module.

This module handles:
- Size projection from a scanned staging tree
- Formatting with mke2fs, populating the image from the staging tree
- Atomic replacement of the output image
- Manifests and the packaging run history

Packaging is all-or-nothing: a failed run never leaves a partial image at
the output path and never touches an existing one.
"""

from rootfs_pack.packager.manifest import (
    compute_file_hash,
    generate_manifest,
    manifest_path_for,
    write_manifest,
)
from rootfs_pack.packager.mkfs import (
    MkfsResult,
    compose_mkfs_command,
    compose_mkfs_env,
    derive_image_uuid,
    find_mke2fs,
    get_mke2fs_version,
    run_mkfs,
)
from rootfs_pack.packager.models import PackageRun
from rootfs_pack.packager.service import (
    PackagePlan,
    PackageResult,
    get_package_run,
    get_package_runs,
    package,
    package_job,
    plan_package,
    write_image,
)
from rootfs_pack.packager.sizing import SizeEstimate, estimate_image_size

__all__ = [
    # Models
    "PackageRun",
    # Sizing
    "SizeEstimate",
    "estimate_image_size",
    # Formatting
    "MkfsResult",
    "compose_mkfs_command",
    "compose_mkfs_env",
    "derive_image_uuid",
    "find_mke2fs",
    "get_mke2fs_version",
    "run_mkfs",
    # Manifests
    "compute_file_hash",
    "generate_manifest",
    "manifest_path_for",
    "write_manifest",
    # Service
    "PackagePlan",
    "PackageResult",
    "get_package_run",
    "get_package_runs",
    "package",
    "package_job",
    "plan_package",
    "write_image",
]
