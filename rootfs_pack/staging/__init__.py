"""Root filesystem staging module.

This module handles:
- Validating and scanning a staging directory
- Assembling a staging directory from a BusyBox install
- Static device node creation
"""

from rootfs_pack.staging.devices import create_device_node, create_device_nodes
from rootfs_pack.staging.scan import compute_tree_hash, scan_tree, validate_staging_dir
from rootfs_pack.staging.skeleton import StageResult, stage_rootfs, write_skeleton

__all__ = [
    "StageResult",
    "compute_tree_hash",
    "create_device_node",
    "create_device_nodes",
    "scan_tree",
    "stage_rootfs",
    "validate_staging_dir",
    "write_skeleton",
]
