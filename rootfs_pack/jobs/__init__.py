"""Packaging job definitions, validation and file I/O."""

from rootfs_pack.jobs.io import job_to_dict, job_to_yaml_string, load_job, parse_job_data
from rootfs_pack.jobs.schema import BootSpec, DeviceNodeSpec, PackageJob, SkeletonSpec

__all__ = [
    "BootSpec",
    "DeviceNodeSpec",
    "PackageJob",
    "SkeletonSpec",
    "job_to_dict",
    "job_to_yaml_string",
    "load_job",
    "parse_job_data",
]
