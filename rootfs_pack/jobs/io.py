"""Job file loading and export.

This module provides helpers for loading packaging jobs from YAML/JSON
files and rendering jobs back to YAML.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from rootfs_pack.jobs.schema import PackageJob


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid YAML or not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_job_data(
    data: dict[str, Any],
    overrides: dict[str, Any] | None = None,
    defaults: dict[str, Any] | None = None,
) -> PackageJob:
    """Validate job data layered between defaults and overrides.

    Args:
        data: Dictionary containing job data.
        overrides: Values that take precedence (e.g., CLI flags); None values
            are ignored.
        defaults: Values used when neither data nor overrides set a key
            (e.g., settings).

    Returns:
        Validated PackageJob.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    merged = dict(defaults or {})
    merged.update(data)
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})
    return PackageJob.model_validate(merged)


def load_job(
    path: Path,
    overrides: dict[str, Any] | None = None,
    defaults: dict[str, Any] | None = None,
) -> PackageJob:
    """Load and validate a job from a YAML or JSON file.

    Relative paths in the file are resolved against the file's directory.
    Override values are used as given.

    Args:
        path: Path to a .yaml/.yml or .json file.
        overrides: Values that take precedence over the file.
        defaults: Values used when the file does not set a key.

    Returns:
        Validated PackageJob.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the extension is unsupported or content is invalid.
        pydantic.ValidationError: If data does not match schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported job file extension: {path.suffix}")

    base_path = path.parent.resolve()
    for key in ("staging_dir", "output_path", "busybox_dir"):
        value = data.get(key)
        if value is not None and not Path(value).is_absolute():
            data[key] = str(base_path / value)

    return parse_job_data(data, overrides, defaults)


def job_to_dict(job: PackageJob) -> dict[str, Any]:
    """Convert a job to a plain dict suitable for YAML/JSON."""
    return job.model_dump(mode="json", exclude_none=True)


def job_to_yaml_string(job: PackageJob) -> str:
    """Render a job as a YAML string."""
    return yaml.safe_dump(job_to_dict(job), sort_keys=False, default_flow_style=False)


__all__ = [
    "job_to_dict",
    "job_to_yaml_string",
    "load_job",
    "load_json",
    "load_yaml",
    "parse_job_data",
]
