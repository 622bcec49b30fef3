"""Image hashing and manifest generation.

This module handles:
- Computing the SHA-256 of a produced image
- Generating a JSON manifest describing the image and its inputs
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 1024 * 1024


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def manifest_path_for(image_path: Path) -> Path:
    """Return the manifest path that accompanies an image."""
    return image_path.with_name(image_path.name + MANIFEST_SUFFIX)


def generate_manifest(
    image_path: Path,
    *,
    size_bytes: int,
    sha256: str,
    fs_type: str,
    label: str,
    fs_uuid: str,
    max_size_bytes: int,
    projected_bytes: int,
    tree_hash: str,
    staging_dir: Path,
    source_date_epoch: int,
    load_command: str | None = None,
) -> dict[str, Any]:
    """Generate an image manifest.

    The manifest contains:
    - Image file name, size, hash and filesystem parameters
    - The size limit it was checked against
    - The staging tree hash and pinned timestamp
    - Optional boot loader load command hint

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "image": {
            "filename": image_path.name,
            "size_bytes": size_bytes,
            "sha256": sha256,
            "fs_type": fs_type,
            "label": label,
            "uuid": fs_uuid,
        },
        "limits": {
            "max_size_bytes": max_size_bytes,
            "projected_bytes": projected_bytes,
            "free_bytes": max_size_bytes - size_bytes,
        },
        "source": {
            "staging_dir": str(staging_dir),
            "tree_hash": tree_hash,
            "source_date_epoch": source_date_epoch,
        },
    }

    if load_command:
        manifest["boot"] = {"load_command": load_command}

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_SUFFIX",
    "compute_file_hash",
    "generate_manifest",
    "manifest_path_for",
    "write_manifest",
]
