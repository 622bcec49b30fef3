"""Tests for packager/manifest.py - image hashes and manifests."""

import hashlib
import json
from pathlib import Path

from rootfs_pack.packager.manifest import (
    compute_file_hash,
    generate_manifest,
    manifest_path_for,
    write_manifest,
)


def _manifest(tmp_path: Path, **kwargs) -> dict:
    params = {
        "size_bytes": 1024,
        "sha256": "ab" * 32,
        "fs_type": "ext4",
        "label": "rootfs",
        "fs_uuid": "12345678-1234-5678-1234-567812345678",
        "max_size_bytes": 4096,
        "projected_bytes": 1024,
        "tree_hash": "cd" * 32,
        "staging_dir": tmp_path / "staging",
        "source_date_epoch": 0,
    }
    params.update(kwargs)
    return generate_manifest(tmp_path / "rootfs.ext4", **params)


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_matches_hashlib(self, tmp_path: Path) -> None:
        f = tmp_path / "rootfs.ext4"
        content = b"x" * 5000
        f.write_bytes(content)
        assert compute_file_hash(f, chunk_size=1024) == hashlib.sha256(content).hexdigest()


class TestManifestPathFor:
    """Tests for manifest_path_for function."""

    def test_suffix(self) -> None:
        assert manifest_path_for(Path("/out/rootfs.ext4")) == Path(
            "/out/rootfs.ext4.manifest.json"
        )


class TestGenerateManifest:
    """Tests for generate_manifest function."""

    def test_sections(self, tmp_path: Path) -> None:
        manifest = _manifest(tmp_path)

        assert manifest["version"] == "1.0"
        assert manifest["image"]["filename"] == "rootfs.ext4"
        assert manifest["image"]["fs_type"] == "ext4"
        assert manifest["limits"]["free_bytes"] == 3072
        assert manifest["source"]["tree_hash"] == "cd" * 32
        assert "boot" not in manifest

    def test_boot_load_command(self, tmp_path: Path) -> None:
        manifest = _manifest(
            tmp_path,
            load_command="fatload mmc 0:1 0x89000000 rootfs.ext4",
        )
        assert manifest["boot"]["load_command"].startswith("fatload")


class TestWriteManifest:
    """Tests for write_manifest function."""

    def test_writes_json(self, tmp_path: Path) -> None:
        manifest = _manifest(tmp_path)
        path = write_manifest(manifest, tmp_path / "out" / "rootfs.ext4.manifest.json")

        assert path.exists()
        assert json.loads(path.read_text()) == json.loads(json.dumps(manifest))
