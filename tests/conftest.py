"""Shared fixtures for rootfs_pack tests."""

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_env(tmp_path_factory, monkeypatch):
    """Keep tests away from the user's database and .env file."""
    db_dir = tmp_path_factory.mktemp("db")
    monkeypatch.setenv("ROOTFS_PACK_DB_URL", f"sqlite:///{db_dir}/runs.sqlite")
    for key in list(os.environ):
        if key.startswith("ROOTFS_PACK_") and key != "ROOTFS_PACK_DB_URL":
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))


@pytest.fixture
def staging_tree(tmp_path: Path) -> Path:
    """Create a small root filesystem staging tree."""
    root = tmp_path / "staging"
    (root / "bin").mkdir(parents=True)
    (root / "etc" / "init.d").mkdir(parents=True)
    (root / "dev").mkdir()
    (root / "bin" / "busybox").write_bytes(b"\x7fELF" + b"\0" * 4092)
    (root / "bin" / "busybox").chmod(0o755)
    (root / "bin" / "sh").symlink_to("busybox")
    (root / "etc" / "inittab").write_text("::sysinit:/etc/init.d/rcS\n")
    (root / "etc" / "init.d" / "rcS").write_text("#!/bin/sh\n")
    return root


@pytest.fixture
def sparse_tree(tmp_path: Path):
    """Return a factory for staging trees holding one sparse file."""

    def _make(size_bytes: int, name: str = "staging") -> Path:
        root = tmp_path / name
        (root / "data").mkdir(parents=True)
        with (root / "data" / "blob.bin").open("wb") as f:
            f.truncate(size_bytes)
        return root

    return _make
