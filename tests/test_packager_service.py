"""Tests for packager/service.py - packaging service layer.

mke2fs is replaced by a fake that writes a marker into the temporary
image, so these tests exercise everything around the format step:
validation, size limits, atomic replacement and run recording.
"""

import hashlib
import json
import uuid
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from rootfs_pack.config import Settings
from rootfs_pack.db import Base
from rootfs_pack.errors import (
    FormatFailureError,
    PermissionDeniedError,
    SizeExceededError,
    StagingDirNotFoundError,
    StagingError,
)
from rootfs_pack.jobs.schema import BootSpec, PackageJob
from rootfs_pack.packager.mkfs import MkfsResult
from rootfs_pack.packager.models import PackageRun
from rootfs_pack.packager.service import (
    PackagePlan,
    PackageResult,
    get_package_run,
    get_package_runs,
    package,
    package_job,
    plan_package,
)
from rootfs_pack.types import BootPartitionFs, ImageFormat, RunStatus

MIB = 1024 * 1024
MARKER = b"FAKE-EXT-SUPERBLOCK"


def fake_run_mkfs(cmd, env=None, timeout=None):
    """Write a marker into the image file like mke2fs would format it."""
    image = Path(cmd[-2])
    with image.open("r+b") as f:
        f.seek(1024)
        f.write(MARKER)
    return MkfsResult(exit_code=0, output="", command=" ".join(cmd), duration=0.1)


@pytest.fixture
def fake_mkfs():
    """Patch mke2fs lookup, execution and timestamp pinning in the service module."""
    with patch(
        "rootfs_pack.packager.service.find_mke2fs", return_value="/sbin/mke2fs"
    ), patch(
        "rootfs_pack.packager.service.run_mkfs", side_effect=fake_run_mkfs
    ) as mock_run, patch("rootfs_pack.packager.service.pin_image_times"):
        yield mock_run


@pytest.fixture
def settings() -> Settings:
    """Settings with run recording off."""
    return Settings(record_runs=False)


@pytest.fixture
def session():
    """Create an in-memory database session."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


def _leftovers(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir() if p.name.endswith(".tmp"))


class TestPlanPackage:
    """Tests for plan_package function."""

    def test_plan(self, staging_tree: Path, tmp_path: Path) -> None:
        plan = plan_package(staging_tree, tmp_path / "rootfs.ext4", 100 * MIB)

        assert isinstance(plan, PackagePlan)
        assert plan.image_size_bytes == plan.estimate.projected_bytes
        assert plan.image_size_bytes <= 100 * MIB
        assert len(plan.tree_hash) == 64
        assert isinstance(plan.fs_uuid, uuid.UUID)

    def test_uuid_stable_for_same_tree(self, staging_tree: Path, tmp_path: Path) -> None:
        a = plan_package(staging_tree, tmp_path / "a.ext4", 100 * MIB)
        b = plan_package(staging_tree, tmp_path / "b.ext4", 100 * MIB)
        assert a.fs_uuid == b.fs_uuid

    def test_explicit_uuid(self, staging_tree: Path, tmp_path: Path) -> None:
        fixed = uuid.UUID("12345678-1234-5678-1234-567812345678")
        plan = plan_package(staging_tree, tmp_path / "a.ext4", 100 * MIB, fs_uuid=fixed)
        assert plan.fs_uuid == fixed

    def test_missing_console_noted(self, staging_tree: Path, tmp_path: Path) -> None:
        plan = plan_package(staging_tree, tmp_path / "a.ext4", 100 * MIB)
        assert any("/dev/console" in note for note in plan.notes)

    def test_payload_over_limit(self, staging_tree: Path, tmp_path: Path) -> None:
        with pytest.raises(SizeExceededError) as exc_info:
            plan_package(staging_tree, tmp_path / "a.ext4", 1024)
        assert "payload" in exc_info.value.message

    def test_projection_over_limit(self, staging_tree: Path, tmp_path: Path) -> None:
        # payload is a few KiB, the projection is at least 1 MiB
        with pytest.raises(SizeExceededError):
            plan_package(staging_tree, tmp_path / "a.ext4", 512 * 1024)

    def test_fixed_image_size(self, staging_tree: Path, tmp_path: Path) -> None:
        plan = plan_package(
            staging_tree, tmp_path / "a.ext4", 100 * MIB, image_size_bytes=32 * MIB
        )
        assert plan.image_size_bytes == 32 * MIB

    def test_fixed_image_size_too_small(self, sparse_tree, tmp_path: Path) -> None:
        root = sparse_tree(8 * MIB)
        with pytest.raises(SizeExceededError):
            plan_package(root, tmp_path / "a.ext4", 100 * MIB, image_size_bytes=8 * MIB)

    def test_fixed_image_size_over_max(self, staging_tree: Path, tmp_path: Path) -> None:
        with pytest.raises(SizeExceededError, match="fixed image"):
            plan_package(
                staging_tree, tmp_path / "a.ext4", 10 * MIB, image_size_bytes=20 * MIB
            )


class TestPackage:
    """Tests for package function."""

    def test_success(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        out_dir = tmp_path / "out"
        output = out_dir / "rootfs.ext4"

        result = package(staging_tree, output, 100 * MIB, settings=settings)

        assert isinstance(result, PackageResult)
        assert result.success is True
        assert result.run_id is None
        assert output.is_file()
        assert output.stat().st_size == result.image_size_bytes
        assert result.image_size_bytes <= 100 * MIB
        assert result.sha256 == hashlib.sha256(output.read_bytes()).hexdigest()
        assert MARKER in output.read_bytes()[:2048]
        assert _leftovers(out_dir) == []

    def test_manifest_written(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        result = package(staging_tree, output, 100 * MIB, settings=settings)

        assert result.manifest_path == str(tmp_path / "rootfs.ext4.manifest.json")
        manifest = json.loads(Path(result.manifest_path).read_text())
        assert manifest["image"]["sha256"] == result.sha256
        assert manifest["image"]["uuid"] == result.fs_uuid
        assert manifest["limits"]["max_size_bytes"] == 100 * MIB

    def test_manifest_disabled(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        result = package(
            staging_tree,
            tmp_path / "rootfs.ext4",
            100 * MIB,
            write_manifest_file=False,
            settings=settings,
        )
        assert result.manifest_path is None
        assert not (tmp_path / "rootfs.ext4.manifest.json").exists()

    def test_defaults_from_settings(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs
    ) -> None:
        settings = Settings(record_runs=False, fs_type="ext2", max_size_bytes=50 * MIB)
        result = package(staging_tree, tmp_path / "rootfs.ext2", settings=settings)

        assert result.fs_type is ImageFormat.EXT2
        assert result.max_size_bytes == 50 * MIB
        cmd = fake_mkfs.call_args.args[0]
        assert cmd[cmd.index("-t") + 1] == "ext2"

    def test_eighty_mib_tree_under_hundred_mib(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        root = sparse_tree(80 * MIB)
        output = tmp_path / "rootfs.ext4"

        result = package(root, output, 100 * MIB, settings=settings)

        assert output.stat().st_size <= 100 * MIB
        assert result.projected_bytes > 80 * MIB

    def test_ninety_two_mib_tree_under_hundred_mib(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        """A payload under the limit fits once only metadata is added."""
        root = sparse_tree(92 * MIB)
        output = tmp_path / "rootfs.ext4"

        result = package(root, output, 100 * MIB, settings=settings)

        assert result.success is True
        assert 92 * MIB < result.image_size_bytes <= 100 * MIB

    def test_headroom_is_opt_in(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        root = sparse_tree(92 * MIB)
        with pytest.raises(SizeExceededError):
            package(
                root,
                tmp_path / "rootfs.ext4",
                100 * MIB,
                headroom_percent=10,
                settings=settings,
            )

    def test_hundred_twenty_mib_tree_fails(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        root = sparse_tree(120 * MIB)
        output = tmp_path / "rootfs.ext4"

        with pytest.raises(SizeExceededError) as exc_info:
            package(root, output, 100 * MIB, settings=settings)

        assert exc_info.value.error_code == "SIZE_EXCEEDED"
        assert not output.exists()
        fake_mkfs.assert_not_called()

    def test_missing_staging_dir(
        self, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        with pytest.raises(StagingDirNotFoundError):
            package(tmp_path / "missing", output, 100 * MIB, settings=settings)
        assert not output.exists()
        fake_mkfs.assert_not_called()

    def test_empty_staging_dir(
        self, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(StagingDirNotFoundError):
            package(empty, tmp_path / "rootfs.ext4", 100 * MIB, settings=settings)

    def test_format_failure_keeps_existing_output(
        self, staging_tree: Path, tmp_path: Path, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        output.write_bytes(b"previous image")

        with patch(
            "rootfs_pack.packager.service.find_mke2fs", return_value="/sbin/mke2fs"
        ), patch(
            "rootfs_pack.packager.service.run_mkfs",
            side_effect=FormatFailureError("mke2fs failed with exit code 1", exit_code=1),
        ):
            with pytest.raises(FormatFailureError):
                package(staging_tree, output, 100 * MIB, settings=settings)

        assert output.read_bytes() == b"previous image"
        assert _leftovers(tmp_path) == []

    def test_size_failure_keeps_existing_output(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        root = sparse_tree(120 * MIB)
        output = tmp_path / "rootfs.ext4"
        output.write_bytes(b"previous image")

        with pytest.raises(SizeExceededError):
            package(root, output, 100 * MIB, settings=settings)

        assert output.read_bytes() == b"previous image"

    def test_permission_denied_during_format(
        self, staging_tree: Path, tmp_path: Path, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        with patch(
            "rootfs_pack.packager.service.find_mke2fs", return_value="/sbin/mke2fs"
        ), patch(
            "rootfs_pack.packager.service.run_mkfs",
            side_effect=PermissionDeniedError("etc/shadow", action="copy"),
        ):
            with pytest.raises(PermissionDeniedError):
                package(staging_tree, output, 100 * MIB, settings=settings)

        assert not output.exists()
        assert _leftovers(tmp_path) == []

    def test_image_grown_past_limit(
        self, staging_tree: Path, tmp_path: Path, settings: Settings
    ) -> None:
        def grow(cmd, env=None, timeout=None):
            with open(cmd[-2], "r+b") as f:
                f.truncate(3 * MIB)
            return MkfsResult(exit_code=0, output="", command="", duration=0.0)

        output = tmp_path / "rootfs.ext4"
        with patch(
            "rootfs_pack.packager.service.find_mke2fs", return_value="/sbin/mke2fs"
        ), patch("rootfs_pack.packager.service.run_mkfs", side_effect=grow):
            with pytest.raises(SizeExceededError):
                package(staging_tree, output, 2 * MIB, settings=settings)

        assert not output.exists()
        assert _leftovers(tmp_path) == []

    def test_mke2fs_missing(
        self, staging_tree: Path, tmp_path: Path, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        with patch("rootfs_pack.packager.service.find_mke2fs", return_value=None):
            with pytest.raises(FormatFailureError, match="mke2fs not found"):
                package(staging_tree, output, 100 * MIB, settings=settings)
        assert not output.exists()

    def test_creates_output_directory(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "deep" / "er" / "rootfs.ext4"
        package(staging_tree, output, 100 * MIB, settings=settings)
        assert output.is_file()

    def test_output_directory_not_creatable(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings, session
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(FormatFailureError, match="Cannot create image"):
            package(
                staging_tree,
                blocker / "sub" / "rootfs.ext4",
                100 * MIB,
                session=session,
                settings=settings,
            )

        run = session.execute(select(PackageRun)).scalar_one()
        assert run.status == RunStatus.FAILED.value
        assert run.error_type == "FORMAT_FAILURE"
        fake_mkfs.assert_not_called()

    def test_replace_permission_denied(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        output.write_bytes(b"previous image")

        with patch(
            "rootfs_pack.packager.service.os.replace",
            side_effect=PermissionError(13, "Permission denied"),
        ):
            with pytest.raises(PermissionDeniedError):
                package(staging_tree, output, 100 * MIB, settings=settings)

        assert output.read_bytes() == b"previous image"
        assert _leftovers(tmp_path) == []

    def test_pins_timestamps(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        with patch("rootfs_pack.packager.service.pin_image_times") as mock_pin:
            package(
                staging_tree,
                tmp_path / "rootfs.ext4",
                100 * MIB,
                source_date_epoch=1700000000,
                settings=settings,
            )

        image_path, tree = mock_pin.call_args.args
        assert image_path == Path(fake_mkfs.call_args.args[0][-2])
        assert tree == staging_tree
        assert mock_pin.call_args.kwargs["source_date_epoch"] == 1700000000
        assert mock_pin.call_args.kwargs["inode_size"] == 256
        assert mock_pin.call_args.kwargs["debugfs_path"] == "debugfs"

    def test_pin_failure_keeps_existing_output(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        output.write_bytes(b"previous image")

        with patch(
            "rootfs_pack.packager.service.pin_image_times",
            side_effect=FormatFailureError("e2fsck failed with exit code 4", exit_code=4),
        ):
            with pytest.raises(FormatFailureError):
                package(staging_tree, output, 100 * MIB, settings=settings)

        assert output.read_bytes() == b"previous image"
        assert _leftovers(tmp_path) == []

    def test_fixed_image_size(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        result = package(
            staging_tree, output, 100 * MIB, image_size_bytes=16 * MIB, settings=settings
        )
        assert output.stat().st_size == 16 * MIB
        assert result.image_size_bytes == 16 * MIB
        cmd = fake_mkfs.call_args.args[0]
        assert cmd[-1] == str(16 * MIB // 4096)

    def test_reproducible_invocation(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        first = package(staging_tree, output, 100 * MIB, settings=settings)
        second = package(staging_tree, output, 100 * MIB, settings=settings)

        (cmd1,), kw1 = fake_mkfs.call_args_list[0]
        (cmd2,), kw2 = fake_mkfs.call_args_list[1]
        # only the temporary file name differs
        assert cmd1[:-2] == cmd2[:-2]
        assert cmd1[-1] == cmd2[-1]
        assert kw1["env"]["E2FSPROGS_FAKE_TIME"] == kw2["env"]["E2FSPROGS_FAKE_TIME"] == "0"
        assert first.sha256 == second.sha256
        assert first.fs_uuid == second.fs_uuid

    def test_source_date_epoch(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        package(
            staging_tree,
            tmp_path / "rootfs.ext4",
            100 * MIB,
            source_date_epoch=1700000000,
            settings=settings,
        )
        env = fake_mkfs.call_args.kwargs["env"]
        assert env["SOURCE_DATE_EPOCH"] == "1700000000"

    def test_dry_run(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        output = tmp_path / "rootfs.ext4"
        result = package(staging_tree, output, 100 * MIB, settings=settings, dry_run=True)

        assert result.dry_run is True
        assert result.success is False
        assert result.sha256 is None
        assert not output.exists()
        fake_mkfs.assert_not_called()

    def test_boot_window_load_command(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        boot = BootSpec(ram_start="0x8900_0000", ram_end="0x8FE0_0000")
        result = package(
            staging_tree, tmp_path / "rootfs.ext4", 200 * MIB, boot=boot, settings=settings
        )

        assert result.max_size_bytes == 110 * MIB
        assert result.load_command == "fatload mmc 0:1 0x89000000 rootfs.ext4"
        assert any("fatload" in note for note in result.notes)

    def test_boot_ext4_partition_no_mismatch(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        boot = BootSpec(
            ram_start="0x8900_0000",
            ram_end="0x8FE0_0000",
            partition_fs=BootPartitionFs.EXT4,
        )
        result = package(
            staging_tree, tmp_path / "rootfs.ext4", 100 * MIB, boot=boot, settings=settings
        )
        assert result.load_command.startswith("ext4load")
        assert not any("ext4load" in note for note in result.notes)

    def test_small_window_caps_size(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        root = sparse_tree(8 * MIB)
        boot = BootSpec(ram_start=0, ram_end=4 * MIB)
        with pytest.raises(SizeExceededError):
            package(root, tmp_path / "rootfs.ext4", 100 * MIB, boot=boot, settings=settings)


class TestPackageRecording:
    """Tests for PackageRun recording."""

    def test_success_recorded(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings, session
    ) -> None:
        result = package(
            staging_tree,
            tmp_path / "rootfs.ext4",
            100 * MIB,
            session=session,
            settings=settings,
        )

        run = session.get(PackageRun, result.run_id)
        assert run is not None
        assert run.status == RunStatus.SUCCEEDED.value
        assert run.sha256 == result.sha256
        assert run.image_size_bytes == result.image_size_bytes
        assert run.projected_bytes == result.projected_bytes
        assert run.tree_hash == result.tree_hash
        assert run.started_at is not None
        assert run.finished_at is not None

    def test_failure_recorded(
        self, sparse_tree, tmp_path: Path, fake_mkfs, settings: Settings, session
    ) -> None:
        root = sparse_tree(120 * MIB)
        with pytest.raises(SizeExceededError):
            package(root, tmp_path / "rootfs.ext4", 100 * MIB, session=session, settings=settings)

        runs = get_package_runs(session)
        assert len(runs) == 1
        assert runs[0].status == RunStatus.FAILED.value
        assert runs[0].error_type == "SIZE_EXCEEDED"
        assert runs[0].error_message

    def test_dry_run_not_recorded(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings, session
    ) -> None:
        package(
            staging_tree,
            tmp_path / "rootfs.ext4",
            100 * MIB,
            session=session,
            settings=settings,
            dry_run=True,
        )
        assert get_package_runs(session) == []


class TestGetPackageRuns:
    """Tests for get_package_runs and get_package_run."""

    def _add(self, session, output_path: str, status: RunStatus) -> PackageRun:
        run = PackageRun(
            staging_dir="/srv/staging",
            output_path=output_path,
            fs_type="ext4",
            max_size_bytes=100 * MIB,
            status=status.value,
        )
        session.add(run)
        session.flush()
        return run

    def test_filters(self, session) -> None:
        a = self._add(session, "/out/a.ext4", RunStatus.SUCCEEDED)
        self._add(session, "/out/b.ext4", RunStatus.FAILED)
        c = self._add(session, "/out/a.ext4", RunStatus.FAILED)

        assert len(get_package_runs(session)) == 3
        assert [r.id for r in get_package_runs(session, output_path="/out/a.ext4")] == [
            c.id,
            a.id,
        ]
        assert len(get_package_runs(session, status=RunStatus.FAILED)) == 2
        assert len(get_package_runs(session, limit=1)) == 1

    def test_get_by_id(self, session) -> None:
        run = self._add(session, "/out/a.ext4", RunStatus.PENDING)
        assert get_package_run(session, run.id) is run
        assert get_package_run(session, 9999) is None


class TestPackageJob:
    """Tests for package_job function."""

    def test_packages_existing_staging(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        job = PackageJob(
            staging_dir=staging_tree,
            output_path=tmp_path / "rootfs.ext4",
            max_size_bytes=100 * MIB,
            label="evb-root",
        )
        result = package_job(job, settings=settings)

        assert result.success is True
        cmd = fake_mkfs.call_args.args[0]
        assert cmd[cmd.index("-L") + 1] == "evb-root"

    def test_stages_busybox_first(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        job = PackageJob(
            staging_dir=staging_tree,
            output_path=tmp_path / "rootfs.ext4",
            max_size_bytes=100 * MIB,
            busybox_dir=tmp_path / "_install",
        )
        with patch("rootfs_pack.packager.service.stage_rootfs") as mock_stage:
            package_job(job, settings=settings, clean_staging=True)

        mock_stage.assert_called_once_with(
            tmp_path / "_install", staging_tree, job.skeleton, clean=True
        )

    def test_staging_failure_recorded(
        self, staging_tree: Path, tmp_path: Path, fake_mkfs, settings: Settings, session
    ) -> None:
        job = PackageJob(
            staging_dir=tmp_path / "new-staging",
            output_path=tmp_path / "rootfs.ext4",
            max_size_bytes=100 * MIB,
            busybox_dir=tmp_path / "missing-install",
        )

        with pytest.raises(StagingError):
            package_job(job, session=session, settings=settings)

        run = session.execute(select(PackageRun)).scalar_one()
        assert run.status == RunStatus.FAILED.value
        assert run.error_type == "STAGING_FAILED"
        assert "BusyBox install directory not found" in run.error_message
        assert run.output_path == str(tmp_path / "rootfs.ext4")
        fake_mkfs.assert_not_called()

    def test_staging_failure_without_session(
        self, tmp_path: Path, fake_mkfs, settings: Settings
    ) -> None:
        job = PackageJob(
            staging_dir=tmp_path / "new-staging",
            output_path=tmp_path / "rootfs.ext4",
            max_size_bytes=100 * MIB,
            busybox_dir=tmp_path / "missing-install",
        )
        with pytest.raises(StagingError):
            package_job(job, settings=settings)
