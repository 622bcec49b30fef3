"""Packaging run ORM model.

A PackageRun records one attempt to package a staging directory into an
image: its inputs, the projected and actual size, and how it ended.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from rootfs_pack.db import Base
from rootfs_pack.types import RunStatus


class PackageRun(Base):
    """ORM model for packaging run records.

    Attributes:
        id: Primary key.
        staging_dir: Staging directory that was packaged.
        output_path: Image path that was (or would have been) written.
        fs_type: Image filesystem format.
        label: Volume label.
        max_size_bytes: Size limit the run was checked against.
        projected_bytes: Projected image size.
        image_size_bytes: Size of the written image.
        sha256: SHA-256 of the written image.
        tree_hash: Hash of the staging tree.
        fs_uuid: Filesystem UUID.
        status: Run status (pending, running, succeeded, failed).
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when formatting started.
        finished_at: Timestamp when the run finished.
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
    """

    __tablename__ = "package_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Inputs
    staging_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    output_path: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    fs_type: Mapped[str] = mapped_column(String(10), nullable=False)
    label: Mapped[str | None] = mapped_column(String(16), nullable=True)
    max_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Outputs
    projected_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    image_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tree_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fs_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_package_runs_output_status", "output_path", "status"),)

    def __repr__(self) -> str:
        """Return string representation of PackageRun."""
        return (
            f"<PackageRun(id={self.id}, output_path='{self.output_path}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Error code of the failure.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message


__all__ = ["PackageRun"]
