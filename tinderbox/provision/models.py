"""Provisioning ORM models.

This module defines the ProvisioningRecord model, the run history of flash
attempts made from this host.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from tinderbox.db import Base
from tinderbox.types import RunStatus


class ProvisioningRecord(Base):
    """ORM model for one provisioning run.

    Attributes:
        id: Primary key.
        variant: Detected hardware variant label.
        os_device: OS slot flashed on the module (e.g., 'nvme0n1').
        data_device: DATA slot left for first boot.
        source_dir: Toolkit source directory.
        work_dir: Run-owned work directory (removed at exit).
        log_path: Per-run flash log.
        diagnostics_path: Diagnostics dump written on failure.
        requested_at: When the run record was created.
        started_at: When the flash tool started.
        finished_at: When the run finished.
        status: pending, running, succeeded, failed or watchdog_abort.
        tool_exit_code: Exit status of the flash tool itself.
        error_type: Error category if the run failed.
        error_message: Error details or watchdog reason.
    """

    __tablename__ = "provisioning_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Target
    variant: Mapped[str | None] = mapped_column(String(100), nullable=True)
    os_device: Mapped[str | None] = mapped_column(String(100), nullable=True)
    data_device: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Paths
    source_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    work_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    diagnostics_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outcome
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    tool_exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_provisioning_runs_status_started", "status", "started_at"),)

    def __repr__(self) -> str:
        """Return string representation of ProvisioningRecord."""
        return (
            f"<ProvisioningRecord(id={self.id}, os_device='{self.os_device}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self, tool_exit_code: int = 0) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()
        self.tool_exit_code = tool_exit_code

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        tool_exit_code: int | None = None,
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
            tool_exit_code: Flash tool exit status, if it ran.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if tool_exit_code is not None:
            self.tool_exit_code = tool_exit_code

    def mark_watchdog_abort(self, reason: str, tool_exit_code: int | None = None) -> None:
        """Mark this run as aborted by the link watchdog."""
        self.status = RunStatus.WATCHDOG_ABORT.value
        self.finished_at = datetime.now()
        self.error_type = "watchdog"
        self.error_message = reason
        self.tool_exit_code = tool_exit_code

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == RunStatus.SUCCEEDED.value


__all__ = ["ProvisioningRecord"]
