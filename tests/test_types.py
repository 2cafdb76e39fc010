"""Tests for shared types module."""

from tinderbox.types import (
    WATCHDOG_ABORT_EXIT_CODE,
    DeviceRole,
    RunStatus,
    SlotRole,
    Transport,
)


class TestEnums:
    """Test enum definitions."""

    def test_run_status_values(self) -> None:
        """RunStatus should have expected values."""
        assert RunStatus.PENDING.value == "pending"
        assert RunStatus.RUNNING.value == "running"
        assert RunStatus.SUCCEEDED.value == "succeeded"
        assert RunStatus.FAILED.value == "failed"
        assert RunStatus.WATCHDOG_ABORT.value == "watchdog_abort"

    def test_device_roles(self) -> None:
        assert {r.value for r in DeviceRole} == {"boot", "candidate", "data", "other"}

    def test_str_enums(self) -> None:
        """Enums compare equal to their string values."""
        assert Transport.USB == "usb"
        assert SlotRole.DATA == "data"

    def test_watchdog_exit_code_distinct(self) -> None:
        """The abort status differs from ordinary success and failure."""
        assert WATCHDOG_ABORT_EXIT_CODE not in (0, 1)
