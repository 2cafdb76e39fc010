"""Shared type definitions for tinderbox.

This module contains enums and constants shared across subpackages to
avoid circular imports.
"""

from enum import Enum


class RunStatus(str, Enum):
    """Status of a provisioning run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WATCHDOG_ABORT = "watchdog_abort"


class Transport(str, Enum):
    """Bus transport class of a storage device."""

    USB = "usb"
    INTERNAL = "internal"


class DeviceRole(str, Enum):
    """Role a storage device plays relative to the running system."""

    BOOT = "boot"
    CANDIDATE = "candidate"
    DATA = "data"
    OTHER = "other"


class SlotRole(str, Enum):
    """Role of an NVMe slot on the target module."""

    OS = "os"
    DATA = "data"


# Process status used when the watchdog aborts a flash run
WATCHDOG_ABORT_EXIT_CODE = 99


__all__ = [
    "WATCHDOG_ABORT_EXIT_CODE",
    "DeviceRole",
    "RunStatus",
    "SlotRole",
    "Transport",
]
