"""Device discovery, identity and selection.

This module handles:
- Enumerating host storage and classifying it against the root disk
- Gating on the supported module identity (USB ids or device-tree model)
- Operator selection with re-validation and typed confirmation

Safety rules:
- The disk backing '/' is never a candidate and is refused if typed in
- Exactly one supported module per run; zero or several is a refusal
- Every destructive step needs a typed confirmation distinct from the choice
"""

from tinderbox.devices.enumerate import (
    Device,
    DeviceNotFoundError,
    DeviceValidationError,
    NotBlockDeviceError,
    PartitionDeviceError,
    PartitionInfo,
    SystemDeviceError,
    candidate_devices,
    enumerate_devices,
    resolve_root_disk,
    validate_target,
)
from tinderbox.devices.identity import (
    AmbiguousDeviceError,
    BusId,
    HardwareVariant,
    IdentityGateError,
    NoSupportedDeviceError,
    UnsupportedModelError,
    check_bus_identity,
    check_model_identity,
    detect_recovery_device,
)
from tinderbox.devices.selection import (
    SelectionCancelled,
    SelectionResult,
    SlotAssignment,
    confirm_danger,
    derive_data_slot,
    select_media,
    select_slots,
)

__all__ = [
    # Enumerator
    "Device",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "PartitionInfo",
    "SystemDeviceError",
    "candidate_devices",
    "enumerate_devices",
    "resolve_root_disk",
    "validate_target",
    # Identity gate
    "AmbiguousDeviceError",
    "BusId",
    "HardwareVariant",
    "IdentityGateError",
    "NoSupportedDeviceError",
    "UnsupportedModelError",
    "check_bus_identity",
    "check_model_identity",
    "detect_recovery_device",
    # Selection
    "SelectionCancelled",
    "SelectionResult",
    "SlotAssignment",
    "confirm_danger",
    "derive_data_slot",
    "select_media",
    "select_slots",
]
