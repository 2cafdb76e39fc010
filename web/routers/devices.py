"""Device endpoints.

- GET /devices - Enumerated disks with their role
- GET /devices/identity - One identity gate evaluation

Both are read-only snapshots; nothing is selected or written.
"""

import dataclasses
from typing import Any

from fastapi import APIRouter, Query

from tinderbox.devices.enumerate import (
    Device,
    candidate_devices,
    enumerate_devices,
    resolve_root_disk,
)
from tinderbox.devices.identity import (
    IdentityGateError,
    check_bus_identity,
    list_bus_ids,
)

router = APIRouter()


def _device_to_dict(device: Device) -> dict[str, Any]:
    """Convert a device to a dictionary."""
    return {
        "path": device.path,
        "name": device.name,
        "transport": device.transport.value,
        "removable": device.removable,
        "role": device.role.value,
        "size_bytes": device.size_bytes,
        "model": device.model,
        "serial": device.serial,
        "partitions": [dataclasses.asdict(p) for p in device.partitions],
    }


@router.get("")
def list_devices_endpoint(
    all_devices: bool = Query(
        False, alias="all", description="Include boot and internal disks"
    ),
) -> dict[str, Any]:
    """List storage devices.

    Args:
        all_devices: Include non-candidate disks.

    Returns:
        Root disk and device list.
    """
    root_disk = resolve_root_disk()
    devices = enumerate_devices(root_disk)
    if not all_devices:
        devices = candidate_devices(devices)
    return {
        "root_disk": root_disk,
        "devices": [_device_to_dict(d) for d in devices],
    }


@router.get("/identity")
def identity_endpoint() -> dict[str, Any]:
    """Evaluate the identity gate against the attached USB devices.

    A refusal is a normal answer here, not an HTTP error.
    """
    observed = list_bus_ids()
    result: dict[str, Any] = {"observed": [str(b) for b in observed]}
    try:
        variant = check_bus_identity(observed)
    except IdentityGateError as e:
        result.update(passed=False, error_code=e.error_code, message=e.message)
        return result
    result.update(passed=True, variant=variant.value, label=variant.label)
    return result
