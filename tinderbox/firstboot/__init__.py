"""First-boot data volume initialization (runs on the module).

Finds the storage disk that does not back '/', formats it only if it has
no filesystem, persists a UUID-keyed mount entry once, mounts it and writes
a completion marker.
"""

from tinderbox.firstboot.blockops import BlockDeviceOps
from tinderbox.firstboot.service import (
    DataDiskError,
    DataVolumeRecord,
    DiskCountError,
    FirstBootError,
    FirstBootInitializer,
    FormatError,
    MountError,
    RootSourceError,
    UnsupportedHardwareError,
    VolumeUUIDError,
)

__all__ = [
    "BlockDeviceOps",
    "DataDiskError",
    "DataVolumeRecord",
    "DiskCountError",
    "FirstBootError",
    "FirstBootInitializer",
    "FormatError",
    "MountError",
    "RootSourceError",
    "UnsupportedHardwareError",
    "VolumeUUIDError",
]
