"""Module provisioning over the USB recovery link.

This module handles:
- Dependency and service preflight
- Transport stabilization (udev pinning, offloads) and VPN conflict checks
- Host quiesce with guaranteed restore
- Local staging of the flashing toolkit
- Running the vendor flash tool under the link watchdog
- Failure diagnostics and run history
"""

from tinderbox.provision.errors import (
    MissingDependencyError,
    NotRootError,
    ProvisioningError,
    ServicePreflightError,
    StagingError,
    ToolkitLayoutError,
    VpnActiveError,
)
from tinderbox.provision.host import (
    HostController,
    HostStateSnapshot,
    capture_host_state,
    host_quiesced,
    restore_host_state,
)
from tinderbox.provision.models import ProvisioningRecord
from tinderbox.provision.runner import FlashExecutionError, FlashProcess
from tinderbox.provision.service import (
    Provisioner,
    ProvisioningRun,
    get_provisioning_records,
)
from tinderbox.provision.watchdog import LinkWatchdog, WatchdogState

__all__ = [
    # Errors
    "FlashExecutionError",
    "MissingDependencyError",
    "NotRootError",
    "ProvisioningError",
    "ServicePreflightError",
    "StagingError",
    "ToolkitLayoutError",
    "VpnActiveError",
    # Host state
    "HostController",
    "HostStateSnapshot",
    "capture_host_state",
    "host_quiesced",
    "restore_host_state",
    # Models
    "ProvisioningRecord",
    # Runner / watchdog
    "FlashProcess",
    "LinkWatchdog",
    "WatchdogState",
    # Service
    "Provisioner",
    "ProvisioningRun",
    "get_provisioning_records",
]
