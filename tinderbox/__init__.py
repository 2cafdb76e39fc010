"""Tinderbox - provisioning tooling for Jetson edge-compute modules.

This package wraps the vendor initrd flashing workflow with device-identity
checks, operator target selection, host-state guarding, a link watchdog, and
the first-boot data-volume initializer that runs on the provisioned module.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
