"""Exceptions raised by the provisioning orchestrator and its steps.

All of these are precondition failures: the host is not in the expected
shape, so the run stops before (or without) touching the target.
"""


class ProvisioningError(Exception):
    """Base exception for provisioning failures."""

    def __init__(self, message: str, error_code: str = "PROVISIONING_ERROR") -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class NotRootError(ProvisioningError):
    """Flashing needs root privileges."""

    def __init__(self) -> None:
        super().__init__("Run as root (sudo).", error_code="NOT_ROOT")


class MissingDependencyError(ProvisioningError):
    """Required host commands or packages are missing."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required dependencies: {', '.join(missing)}",
            error_code="MISSING_DEPENDENCY",
        )
        self.missing = missing


class VpnActiveError(ProvisioningError):
    """A VPN interface is up and could hijack the transport's routes."""

    def __init__(self, interfaces: list[str]) -> None:
        super().__init__(
            f"VPN interface(s) active: {', '.join(interfaces)}. "
            "Disconnect the VPN and retry.",
            error_code="VPN_ACTIVE",
        )
        self.interfaces = interfaces


class StagingError(ProvisioningError):
    """Local staging of the toolkit failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="STAGING_FAILED")


class ToolkitLayoutError(ProvisioningError):
    """The flashing toolkit is missing an expected file."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="TOOLKIT_LAYOUT")


class ServicePreflightError(ProvisioningError):
    """A host service the flash tool relies on could not be started."""

    def __init__(self, service: str, detail: str = "") -> None:
        message = f"Service preflight failed: {service}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, error_code="SERVICE_PREFLIGHT")
        self.service = service


__all__ = [
    "MissingDependencyError",
    "NotRootError",
    "ProvisioningError",
    "ServicePreflightError",
    "StagingError",
    "ToolkitLayoutError",
    "VpnActiveError",
]
