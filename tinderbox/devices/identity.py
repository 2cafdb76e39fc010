"""Hardware identity gate.

Decides whether exactly one supported module is present, either from the
recovery-mode USB identifiers seen on the host or from the device-tree
model string on the target itself. The allow-list is closed: anything not
in it maps to ``HardwareVariant.UNSUPPORTED`` and the gate refuses.

The gate keeps no state. Callers re-evaluate it on every presence poll.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from tinderbox.command import run_cmd

logger = logging.getLogger(__name__)

NVIDIA_VENDOR_ID = "0955"

_LSUSB_ID_PATTERN = re.compile(r"\bID\s+([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\b")


class HardwareVariant(str, Enum):
    """Supported module variants.

    ORIN_NX is the family-level variant matched from the device-tree model
    string, which does not distinguish memory size.
    """

    ORIN_NX_16GB = "orin_nx_16gb"
    ORIN_NX_8GB = "orin_nx_8gb"
    ORIN_NX = "orin_nx"
    UNSUPPORTED = "unsupported"

    @property
    def label(self) -> str:
        """Human-readable variant label."""
        return _VARIANT_LABELS[self]


_VARIANT_LABELS = {
    HardwareVariant.ORIN_NX_16GB: "Jetson Orin NX 16GB",
    HardwareVariant.ORIN_NX_8GB: "Jetson Orin NX 8GB",
    HardwareVariant.ORIN_NX: "Jetson Orin NX",
    HardwareVariant.UNSUPPORTED: "unsupported",
}


@dataclass(frozen=True)
class BusId:
    """A USB vendor:product identifier."""

    vendor: str
    product: str

    @classmethod
    def parse(cls, text: str) -> "BusId":
        """Parse 'vvvv:pppp' (case-insensitive).

        Raises:
            ValueError: If the text is not a vendor:product pair.
        """
        vendor, sep, product = text.strip().lower().partition(":")
        if not sep or len(vendor) != 4 or len(product) != 4:
            raise ValueError(f"Not a vendor:product id: {text!r}")
        int(vendor, 16)
        int(product, 16)
        return cls(vendor, product)

    def __str__(self) -> str:
        return f"{self.vendor}:{self.product}"


# Recovery-mode identifiers, one per supported memory variant
SUPPORTED_BUS_IDS: dict[BusId, HardwareVariant] = {
    BusId(NVIDIA_VENDOR_ID, "7323"): HardwareVariant.ORIN_NX_16GB,
    BusId(NVIDIA_VENDOR_ID, "7423"): HardwareVariant.ORIN_NX_8GB,
}


class IdentityGateError(Exception):
    """Base exception for identity gate refusals."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class NoSupportedDeviceError(IdentityGateError):
    """No supported device is attached."""

    def __init__(self, observed: list[BusId]) -> None:
        seen = ", ".join(str(b) for b in observed) or "none"
        super().__init__(
            f"No supported device present (observed: {seen}).",
            error_code="NO_SUPPORTED_DEVICE",
        )
        self.observed = observed


class AmbiguousDeviceError(IdentityGateError):
    """More than one supported device is attached."""

    def __init__(self, matches: list[BusId]) -> None:
        super().__init__(
            "Ambiguous: multiple supported devices present "
            f"({', '.join(str(b) for b in matches)}). Connect only one module.",
            error_code="AMBIGUOUS_DEVICE",
        )
        self.matches = matches


class UnsupportedModelError(IdentityGateError):
    """Device-tree model string does not name a supported module."""

    def __init__(self, model: str) -> None:
        super().__init__(
            f"Unsupported hardware model: {model or '(unknown)'}",
            error_code="UNSUPPORTED_MODEL",
        )
        self.model = model


def classify_bus_id(bus_id: BusId) -> HardwareVariant:
    """Map one bus identifier onto the closed variant set."""
    return SUPPORTED_BUS_IDS.get(bus_id, HardwareVariant.UNSUPPORTED)


def parse_lsusb(output: str) -> list[BusId]:
    """Extract vendor:product ids from lsusb output, one per device line."""
    ids: list[BusId] = []
    for line in output.splitlines():
        match = _LSUSB_ID_PATTERN.search(line)
        if match:
            ids.append(BusId(match.group(1).lower(), match.group(2).lower()))
    return ids


def list_bus_ids(vendor: str | None = NVIDIA_VENDOR_ID) -> list[BusId]:
    """List attached USB ids, optionally filtered to one vendor.

    Never raises; an unavailable lsusb yields an empty list.

    Args:
        vendor: Vendor id prefix filter, or None for all devices.

    Returns:
        One BusId per attached device entry.
    """
    argv = ["lsusb"]
    if vendor:
        argv += ["-d", f"{vendor}:"]
    result = run_cmd(argv)
    if not result.ok:
        # lsusb -d exits 1 when nothing matches
        return []
    ids = parse_lsusb(result.stdout)
    if vendor:
        ids = [b for b in ids if b.vendor == vendor.lower()]
    return ids


def vendor_present(vendor: str = NVIDIA_VENDOR_ID) -> bool:
    """Whether any device from the vendor is attached."""
    return bool(list_bus_ids(vendor))


def check_bus_identity(observed: list[BusId]) -> HardwareVariant:
    """Pass iff exactly one observed device entry is on the allow-list.

    Args:
        observed: Bus ids as enumerated, one per attached device.

    Returns:
        The matched variant.

    Raises:
        NoSupportedDeviceError: Zero allow-listed entries.
        AmbiguousDeviceError: Two or more allow-listed entries.
    """
    # Counted per attached entry, not per distinct id: two modules of the
    # same variant on the bus are two targets and must be refused.
    matches = [b for b in observed if classify_bus_id(b) is not HardwareVariant.UNSUPPORTED]
    if not matches:
        raise NoSupportedDeviceError(observed)
    if len(matches) > 1:
        raise AmbiguousDeviceError(matches)

    variant = classify_bus_id(matches[0])
    logger.info("Detected %s (%s)", variant.label, matches[0])
    return variant


def detect_recovery_device() -> HardwareVariant:
    """Poll the bus once and run the gate on what is attached.

    Raises:
        NoSupportedDeviceError: Zero supported devices attached.
        AmbiguousDeviceError: Multiple supported devices attached.
    """
    return check_bus_identity(list_bus_ids(NVIDIA_VENDOR_ID))


def read_model_string(model_path: Path) -> str:
    """Read the device-tree model, dropping NUL terminators.

    Returns an empty string if the file cannot be read.
    """
    try:
        raw = model_path.read_bytes()
    except OSError as e:
        logger.warning("Cannot read model from %s: %s", model_path, e)
        return ""
    return raw.replace(b"\0", b"").decode("utf-8", errors="replace").strip()


def classify_model(model: str, required: str = "orin nx") -> HardwareVariant:
    """Match a model string against the required substring (case-insensitive)."""
    if model and required and required.lower() in model.lower():
        return HardwareVariant.ORIN_NX
    return HardwareVariant.UNSUPPORTED


def check_model_identity(model: str, required: str = "orin nx") -> HardwareVariant:
    """Gate on the on-target model string.

    Raises:
        UnsupportedModelError: The model does not contain the required substring.
    """
    variant = classify_model(model, required)
    if variant is HardwareVariant.UNSUPPORTED:
        raise UnsupportedModelError(model)
    return variant


__all__ = [
    "NVIDIA_VENDOR_ID",
    "SUPPORTED_BUS_IDS",
    "AmbiguousDeviceError",
    "BusId",
    "HardwareVariant",
    "IdentityGateError",
    "NoSupportedDeviceError",
    "UnsupportedModelError",
    "check_bus_identity",
    "check_model_identity",
    "classify_bus_id",
    "classify_model",
    "detect_recovery_device",
    "list_bus_ids",
    "parse_lsusb",
    "read_model_string",
    "vendor_present",
]
