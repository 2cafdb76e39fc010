"""USB network transport stabilization and target probing.

This module handles:
- Finding the USB gadget interface ('usb0', or an 'enx*' name)
- Persistent udev rules pinning the interface name and disabling offloads
- Applying and restoring segmentation/checksum offload settings
- VPN conflict detection and overlay-network detection
- Probing the target over the link (shell reachable, payload readable)

Probes here return booleans or parsed values and never raise.
"""

import logging
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from tinderbox.command import run_cmd
from tinderbox.config import Settings
from tinderbox.provision.errors import VpnActiveError

logger = logging.getLogger(__name__)

VPN_INTERFACES = ("tun0", "tun1", "wg0", "wg1", "tailscale0", "ppp0")
OVERLAY_PREFIX = "zt"

UDEV_RULES_DIR = Path("/etc/udev/rules.d")
RENAME_RULE_NAME = "99-usb0-jetson.rules"
OFFLOAD_RULE_NAME = "99-zz-usb0-jetson-offloads.rules"
OFFLOAD_HELPER_PATH = Path("/usr/local/sbin/tinderbox-usb0-offloads.sh")

# ethtool -K short name -> ethtool -k feature name
OFFLOAD_FEATURES = {
    "tso": "tcp-segmentation-offload",
    "gso": "generic-segmentation-offload",
    "gro": "generic-receive-offload",
    "lro": "large-receive-offload",
    "tx": "tx-checksumming",
    "rx": "rx-checksumming",
    "sg": "scatter-gather",
}

LINK_MTU = 1500
LINK_TXQUEUELEN = 1000


@dataclass(frozen=True)
class LinkInfo:
    """A host network interface and its operational state."""

    name: str
    state: str


def parse_ip_links(output: str) -> list[LinkInfo]:
    """Parse ``ip -o link show`` output."""
    links: list[LinkInfo] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or not fields[0].endswith(":"):
            continue
        name = fields[1].rstrip(":").split("@", 1)[0]
        state = "UNKNOWN"
        if "state" in fields:
            index = fields.index("state")
            if index + 1 < len(fields):
                state = fields[index + 1]
        links.append(LinkInfo(name=name, state=state))
    return links


def list_links() -> list[LinkInfo]:
    """List host network interfaces (empty if ip is unavailable)."""
    result = run_cmd(["ip", "-o", "link", "show"])
    if not result.ok:
        return []
    return parse_ip_links(result.stdout)


def find_transport_interface(
    links: list[LinkInfo], preferred: str = "usb0"
) -> str | None:
    """Pick the USB gadget interface: the pinned name, else the first 'enx*'."""
    names = [link.name for link in links]
    if preferred in names:
        return preferred
    for name in names:
        if name.startswith("enx"):
            return name
    return None


def transport_link_present(preferred: str = "usb0") -> bool:
    """Whether the transport interface currently exists."""
    return find_transport_interface(list_links(), preferred) is not None


def active_vpn_interfaces(links: list[LinkInfo]) -> list[str]:
    """VPN interfaces that are up.

    Point-to-point links (tun, wg, tailscale) report UNKNOWN when up.
    """
    return [
        link.name
        for link in links
        if link.name in VPN_INTERFACES and link.state in ("UP", "UNKNOWN")
    ]


def check_vpn_conflicts(links: list[LinkInfo]) -> None:
    """Refuse to run while a VPN interface is up.

    Raises:
        VpnActiveError: At least one VPN interface is up.
    """
    active = active_vpn_interfaces(links)
    if active:
        raise VpnActiveError(active)


def overlay_active(links: list[LinkInfo]) -> bool:
    """Whether a ZeroTier overlay interface is up."""
    return any(
        link.name.startswith(OVERLAY_PREFIX) and link.state in ("UP", "UNKNOWN")
        for link in links
    )


def rename_rule(interface: str) -> str:
    """udev rule pinning the RNDIS gadget interface name."""
    return (
        "# Pin the Jetson USB network gadget name for flashing\n"
        f'SUBSYSTEM=="net", ACTION=="add", DRIVERS=="rndis_host", NAME="{interface}"\n'
    )


def offload_rule(interface: str, helper_path: Path = OFFLOAD_HELPER_PATH) -> str:
    """udev rule running the offload helper when the interface appears."""
    return (
        "# Disable offloads on the Jetson USB network gadget\n"
        f'SUBSYSTEM=="net", ACTION=="add", KERNEL=="{interface}", '
        f'RUN+="{helper_path} {interface}"\n'
    )


def offload_helper_script() -> str:
    """Shell helper invoked by the offload rule."""
    features = " ".join(f"{short} off" for short in OFFLOAD_FEATURES)
    return (
        "#!/bin/sh\n"
        'IFACE="${1:-usb0}"\n'
        f'ethtool -K "$IFACE" {features} 2>/dev/null || true\n'
        'ethtool -K "$IFACE" tx-checksum-ip-generic off 2>/dev/null || true\n'
        f'ip link set dev "$IFACE" mtu {LINK_MTU} txqueuelen {LINK_TXQUEUELEN} 2>/dev/null || true\n'
        "exit 0\n"
    )


def _write_if_changed(path: Path, content: str, mode: int = 0o644) -> bool:
    if path.is_file() and path.read_text() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(mode)
    logger.info("Wrote %s", path)
    return True


def install_udev_rules(
    interface: str,
    rules_dir: Path = UDEV_RULES_DIR,
    helper_path: Path = OFFLOAD_HELPER_PATH,
) -> bool:
    """Install the rename and offload rules plus the offload helper.

    Idempotent: files already holding the expected content are left alone,
    and udev is only reloaded when something changed.

    Returns:
        True if any file was written.
    """
    changed = _write_if_changed(helper_path, offload_helper_script(), mode=0o755)
    changed |= _write_if_changed(rules_dir / RENAME_RULE_NAME, rename_rule(interface))
    changed |= _write_if_changed(
        rules_dir / OFFLOAD_RULE_NAME, offload_rule(interface, helper_path)
    )

    if changed:
        run_cmd(["udevadm", "control", "--reload-rules"])
        run_cmd(["udevadm", "trigger", "--subsystem-match=net"])
    return changed


def parse_offloads(output: str) -> dict[str, bool]:
    """Parse ``ethtool -k`` output into {short name: enabled}."""
    by_feature = {feature: short for short, feature in OFFLOAD_FEATURES.items()}
    state: dict[str, bool] = {}
    for line in output.splitlines():
        feature, sep, value = line.strip().partition(":")
        if not sep or feature not in by_feature:
            continue
        state[by_feature[feature]] = value.strip().startswith("on")
    return state


def read_link_offloads(interface: str) -> dict[str, bool]:
    """Current offload settings of an interface (empty if unreadable)."""
    result = run_cmd(["ethtool", "-k", interface])
    if not result.ok:
        return {}
    return parse_offloads(result.stdout)


def apply_link_offloads(interface: str) -> bool:
    """Disable offloads and set a conservative MTU/queue length now."""
    argv = ["ethtool", "-K", interface]
    for short in OFFLOAD_FEATURES:
        argv += [short, "off"]
    ok = run_cmd(argv).ok
    run_cmd(["ethtool", "-K", interface, "tx-checksum-ip-generic", "off"])
    run_cmd(
        [
            "ip", "link", "set", "dev", interface,
            "mtu", str(LINK_MTU), "txqueuelen", str(LINK_TXQUEUELEN),
        ]
    )
    if not ok:
        logger.warning("Could not disable all offloads on %s", interface)
    return ok


def restore_link_offloads(interface: str, state: dict[str, bool]) -> bool:
    """Put offload settings back to a previously read state."""
    if not state:
        return True
    argv = ["ethtool", "-K", interface]
    for short, enabled in state.items():
        argv += [short, "on" if enabled else "off"]
    return run_cmd(argv).ok


def _ssh_argv(settings: Settings, remote_command: str) -> list[str]:
    return [
        "sshpass", "-p", settings.target_password,
        "ssh", "-6",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "ConnectTimeout=2",
        f"root@{settings.target_address}",
        remote_command,
    ]


def wait_for_target_shell(
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Wait until the target's flashing initrd answers over SSH."""
    deadline = clock() + settings.target_ssh_timeout
    while True:
        result = run_cmd(_ssh_argv(settings, "echo ok"), timeout=10)
        if result.ok and result.stdout.strip() == "ok":
            return True
        if clock() >= deadline:
            logger.warning(
                "Target %s did not answer within %ds",
                settings.target_address,
                settings.target_ssh_timeout,
            )
            return False
        sleep(2)


def probe_target_payload(settings: Settings) -> bool:
    """Check from the target side that the payload image is readable.

    Reads a few megabytes of the image over the transport. A failure here
    means the large transfer would hang rather than progress.
    """
    if not wait_for_target_shell(settings):
        return False

    payload = shlex.quote(settings.payload_path)
    script = (
        f"set -e; test -r {payload}; ls -lh {payload}; "
        f"dd if={payload} of=/dev/null bs=4M count=4 status=none"
    )
    result = run_cmd(_ssh_argv(settings, script), timeout=60)
    if result.ok:
        logger.info("Payload probe ok: %s", result.stdout.strip())
    else:
        logger.error("Payload probe failed (%d): %s", result.returncode, result.stderr.strip())
    return result.ok


__all__ = [
    "OFFLOAD_FEATURES",
    "VPN_INTERFACES",
    "LinkInfo",
    "active_vpn_interfaces",
    "apply_link_offloads",
    "check_vpn_conflicts",
    "find_transport_interface",
    "install_udev_rules",
    "list_links",
    "offload_helper_script",
    "offload_rule",
    "overlay_active",
    "parse_ip_links",
    "parse_offloads",
    "probe_target_payload",
    "read_link_offloads",
    "rename_rule",
    "restore_link_offloads",
    "transport_link_present",
    "wait_for_target_shell",
]
