"""Host state snapshot, quiesce and restore.

A flash run changes host state that can disturb the USB transport: the
firewall, network and power-management daemons, the ZeroTier overlay, USB
autosuspend and link offloads. The state before the run is captured once in
a ``HostStateSnapshot`` and ``restore_host_state`` puts exactly that back.
``host_quiesced`` pairs the two so restoration runs once on every exit path.

All system access goes through ``HostController`` so tests can substitute a
fake host.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from tinderbox.command import run_cmd
from tinderbox.provision import transport
from tinderbox.provision.transport import LinkInfo

logger = logging.getLogger(__name__)

# Stopped for the run, started again afterwards if they were running
MANAGED_SERVICES = ("NetworkManager", "firewalld", "tlp")
OVERLAY_SERVICE = "zerotier-one"

AUTOSUSPEND_PATH = Path("/sys/module/usbcore/parameters/autosuspend")
AUTOSUSPEND_DISABLED = "-1"


class HostController:
    """Thin wrapper over the host tools touched by a flash run.

    Methods report success as booleans and never raise.
    """

    def __init__(self, autosuspend_path: Path = AUTOSUSPEND_PATH) -> None:
        self.autosuspend_path = autosuspend_path

    def service_active(self, name: str) -> bool:
        return run_cmd(["systemctl", "is-active", "--quiet", name]).ok

    def stop_service(self, name: str) -> bool:
        return run_cmd(["systemctl", "stop", name]).ok

    def start_service(self, name: str) -> bool:
        return run_cmd(["systemctl", "start", name]).ok

    def firewall_active(self) -> bool:
        result = run_cmd(["ufw", "status"])
        return result.ok and "Status: active" in result.stdout

    def set_firewall(self, enabled: bool) -> bool:
        argv = ["ufw", "--force", "enable"] if enabled else ["ufw", "disable"]
        return run_cmd(argv).ok

    def read_autosuspend(self) -> str | None:
        try:
            return self.autosuspend_path.read_text().strip()
        except OSError:
            return None

    def write_autosuspend(self, value: str) -> bool:
        try:
            self.autosuspend_path.write_text(f"{value}\n")
        except OSError as e:
            logger.warning("Cannot write %s: %s", self.autosuspend_path, e)
            return False
        return True

    def links(self) -> list[LinkInfo]:
        return transport.list_links()

    def read_offloads(self, interface: str) -> dict[str, bool]:
        return transport.read_link_offloads(interface)

    def apply_offloads(self, interface: str) -> bool:
        return transport.apply_link_offloads(interface)

    def restore_offloads(self, interface: str, state: dict[str, bool]) -> bool:
        return transport.restore_link_offloads(interface, state)


@dataclass(frozen=True)
class HostStateSnapshot:
    """Host state captured before a flash run.

    Attributes:
        firewall_active: ufw was enabled.
        services_active: Managed service name -> was running.
        overlay_active: The ZeroTier overlay was up.
        usb_autosuspend: Previous usbcore autosuspend value (None if unreadable).
        transport_interface: Interface whose offloads were recorded.
        link_offloads: Previous offload settings of that interface.
    """

    firewall_active: bool = False
    services_active: dict[str, bool] = field(default_factory=dict)
    overlay_active: bool = False
    usb_autosuspend: str | None = None
    transport_interface: str | None = None
    link_offloads: dict[str, bool] = field(default_factory=dict)


def capture_host_state(
    host: HostController, preferred_interface: str = "usb0"
) -> HostStateSnapshot:
    """Record the host state a run is about to change."""
    links = host.links()
    interface = transport.find_transport_interface(links, preferred_interface)
    snapshot = HostStateSnapshot(
        firewall_active=host.firewall_active(),
        services_active={name: host.service_active(name) for name in MANAGED_SERVICES},
        overlay_active=transport.overlay_active(links),
        usb_autosuspend=host.read_autosuspend(),
        transport_interface=interface,
        link_offloads=host.read_offloads(interface) if interface else {},
    )
    logger.debug("Captured host state: %s", snapshot)
    return snapshot


def quiesce_host(host: HostController, snapshot: HostStateSnapshot) -> None:
    """Pause everything that could disturb the transport during a run."""
    if snapshot.overlay_active:
        logger.info("Pausing %s for the run", OVERLAY_SERVICE)
        host.stop_service(OVERLAY_SERVICE)

    if snapshot.firewall_active:
        logger.info("Disabling ufw for the run")
        host.set_firewall(False)

    for name, active in snapshot.services_active.items():
        if active:
            logger.info("Stopping %s for the run", name)
            host.stop_service(name)

    if snapshot.usb_autosuspend is not None:
        host.write_autosuspend(AUTOSUSPEND_DISABLED)

    if snapshot.transport_interface:
        host.apply_offloads(snapshot.transport_interface)


def restore_host_state(host: HostController, snapshot: HostStateSnapshot) -> None:
    """Put the host back the way the snapshot found it.

    Each step is attempted independently; failures are logged, never raised.
    Safe to call more than once.
    """
    if snapshot.transport_interface and snapshot.link_offloads:
        names = [link.name for link in host.links()]
        if snapshot.transport_interface in names:
            host.restore_offloads(snapshot.transport_interface, snapshot.link_offloads)

    if snapshot.usb_autosuspend is not None:
        host.write_autosuspend(snapshot.usb_autosuspend)

    for name, active in snapshot.services_active.items():
        if active and not host.start_service(name):
            logger.warning("Could not restart %s", name)

    if snapshot.firewall_active and not host.set_firewall(True):
        logger.warning("Could not re-enable ufw")

    if snapshot.overlay_active and not host.start_service(OVERLAY_SERVICE):
        logger.warning("Could not restart %s", OVERLAY_SERVICE)

    logger.info("Host state restored")


@contextmanager
def host_quiesced(
    host: HostController, preferred_interface: str = "usb0"
) -> Iterator[HostStateSnapshot]:
    """Quiesce the host for a run and restore it on exit.

    Restoration runs exactly once whether the body returns, raises, or is
    interrupted.

    Args:
        host: Host controller.
        preferred_interface: Pinned transport interface name.

    Yields:
        The captured snapshot.
    """
    snapshot = capture_host_state(host, preferred_interface)
    try:
        quiesce_host(host, snapshot)
        yield snapshot
    finally:
        restore_host_state(host, snapshot)


__all__ = [
    "AUTOSUSPEND_PATH",
    "MANAGED_SERVICES",
    "OVERLAY_SERVICE",
    "HostController",
    "HostStateSnapshot",
    "capture_host_state",
    "host_quiesced",
    "quiesce_host",
    "restore_host_state",
]
