"""Failure diagnostics for flash runs.

On a failed or aborted run a single text dump is written next to the run
logs: the tail of the flash log plus a snapshot of host network/service
state and recent kernel USB events. Only the newest dumps are kept.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from tinderbox.command import run_cmd
from tinderbox.devices.identity import NVIDIA_VENDOR_ID

logger = logging.getLogger(__name__)

DIAGNOSTICS_PREFIX = "diagnostics-"
LOG_TAIL_LINES = 50
DMESG_TAIL_LINES = 200

_KERNEL_USB_EVENTS = re.compile(r"usb|xhci|rndis|cdc_ether|cdc_ncm|disconnect|reset", re.IGNORECASE)


def tail_lines(path: Path, count: int = LOG_TAIL_LINES) -> list[str]:
    """Last ``count`` lines of a text file (empty if unreadable)."""
    try:
        with path.open("r", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError:
        return []
    return lines[-count:]


def _command_section(title: str, argv: list[str]) -> list[str]:
    result = run_cmd(argv, timeout=30)
    body = (result.stdout + result.stderr).rstrip()
    return [f"--- {title} ---", body or f"(no output, exit {result.returncode})", ""]


def kernel_usb_events(limit: int = DMESG_TAIL_LINES) -> list[str]:
    """Recent kernel log lines mentioning the USB transport."""
    result = run_cmd(["dmesg", "-T"], timeout=30)
    if not result.ok:
        return []
    recent = result.stdout.splitlines()[-limit:]
    return [line for line in recent if _KERNEL_USB_EVENTS.search(line)]


def collect_diagnostics(
    log_path: Path | None,
    reason: str | None = None,
    tail: int = LOG_TAIL_LINES,
) -> str:
    """Build the diagnostics text for a failed run.

    Args:
        log_path: Flash log of the run, if one was written.
        reason: Abort reason to lead with (watchdog aborts).
        tail: Number of log lines to include.

    Returns:
        The diagnostics text.
    """
    lines: list[str] = [
        "===== DIAGNOSTICS =====",
        f"Generated: {datetime.now(timezone.utc).isoformat()}",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    lines.append("")

    if log_path is not None:
        lines.append(f"--- last {tail} lines of {log_path} ---")
        lines.extend(tail_lines(log_path, tail) or ["(log unavailable)"])
        lines.append("")

    lines += _command_section(
        "services", ["systemctl", "status", "rpcbind", "nfs-kernel-server", "--no-pager"]
    )
    lines += _command_section("exportfs", ["exportfs", "-v"])
    lines += _command_section("ufw", ["ufw", "status"])
    lines += _command_section("ip addr", ["ip", "addr"])
    lines += _command_section("ip -6 route", ["ip", "-6", "route"])

    usb = run_cmd(["lsusb", "-d", f"{NVIDIA_VENDOR_ID}:"])
    lines += ["--- lsusb (NVIDIA) ---", usb.stdout.rstrip() or "(none)", ""]

    lines.append("--- kernel: recent USB events ---")
    lines.extend(kernel_usb_events() or ["(none)"])
    lines.append("")
    return "\n".join(lines)


def rotate_diagnostics(log_dir: Path, keep: int) -> list[Path]:
    """Delete all but the newest ``keep`` dumps. Returns the removed paths."""
    dumps = sorted(log_dir.glob(f"{DIAGNOSTICS_PREFIX}*.txt"))
    removed = dumps[:-keep] if keep > 0 else dumps
    for path in removed:
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not remove old diagnostics %s: %s", path, e)
    return removed


def write_diagnostics(text: str, log_dir: Path, keep: int = 5) -> Path:
    """Write a diagnostics dump and rotate old ones.

    Returns:
        Path of the new dump.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    path = log_dir / f"{DIAGNOSTICS_PREFIX}{stamp}.txt"
    path.write_text(text)
    rotate_diagnostics(log_dir, keep)
    logger.info("Diagnostics written to %s", path)
    return path


__all__ = [
    "collect_diagnostics",
    "kernel_usb_events",
    "rotate_diagnostics",
    "tail_lines",
    "write_diagnostics",
]
