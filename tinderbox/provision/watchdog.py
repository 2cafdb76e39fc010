"""Link watchdog for a running flash.

Runs in a background thread next to the flash child and kills it early
when the transfer can no longer succeed:
- the module's USB device is gone for ``grace_polls`` consecutive polls
- the USB network interface is gone for ``grace_polls`` consecutive polls
- the log shows the payload extraction stage starting and a read probe of
  the payload from the target side fails

Only the watchdog thread writes ``WatchdogState``. The orchestrator reads
it through ``result()``, which is only allowed after the thread has ended.
"""

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def stage_marker_pattern(payload_path: str) -> re.Pattern[str]:
    """Log line announcing extraction of the payload image on the target."""
    return re.compile(r"tar .* -x -I 'zstd -T0' -pf " + re.escape(payload_path))


@dataclass
class WatchdogState:
    """Watchdog counters and verdict.

    Attributes:
        missing_device_polls: Consecutive polls without the USB device.
        missing_link_polls: Consecutive polls without the network interface.
        probe_done: Whether the payload probe has run.
        abort_reason: Set once when the watchdog aborts; terminal.
    """

    missing_device_polls: int = 0
    missing_link_polls: int = 0
    probe_done: bool = False
    abort_reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None


class LinkWatchdog:
    """Supervise a flash process until it exits or a liveness signal is lost.

    Args:
        is_running: Whether the supervised process is still alive.
        kill: Hard-kill the supervised process group.
        log_path: Live log of the supervised process.
        device_present: Poll for the module's USB device.
        link_present: Poll for the transport network interface.
        payload_probe: Target-side payload read probe.
        payload_path: Payload image path, used for the stage marker.
        poll_interval: Seconds between polls.
        grace_polls: Consecutive misses tolerated before aborting.
    """

    def __init__(
        self,
        *,
        is_running: Callable[[], bool],
        kill: Callable[[], None],
        log_path: Path,
        device_present: Callable[[], bool],
        link_present: Callable[[], bool],
        payload_probe: Callable[[], bool],
        payload_path: str = "/mnt/external/system.img",
        poll_interval: float = 2.0,
        grace_polls: int = 3,
    ) -> None:
        self._is_running = is_running
        self._kill = kill
        self.log_path = log_path
        self._device_present = device_present
        self._link_present = link_present
        self._payload_probe = payload_probe
        self.payload_path = payload_path
        self.poll_interval = poll_interval
        self.grace_polls = grace_polls

        self._marker = stage_marker_pattern(payload_path)
        self._log_offset = 0
        self._partial = ""
        self._state = WatchdogState()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="link-watchdog", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Ask the loop to exit at its next wait."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the loop to exit. No-op if it was never started."""
        if self._thread.ident is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def result(self) -> WatchdogState:
        """Final state. Only valid once the thread has stopped.

        Raises:
            RuntimeError: The watchdog thread is still running.
        """
        if self._thread.is_alive():
            raise RuntimeError("Watchdog still running; join it before reading the result")
        return self._state

    def _grace_seconds(self) -> int:
        return round(self.grace_polls * self.poll_interval)

    def _abort(self, reason: str) -> None:
        self._state.abort_reason = f"watchdog: {reason}"
        logger.error("%s", self._state.abort_reason)
        self._kill()

    def _stage_reached(self) -> bool:
        try:
            with self.log_path.open("r", errors="replace") as f:
                f.seek(self._log_offset)
                chunk = f.read()
                self._log_offset = f.tell()
        except OSError:
            return False

        text = self._partial + chunk
        lines = text.split("\n")
        self._partial = lines.pop()
        return any(self._marker.search(line) for line in lines)

    def poll_once(self) -> bool:
        """Run one round of checks. Returns True if the watchdog aborted."""
        state = self._state

        if not state.probe_done and self._stage_reached():
            state.probe_done = True
            logger.info("Payload stage reached; probing payload from the target")
            if not self._payload_probe():
                self._abort(f"pre-untar probe failed ({self.payload_path} unreadable on target)")
                return True

        if self._device_present():
            state.missing_device_polls = 0
        else:
            state.missing_device_polls += 1

        if self._link_present():
            state.missing_link_polls = 0
        else:
            state.missing_link_polls += 1

        if state.missing_device_polls >= self.grace_polls:
            self._abort(
                "Jetson USB device disappeared "
                f"(not on the USB bus for ~{self._grace_seconds()}s)"
            )
            return True
        if state.missing_link_polls >= self.grace_polls:
            self._abort(
                "Jetson USB NIC disappeared "
                f"(no usb0/enx interface for ~{self._grace_seconds()}s)"
            )
            return True
        return False

    def _run(self) -> None:
        while not self._stop.is_set() and self._is_running():
            if self.poll_once():
                return
            self._stop.wait(self.poll_interval)


__all__ = ["LinkWatchdog", "WatchdogState", "stage_marker_pattern"]
