"""Provisioning orchestrator.

One ``Provisioner.run`` is one flash attempt against one module:

1. Preflight: root, host commands, flash-tool packages, udev rules, NFS
2. Conflict checks: refuse while a VPN interface is up
3. Quiesce the host (firewall, daemons, overlay, autosuspend, offloads)
4. Stage the toolkit into a run-owned work directory
5. Wait for exactly one supported module in recovery mode
6. Choose OS/DATA slots and pass the danger-zone gate
7. Run the flash tool under the link watchdog
8. On failure, dump diagnostics

Host state and the work directory are released by context managers, so
they are restored/removed on every exit path. Precondition failures and
operator declines raise; a flash that ran returns a ``ProvisioningRun``
whose outcome says how it ended.
"""

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from sqlalchemy.orm import Session

from tinderbox.config import Settings, get_settings
from tinderbox.devices.identity import (
    HardwareVariant,
    IdentityGateError,
    NoSupportedDeviceError,
    detect_recovery_device,
    vendor_present,
)
from tinderbox.devices.selection import (
    Prompt,
    SelectionCancelled,
    SlotAssignment,
    confirm_danger,
    select_slots,
)
from tinderbox.provision.diagnostics import collect_diagnostics, write_diagnostics
from tinderbox.provision.errors import ProvisioningError, ToolkitLayoutError
from tinderbox.provision.host import HostController, host_quiesced
from tinderbox.provision.models import ProvisioningRecord
from tinderbox.provision.preflight import (
    ensure_flash_dependencies,
    ensure_nfs_services,
    require_commands,
    require_root,
)
from tinderbox.provision.runner import (
    FlashProcess,
    compose_flash_command,
    require_flash_tool,
)
from tinderbox.provision.staging import (
    TOOLKIT_DIR_NAME,
    source_on_removable_media,
    stage_toolkit,
    work_directory,
)
from tinderbox.provision.transport import (
    check_vpn_conflicts,
    install_udev_rules,
    probe_target_payload,
    transport_link_present,
)
from tinderbox.provision.watchdog import LinkWatchdog
from tinderbox.types import WATCHDOG_ABORT_EXIT_CODE, RunStatus

logger = logging.getLogger(__name__)

LOG_COPY_DIR_NAME = "flash-logs"


@dataclass
class ProvisioningRun:
    """One end-to-end flash attempt.

    Attributes:
        source_dir: Directory holding the toolkit (and receiving log copies).
        log_path: Per-run flash log.
        started_at: When the run began.
        work_dir: Run-owned work directory (gone once the run returns).
        variant: Detected hardware variant.
        slots: Confirmed OS/DATA slot assignment.
        outcome: Final status.
        exit_code: Process status for the caller (0, 1 or 99).
        tool_exit_code: Exit status of the flash tool itself.
        abort_reason: Watchdog reason, if it fired.
        diagnostics: Diagnostics text, on failure.
        diagnostics_path: Where the diagnostics were written.
        record_id: ProvisioningRecord id, if recorded.
    """

    source_dir: Path
    log_path: Path
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    work_dir: Path | None = None
    variant: HardwareVariant | None = None
    slots: SlotAssignment | None = None
    outcome: RunStatus = RunStatus.PENDING
    exit_code: int | None = None
    tool_exit_code: int | None = None
    abort_reason: str | None = None
    diagnostics: str | None = None
    diagnostics_path: Path | None = None
    record_id: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome is RunStatus.SUCCEEDED


def new_log_path(log_dir: Path, now: datetime | None = None) -> Path:
    """Timestamped per-run log path."""
    now = now or datetime.now(timezone.utc)
    return log_dir / f"flash-{now.strftime('%Y%m%dT%H%M%SZ')}.log"


class Provisioner:
    """Runs provisioning attempts.

    Args:
        settings: Settings, read once for the whole run.
        host: Host controller (fakeable).
        prompt: Operator input function; defaults to the console.
        console: Rich console for operator output.
        session: Optional database session for run history.
        detect: Identity gate poll, re-run on every presence check.
        device_present: Watchdog poll for the module's USB device.
        link_present: Watchdog poll for the transport interface.
        payload_probe: Watchdog target-side payload probe.
        inhibit: Wrap the flash tool in systemd-inhibit when available.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        host: HostController | None = None,
        prompt: Prompt | None = None,
        console: Console | None = None,
        session: Session | None = None,
        detect: Callable[[], HardwareVariant] = detect_recovery_device,
        device_present: Callable[[], bool] | None = None,
        link_present: Callable[[], bool] | None = None,
        payload_probe: Callable[[], bool] | None = None,
        inhibit: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.host = host or HostController()
        self.console = console or Console()
        self.prompt: Prompt = prompt or (lambda message: self.console.input(message))
        self.session = session
        self.detect = detect
        self.device_present = device_present or vendor_present
        self.link_present = link_present or (
            lambda: transport_link_present(self.settings.transport_interface)
        )
        self.payload_probe = payload_probe or (lambda: probe_target_payload(self.settings))
        self.inhibit = inhibit

    def preflight(self) -> None:
        """Check privileges and dependencies, pin the transport, start NFS.

        Raises:
            ProvisioningError: Any precondition is not met.
        """
        require_root()
        require_commands()
        ensure_flash_dependencies()
        install_udev_rules(self.settings.transport_interface)
        ensure_nfs_services()

    def stage(self, source_dir: Path, work_dir: Path) -> Path:
        """Stage the toolkit (or use it in place) and check the flash tool.

        Returns:
            Toolkit directory the flash tool runs from.

        Raises:
            ToolkitLayoutError: Toolkit or flash tool missing.
            StagingError: Copy failed or not enough space.
        """
        source = source_dir / TOOLKIT_DIR_NAME
        if not source.is_dir():
            raise ToolkitLayoutError(
                f"Missing {TOOLKIT_DIR_NAME} directory in {source_dir}. "
                "Prepare the installer media first."
            )

        if self.settings.always_stage or source_on_removable_media(source):
            l4t_dir = stage_toolkit(source, work_dir)
        else:
            logger.info("Toolkit is on fixed storage; flashing in place")
            l4t_dir = source

        require_flash_tool(l4t_dir)
        return l4t_dir

    def await_target(self) -> HardwareVariant:
        """Wait for exactly one supported module in recovery mode.

        Zero matches offer a rescan; several matches fail immediately.

        Raises:
            AmbiguousDeviceError: More than one supported module attached.
            SelectionCancelled: The operator quit.
        """
        self.console.print(
            "Waiting for a Jetson in Force Recovery Mode (USB id 0955:7323 or 0955:7423)"
        )
        while True:
            try:
                variant = self.detect()
            except NoSupportedDeviceError as e:
                self.console.print(f"[yellow]{e.message}[/yellow]")
                answer = self.prompt("Press ENTER to rescan, or type q to quit: ")
                if answer.strip().lower() == "q":
                    raise SelectionCancelled() from None
                continue
            self.console.print(f"Detected: [bold]{variant.label}[/bold]")
            return variant

    def choose_slots(self) -> SlotAssignment:
        """Pick OS/DATA slots and pass the danger-zone gate.

        Raises:
            SelectionCancelled: The operator quit or declined.
        """
        slots = select_slots(
            self.settings.os_nvme_default, prompt=self.prompt, console=self.console
        )
        confirm_danger(
            f"/dev/{slots.os_slot} on the module",
            prompt=self.prompt,
            console=self.console,
        )
        return slots

    def _echo(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False)

    def flash(self, run: ProvisioningRun, argv: list[str], l4t_dir: Path) -> None:
        """Run the flash tool under the watchdog and set the run outcome."""
        process = FlashProcess(argv, l4t_dir, run.log_path, echo=self._echo)
        watchdog = LinkWatchdog(
            is_running=process.is_running,
            kill=process.kill,
            log_path=run.log_path,
            device_present=self.device_present,
            link_present=self.link_present,
            payload_probe=self.payload_probe,
            payload_path=self.settings.payload_path,
            poll_interval=self.settings.watchdog_poll_interval,
            grace_polls=self.settings.watchdog_grace_polls,
        )

        process.start()
        run.outcome = RunStatus.RUNNING
        # The loop returns at once if the tool has already exited
        watchdog.start()

        try:
            tool_exit_code = process.wait()
        finally:
            watchdog.stop()
            watchdog.join()
            process.kill()

        state = watchdog.result()
        run.tool_exit_code = tool_exit_code
        if state.aborted:
            run.outcome = RunStatus.WATCHDOG_ABORT
            run.exit_code = WATCHDOG_ABORT_EXIT_CODE
            run.abort_reason = state.abort_reason
        elif tool_exit_code != 0:
            run.outcome = RunStatus.FAILED
            run.exit_code = 1
        else:
            run.outcome = RunStatus.SUCCEEDED
            run.exit_code = 0

        if not run.success:
            run.diagnostics = collect_diagnostics(run.log_path, run.abort_reason)
            run.diagnostics_path = write_diagnostics(
                run.diagnostics, self.settings.log_dir, self.settings.max_diagnostics
            )

    def run(self, source_dir: Path) -> ProvisioningRun:
        """Execute one complete provisioning attempt.

        Args:
            source_dir: Directory containing the toolkit directory.

        Returns:
            The finished run; check ``outcome``/``exit_code``.

        Raises:
            ProvisioningError: A precondition failed.
            IdentityGateError: No or several supported modules.
            SelectionCancelled: The operator quit or declined.
        """
        run = ProvisioningRun(
            source_dir=source_dir, log_path=new_log_path(self.settings.log_dir)
        )
        record = self._create_record(run)
        logger.info("Provisioning run started; log %s", run.log_path)

        try:
            self.preflight()
            check_vpn_conflicts(self.host.links())

            with host_quiesced(self.host, self.settings.transport_interface):
                with work_directory(self.settings.staging_root) as work_dir:
                    run.work_dir = work_dir
                    l4t_dir = self.stage(source_dir, work_dir)

                    run.variant = self.await_target()
                    run.slots = self.choose_slots()
                    # Presence may have changed while the operator was typing
                    run.variant = self.detect()

                    argv = compose_flash_command(
                        l4t_dir, run.slots.os_partition, self.settings, inhibit=self.inhibit
                    )
                    self._update_record(record, run, started=True)
                    self.flash(run, argv, l4t_dir)
        except (ProvisioningError, IdentityGateError, SelectionCancelled) as e:
            run.outcome = RunStatus.FAILED
            if record is not None:
                record.mark_failed(error_type=e.error_code, message=e.message)
                self._flush()
            raise
        except KeyboardInterrupt:
            run.outcome = RunStatus.FAILED
            if record is not None:
                record.mark_failed(error_type="interrupted", message="Interrupted")
                self._flush()
            raise
        finally:
            self._copy_logs_back(run)

        self._update_record(record, run)
        logger.info("Provisioning run finished: %s", run.outcome.value)
        return run

    def _create_record(self, run: ProvisioningRun) -> ProvisioningRecord | None:
        if self.session is None:
            return None
        record = ProvisioningRecord(
            source_dir=str(run.source_dir),
            log_path=str(run.log_path),
            status=RunStatus.PENDING.value,
            requested_at=datetime.now(),
        )
        self.session.add(record)
        self.session.flush()
        run.record_id = record.id
        logger.debug("Created ProvisioningRecord id=%d", record.id)
        return record

    def _update_record(
        self, record: ProvisioningRecord | None, run: ProvisioningRun, started: bool = False
    ) -> None:
        if record is None:
            return
        record.work_dir = str(run.work_dir) if run.work_dir else None
        record.variant = run.variant.label if run.variant else None
        if run.slots:
            record.os_device = run.slots.os_slot
            record.data_device = run.slots.data_slot

        if started:
            record.mark_running()
        elif run.outcome is RunStatus.SUCCEEDED:
            record.mark_succeeded(tool_exit_code=run.tool_exit_code or 0)
        elif run.outcome is RunStatus.WATCHDOG_ABORT:
            record.mark_watchdog_abort(run.abort_reason or "watchdog", run.tool_exit_code)
        else:
            record.mark_failed(
                error_type="flash_failed",
                message=f"Flash tool exited {run.tool_exit_code}",
                tool_exit_code=run.tool_exit_code,
            )

        if run.diagnostics_path:
            record.diagnostics_path = str(run.diagnostics_path)
        self._flush()

    def _flush(self) -> None:
        if self.session is not None:
            self.session.flush()

    def _copy_logs_back(self, run: ProvisioningRun) -> None:
        """Copy the run log and diagnostics next to the toolkit source."""
        if not run.source_dir.is_dir():
            return
        sources = [p for p in (run.log_path, run.diagnostics_path) if p and p.is_file()]
        if not sources:
            return
        dest = run.source_dir / LOG_COPY_DIR_NAME
        try:
            dest.mkdir(parents=True, exist_ok=True)
            for path in sources:
                shutil.copy2(path, dest / path.name)
        except OSError as e:
            logger.warning("Could not copy logs to %s: %s", dest, e)
            return
        logger.info("Logs copied to %s", dest)


class RunNotFoundError(Exception):
    """Provisioning run not found in the database."""

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Provisioning run not found: {run_id}")
        self.message = f"Provisioning run not found: {run_id}"
        self.error_code = "RUN_NOT_FOUND"
        self.run_id = run_id


def get_provisioning_record(session: Session, run_id: int) -> ProvisioningRecord:
    """Get a run record by ID.

    Raises:
        RunNotFoundError: No such run.
    """
    record = session.get(ProvisioningRecord, run_id)
    if record is None:
        raise RunNotFoundError(run_id)
    return record


def get_provisioning_records(
    session: Session,
    *,
    status: RunStatus | None = None,
    limit: int = 100,
) -> list[ProvisioningRecord]:
    """Query run history, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        limit: Maximum number of records to return.

    Returns:
        List of ProvisioningRecord objects.
    """
    from sqlalchemy import select

    stmt = select(ProvisioningRecord)
    if status is not None:
        stmt = stmt.where(ProvisioningRecord.status == status.value)
    stmt = stmt.order_by(ProvisioningRecord.id.desc()).limit(limit)

    result = session.execute(stmt)
    return list(result.scalars().all())


__all__ = [
    "ProvisioningRun",
    "Provisioner",
    "RunNotFoundError",
    "get_provisioning_record",
    "get_provisioning_records",
    "new_log_path",
]
