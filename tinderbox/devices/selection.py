"""Operator target selection.

Two selectors share one shape: list, pick, re-validate, confirm by typing.

- ``select_media`` picks a removable whole disk on the host (installer
  media). Candidates exclude the root-backing disk, and the chosen path is
  re-validated anyway because devices can change between listing and
  selection.
- ``select_slots`` picks the OS slot out of the module's two NVMe slots; the
  DATA slot is derived as the other one.

The selection confirmation ('SELECT' / 'CONFIRM') is a different token from
the danger-zone gate ('YES') asked by ``confirm_danger``.
"""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.table import Table

from tinderbox.devices.enumerate import (
    DEFAULT_BY_ID_DIR,
    Device,
    DeviceValidationError,
    candidate_devices,
    enumerate_devices,
    preferred_by_id,
    validate_target,
)
from tinderbox.types import SlotRole

logger = logging.getLogger(__name__)

Prompt = Callable[[str], str]

SELECT_TOKEN = "SELECT"
CONFIRM_TOKEN = "CONFIRM"
DANGER_TOKEN = "YES"

DEFAULT_SLOTS = ("nvme0n1", "nvme1n1")

_SLOT_NAME_PATTERN = re.compile(r"^nvme\d+n1$")


class SelectionCancelled(Exception):
    """Operator quit or declined a confirmation gate.

    This is an expected abort path: nothing destructive has happened.
    """

    def __init__(self, message: str = "Aborted by operator") -> None:
        super().__init__(message)
        self.message = message
        self.error_code = "OPERATOR_DECLINED"


@dataclass(frozen=True)
class SelectionResult:
    """A confirmed target disk.

    Attributes:
        device_path: Resolved whole-disk path.
        alias: Preferred stable alias (by-id link), or the path itself.
        confirmation_token: The phrase the operator typed to confirm.
    """

    device_path: str
    alias: str
    confirmation_token: str


@dataclass(frozen=True)
class SlotAssignment:
    """A confirmed OS/DATA slot split on the target module."""

    os_slot: str
    data_slot: str
    confirmation_token: str

    @property
    def os_partition(self) -> str:
        """OS root partition name handed to the flash tool (e.g., 'nvme0n1p1')."""
        return f"{self.os_slot}p1"

    @property
    def roles(self) -> dict[str, SlotRole]:
        return {self.os_slot: SlotRole.OS, self.data_slot: SlotRole.DATA}


def _console_prompt(console: Console) -> Prompt:
    return lambda message: console.input(message)


def format_size(size_bytes: int | None) -> str:
    """Format a byte count as a short human-readable size."""
    if size_bytes is None:
        return "?"
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def render_candidates(
    devices: Sequence[Device],
    console: Console,
    by_id_dir: Path = DEFAULT_BY_ID_DIR,
) -> None:
    """Print the numbered candidate table followed by per-disk details."""
    table = Table(title="Candidate disks")
    table.add_column("#", justify="right")
    table.add_column("Device", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Tran")
    table.add_column("Model")
    table.add_column("Serial")

    for index, device in enumerate(devices, start=1):
        table.add_row(
            str(index),
            device.path,
            format_size(device.size_bytes),
            device.transport.value,
            device.model or "",
            device.serial or "",
        )
    console.print(table)

    for index, device in enumerate(devices, start=1):
        alias = preferred_by_id(device.path, by_id_dir)
        console.print(f"[bold]{index}) {device.path}[/bold]")
        if alias:
            console.print(f"   by-id: {alias}")
        if not device.partitions:
            console.print("   (no partitions)")
        for part in device.partitions:
            console.print(
                f"   {part.path}  fstype={part.fstype or '-'}  "
                f"label={part.label or '-'}  mount={part.mountpoint or '-'}"
            )


def resolve_choice(answer: str, candidates: Sequence[Device]) -> str:
    """Turn an ordinal or a literal device name into a device path.

    Ordinals are 1-based indexes into ``candidates``. Anything else is taken
    as a device name, with or without the '/dev/' prefix. A typed name may
    point outside the candidate list; ``select_media`` validates it and then
    requires it to be one of the candidates.
    """
    if answer.isdigit():
        index = int(answer)
        if 1 <= index <= len(candidates):
            return candidates[index - 1].path
        return ""
    if answer.startswith("/"):
        return answer
    return f"/dev/{answer}"


def select_media(
    *,
    root_disk: str | None,
    prompt: Prompt | None = None,
    console: Console | None = None,
    enumerate_fn: Callable[[str | None], list[Device]] = enumerate_devices,
    validate_fn: Callable[[str, str | None], str] = validate_target,
    by_id_dir: Path = DEFAULT_BY_ID_DIR,
) -> SelectionResult:
    """Interactively choose a removable whole disk.

    Loops until the operator confirms a valid disk or quits. An empty
    candidate set offers a rescan instead of failing.

    Args:
        root_disk: Whole-disk path backing '/'.
        prompt: Input function; defaults to the console.
        console: Rich console for output.
        enumerate_fn: Enumerator, called with ``root_disk`` on every scan.
        validate_fn: Target re-validation, returns the resolved path.
        by_id_dir: Directory holding by-id symlinks.

    Returns:
        The confirmed SelectionResult.

    Raises:
        SelectionCancelled: The operator quit.
    """
    console = console or Console()
    prompt = prompt or _console_prompt(console)

    while True:
        candidates = candidate_devices(enumerate_fn(root_disk))
        if not candidates:
            console.print("[yellow]No removable candidate disks found.[/yellow]")
            answer = prompt("Attach the installer media, then press ENTER to rescan (q to quit): ")
            if answer.strip().lower() == "q":
                raise SelectionCancelled()
            continue

        render_candidates(candidates, console, by_id_dir)
        answer = prompt("Select disk number or name (r=rescan, q=quit): ").strip()
        if answer.lower() == "q":
            raise SelectionCancelled()
        if answer.lower() in ("", "r"):
            continue

        path = resolve_choice(answer, candidates)
        if not path:
            console.print(f"[red]Invalid selection:[/red] {answer}")
            continue

        try:
            real = validate_fn(path, root_disk)
        except DeviceValidationError as e:
            logger.warning("Rejected target %s: %s", path, e.error_code)
            console.print(f"[red]{e.message}[/red]")
            continue

        if real not in {c.path for c in candidates}:
            logger.warning("Rejected target %s: not a removable candidate", real)
            console.print(f"[red]{real} is not a removable candidate disk[/red]")
            continue

        alias = preferred_by_id(real, by_id_dir) or real
        console.print(f"Selected: [cyan]{real}[/cyan]  ({alias})")
        token = prompt(f"Type {SELECT_TOKEN} to use {alias} (anything else re-selects): ").strip()
        if token != SELECT_TOKEN:
            console.print("Not confirmed; re-selecting.")
            continue

        return SelectionResult(device_path=real, alias=alias, confirmation_token=token)


def derive_data_slot(slots: Sequence[str], os_slot: str) -> str:
    """Return the slot that is not the OS slot in a two-slot set.

    Raises:
        ValueError: If the set is not two distinct slots containing os_slot.
    """
    if len(slots) != 2 or slots[0] == slots[1]:
        raise ValueError(f"Expected exactly two distinct slots, got {list(slots)}")
    if os_slot not in slots:
        raise ValueError(f"OS slot {os_slot} is not one of {list(slots)}")
    return slots[1] if os_slot == slots[0] else slots[0]


def select_slots(
    default_os_slot: str,
    *,
    slots: Sequence[str] = DEFAULT_SLOTS,
    prompt: Prompt | None = None,
    console: Console | None = None,
) -> SlotAssignment:
    """Choose the OS slot; the DATA slot is derived.

    Declining the confirmation re-selects, without limit. Only 'q' quits.

    Args:
        default_os_slot: Slot used when the operator just presses ENTER.
        slots: The two slot names.
        prompt: Input function; defaults to the console.
        console: Rich console for output.

    Returns:
        The confirmed SlotAssignment.

    Raises:
        SelectionCancelled: The operator quit.
    """
    console = console or Console()
    prompt = prompt or _console_prompt(console)

    while True:
        table = Table(title="Target NVMe slots")
        table.add_column("#", justify="right")
        table.add_column("Slot", style="cyan")
        table.add_column("Default")
        for index, slot in enumerate(slots, start=1):
            table.add_row(str(index), slot, "OS" if slot == default_os_slot else "")
        console.print(table)

        answer = prompt(
            f"OS slot [1/2 or name, ENTER for {default_os_slot}, q to quit]: "
        ).strip()
        if answer.lower() == "q":
            raise SelectionCancelled()

        if not answer:
            os_slot = default_os_slot
        elif answer.isdigit() and 1 <= int(answer) <= len(slots):
            os_slot = slots[int(answer) - 1]
        elif _SLOT_NAME_PATTERN.match(answer):
            os_slot = answer
        else:
            console.print(f"[red]Invalid slot:[/red] {answer}")
            continue

        if os_slot not in slots:
            console.print(f"[red]Unknown slot:[/red] {os_slot}")
            continue

        data_slot = derive_data_slot(slots, os_slot)
        console.print(f"OS   -> [cyan]{os_slot}[/cyan] (rootfs on {os_slot}p1)")
        console.print(f"DATA -> [cyan]{data_slot}[/cyan] (initialized on first boot)")

        token = prompt(f"Type {CONFIRM_TOKEN} to accept, or press ENTER to re-select: ").strip()
        if token == CONFIRM_TOKEN:
            return SlotAssignment(os_slot=os_slot, data_slot=data_slot, confirmation_token=token)
        logger.debug("Slot assignment declined, re-selecting")


def confirm_danger(
    target: str,
    *,
    prompt: Prompt | None = None,
    console: Console | None = None,
    token: str = DANGER_TOKEN,
) -> None:
    """Final destructive-action gate.

    Raises:
        SelectionCancelled: Anything other than the exact token was typed.
    """
    console = console or Console()
    prompt = prompt or _console_prompt(console)

    console.print(f"[bold red]DANGER ZONE:[/bold red] {target} will be erased.")
    answer = prompt(f"Type {token} to continue: ").strip()
    if answer != token:
        raise SelectionCancelled()


__all__ = [
    "CONFIRM_TOKEN",
    "DANGER_TOKEN",
    "DEFAULT_SLOTS",
    "SELECT_TOKEN",
    "Prompt",
    "SelectionCancelled",
    "SelectionResult",
    "SlotAssignment",
    "confirm_danger",
    "derive_data_slot",
    "format_size",
    "render_candidates",
    "resolve_choice",
    "select_media",
    "select_slots",
]
