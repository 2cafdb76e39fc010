"""Configuration settings for tinderbox.

Uses pydantic-settings for config parsing from environment variables,
the installer medium's ``defaults.env`` file, and defaults.
Configuration precedence: CLI flags > env vars > defaults.env > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULTS_ENV_FILE = "defaults.env"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "tinderbox" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the TINDERBOX_ prefix,
    falling back to ``defaults.env`` in the working directory (and, for a
    flash, the one on the installer media; see ``get_settings``). They are
    read once when a run starts and are not re-validated mid-run.
    """

    model_config = SettingsConfigDict(
        env_prefix="TINDERBOX_",
        env_file=DEFAULTS_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator defaults
    os_nvme_default: str = Field(
        default="nvme0n1",
        pattern=r"^nvme\d+n1$",
        description="Default OS NVMe slot; the other slot becomes DATA",
    )
    default_user: str = Field(default="ourbox", description="Default account name")
    hostname: str = Field(default="ourbox", description="Default module hostname")

    # Paths
    log_dir: Path = Field(
        default=Path("/var/tmp/tinderbox-flash-logs"),
        description="Directory for per-run flash logs and diagnostics",
    )
    staging_root: Path = Field(
        default=Path("/var/tmp"),
        description="Fast local scratch storage for the staged toolkit",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for run history",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    always_stage: bool = Field(
        default=True,
        description="Stage the toolkit locally even if it is not on removable media",
    )

    # Flashing transport
    board: str = Field(
        default="jetson-orin-nano-devkit",
        description="Board configuration name passed to the flash tool",
    )
    transport_interface: str = Field(
        default="usb0",
        description="Pinned name of the USB network gadget interface",
    )
    target_address: str = Field(
        default="fc00:1:1:0::2",
        description="IPv6 address of the target on the transport link",
    )
    target_password: str = Field(
        default="root",
        description="Password of the flashing initrd's root account",
    )
    payload_path: str = Field(
        default="/mnt/external/system.img",
        description="Payload image path as seen from the target",
    )
    target_ssh_timeout: int = Field(
        default=180,
        ge=1,
        description="Seconds to wait for the target shell before probing",
    )

    # Watchdog
    watchdog_poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between watchdog liveness polls",
    )
    watchdog_grace_polls: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed polls tolerated before aborting",
    )
    max_diagnostics: int = Field(
        default=5,
        ge=1,
        description="Number of failure diagnostics dumps kept in log_dir",
    )

    # First boot (on target)
    firstboot_marker: Path = Field(
        default=Path("/var/lib/ourbox/firstboot.done"),
        description="Marker file written once first boot completes",
    )
    data_mount_point: Path = Field(default=Path("/data"))
    data_label: str = Field(default="OURBOX-DATA", max_length=16)
    data_fs_type: str = Field(default="ext4")
    data_mount_options: str = Field(default="defaults,noatime")
    fstab_path: Path = Field(default=Path("/etc/fstab"))
    model_path: Path = Field(default=Path("/proc/device-tree/model"))
    required_model: str = Field(
        default="orin nx",
        description="Substring the device-tree model must contain (case-insensitive)",
    )
    storage_glob: str = Field(
        default="/dev/nvme*n1",
        description="Glob matching the module's whole-disk storage devices",
    )


def get_settings(defaults_dir: Path | None = None) -> Settings:
    """Get the application settings.

    Args:
        defaults_dir: Directory holding the installer media's defaults.env.
            Its values override the working directory's file; environment
            variables still win over both.

    Returns:
        Settings instance loaded from environment and defaults.env.
    """
    media_defaults = defaults_dir / DEFAULTS_ENV_FILE if defaults_dir else None
    if media_defaults is not None and media_defaults.is_file():
        return Settings(_env_file=(DEFAULTS_ENV_FILE, media_defaults))
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The target password is omitted.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2, exclude={"target_password"})


__all__ = ["DEFAULTS_ENV_FILE", "Settings", "get_settings", "print_settings_json"]
