"""Configuration and firmware manifest models.

All defaults match the stock Kobo Clara Colour partition layout. Any field
can be overridden from a JSON file:

    {
        "vendor_partition": "/dev/mmcblk0p10",
        "mount_retries": 5,
        "firmware_manifest": [
            {"source": "usr/bin/mdpd", "destination": "/usr/bin/mdpd", "mode": "0755"}
        ]
    }
"""

import json
import os
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

CONFIG_ENV_VAR = "EINK_INIT_CONFIG"
DEFAULT_CONFIG_PATH = "/etc/eink-init.json"


class FirmwareManifestEntry(BaseModel):
    """One file to copy from the vendor partition."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(
        ...,
        pattern=r"^[^/].*$",
        description="Path relative to the vendor mount point (no leading /)",
    )
    destination: str = Field(
        ..., pattern=r"^/.*$", description="Absolute target path on device"
    )
    mode: int = Field(0o755, ge=0, le=0o7777, description="Permission bits")

    @field_validator("source", "destination")
    @classmethod
    def no_directory_traversal(cls, v: str) -> str:
        """Prevent directory traversal in manifest paths."""
        if ".." in Path(v).parts:
            raise ValueError("Manifest paths must not contain '..'")
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def parse_octal_mode(cls, v: Union[int, str]) -> int:
        """Accept octal strings such as "0755" or "0o644"."""
        if isinstance(v, str):
            return int(v.lower().removeprefix("0o"), 8)
        return v


def _default_manifest() -> list[FirmwareManifestEntry]:
    return [
        # MediaTek Display Processing Daemon
        FirmwareManifestEntry(source="usr/bin/mdpd", destination="/usr/bin/mdpd"),
        FirmwareManifestEntry(
            source="sbin/nvram_daemon", destination="/sbin/nvram_daemon"
        ),
        # e-ink controller initialization tool
        FirmwareManifestEntry(
            source="usr/local/Kobo/pickel", destination="/usr/local/Kobo/pickel"
        ),
        # REGAL waveform device setup script
        FirmwareManifestEntry(
            source="etc/init.d/ntx_check_regal_dev.sh",
            destination="/usr/libexec/ntx_check_regal_dev.sh",
        ),
        FirmwareManifestEntry(
            source="lib/libnvram/libnvram.so",
            destination="/lib/libnvram/libnvram.so",
        ),
        FirmwareManifestEntry(
            source="lib/libnvram/libnvram_custom.so",
            destination="/lib/libnvram/libnvram_custom.so",
        ),
    ]


class EinkConfig(BaseModel):
    """Runtime configuration for the e-ink initialization service."""

    # Partitions
    vendor_partition: str = Field(
        "/dev/mmcblk0p10", description="Stock Kobo root partition holding the binaries"
    )
    vendor_mount_point: str = Field(
        "/tmp/kobo-eink-mount", description="Scratch mount point used during extraction"
    )
    init_data_partition: str = Field(
        "/dev/mmcblk0p8", description="init_bin partition with display init data"
    )
    init_data_mount_point: str = Field("/data/init_bin")
    marker_file: str = Field(
        "/var/lib/kobo-eink-copied", description="Exists once firmware has been copied"
    )

    # Timing
    partition_wait_timeout: float = Field(30.0, gt=0, description="Seconds")
    mount_retries: int = Field(10, ge=0)
    mount_retry_delay: float = Field(1.0, ge=0, description="Seconds")
    init_data_mount_retries: int = Field(3, ge=0)
    init_data_mount_retry_delay: float = Field(1.0, ge=0, description="Seconds")
    display_daemon_init_delay: float = Field(
        0.5, ge=0, description="Seconds to wait for mdpd after launching it"
    )
    daemon_launch_settle: float = Field(
        0.2, ge=0, description="Seconds to pause after any detached launch"
    )
    hwinit_timeout: float = Field(
        60.0, gt=0, description="Upper bound for the foreground pickel run"
    )

    # Binaries
    display_daemon_binary: str = "/usr/bin/mdpd"
    display_daemon_args: list[str] = Field(default_factory=lambda: ["-f"])
    nvram_daemon_binary: str = "/sbin/nvram_daemon"
    nvram_data_dir: str = "/data/nvram"
    hwinit_binary: str = "/usr/local/Kobo/pickel"
    hwinit_args: list[str] = Field(default_factory=lambda: ["init"])

    # REGAL device nodes
    regal_sysfs_dir: str = "/sys/class/regal_class"
    regal_devices: list[str] = Field(
        default_factory=lambda: [
            "regal_wb",
            "regal_tmp",
            "regal_img",
            "regal_cinfo",
            "regal_waveform",
        ]
    )
    dev_dir: str = "/dev"

    # Firmware extraction
    firmware_manifest: list[FirmwareManifestEntry] = Field(
        default_factory=_default_manifest
    )
    critical_files: list[str] = Field(
        default_factory=lambda: ["/usr/bin/mdpd", "/usr/local/Kobo/pickel"],
        description="Destinations that must exist after the copy batch",
    )

    # Reporting, logging and HTTP surface
    report_url: Optional[str] = Field(
        None,
        pattern=r"^https?://.+",
        description="Display client callback URL; reporting disabled if unset",
    )
    log_file: str = "/var/log/eink-init.log"
    log_level: str = Field("INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR)$")
    host: str = "127.0.0.1"
    port: int = Field(12316, gt=0, lt=65536)


def load_config(path: Optional[str] = None) -> EinkConfig:
    """Load configuration from a JSON file.

    Resolution order: explicit path, $EINK_INIT_CONFIG, /etc/eink-init.json.
    A missing file means "all defaults".

    Args:
        path: Optional path to a JSON config file

    Returns:
        Parsed EinkConfig

    Raises:
        ValueError: If the file exists but is not valid JSON or fails validation
    """
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        return EinkConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a JSON object")

    try:
        return EinkConfig(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid config file {config_path}: {e}") from e
