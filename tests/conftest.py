"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from eink_init.models.config import EinkConfig, FirmwareManifestEntry  # noqa: E402
from eink_init.services.controller import InitController  # noqa: E402
from eink_init.services.process import CommandResult  # noqa: E402


@pytest.fixture(autouse=True)
def reset_controller():
    """Reset the InitController singleton around every test."""
    InitController._instance = None
    yield
    InitController._instance = None


@pytest.fixture
def device_root(tmp_path):
    """Stand-in for the device root filesystem."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def eink_config(tmp_path, device_root):
    """EinkConfig with every path redirected under tmp_path and no delays."""
    return EinkConfig(
        vendor_partition=str(tmp_path / "dev" / "mmcblk0p10"),
        vendor_mount_point=str(tmp_path / "mnt" / "kobo"),
        init_data_partition=str(tmp_path / "dev" / "mmcblk0p8"),
        init_data_mount_point=str(tmp_path / "data" / "init_bin"),
        marker_file=str(tmp_path / "var" / "lib" / "kobo-eink-copied"),
        partition_wait_timeout=3.0,
        mount_retries=2,
        mount_retry_delay=0,
        init_data_mount_retry_delay=0,
        display_daemon_init_delay=0,
        daemon_launch_settle=0,
        hwinit_timeout=5.0,
        display_daemon_binary=str(device_root / "usr/bin/mdpd"),
        nvram_daemon_binary=str(device_root / "sbin/nvram_daemon"),
        nvram_data_dir=str(tmp_path / "data" / "nvram"),
        hwinit_binary=str(device_root / "usr/local/Kobo/pickel"),
        regal_sysfs_dir=str(tmp_path / "sys" / "class" / "regal_class"),
        dev_dir=str(tmp_path / "devnodes"),
        firmware_manifest=[
            FirmwareManifestEntry(
                source="usr/bin/mdpd", destination=str(device_root / "usr/bin/mdpd")
            ),
            FirmwareManifestEntry(
                source="sbin/nvram_daemon",
                destination=str(device_root / "sbin/nvram_daemon"),
            ),
            FirmwareManifestEntry(
                source="usr/local/Kobo/pickel",
                destination=str(device_root / "usr/local/Kobo/pickel"),
            ),
            FirmwareManifestEntry(
                source="lib/libnvram/libnvram.so",
                destination=str(device_root / "lib/libnvram/libnvram.so"),
                mode=0o644,
            ),
        ],
        critical_files=[
            str(device_root / "usr/bin/mdpd"),
            str(device_root / "usr/local/Kobo/pickel"),
        ],
        log_file=str(tmp_path / "logs" / "eink-init.log"),
    )


@pytest.fixture
def ok_result():
    """Successful CommandResult."""
    return CommandResult(argv=[], returncode=0, output="")


@pytest.fixture
def mock_mount_manager():
    """MountManager mock: nothing mounted, every device present."""
    manager = MagicMock()
    manager.is_mounted = MagicMock(return_value=False)
    manager.is_block_device = MagicMock(return_value=True)
    manager.mount_readonly = AsyncMock()
    manager.unmount = AsyncMock()
    return manager


@pytest.fixture
def mock_process_manager(ok_result):
    """ProcessManager mock: nothing running, every command succeeds."""
    manager = MagicMock()
    manager.is_running = MagicMock(return_value=False)
    manager.launch_detached = AsyncMock(return_value=ok_result)
    manager.run = AsyncMock(return_value=ok_result)
    manager.terminate = MagicMock(return_value=0)
    return manager
