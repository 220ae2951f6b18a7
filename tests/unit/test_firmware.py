"""Unit tests for FirmwareExtractor."""

import os
import shutil
import stat
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiofiles
import pytest

from eink_init.models.config import FirmwareManifestEntry
from eink_init.services.errors import (
    DeviceTimeoutError,
    MissingCriticalFilesError,
    MountFailedError,
    UnmountFailedError,
)
from eink_init.services.firmware import FirmwareExtractor

VENDOR_FILES = {
    "usr/bin/mdpd": b"\x7fELF mdpd",
    "sbin/nvram_daemon": b"\x7fELF nvram",
    "usr/local/Kobo/pickel": b"\x7fELF pickel" * 10000,
    "lib/libnvram/libnvram.so": b"\x7fELF lib",
}


@pytest.fixture
def vendor_image(tmp_path):
    """Contents of the stock partition, populated into the mount point on mount."""
    image = tmp_path / "vendor_image"
    for rel, data in VENDOR_FILES.items():
        path = image / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return image


@pytest.fixture
def fake_mount_manager(vendor_image):
    """MountManager whose mount/unmount copy the vendor image in and out."""
    manager = MagicMock()

    async def mount_readonly(device, mount_point, retries=10, delay=1.0):
        Path(mount_point).mkdir(parents=True, exist_ok=True)
        shutil.copytree(vendor_image, mount_point, dirs_exist_ok=True)

    async def unmount(mount_point):
        if not Path(mount_point).exists():
            return
        for child in Path(mount_point).iterdir():
            shutil.rmtree(child)

    manager.mount_readonly = AsyncMock(side_effect=mount_readonly)
    manager.unmount = AsyncMock(side_effect=unmount)
    return manager


@pytest.fixture
def device_waiter():
    waiter = MagicMock()
    waiter.wait_for_device = AsyncMock()
    return waiter


@pytest.fixture
def extractor(eink_config, device_waiter, fake_mount_manager):
    return FirmwareExtractor(eink_config, device_waiter, fake_mount_manager)


@pytest.mark.unit
class TestFirmwareExtractor:
    """Test the once-per-device firmware copy."""

    @pytest.mark.asyncio
    async def test_first_boot_copies_manifest(
        self, extractor, eink_config, device_waiter, fake_mount_manager
    ):
        """Test every manifest entry lands at its destination and the marker is written."""
        # Act
        await extractor.ensure_copied()

        # Assert
        for entry in eink_config.firmware_manifest:
            dest = Path(entry.destination)
            assert dest.read_bytes() == VENDOR_FILES[entry.source]
        assert extractor.is_copied()
        device_waiter.wait_for_device.assert_awaited_once_with(
            eink_config.vendor_partition, eink_config.partition_wait_timeout
        )
        fake_mount_manager.mount_readonly.assert_awaited_once_with(
            eink_config.vendor_partition,
            eink_config.vendor_mount_point,
            retries=eink_config.mount_retries,
            delay=eink_config.mount_retry_delay,
        )
        fake_mount_manager.unmount.assert_awaited_once_with(eink_config.vendor_mount_point)
        assert not Path(eink_config.vendor_mount_point).exists()

    @pytest.mark.asyncio
    async def test_file_modes_applied(self, extractor, device_root):
        await extractor.ensure_copied()

        mdpd_mode = stat.S_IMODE((device_root / "usr/bin/mdpd").stat().st_mode)
        lib_mode = stat.S_IMODE((device_root / "lib/libnvram/libnvram.so").stat().st_mode)
        assert mdpd_mode == 0o755
        assert lib_mode == 0o644

    @pytest.mark.asyncio
    async def test_no_temporary_files_left(self, extractor, device_root):
        await extractor.ensure_copied()

        assert list(device_root.rglob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_marker_short_circuits(
        self, extractor, eink_config, device_waiter, fake_mount_manager
    ):
        """Test nothing is waited for, mounted or copied when the marker exists."""
        # Arrange
        marker = Path(eink_config.marker_file)
        marker.parent.mkdir(parents=True)
        marker.write_bytes(b"")

        # Act
        await extractor.ensure_copied()

        # Assert
        device_waiter.wait_for_device.assert_not_awaited()
        fake_mount_manager.mount_readonly.assert_not_awaited()
        assert not Path(eink_config.firmware_manifest[0].destination).exists()

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, extractor, fake_mount_manager):
        await extractor.ensure_copied()
        await extractor.ensure_copied()

        assert fake_mount_manager.mount_readonly.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_non_critical_file_still_succeeds(
        self, extractor, vendor_image, device_root, caplog
    ):
        """Test a missing library is a warning, not a failure."""
        # Arrange
        (vendor_image / "lib/libnvram/libnvram.so").unlink()

        # Act
        await extractor.ensure_copied()

        # Assert
        assert extractor.is_copied()
        assert (device_root / "usr/bin/mdpd").exists()
        assert not (device_root / "lib/libnvram/libnvram.so").exists()
        assert "File copy issue" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_critical_file_fails(
        self, extractor, eink_config, vendor_image, device_root, fake_mount_manager
    ):
        """Test a missing critical binary fails the batch after copying the rest."""
        # Arrange
        (vendor_image / "usr/local/Kobo/pickel").unlink()

        # Act
        with pytest.raises(MissingCriticalFilesError) as exc_info:
            await extractor.ensure_copied()

        # Assert
        error = exc_info.value
        assert error.paths == [str(device_root / "usr/local/Kobo/pickel")]
        assert len(error.copy_failures) == 1
        assert error.reason.details["copy_failures"][0]["source"].endswith("pickel")
        # The rest of the batch was still attempted
        assert (device_root / "sbin/nvram_daemon").exists()
        assert not extractor.is_copied()
        fake_mount_manager.unmount.assert_awaited_with(eink_config.vendor_mount_point)
        assert not Path(eink_config.vendor_mount_point).exists()

    @pytest.mark.asyncio
    async def test_critical_file_already_present_counts(
        self, extractor, vendor_image, device_root
    ):
        """Test a critical file missing from the image but already installed is accepted."""
        (vendor_image / "usr/local/Kobo/pickel").unlink()
        installed = device_root / "usr/local/Kobo/pickel"
        installed.parent.mkdir(parents=True)
        installed.write_bytes(b"old pickel")

        await extractor.ensure_copied()

        assert extractor.is_copied()
        assert installed.read_bytes() == b"old pickel"

    @pytest.mark.asyncio
    async def test_device_timeout(
        self, extractor, eink_config, device_waiter, fake_mount_manager
    ):
        # Arrange
        device_waiter.wait_for_device = AsyncMock(
            side_effect=DeviceTimeoutError(eink_config.vendor_partition, 3.0)
        )

        # Act & Assert
        with pytest.raises(DeviceTimeoutError):
            await extractor.ensure_copied()

        fake_mount_manager.mount_readonly.assert_not_awaited()
        assert not extractor.is_copied()

    @pytest.mark.asyncio
    async def test_mount_failure_cleans_up(self, extractor, eink_config, fake_mount_manager):
        fake_mount_manager.mount_readonly = AsyncMock(
            side_effect=MountFailedError(
                eink_config.vendor_partition, eink_config.vendor_mount_point, 32
            )
        )

        with pytest.raises(MountFailedError):
            await extractor.ensure_copied()

        fake_mount_manager.unmount.assert_awaited_once_with(eink_config.vendor_mount_point)
        assert not extractor.is_copied()

    @pytest.mark.asyncio
    async def test_unmount_failure_fails_extraction(
        self, extractor, eink_config, fake_mount_manager, device_root
    ):
        """Test a stuck scratch mount fails the step and leaves no marker."""
        fake_mount_manager.unmount = AsyncMock(
            side_effect=UnmountFailedError(eink_config.vendor_mount_point, 32, "busy")
        )

        with pytest.raises(UnmountFailedError):
            await extractor.ensure_copied()

        assert (device_root / "usr/bin/mdpd").exists()
        assert not extractor.is_copied()
        # Once in the normal path, once more during cleanup
        assert fake_mount_manager.unmount.await_count == 2

    @pytest.mark.asyncio
    async def test_copy_overwrites_existing_destination(self, extractor, device_root):
        stale = device_root / "usr/bin/mdpd"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"stale")

        await extractor.ensure_copied()

        assert stale.read_bytes() == VENDOR_FILES["usr/bin/mdpd"]


class FailingReader:
    """Async file stand-in that returns one chunk and then hits an I/O error."""

    def __init__(self):
        self._served = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def read(self, size):
        if not self._served:
            self._served = True
            return b"partial"
        raise OSError(5, "Input/output error")


@pytest.mark.unit
class TestPerFileFailures:
    """Test that single-entry failures are recorded without aborting the batch."""

    def _reordered(self, eink_config, first_destination):
        """Config whose manifest lists the given destination first."""
        manifest = sorted(
            eink_config.firmware_manifest,
            key=lambda e: e.destination != first_destination,
        )
        return eink_config.model_copy(update={"firmware_manifest": manifest})

    @pytest.mark.asyncio
    async def test_destination_parent_is_a_file(
        self, eink_config, device_waiter, fake_mount_manager, device_root, caplog
    ):
        """Test an unwritable destination becomes a warning and later entries still copy."""
        # Arrange
        blocker = device_root / "blocker"
        blocker.write_text("not a directory")
        blocked = FirmwareManifestEntry(
            source="lib/libnvram/libnvram.so",
            destination=str(blocker / "libnvram.so"),
            mode=0o644,
        )
        config = eink_config.model_copy(
            update={"firmware_manifest": [blocked, *eink_config.firmware_manifest[:3]]}
        )
        extractor = FirmwareExtractor(config, device_waiter, fake_mount_manager)

        # Act
        await extractor.ensure_copied()

        # Assert
        assert extractor.is_copied()
        assert blocker.read_text() == "not a directory"
        assert (device_root / "usr/bin/mdpd").exists()
        assert (device_root / "usr/local/Kobo/pickel").exists()
        assert "File copy issue" in caplog.text

    @pytest.mark.asyncio
    async def test_chmod_failure_is_recorded(
        self, extractor, device_root, caplog
    ):
        """Test a permission-set failure on a copied critical file still succeeds."""
        # Arrange
        real_chmod = os.chmod
        mdpd = str(device_root / "usr/bin/mdpd")

        def chmod(path, mode, *args, **kwargs):
            if str(path) == mdpd:
                raise PermissionError(1, "Operation not permitted")
            real_chmod(path, mode, *args, **kwargs)

        # Act
        with patch("eink_init.services.firmware.os.chmod", side_effect=chmod):
            await extractor.ensure_copied()

        # Assert
        assert extractor.is_copied()
        assert Path(mdpd).read_bytes() == VENDOR_FILES["usr/bin/mdpd"]
        assert "File copy issue" in caplog.text
        assert "Operation not permitted" in caplog.text

    @pytest.mark.asyncio
    async def test_read_error_mid_copy(
        self, eink_config, device_waiter, fake_mount_manager, device_root
    ):
        """Test an I/O error during the copy leaves no temporary file and the batch continues."""
        # Arrange
        lib_dest = str(device_root / "lib/libnvram/libnvram.so")
        config = self._reordered(eink_config, lib_dest)
        extractor = FirmwareExtractor(config, device_waiter, fake_mount_manager)
        real_open = aiofiles.open

        def fake_open(path, mode="r", *args, **kwargs):
            if mode == "rb" and str(path).endswith("libnvram.so"):
                return FailingReader()
            return real_open(path, mode, *args, **kwargs)

        # Act
        with patch("eink_init.services.firmware.aiofiles.open", side_effect=fake_open):
            await extractor.ensure_copied()

        # Assert
        assert extractor.is_copied()
        assert not Path(lib_dest).exists()
        assert list(device_root.rglob("*.tmp")) == []
        assert (device_root / "usr/bin/mdpd").exists()
        assert (device_root / "sbin/nvram_daemon").exists()
