"""Firmware extraction from the stock Kobo system partition."""

import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import Optional

import aiofiles

from eink_init.models.config import EinkConfig, FirmwareManifestEntry
from eink_init.services.device import DeviceWaiter
from eink_init.services.errors import (
    CopyFailedError,
    EinkInitError,
    MissingCriticalFilesError,
)
from eink_init.services.mount import MountManager


class FirmwareExtractor:
    """Copies proprietary display binaries off the vendor partition, once.

    On first boot the vendor partition is mounted read-only, every manifest
    entry is copied to its destination, the partition is unmounted and a
    marker file is written. Later boots see the marker and do nothing.
    """

    def __init__(
        self,
        config: Optional[EinkConfig] = None,
        device_waiter: Optional[DeviceWaiter] = None,
        mount_manager: Optional[MountManager] = None,
    ):
        """Initialize firmware extractor.

        Args:
            config: EinkConfig instance (defaults if None)
            device_waiter: DeviceWaiter used to wait for the vendor partition
            mount_manager: MountManager used for the scratch mount
        """
        self.logger = logging.getLogger("eink_init.firmware")
        self.config = config or EinkConfig()
        self.device_waiter = device_waiter or DeviceWaiter()
        self.mount_manager = mount_manager or MountManager()
        self.chunk_size = 64 * 1024

    @property
    def marker_path(self) -> Path:
        return Path(self.config.marker_file)

    def is_copied(self) -> bool:
        """Return True if firmware has already been extracted (marker exists)."""
        return self.marker_path.exists()

    async def ensure_copied(self) -> None:
        """Ensure all proprietary firmware files are present.

        No-op when the marker file exists. Otherwise extracts the manifest
        from the vendor partition and writes the marker.

        Raises:
            DeviceTimeoutError: If the vendor partition never appears
            MountFailedError: If it cannot be mounted
            MissingCriticalFilesError: If critical binaries are absent after copy
            UnmountFailedError: If the scratch mount cannot be released
        """
        if self.is_copied():
            self.logger.info(f"Firmware already copied (marker exists: {self.marker_path})")
            return

        await self._extract()

    async def _extract(self) -> None:
        cfg = self.config
        mount_point = cfg.vendor_mount_point

        self.logger.info(f"Copying e-ink firmware from {cfg.vendor_partition}...")

        try:
            await self.device_waiter.wait_for_device(
                cfg.vendor_partition, cfg.partition_wait_timeout
            )
            await self.mount_manager.mount_readonly(
                cfg.vendor_partition,
                mount_point,
                retries=cfg.mount_retries,
                delay=cfg.mount_retry_delay,
            )
            failures = await self._copy_all(Path(mount_point))
            self._check_critical_files(failures)
            await self.mount_manager.unmount(mount_point)
        except Exception as e:
            self.logger.error(f"Firmware copy failed: {e}")
            await self._cleanup(mount_point)
            raise

        self._remove_mount_point(mount_point)
        self._write_marker()
        self.logger.info("Firmware copy complete")

    async def _copy_all(self, mount_point: Path) -> list[CopyFailedError]:
        """Copy every manifest entry, collecting per-file failures.

        Entries are independent: files may legitimately be absent on some
        hardware revisions, so one failure does not stop the batch.
        """
        failures = []
        for entry in self.config.firmware_manifest:
            try:
                await self._copy_entry(mount_point, entry)
            except CopyFailedError as e:
                self.logger.warning(f"File copy issue: {e}")
                failures.append(e)
        return failures

    async def _copy_entry(self, mount_point: Path, entry: FirmwareManifestEntry) -> None:
        """Copy a single file via a temporary sibling and atomic rename.

        Raises:
            CopyFailedError: On any filesystem error
        """
        source = mount_point / entry.source
        dest = Path(entry.destination)
        tmp_path = dest.parent / f"{dest.name}.tmp"

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(source, "rb") as src_file:
                async with aiofiles.open(tmp_path, "wb") as tmp_file:
                    while True:
                        chunk = await src_file.read(self.chunk_size)
                        if not chunk:
                            break
                        await tmp_file.write(chunk)
            tmp_path.replace(dest)
            os.chmod(dest, entry.mode)
        except OSError as e:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise CopyFailedError(str(source), str(dest), str(e)) from e

        self.logger.info(f"Copied {source.name} -> {dest} (mode {entry.mode:o})")

    def _check_critical_files(self, failures: list[CopyFailedError]) -> None:
        """Accept the batch only if every critical destination exists.

        Raises:
            MissingCriticalFilesError: Listing the absent critical files
        """
        missing = [p for p in self.config.critical_files if not Path(p).exists()]
        if missing:
            raise MissingCriticalFilesError(missing, failures)

        if failures:
            self.logger.info(
                f"All critical binaries present, continuing despite "
                f"{len(failures)} warning(s)"
            )

    async def _cleanup(self, mount_point: str) -> None:
        """Best-effort release of the scratch mount after a failure."""
        try:
            await self.mount_manager.unmount(mount_point)
        except EinkInitError as e:
            self.logger.warning(f"Cleanup unmount failed: {e}")
        self._remove_mount_point(mount_point)

    def _remove_mount_point(self, mount_point: str) -> None:
        try:
            Path(mount_point).rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove mount point {mount_point}: {e}")

    def _write_marker(self) -> None:
        marker = self.marker_path
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_bytes(b"")
        self.logger.info(f"Wrote firmware marker {marker}")
