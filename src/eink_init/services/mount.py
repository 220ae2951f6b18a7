"""Read-only partition mounting with retries."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from eink_init.services.device import is_block_device
from eink_init.services.errors import MountFailedError, UnmountFailedError
from eink_init.services.process import ProcessManager

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_field(field: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as \040 etc.
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _normalize(path: str) -> str:
    return path.rstrip("/") or "/"


class MountManager:
    """Mounts and unmounts partitions, consulting the live mount table.

    Mount state is never cached: other processes may mount or unmount the
    same points out-of-band.
    """

    COMMAND_TIMEOUT = 30.0

    def __init__(
        self,
        process_manager: Optional[ProcessManager] = None,
        mounts_file: str = "/proc/mounts",
    ):
        """Initialize mount manager.

        Args:
            process_manager: ProcessManager used to run mount/umount
            mounts_file: Live mount table (overridable for tests)
        """
        self.logger = logging.getLogger("eink_init.mount")
        self.process_manager = process_manager or ProcessManager()
        self.mounts_file = Path(mounts_file)

    def is_mounted(self, path: str) -> bool:
        """Check whether `path` is a mount point in the live mount table."""
        try:
            content = self.mounts_file.read_text()
        except OSError:
            return False

        target = _normalize(path)
        for line in content.splitlines():
            fields = line.split()
            if len(fields) >= 2 and _normalize(_unescape_mount_field(fields[1])) == target:
                return True
        return False

    @staticmethod
    def is_block_device(path: str) -> bool:
        return is_block_device(path)

    async def mount_readonly(
        self,
        device: str,
        mount_point: str,
        retries: int = 10,
        delay: float = 1.0,
    ) -> None:
        """Mount `device` read-only at `mount_point`, retrying on failure.

        The mount point directory is created if needed. An already-mounted
        target is treated as success without running mount again.

        Args:
            device: Block device path
            mount_point: Directory to mount on
            retries: Additional attempts after the first failure
            delay: Seconds between attempts

        Raises:
            MountFailedError: With the last exit code once retries are exhausted
        """
        Path(mount_point).mkdir(parents=True, exist_ok=True)

        if self.is_mounted(mount_point):
            self.logger.info(f"{mount_point} already mounted")
            return

        retries_left = retries
        while True:
            result = await self.process_manager.run(
                ["mount", "-o", "ro", device, mount_point],
                timeout=self.COMMAND_TIMEOUT,
            )
            if result.ok:
                self.logger.info(f"Mounted {device} at {mount_point}")
                return

            if retries_left <= 0:
                self.logger.error(
                    f"Failed to mount {device} after all retries: "
                    f"exit={result.returncode} {result.output}"
                )
                raise MountFailedError(
                    device, mount_point, result.returncode, result.output
                )

            self.logger.warning(
                f"Mount {device} failed ({retries_left} retries left): {result.output}"
            )
            retries_left -= 1
            await asyncio.sleep(delay)

    async def unmount(self, mount_point: str) -> None:
        """Unmount `mount_point` if it is currently mounted.

        Raises:
            UnmountFailedError: If umount exits non-zero
        """
        if not self.is_mounted(mount_point):
            self.logger.debug(f"{mount_point} not mounted, nothing to unmount")
            return

        result = await self.process_manager.run(
            ["umount", mount_point], timeout=self.COMMAND_TIMEOUT
        )
        if not result.ok:
            self.logger.error(
                f"Failed to unmount {mount_point}: exit={result.returncode} {result.output}"
            )
            raise UnmountFailedError(mount_point, result.returncode, result.output)

        self.logger.info(f"Unmounted {mount_point}")
