"""Block/character device helpers and the boot-time device waiter."""

import asyncio
import logging
import os
import stat
import time
from typing import Awaitable, Callable

from eink_init.services.errors import DeviceTimeoutError

logger = logging.getLogger("eink_init.device")


def _file_mode(path: str) -> int:
    try:
        return os.stat(path).st_mode
    except (OSError, ValueError):
        return 0


def is_block_device(path: str) -> bool:
    return stat.S_ISBLK(_file_mode(path))


def is_char_device(path: str) -> bool:
    return stat.S_ISCHR(_file_mode(path))


def create_char_device(path: str, major: int, minor: int, mode: int = 0o666) -> None:
    """Create a character device node.

    Raises:
        OSError: If the node cannot be created (e.g. not running as root)
    """
    os.mknod(path, mode | stat.S_IFCHR, os.makedev(major, minor))


class DeviceWaiter:
    """Polls for a block device during early boot.

    eMMC partitions may not be enumerated by the kernel yet when the service
    starts, so absence is retried until the deadline rather than reported.
    """

    POLL_INTERVAL = 1.0

    def __init__(
        self,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        probe: Callable[[str], bool] = is_block_device,
    ):
        """Initialize device waiter.

        Args:
            poll_interval: Seconds between existence checks
            clock: Monotonic clock used for the deadline
            sleep: Coroutine used to wait between polls
            probe: Predicate deciding whether the device is present
        """
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._probe = probe

    async def wait_for_device(self, path: str, timeout: float) -> None:
        """Wait until `path` is a block device.

        Args:
            path: Device path (e.g. /dev/mmcblk0p10)
            timeout: Seconds to wait

        Raises:
            DeviceTimeoutError: If the device did not appear in time
        """
        deadline = self._clock() + timeout

        while True:
            if self._probe(path):
                logger.info(f"Block device {path} is available")
                return

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.error(f"Timeout waiting for {path}")
                raise DeviceTimeoutError(path, timeout)

            logger.debug(f"Waiting for {path}... ({int(remaining)}s left)")
            await self._sleep(min(self.poll_interval, remaining))
