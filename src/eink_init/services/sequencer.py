"""Ordered start-up of the proprietary e-ink display services.

Start-up order (each step depends on the previous ones):

1. mount_init_data       - mount the init_bin partition (display init data)
2. ensure_device_nodes   - create REGAL waveform device nodes in /dev
3. start_display_daemon  - mdpd, MediaTek Display Processing Daemon
4. start_nvram_daemon    - nvram_daemon, calibration/config storage
5. run_hardware_init     - `pickel init`, makes /dev/fb0 usable
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from eink_init.models.config import EinkConfig
from eink_init.services.device import create_char_device
from eink_init.services.errors import (
    BinaryNotFoundError,
    DeviceNotFoundError,
    EinkInitError,
    PickelInitFailedError,
    StartFailedError,
)
from eink_init.services.mount import MountManager
from eink_init.services.process import ProcessManager


def parse_major_minor(content: str) -> tuple[int, int]:
    """Parse a sysfs `dev` attribute of the form "<major>:<minor>".

    Raises:
        ValueError: If the content is not two colon-separated integers
    """
    text = content.strip()
    parts = text.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"unexpected device number format: {text!r}")
    return int(parts[0]), int(parts[1])


class ServiceSequencer:
    """Runs the display bring-up steps in order and stops them again."""

    # Step failures that are logged without aborting the sequence.
    NON_FATAL = {
        # init_bin is missing on some hardware variants
        "mount_init_data": (DeviceNotFoundError,),
    }

    def __init__(
        self,
        config: Optional[EinkConfig] = None,
        mount_manager: Optional[MountManager] = None,
        process_manager: Optional[ProcessManager] = None,
    ):
        """Initialize service sequencer.

        Args:
            config: EinkConfig instance (defaults if None)
            mount_manager: MountManager for the init_bin partition
            process_manager: ProcessManager for daemons and pickel
        """
        self.logger = logging.getLogger("eink_init.sequencer")
        self.config = config or EinkConfig()
        self.process_manager = process_manager or ProcessManager()
        self.mount_manager = mount_manager or MountManager(self.process_manager)

    @property
    def steps(self) -> list[tuple[str, Callable[[], Awaitable[None]]]]:
        return [
            ("mount_init_data", self.mount_init_data),
            ("ensure_device_nodes", self.ensure_device_nodes),
            ("start_display_daemon", self.start_display_daemon),
            ("start_nvram_daemon", self.start_nvram_daemon),
            ("run_hardware_init", self.run_hardware_init),
        ]

    async def start_all(self) -> None:
        """Run the full start-up sequence.

        Raises:
            EinkInitError: The first fatal step failure, with `step` set
        """
        self.logger.info("Starting e-ink display services...")

        for name, step in self.steps:
            try:
                await step()
            except EinkInitError as e:
                e.step = name
                if isinstance(e, self.NON_FATAL.get(name, ())):
                    self.logger.warning(f"Step {name} failed (non-fatal): {e}")
                    continue
                self.logger.error(f"Service startup failed at {name}: {e}")
                raise

        self.logger.info("E-ink display initialization complete")

    async def stop_all(self) -> None:
        """Stop both daemons and unmount init_bin. Never raises."""
        self.logger.info("Stopping e-ink display services...")

        for binary in (self.config.display_daemon_binary, self.config.nvram_daemon_binary):
            self.process_manager.terminate(Path(binary).name)

        try:
            await self.mount_manager.unmount(self.config.init_data_mount_point)
        except EinkInitError as e:
            self.logger.warning(f"Failed to unmount init_bin during stop: {e}")

        self.logger.info("E-ink services stopped")

    # -- Individual steps --

    async def mount_init_data(self) -> None:
        """Mount the init_bin partition read-only.

        Raises:
            DeviceNotFoundError: If the partition device is absent
            MountFailedError: If the device exists but cannot be mounted
        """
        cfg = self.config
        mount_point = cfg.init_data_mount_point

        if self.mount_manager.is_mounted(mount_point):
            self.logger.info(f"init_bin already mounted at {mount_point}")
            return

        if not self.mount_manager.is_block_device(cfg.init_data_partition):
            self.logger.warning(f"init_bin partition {cfg.init_data_partition} not found")
            raise DeviceNotFoundError(cfg.init_data_partition)

        await self.mount_manager.mount_readonly(
            cfg.init_data_partition,
            mount_point,
            retries=cfg.init_data_mount_retries,
            delay=cfg.init_data_mount_retry_delay,
        )

    async def ensure_device_nodes(self) -> None:
        """Create missing REGAL device nodes from their sysfs major:minor.

        Every problem here is logged and skipped; the display still works
        without REGAL waveform optimization.
        """
        sysfs_dir = Path(self.config.regal_sysfs_dir)
        if not sysfs_dir.is_dir():
            self.logger.warning(
                f"{sysfs_dir} not found - REGAL not supported on this hardware"
            )
            return

        self.logger.info("Checking REGAL device nodes...")
        for name in self.config.regal_devices:
            self._ensure_device_node(sysfs_dir, name)

    def _ensure_device_node(self, sysfs_dir: Path, name: str) -> None:
        sysfs_dev = sysfs_dir / name / "dev"
        dev_path = Path(self.config.dev_dir) / name

        if not sysfs_dev.exists():
            self.logger.warning(f"REGAL sysfs entry for {name} not found, skipping")
            return

        if dev_path.exists():
            self.logger.debug(f"REGAL device {dev_path} already exists")
            return

        try:
            major, minor = parse_major_minor(sysfs_dev.read_text())
        except (OSError, ValueError) as e:
            self.logger.warning(f"Failed to read major:minor for {name}: {e}")
            return

        self.logger.info(f"Creating REGAL device node {dev_path} ({major}:{minor})")
        try:
            create_char_device(str(dev_path), major, minor)
        except OSError as e:
            self.logger.warning(f"Failed to create {dev_path}: {e}")
            return
        self.logger.info(f"Created {dev_path}")

    async def start_display_daemon(self) -> None:
        """Start mdpd and give it time to initialize.

        Raises:
            BinaryNotFoundError: If mdpd is not installed
            StartFailedError: If the launcher exits non-zero
        """
        cfg = self.config
        binary = cfg.display_daemon_binary
        name = Path(binary).name

        if not Path(binary).exists():
            self.logger.error(f"{name} not found at {binary}")
            raise BinaryNotFoundError(binary)

        if self.process_manager.is_running(name):
            self.logger.info(f"{name} already running")
            return

        self.logger.info(f"Starting {name} daemon...")
        await self._launch(binary, cfg.display_daemon_args)

        self.logger.debug(f"Waiting {cfg.display_daemon_init_delay}s for {name} to initialize...")
        await asyncio.sleep(cfg.display_daemon_init_delay)

        if self.process_manager.is_running(name):
            self.logger.info(f"{name} started successfully")
        else:
            # It may have forked into a process we cannot see by name yet
            self.logger.warning(f"{name} started but process not found (may have exited)")

    async def start_nvram_daemon(self) -> None:
        """Start nvram_daemon; a missing binary is tolerated.

        Raises:
            StartFailedError: If the launcher exits non-zero
        """
        cfg = self.config
        binary = cfg.nvram_daemon_binary
        name = Path(binary).name

        if not Path(binary).exists():
            self.logger.warning(f"{name} not found at {binary} (non-fatal)")
            return

        if self.process_manager.is_running(name):
            self.logger.info(f"{name} already running")
            return

        Path(cfg.nvram_data_dir).mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Starting {name}...")
        await self._launch(binary, [])

    async def run_hardware_init(self) -> None:
        """Run `pickel init` in the foreground.

        Raises:
            BinaryNotFoundError: If pickel is not installed
            PickelInitFailedError: On non-zero exit or timeout
        """
        cfg = self.config
        binary = cfg.hwinit_binary

        if not Path(binary).exists():
            self.logger.error(f"pickel not found at {binary}")
            raise BinaryNotFoundError(binary)

        self.logger.info("Running pickel init...")
        result = await self.process_manager.run(
            [binary, *cfg.hwinit_args], timeout=cfg.hwinit_timeout
        )

        if not result.ok:
            self.logger.error(
                f"pickel init failed with exit code {result.returncode}: {result.output}"
            )
            raise PickelInitFailedError(result.returncode, result.output)

        self.logger.info("pickel init completed successfully")
        if result.output:
            self.logger.debug(f"pickel output: {result.output}")

    async def _launch(self, binary: str, args: list[str]) -> None:
        result = await self.process_manager.launch_detached(
            binary, args, settle=self.config.daemon_launch_settle
        )
        if not result.ok:
            self.logger.error(
                f"Failed to start {Path(binary).name}: "
                f"exit={result.returncode} {result.output}"
            )
            raise StartFailedError(binary, result.returncode, result.output)
