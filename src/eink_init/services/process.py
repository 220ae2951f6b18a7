"""Process management for the proprietary display daemons."""

import asyncio
import logging
import os
import shlex
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

# Linux truncates /proc/<pid>/comm to 15 characters.
COMM_MAX_LEN = 15


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a foreground command.

    returncode is None when the command was killed after its timeout.
    """

    argv: list[str]
    returncode: Optional[int]
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode is None


class ProcessManager:
    """Runs commands, launches detached daemons and finds them again by name.

    Daemons are located through /proc rather than PID files or held handles,
    because they may fork or re-exec after launch.
    """

    # Upper bound for the launching shell, which exits as soon as it backgrounds
    LAUNCH_TIMEOUT = 10.0

    def __init__(self, proc_dir: str = "/proc"):
        """Initialize process manager.

        Args:
            proc_dir: procfs mount point (overridable for tests)
        """
        self.logger = logging.getLogger("eink_init.process")
        self.proc_dir = Path(proc_dir)

    async def run(
        self, argv: Sequence[str], timeout: Optional[float] = None
    ) -> CommandResult:
        """Run a command in the foreground, capturing combined stdout/stderr.

        Args:
            argv: Command and arguments
            timeout: Seconds before the command is killed (None waits forever)

        Returns:
            CommandResult; a command that cannot be spawned reports exit 127
        """
        argv_list = list(argv)
        self.logger.debug(f"CMD {shlex.join(argv_list)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv_list,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self.logger.error(f"Failed to spawn {argv_list[0]}: {e}")
            return CommandResult(argv=argv_list, returncode=127, output=str(e))

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Command timed out after {timeout}s: {shlex.join(argv_list)}")
            process.kill()
            await process.wait()
            return CommandResult(argv=argv_list, returncode=None, output="")

        output = (stdout or b"").decode(errors="replace").strip()
        if output:
            self.logger.debug(f"OUTPUT {output}")
        return CommandResult(argv=argv_list, returncode=process.returncode, output=output)

    async def launch_detached(
        self, binary: str, args: Sequence[str] = (), settle: float = 0.0
    ) -> CommandResult:
        """Launch a daemon in the background and return without waiting for it.

        The daemon is started through `sh -c '... &'` with its stdio detached,
        so the shell exits immediately and the daemon is reparented to init.

        Args:
            binary: Daemon executable
            args: Daemon arguments
            settle: Seconds to pause after a successful launch

        Returns:
            CommandResult of the launching shell; returncode is None if the
            shell did not exit within LAUNCH_TIMEOUT
        """
        command = f"{shlex.join([binary, *args])} </dev/null >/dev/null 2>&1 &"
        result = await self.run(["sh", "-c", command], timeout=self.LAUNCH_TIMEOUT)

        if result.ok:
            if settle > 0:
                await asyncio.sleep(settle)
            self.logger.info(f"Started {Path(binary).name} via sh")
        return result

    def find_pids(self, name: str) -> list[int]:
        """Return PIDs whose /proc/<pid>/comm matches the given process name."""
        comm_name = name[:COMM_MAX_LEN]
        pids = []
        for comm_path in self.proc_dir.glob("[0-9]*/comm"):
            try:
                if comm_path.read_text().strip() == comm_name:
                    pids.append(int(comm_path.parent.name))
            except (OSError, ValueError):
                # Process exited while scanning
                continue
        return sorted(pids)

    def is_running(self, name: str) -> bool:
        return bool(self.find_pids(name))

    def terminate(self, name: str) -> int:
        """Send SIGTERM to every process with the given name.

        Returns:
            Number of processes signalled (0 if none were running)
        """
        signalled = 0
        for pid in self.find_pids(name):
            try:
                os.kill(pid, signal.SIGTERM)
                signalled += 1
            except ProcessLookupError:
                continue
            except PermissionError as e:
                self.logger.warning(f"Cannot terminate {name} (pid {pid}): {e}")

        if signalled:
            self.logger.info(f"Stopped {name} ({signalled} process(es))")
        else:
            self.logger.debug(f"{name} was not running")
        return signalled
