"""Exception taxonomy for the e-ink initialization pipeline.

Every failure raised by the pipeline is an EinkInitError carrying a stable
error code and structured details, so the controller can turn it into an
inspectable FailureReason instead of a bare string.
"""

from typing import Any, Optional, Sequence

from eink_init.models.status import FailureReason


class EinkInitError(Exception):
    """Base class for pipeline failures."""

    code = "EINK_INIT_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details
        self.step: Optional[str] = None

    @property
    def reason(self) -> FailureReason:
        return FailureReason(
            code=self.code,
            step=self.step,
            message=self.message,
            details=self.details,
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class DeviceTimeoutError(EinkInitError):
    """Block device did not appear before the deadline."""

    code = "TIMEOUT"

    def __init__(self, device: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for {device}",
            device=device,
            timeout=timeout,
        )
        self.device = device
        self.timeout = timeout


class DeviceNotFoundError(EinkInitError):
    """Optional partition device is absent on this hardware variant."""

    code = "DEVICE_NOT_FOUND"

    def __init__(self, device: str):
        super().__init__(f"Device {device} not found", device=device)
        self.device = device


class MountFailedError(EinkInitError):
    code = "MOUNT_FAILED"

    def __init__(
        self, device: str, mount_point: str, exit_code: Optional[int], output: str = ""
    ):
        super().__init__(
            f"Failed to mount {device} at {mount_point} (exit {exit_code})",
            device=device,
            mount_point=mount_point,
            exit_code=exit_code,
            output=output,
        )
        self.device = device
        self.mount_point = mount_point
        self.exit_code = exit_code
        self.output = output


class UnmountFailedError(EinkInitError):
    code = "UNMOUNT_FAILED"

    def __init__(self, mount_point: str, exit_code: Optional[int], output: str = ""):
        super().__init__(
            f"Failed to unmount {mount_point} (exit {exit_code})",
            mount_point=mount_point,
            exit_code=exit_code,
            output=output,
        )
        self.mount_point = mount_point
        self.exit_code = exit_code
        self.output = output


class CopyFailedError(EinkInitError):
    """A single manifest entry could not be copied."""

    code = "COPY_FAILED"

    def __init__(self, source: str, dest: str, cause: str):
        super().__init__(
            f"Failed to copy {source} -> {dest}: {cause}",
            source=source,
            dest=dest,
            cause=cause,
        )
        self.source = source
        self.dest = dest
        self.cause = cause


class MissingCriticalFilesError(EinkInitError):
    code = "MISSING_CRITICAL_FILES"

    def __init__(
        self,
        paths: Sequence[str],
        copy_failures: Sequence[CopyFailedError] = (),
    ):
        super().__init__(
            f"Critical files missing after copy: {', '.join(paths)}",
            paths=list(paths),
            copy_failures=[f.details for f in copy_failures],
        )
        self.paths = list(paths)
        self.copy_failures = list(copy_failures)


class BinaryNotFoundError(EinkInitError):
    """A required binary is absent."""

    code = "NOT_FOUND"

    def __init__(self, binary: str):
        super().__init__(f"{binary} not found", binary=binary)
        self.binary = binary


class StartFailedError(EinkInitError):
    code = "START_FAILED"

    def __init__(self, binary: str, exit_code: Optional[int], output: str = ""):
        super().__init__(
            f"Failed to start {binary} (exit {exit_code})",
            binary=binary,
            exit_code=exit_code,
            output=output,
        )
        self.binary = binary
        self.exit_code = exit_code
        self.output = output


class PickelInitFailedError(EinkInitError):
    """Foreground hardware-controller initialization failed.

    exit_code is None when the command was killed after its timeout.
    """

    code = "PICKEL_INIT_FAILED"

    def __init__(self, exit_code: Optional[int], output: str = ""):
        status = "timed out" if exit_code is None else f"exit {exit_code}"
        super().__init__(
            f"pickel init failed ({status})",
            exit_code=exit_code,
            output=output,
        )
        self.exit_code = exit_code
        self.output = output
