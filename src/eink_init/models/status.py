"""Status enums and models for e-ink initialization."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class InitStage(str, Enum):
    """Initialization lifecycle stages.

    State transitions:
    initializing → copying_firmware → starting_services → ready
                          ↓                  ↓
                        failed ←─────────────┘
    """

    INITIALIZING = "initializing"
    COPYING_FIRMWARE = "copying_firmware"
    STARTING_SERVICES = "starting_services"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InitStage.READY, InitStage.FAILED)


class LifecycleEvent(str, Enum):
    """Events published to observers, in pipeline order."""

    COPYING_FIRMWARE = "copying_firmware"
    FIRMWARE_COPIED = "firmware_copied"
    STARTING_SERVICES = "starting_services"
    SERVICES_STARTED = "services_started"
    READY = "ready"
    FAILED = "failed"


# Events that move the controller to a new stage. The remaining events are
# notifications only.
EVENT_STAGES = {
    LifecycleEvent.COPYING_FIRMWARE: InitStage.COPYING_FIRMWARE,
    LifecycleEvent.STARTING_SERVICES: InitStage.STARTING_SERVICES,
    LifecycleEvent.READY: InitStage.READY,
    LifecycleEvent.FAILED: InitStage.FAILED,
}


class FailureReason(BaseModel):
    """Structured failure payload carried by a failed status."""

    code: str = Field(..., description="Error code (e.g. TIMEOUT, MOUNT_FAILED)")
    step: Optional[str] = Field(None, description="Pipeline step that failed")
    message: str = Field(..., description="Human-readable description")
    details: dict[str, Any] = Field(
        default_factory=dict, description="Error-specific fields"
    )


class InitStatus(BaseModel):
    """Snapshot of the controller state returned by status()."""

    stage: InitStage = Field(..., description="Current lifecycle stage")
    reason: Optional[FailureReason] = Field(
        None, description="Failure reason if stage == failed"
    )


class EventMessage(BaseModel):
    """A single notification delivered to an observer."""

    event: LifecycleEvent = Field(..., description="Lifecycle event")
    reason: Optional[FailureReason] = Field(
        None, description="Failure reason if event == failed"
    )

    @property
    def is_terminal(self) -> bool:
        return self.event in (LifecycleEvent.READY, LifecycleEvent.FAILED)
