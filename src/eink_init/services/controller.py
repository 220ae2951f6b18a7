"""Lifecycle controller for e-ink display initialization."""

import asyncio
import logging
import weakref
from typing import Optional

from eink_init.models.config import EinkConfig
from eink_init.models.status import (
    EVENT_STAGES,
    EventMessage,
    FailureReason,
    InitStage,
    InitStatus,
    LifecycleEvent,
)
from eink_init.services.errors import EinkInitError
from eink_init.services.firmware import FirmwareExtractor
from eink_init.services.observers import Observer
from eink_init.services.sequencer import ServiceSequencer

_STAGE_ORDER = [
    InitStage.INITIALIZING,
    InitStage.COPYING_FIRMWARE,
    InitStage.STARTING_SERVICES,
    InitStage.READY,
]


class InitController:
    """Singleton state machine driving firmware extraction and service start-up.

    Manages:
    - The current InitStatus (for status() and GET /status)
    - The set of observers receiving lifecycle events

    Creating the controller schedules the pipeline as a single task on the
    running event loop and returns immediately. The pipeline runs once per
    process; ready and failed are terminal.

    All public methods run on the event loop thread and never await, so a
    status snapshot or a subscription can not interleave with a transition.
    """

    _instance: Optional["InitController"] = None

    def __new__(cls, *args, **kwargs):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        config: Optional[EinkConfig] = None,
        extractor: Optional[FirmwareExtractor] = None,
        sequencer: Optional[ServiceSequencer] = None,
    ):
        """Initialize controller and start the pipeline (only once due to singleton).

        Args:
            config: EinkConfig instance (defaults if None)
            extractor: FirmwareExtractor (built from config if None)
            sequencer: ServiceSequencer (built from config if None)

        Raises:
            RuntimeError: If called outside a running event loop
        """
        if self._initialized:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            InitController._instance = None
            raise RuntimeError("InitController must be created inside a running event loop")

        self.logger = logging.getLogger("eink_init.controller")
        self.config = config or EinkConfig()
        self.extractor = extractor or FirmwareExtractor(self.config)
        self.sequencer = sequencer or ServiceSequencer(self.config)

        self._stage: InitStage = InitStage.INITIALIZING
        self._reason: Optional[FailureReason] = None
        self._observers: "weakref.WeakSet[Observer]" = weakref.WeakSet()

        self._task = loop.create_task(self._initialize())
        self._initialized = True
        self.logger.info("InitController initialized")

    # -- Public API --

    def status(self) -> InitStatus:
        """Get the current initialization status."""
        return InitStatus(stage=self._stage, reason=self._reason)

    def subscribe(self, observer: Observer) -> None:
        """Register an observer for lifecycle events.

        If initialization already finished, the observer immediately receives
        the terminal event (ready or failed) and nothing else. Otherwise it
        receives every event published from now on.

        Subscribing an already registered observer is a no-op.

        Observers are held by weak reference and disappear with their owner.
        """
        if observer in self._observers:
            return
        self._observers.add(observer)

        if self._stage.is_terminal:
            event = LifecycleEvent.READY if self._stage == InitStage.READY else LifecycleEvent.FAILED
            self._deliver(observer, EventMessage(event=event, reason=self._reason))

    def unsubscribe(self, observer: Observer) -> None:
        self._observers.discard(observer)

    @property
    def subscriber_count(self) -> int:
        return len(self._observers)

    async def wait(self) -> InitStatus:
        """Wait for the pipeline to reach a terminal state and return it."""
        await self._task
        return self.status()

    async def stop_services(self) -> None:
        """Stop the display daemons and unmount init_bin. Never raises."""
        await self.sequencer.stop_all()

    # -- Pipeline --

    async def _initialize(self) -> None:
        self.logger.info("Starting e-ink display initialization...")

        self._publish(LifecycleEvent.COPYING_FIRMWARE)
        try:
            await self.extractor.ensure_copied()
        except Exception as e:
            self._fail(e, step="copy_firmware")
            return

        self._publish(LifecycleEvent.FIRMWARE_COPIED)
        self._publish(LifecycleEvent.STARTING_SERVICES)
        try:
            await self.sequencer.start_all()
        except Exception as e:
            self._fail(e, step="start_services")
            return

        self._publish(LifecycleEvent.SERVICES_STARTED)
        self._publish(LifecycleEvent.READY)
        self.logger.info("E-ink display is ready")

    def _fail(self, error: Exception, step: str) -> None:
        if isinstance(error, EinkInitError):
            reason = error.reason
            self.logger.error(f"Initialization failed at {reason.step or step}: {error}")
        else:
            self.logger.error(f"Unexpected error during {step}: {error}", exc_info=True)
            reason = FailureReason(
                code="UNEXPECTED",
                message=str(error),
                details={"type": type(error).__name__},
            )

        if reason.step is None:
            reason = reason.model_copy(update={"step": step})
        self._publish(LifecycleEvent.FAILED, reason)

    def _publish(self, event: LifecycleEvent, reason: Optional[FailureReason] = None) -> None:
        stage = EVENT_STAGES.get(event)
        if stage is not None:
            self._advance(stage, reason)

        message = EventMessage(event=event, reason=reason)
        self.logger.debug(f"Publishing {event.value} to {len(self._observers)} observer(s)")
        for observer in list(self._observers):
            self._deliver(observer, message)

    def _advance(self, stage: InitStage, reason: Optional[FailureReason]) -> None:
        if self._stage.is_terminal:
            self.logger.error(f"Ignoring transition {self._stage.value} -> {stage.value}")
            return

        if stage != InitStage.FAILED and _STAGE_ORDER.index(stage) < _STAGE_ORDER.index(self._stage):
            self.logger.error(f"Ignoring backwards transition {self._stage.value} -> {stage.value}")
            return

        self._stage = stage
        self._reason = reason if stage == InitStage.FAILED else None
        self.logger.info(f"Status updated: stage={stage.value}")

    def _deliver(self, observer: Observer, message: EventMessage) -> None:
        try:
            observer.notify(message)
        except Exception as e:
            self.logger.warning(f"Removing unreachable observer {observer!r}: {e}")
            self._observers.discard(observer)
