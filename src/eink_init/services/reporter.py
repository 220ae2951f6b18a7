"""Lifecycle reporting to the downstream display client."""

import logging

import httpx

from eink_init.models.status import EventMessage
from eink_init.services.observers import QueueObserver


class ReportService(QueueObserver):
    """Observer that POSTs every lifecycle event to the display client.

    Events are queued by notify() and sent in order by run(), so a slow or
    unreachable client never blocks the initialization pipeline.
    """

    def __init__(self, report_url: str, timeout: float = 5.0):
        """Initialize report service.

        Args:
            report_url: Endpoint receiving EventMessage JSON payloads
            timeout: HTTP timeout per request in seconds
        """
        super().__init__()
        self.logger = logging.getLogger("eink_init.reporter")
        self.report_url = report_url
        self.timeout = timeout

    async def report_event(self, message: EventMessage) -> None:
        """Send a single event to the display client.

        Note:
            Failures are logged but not raised; reporting is best-effort
        """
        self.logger.debug(f"Reporting to display client: event={message.event.value}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.report_url,
                    json=message.model_dump(mode="json"),
                )
                response.raise_for_status()
                self.logger.debug("Report sent successfully")

        except httpx.HTTPError as e:
            self.logger.warning(f"Failed to report {message.event.value} to display client: {e}")

    async def run(self) -> None:
        """Forward queued events until the terminal one has been sent."""
        async for message in self.until_terminal():
            await self.report_event(message)
        self.logger.info("Reporting finished")
