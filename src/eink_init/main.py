"""FastAPI application for e-ink display initialization."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
import uvicorn

from eink_init.api.routes import router
from eink_init.models.config import load_config
from eink_init.models.status import InitStage, InitStatus
from eink_init.services.controller import InitController
from eink_init.services.reporter import ReportService
from eink_init.utils.logging import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Load configuration and initialize logger
    - Create the InitController singleton (starts the pipeline)
    - Start forwarding events to the display client if report_url is set

    Shutdown:
    - Stop the event forwarder; display daemons keep running
    """
    config = load_config()
    logger = setup_logger("eink_init", config.log_file, level=config.log_level)
    logger.info("E-ink init service starting up...")

    controller = InitController(config=config)

    reporter_task = None
    if config.report_url:
        reporter = ReportService(config.report_url)
        # Observers are weakly held; app.state keeps the reporter alive
        app.state.reporter = reporter
        controller.subscribe(reporter)
        reporter_task = asyncio.create_task(reporter.run())
        logger.info(f"Reporting lifecycle events to {config.report_url}")

    logger.info(f"E-ink init service ready on port {config.port}")

    yield

    if reporter_task is not None:
        reporter_task.cancel()
        with suppress(asyncio.CancelledError):
            await reporter_task

    logger.info("E-ink init service shutting down...")


app = FastAPI(
    title="E-ink Init",
    description="Boot-time initialization of Kobo e-ink display hardware",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "eink-init", "version": "0.1.0"}


def main():
    """Main entry point for running the server."""
    config = load_config()
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info",
        access_log=False,
    )


async def run_once() -> InitStatus:
    """Run the initialization pipeline to completion without the HTTP server."""
    config = load_config()
    setup_logger("eink_init", config.log_file, level=config.log_level)
    return await InitController(config=config).wait()


def oneshot() -> int:
    """Entry point for init scripts: exit 0 when the display is ready, 1 otherwise."""
    status = asyncio.run(run_once())
    if status.stage == InitStage.READY:
        return 0

    logging.getLogger("eink_init").error(
        f"E-ink initialization failed: {status.reason.code if status.reason else 'unknown'}"
    )
    return 1


if __name__ == "__main__":
    main()
