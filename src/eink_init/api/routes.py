"""API route handlers for the e-ink init service."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from eink_init.api.models import StatusResponse, SuccessResponse
from eink_init.models.status import InitStage
from eink_init.services.controller import InitController
from eink_init.services.observers import QueueObserver

router = APIRouter(prefix="/api/v1.0")
logger = logging.getLogger("eink_init.api")


@router.get("/status", response_model=StatusResponse)
async def get_status():
    """GET /api/v1.0/status - Query current initialization status.

    Response format (success):
        {
            "code": 200,
            "msg": "success",
            "data": {"stage": "starting_services", "reason": null}
        }
    """
    status = InitController().status()

    if status.stage == InitStage.FAILED:
        code = status.reason.code if status.reason else "UNKNOWN"
        return StatusResponse(
            code=500,
            msg=f"Initialization failed: {code}",
            data=status,
            stage=status.stage,
        )
    return StatusResponse(code=200, msg="success", data=status)


@router.post("/stop", response_model=SuccessResponse)
async def post_stop():
    """POST /api/v1.0/stop - Stop display daemons and unmount init_bin.

    Always succeeds; stopping is best-effort.
    """
    await InitController().stop_services()
    return SuccessResponse()


@router.websocket("/events")
async def events(websocket: WebSocket):
    """WS /api/v1.0/events - Stream lifecycle events until ready/failed.

    Late subscribers receive the terminal event immediately. The observer is
    removed when the client disconnects.
    """
    await websocket.accept()
    controller = InitController()
    observer = QueueObserver()
    controller.subscribe(observer)

    try:
        async for message in observer.until_terminal():
            await websocket.send_json(message.model_dump(mode="json"))
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Event stream client disconnected")
    finally:
        controller.unsubscribe(observer)
