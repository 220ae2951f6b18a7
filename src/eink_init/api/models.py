"""Pydantic models for HTTP API responses."""

from typing import Optional
from pydantic import BaseModel, Field

from eink_init.models.status import InitStage, InitStatus


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response.

    HTTP status code is always 200, real status in 'code' field.

    Example (failed):
        {
            "code": 500,
            "msg": "Initialization failed: TIMEOUT",
            "data": {
                "stage": "failed",
                "reason": {
                    "code": "TIMEOUT",
                    "step": "copy_firmware",
                    "message": "Timed out after 30.0s waiting for /dev/mmcblk0p10",
                    "details": {"device": "/dev/mmcblk0p10", "timeout": 30.0}
                }
            },
            "stage": "failed"
        }
    """

    code: int = Field(..., description="Application-level status code (200/500)")
    msg: str = Field(..., description="Status message or error description")
    data: InitStatus = Field(..., description="Current initialization status")
    stage: Optional[InitStage] = Field(
        None, description="Current stage (for failed responses at root level)"
    )


class SuccessResponse(BaseModel):
    """Success response for command endpoints (POST /stop)."""

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")
