"""
Webhook ingress for the HTTP bridge.

Devices call ``/message``:

- PUT announces a device so the server can create it
- POST pushes values of a connected device
- DELETE asks the server to remove a connected device

Every response is ``{"status": "ok"}`` or ``{"status": "error", "error": ...}``.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .adapter import WebhookAdapter

logger = logging.getLogger(__name__)

INVALID_JSON = "JSON in request is invalid"


# ============ Request Models ============

class WebhookMessage(BaseModel):
    """Body of a device call."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_id: str = Field(..., alias="deviceID", min_length=1)
    product_name: str = Field("", alias="productName")
    vendor_name: str = Field("", alias="vendorName")
    values: Dict[str, Any] = Field(default_factory=dict)


def ok() -> Dict[str, str]:
    return {"status": "ok"}


def error(message: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message})


def create_app(adapter: "WebhookAdapter", api_key: Optional[str] = None) -> FastAPI:
    """Create the webhook app feeding ``adapter``."""
    app = FastAPI(
        title="HealthCore HTTP bridge",
        description="Webhook ingress for HTTP devices",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        logger.warning(f"Invalid webhook body on {request.method} {request.url.path}: {exc.errors()}")
        return error(INVALID_JSON, status_code=400)

    def authorized(key: Optional[str]) -> bool:
        return api_key is None or key == api_key

    @app.get("/health")
    async def health():
        return {"status": "ok", "online": adapter.online, "devices": len(adapter.connected_ids)}

    @app.put("/message")
    async def announce(message: WebhookMessage, x_api_key: Optional[str] = Header(None)):
        if not authorized(x_api_key):
            return error("Invalid API key", status_code=401)
        logger.info(f"Request for creating device {message.device_id}")
        adapter.announce(message.device_id, message.product_name, message.vendor_name)
        return ok()

    @app.post("/message")
    async def push_values(message: WebhookMessage, x_api_key: Optional[str] = Header(None)):
        if not authorized(x_api_key):
            return error("Invalid API key", status_code=401)
        if not adapter.is_connected(message.device_id):
            return error(f"Device {message.device_id} is not registered at server")
        problem = adapter.validate(message.device_id, message.values)
        if problem:
            return error(problem)
        adapter.push(message.device_id, message.values)
        return ok()

    @app.delete("/message")
    async def remove(message: WebhookMessage, x_api_key: Optional[str] = Header(None)):
        if not authorized(x_api_key):
            return error("Invalid API key", status_code=401)
        if not adapter.is_connected(message.device_id):
            return error(f"Device {message.device_id} is not registered at server")
        logger.info(f"Request for removing device {message.device_id}")
        adapter.leave(message.device_id)
        return ok()

    return app
