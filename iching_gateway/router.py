"""
Router — FastAPI routes for readings and the usage report.

No gateway logic lives here.  Each route is a thin shim that:
  1. Captures the incoming body into a ReadingRequest
  2. Passes it to the ReadingGateway
  3. Renders the ReadingResponse, or the GatewayError, as JSON
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from iching_gateway.errors import GatewayError, UpstreamError
from iching_gateway.gateway import ReadingGateway
from iching_gateway.models import ReadingRequest

logger = logging.getLogger(__name__)

READ_PATHS = ("/api/read", "/api/ai", "/generate")
USAGE_PATHS = ("/api/usage", "/usage")


def error_response(error: GatewayError) -> JSONResponse:
    """Render a gateway error as its JSON envelope."""
    if isinstance(error, UpstreamError):
        content: dict[str, Any] = {
            "error": "generation_failed",
            "code": error.code,
            "message": "The reading could not be generated. Please try again shortly.",
            "hint": error.hint,
        }
    else:
        content = {"ok": False, "error": error.code, "message": error.message}
    return JSONResponse(status_code=error.status_code, content=content)


def create_router(gateway: ReadingGateway, admin_key: str | None = None) -> APIRouter:
    """Build the ``APIRouter`` serving readings and usage."""
    router = APIRouter()

    async def read(request: Request):
        try:
            body: Any = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        client = request.headers.get("x-forwarded-for") or (
            request.client.host if request.client else ""
        )
        logger.info("→ %s %s from %s", request.method, request.url.path, client)

        try:
            reading_request = ReadingRequest.model_validate(body)
        except ValidationError as e:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "error": "invalid_request", "message": str(e)},
            )

        try:
            result = await gateway.handle(reading_request)
        except GatewayError as e:
            return error_response(e)
        return result.model_dump()

    async def usage(request: Request):
        if admin_key:
            supplied = request.query_params.get("key") or request.headers.get("x-admin-key")
            if supplied != admin_key:
                return JSONResponse(status_code=403, content={"ok": False, "error": "forbidden"})
        return gateway.usage_report()

    for path in READ_PATHS:
        router.add_api_route(path, read, methods=["POST"], tags=["reading"])
    for path in USAGE_PATHS:
        router.add_api_route(path, usage, methods=["GET"], tags=["system"])

    return router
