"""
Maps domain exceptions to JSON error responses.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from appointly.core.exceptions import AppointlyError, DeliveryFailure

logger = logging.getLogger(__name__)


async def appointly_error_handler(request: Request, exc: AppointlyError) -> JSONResponse:
    if isinstance(exc, DeliveryFailure):
        # Delivery failures belong to queue handlers; reaching HTTP is a bug
        logger.error("Delivery failure surfaced on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error.", "code": "internal_error"},
        )

    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)

    content = {"detail": exc.message, "code": exc.code}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppointlyError, appointly_error_handler)
