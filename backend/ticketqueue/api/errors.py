"""
Maps domain errors to JSON responses.

Clients switch on `code`: SESSION_EXPIRED (410) means "offer to rejoin",
PURCHASE_LIMIT_REACHED means "nothing left to buy", SALE_NOT_STARTED means
"come back later".
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ticketqueue.core.exceptions import QueueError
from ticketqueue.core.logging import get_logger

logger = get_logger(__name__)


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    logger.info("request_rejected", code=exc.code, status_code=exc.status_code)
    headers = None
    retry_after = exc.detail.get("retry_after")
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(QueueError, queue_error_handler)
