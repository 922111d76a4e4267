"""Exception handling for the FastAPI app."""

import logging
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.core.conf import settings
from backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)


def get_correlation_id(request: Request) -> str:
    """Request id sent by the caller, or a new one."""
    correlation_id = getattr(request.state, 'correlation_id', None)
    if correlation_id is None:
        correlation_id = request.headers.get(settings.TRACE_ID_REQUEST_HEADER_KEY) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
    return correlation_id


async def exception_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Middleware that tags responses with the request id and logs unhandled exceptions.

    Args:
    ----
        request (Request): The incoming request.
        call_next (Callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response, or an INTERNAL error carrying the correlation id.

    """
    correlation_id = get_correlation_id(request)
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            f"[API] Unhandled {type(exc).__name__} on {request.method} {request.url.path} "
            f"(correlationId={correlation_id}): {exc}",
            exc_info=True,
        )
        response = JSONResponse(
            status_code=500,
            content={'error': 'INTERNAL', 'message': 'Internal Server Error', 'correlationId': correlation_id},
        )
    response.headers[settings.TRACE_ID_REQUEST_HEADER_KEY] = correlation_id
    return response


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render a BillingError with the status code of its kind.

    Args:
    ----
        request (Request): The incoming request that triggered the exception.
        exc (BillingError): The exception object that was raised.

    Returns:
    -------
        JSONResponse: `exc.to_dict()` with `exc.status_code`.

    """
    if exc.status_code >= 500:
        logger.error(f"[API] {exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"[API] {exc.code} on {request.url.path}: {exc.message}")
    content = exc.to_dict()
    if exc.status_code >= 500:
        content['correlationId'] = get_correlation_id(request)
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation failures as INVALID_INPUT (400)."""
    errors = exc.errors()
    field = '.'.join(str(p) for p in errors[0]['loc'][1:]) if errors else None
    return JSONResponse(
        status_code=400,
        content={
            'error': 'INVALID_INPUT',
            'code': 'INVALID_INPUT',
            'message': errors[0]['msg'] if errors else 'Invalid input',
            'details': {'field': field} if field else {},
        },
    )
