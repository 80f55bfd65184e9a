import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from .custom import CallNotEndedError, InvalidPhoneNumberError, RateLimitError, VapiError

logger = logging.getLogger(__name__)


async def vapi_error_handler(_request: Request, exc: VapiError) -> JSONResponse:
    logger.error("VAPI error: %s (status=%s)", exc.message, exc.status_code)
    return JSONResponse(
        status_code=502,
        content={"detail": f"VAPI error: {exc.message}"},
    )


async def rate_limit_error_handler(_request: Request, exc: RateLimitError) -> JSONResponse:
    logger.warning("Rate limit hit for %s", exc.service)
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded for {exc.service}"},
    )


async def invalid_phone_handler(_request: Request, exc: InvalidPhoneNumberError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": exc.message})


async def call_not_ended_handler(request: Request, exc: CallNotEndedError) -> JSONResponse:
    logger.info(
        "%s %s rejected: call %s is %s",
        request.method, request.url.path, exc.call_id, exc.status,
    )
    return JSONResponse(status_code=409, content={"detail": str(exc)})
