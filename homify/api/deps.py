from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from homify.models.contracts import ErrorResponse
from homify.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def error_response(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )
