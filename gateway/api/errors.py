"""
Error Responses - the `{error: {...}}` envelope for all non-200 JSON responses.
"""

from datetime import UTC, datetime

from fastapi import status
from fastapi.responses import JSONResponse

from gateway.models.api import ErrorBody, ErrorCode, ErrorDetails, ErrorResponse


def error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    request_id: str | None = None,
    details: ErrorDetails | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorBody(
            code=code,
            message=message,
            details=details,
            request_id=request_id,
            timestamp=datetime.now(UTC).isoformat(),
        )
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


def unauthorized_response(expired: bool, request_id: str | None = None) -> JSONResponse:
    """401 envelope; an expired token is reported as TOKEN_EXPIRED."""
    if expired:
        return error_response(
            status.HTTP_401_UNAUTHORIZED,
            ErrorCode.TOKEN_EXPIRED,
            "Token has expired; refresh required",
            request_id,
        )
    return error_response(
        status.HTTP_401_UNAUTHORIZED, ErrorCode.UNAUTHORIZED, "Authentication required", request_id
    )
