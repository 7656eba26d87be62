from fastapi import status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base class for every failure returned to an API caller.

    Each subclass maps to exactly one HTTP status; ``UpstreamError`` is the
    only one whose status varies, because it passes the provider's status
    through when one is known.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class Unauthenticated(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN


class BadRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST


class QuotaExceeded(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class NoUpstreamAvailable(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class UpstreamError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY


class InternalError(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_payload(status_code: int, message: str) -> dict:
    return {
        "error": {
            "message": message,
            "type": "error",
            "code": status_code,
        }
    }


def gateway_error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(status_code, message))
