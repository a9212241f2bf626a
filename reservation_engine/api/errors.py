import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from reservation_engine.api.schemas.schemas import ErrorBody, ErrorResponse
from reservation_engine.domain.exceptions import CaptureInconsistencyError, ReservationEngineError

logger = logging.getLogger(__name__)


def _envelope(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorBody(code=code, message=message, details=jsonable_encoder(details or {})),
    )
    return JSONResponse(body.model_dump(), status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReservationEngineError)
    async def domain_error_handler(request: Request, exc: ReservationEngineError) -> JSONResponse:
        if isinstance(exc, CaptureInconsistencyError):
            # Already logged as critical where it happened; the caller gets no internals.
            return _envelope(exc.status_code, exc.code, "Internal server error")

        if exc.status_code >= 500:
            logger.error("Request failed. path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return _envelope(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _envelope(
            status.HTTP_400_BAD_REQUEST,
            "VALIDATION_ERROR",
            "Invalid request",
            {
                "errors": [
                    {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
                    for error in exc.errors()
                ]
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error. path=%s", request.url.path)
        return _envelope(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "Internal server error",
        )
