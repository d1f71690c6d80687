import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from upload_scanner.core.config import settings
from upload_scanner.routes.internal_uploads import router as internal_uploads_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Upload Scanner")
logger.info(
    "Startup config: ENV=%s bucket=%s temp_prefix=%s scanned_prefix=%s",
    settings.ENV,
    settings.S3_BUCKET_NAME,
    settings.S3_TEMP_PREFIX,
    settings.S3_SCANNED_PREFIX,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message = detail if isinstance(detail, str) else (str(detail) if detail is not None else "Request failed")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": _error_code(exc.status_code), "message": message},
    )


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": exc.errors()},
        },
    )


app.include_router(internal_uploads_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
