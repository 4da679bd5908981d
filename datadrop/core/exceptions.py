from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("datadrop")


class DataDropError(Exception):
    """Base error surfaced to API callers with a fixed status code."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, **self.extra}


class Unauthorized(DataDropError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(DataDropError):
    status_code = 403
    default_message = "Forbidden"


class FileTooLarge(Forbidden):
    status_code = 413
    default_message = "File too large"


class NotFound(DataDropError):
    status_code = 404
    default_message = "File not found"


class Gone(DataDropError):
    status_code = 410
    default_message = "Gone"


class ValidationFailed(DataDropError):
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: str | None = None, field: str | None = None, **extra: Any) -> None:
        if field:
            extra["field"] = field
        super().__init__(message, **extra)


class Conflict(DataDropError):
    status_code = 409
    default_message = "Conflict"


class StorageError(Exception):
    """A storage, cache or queue backend call failed."""

    def __init__(self, message: str, code: str = "STORAGE_ERROR") -> None:
        self.code = code
        super().__init__(message)


class MultipartRejected(StorageError):
    """The storage backend refused to assemble a multipart upload."""


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DataDropError)
    async def datadrop_error_handler(request: Request, exc: DataDropError):
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        # Backend detail stays in the log, never in the response
        logger.error(
            "event=upstream_failure path=%s code=%s error=%s", request.url.path, exc.code, exc
        )
        return JSONResponse({"detail": "Internal server error"}, status_code=500)
