from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    DuplicateOperationError,
    InvalidEntryError,
    RebuildInProgressError,
    StoreUnavailableError,
)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DuplicateOperationError)
    async def duplicate_operation_handler(
        request: Request, exc: DuplicateOperationError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RebuildInProgressError)
    async def rebuild_in_progress_handler(
        request: Request, exc: RebuildInProgressError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InvalidEntryError)
    async def invalid_entry_handler(
        request: Request, exc: InvalidEntryError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        # Safe to retry: the idempotency key was not consumed.
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc)},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})
