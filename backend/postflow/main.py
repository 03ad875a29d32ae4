from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import PostflowError
from .routes_ops import router as ops_router
from .routes_publications import router as publications_router
from .services.scheduler import SchedulerService
from .settings import get_settings

logger = logging.getLogger("postflow")

app = FastAPI(title="postflow")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PostflowError)
async def postflow_error_handler(request: Request, exc: PostflowError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"code": "VALIDATION_ERROR", "message": "Invalid request", "details": {"errors": jsonable_encoder(exc.errors())}},
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(publications_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Start the reconciliation scheduler on app startup."""
    scheduler_service = SchedulerService.get_instance()
    scheduler_service.configure(settings.async_database_url)
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    SchedulerService.get_instance().stop()
    logger.info("Scheduler stopped on app shutdown")
