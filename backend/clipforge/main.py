from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import PipelineError, QuotaExceeded
from .routes_clips import router as clips_router
from .routes_content import router as content_router
from .routes_cron import router as cron_router
from .routes_files import router as files_router
from .routes_generate import router as generate_router
from .routes_schedule import router as schedule_router
from .routes_scheduler import router as scheduler_router
from .routes_usage import router as usage_router
from .settings import get_settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("clipforge")

app = FastAPI(title="clipforge")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.http_status >= 500:
        logger.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc.message)
    body = {"detail": exc.message, "error": exc.__class__.__name__}
    if isinstance(exc, QuotaExceeded):
        body.update({"usage": exc.usage, "limit": exc.limit})
    return JSONResponse(body, status_code=exc.http_status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(content_router)
app.include_router(clips_router)
app.include_router(generate_router)
app.include_router(schedule_router)
app.include_router(usage_router)
app.include_router(cron_router)
app.include_router(scheduler_router)
app.include_router(files_router)


@app.on_event("startup")
async def startup_event():
    from clipforge.services.scheduler import scheduler_service

    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    from clipforge.services.scheduler import scheduler_service

    scheduler_service.stop()
