from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_cron import router as cron_router
from .routes_files import router as files_router
from .routes_movies import router as movies_router
from .routes_scheduler import router as scheduler_router
from .routes_webhooks import router as webhooks_router
from .settings import get_settings

logger = logging.getLogger("movie_factory")

settings = get_settings()
app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok", "environment": settings.environment}


app.include_router(movies_router)
app.include_router(webhooks_router)
app.include_router(cron_router)
app.include_router(scheduler_router)
app.include_router(files_router)


@app.on_event("startup")
async def startup_event():
    """Start the orchestrator scheduler on app startup."""
    from .services.scheduler import scheduler_service
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    from .services.scheduler import scheduler_service
    scheduler_service.stop()
    logger.info("Scheduler stopped on app shutdown")
