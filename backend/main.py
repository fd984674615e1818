"""
Status API for the timetable worker.

Run with:
    python main.py
or
    uvicorn main:create_app --factory
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import Settings, configure_logging
from sync_service import TimetableWorker

logger = logging.getLogger(__name__)


class TargetResultResponse(BaseModel):
    succeeded: bool
    finished_at: str


class SyncStatusResponse(BaseModel):
    status: str
    message: str
    current_target: Optional[str] = None
    targets: list[str] = []
    sweeps_completed: int = 0
    last_sweep_started_at: Optional[str] = None
    last_sweep_completed_at: Optional[str] = None
    last_error: Optional[str] = None
    results: dict[str, TargetResultResponse] = {}


class RefreshResponse(BaseModel):
    success: bool
    message: str


def create_app(worker: Optional[TimetableWorker] = None) -> FastAPI:
    """Build the API around a worker (a new one from the environment by default)."""
    if worker is None:
        settings = Settings.from_env()
        configure_logging(settings)
        worker = TimetableWorker(settings)

    app = FastAPI(title="Timetable Sync API", version="1.0.0")
    app.state.worker = worker

    cors_origin = os.getenv("CORS_ORIGIN", "http://localhost:5173")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in cors_origin.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup_event():
        logger.info("Starting timetable worker")
        worker.start()

    @app.on_event("shutdown")
    def shutdown_event():
        worker.stop()

    @app.get("/ping")
    def ping():
        return {"status": "ok", "message": "Timetable worker is up"}

    @app.get("/sync/status", response_model=SyncStatusResponse)
    def sync_status():
        """Current worker state and the outcome of every target of the last sweeps."""
        return SyncStatusResponse(**worker.scheduler.get_status())

    @app.post("/sync/refresh", response_model=RefreshResponse)
    def sync_refresh():
        """Forget the target matrix; the next cycle reads the portal dropdowns again."""
        worker.scheduler.request_matrix_refresh()
        logger.info("POST /sync/refresh - target matrix cleared")
        return RefreshResponse(success=True, message="Target matrix will be rebuilt on the next cycle")

    @app.get("/form/options")
    def form_options():
        options = worker.fetcher.cached_form_options
        if options is None:
            raise HTTPException(status_code=503, detail="Form options have not been scraped yet")
        return options.to_dict()

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings)
    uvicorn.run(create_app(TimetableWorker(settings)), host=settings.api_host, port=settings.api_port)
