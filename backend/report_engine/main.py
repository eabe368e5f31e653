"""
FastAPI application for the report engine.

    uvicorn report_engine.main:app --app-dir backend
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from report_engine.routes import router
from report_engine.service import ReportingService
from report_engine.settings import EngineSettings

settings = EngineSettings.from_env()

# Logging setup (structured-ish JSON)
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='{"time":"%(asctime)s","level":"%(levelname)s","message":"%(message)s","module":"%(name)s"}',
)
logger = logging.getLogger(__name__)


def create_app(service: Optional[ReportingService] = None, run_scheduler: bool = True) -> FastAPI:
    """Build the app. Tests pass their own service and leave the scheduler off."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = ReportingService(settings)
        if run_scheduler:
            app.state.service.scheduler.start()
        logger.info(f"Report engine ready with {len(app.state.service.data_sources())} data sources")
        yield
        app.state.service.shutdown()

    app = FastAPI(title="Report Engine", lifespan=lifespan)
    app.state.service = service
    app.include_router(router)
    return app


app = create_app()
