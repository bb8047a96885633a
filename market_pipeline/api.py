"""FastAPI surface that feeds the browser dashboard with pipeline outputs."""
from __future__ import annotations

import contextlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import DEFAULT_TIMEFRAME, PipelineConfig
from .dashboard import Dashboard
from .errors import PipelineError
from .logging_config import CORRELATION_ID_CTX
from .schemas import ChartState, FilterType, HealthResponse, ListingState, ScheduleState, SearchHit

logger = logging.getLogger(__name__)


def create_app(dashboard: Optional[Dashboard] = None, config: Optional[PipelineConfig] = None) -> FastAPI:
    dashboard = dashboard or Dashboard(config=config)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        await dashboard.start()
        try:
            yield
        finally:
            await dashboard.aclose()

    app = FastAPI(title="Market Pipeline API", lifespan=lifespan)
    app.state.dashboard = dashboard

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        token = CORRELATION_ID_CTX.set(rid)
        try:
            response = await call_next(request)
        finally:
            CORRELATION_ID_CTX.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        logger.warning(f"{request.url.path} failed: {exc.kind} ({exc.detail})")
        # status 0 means no upstream response at all
        return JSONResponse(status_code=exc.status or 503, content=exc.to_payload())

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            uptime_seconds=round(time.time() - dashboard.started_at, 3),
            cache=dashboard.cache.stats(),
        )

    @app.get("/api/listing", response_model=ListingState)
    async def listing(filter: FilterType = FilterType.ALL, wait: bool = False) -> ListingState:
        if wait:
            return await dashboard.settle_listing(filter)
        return dashboard.listing_state(filter)

    @app.post("/api/listing/refresh", response_model=ListingState)
    async def refresh_listing_filter(filter: FilterType = FilterType.ALL) -> ListingState:
        return await dashboard.refresh_filter(filter)

    @app.get("/api/chart/{coin_id}", response_model=ChartState)
    async def chart(coin_id: str, timeframe: str = DEFAULT_TIMEFRAME) -> ChartState:
        return await dashboard.select_chart(coin_id, timeframe)

    @app.get("/api/search", response_model=List[SearchHit])
    async def search(q: str = "") -> List[SearchHit]:
        return await dashboard.search(q)

    @app.get("/api/schedule", response_model=ScheduleState)
    async def schedule() -> ScheduleState:
        return dashboard.schedule_state()

    @app.post("/api/refresh")
    async def refresh() -> Dict[str, Any]:
        await dashboard.scheduler.refresh()
        return {
            "schedule": dashboard.schedule_state().model_dump(),
            "records": len(dashboard.snapshot),
            "error": dashboard.listing_error.to_payload() if dashboard.listing_error else None,
        }

    @app.post("/api/schedule/pause", response_model=ScheduleState)
    async def pause() -> ScheduleState:
        dashboard.scheduler.pause()
        return dashboard.schedule_state()

    @app.post("/api/schedule/resume", response_model=ScheduleState)
    async def resume() -> ScheduleState:
        dashboard.scheduler.resume()
        return dashboard.schedule_state()

    return app


__all__ = ['create_app']
