import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app

from api.v1.endpoints import arrivals
from core.config import settings
from core.exceptions import ScraperException, ValidationError
from core.logging import setup_logging
from services.monitor_service import MonitorService

# Prometheus metrics endpoint
metrics_app = make_asgi_app()


# ------------------------------------------------------------------
# FastAPI App Lifecycle
# ------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        logger.info("Initializing application...")

        monitor: Optional[MonitorService] = getattr(app.state, "monitor", None)
        if monitor is None:
            monitor = MonitorService(settings)
            app.state.monitor = monitor
        ack = await monitor.start()
        logger.info(f"Monitoring {len(ack['targets'])} target(s): {', '.join(ack['targets'])}")

        yield

        logger.info("Shutting down application...")
        await monitor.shutdown()

    except Exception as e:
        logger.exception(f"Application lifecycle error: {str(e)}")
        raise


def create_app(monitor: Optional[MonitorService] = None) -> FastAPI:
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Live bus arrival estimates scraped from the operator's stop pages",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if monitor is not None:
        app.state.monitor = monitor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.ALLOWED_HOSTS,
    )

    app.include_router(arrivals.router, prefix="/api/v1", tags=["arrivals"])
    app.include_router(arrivals.legacy_router, prefix="/api", tags=["legacy"])

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder(ValidationError(errors=exc.errors()).to_dict()),
        )

    @app.exception_handler(ScraperException)
    async def scraper_exception_handler(request: Request, exc: ScraperException):
        if exc.status_code >= 500:
            logger.error(f"{exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {str(exc)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred",
                    "status": 500,
                }
            },
        )

    app.mount("/metrics", metrics_app)

    @app.get("/health")
    async def health_check(request: Request):
        report = request.app.state.monitor.health()
        report["timestamp"] = time.time()
        return report

    @app.get("/")
    async def root():
        return {
            "name": settings.PROJECT_NAME,
            "version": "1.0.0",
            "description": "Live bus arrival estimates",
            "docs_url": "/docs",
            "health_check": "/health",
            "stream": "/api/v1/stream",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Keep WORKERS at 1: every uvicorn worker would start its own pool.
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=settings.WORKERS,
        log_level=settings.LOG_LEVEL.lower(),
    )
