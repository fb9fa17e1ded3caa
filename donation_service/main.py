import asyncio
import time

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from donation_service.api.donations import router as donations_router
from donation_service.core.config import get_settings
from donation_service.core.exceptions import DonationServiceError
from donation_service.database.database import engine, init_db, close_db
from donation_service.kafka.producer import donation_event_producer
from donation_service.middleware.logging import logging_middleware
from donation_service.middleware.metrics import MetricsMiddleware, metrics_endpoint
from donation_service.middleware.tracing import init_tracing
from donation_service.services.gateway import gateway_circuit_breaker, get_gateway
from donation_service.services.reconciliation import ReconciliationSweep

# Setup structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="Donation payment reconciliation API",
    version="1.0.0",
    debug=settings.debug
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.tracing_enabled:
    init_tracing(app, engine)

app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Logging middleware with trace correlation"""
    return await logging_middleware(request, call_next)


@app.exception_handler(DonationServiceError)
async def donation_service_error_handler(request: Request, exc: DonationServiceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        code=exc.code,
        error=exc.message,
        method=request.method,
        path=request.url.path,
        **exc.context
    )
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        method=request.method,
        url=str(request.url),
        exc_info=exc
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "code": "internal_error",
            "message": "An unexpected error occurred"
        }
    )


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info("Starting Donation Service", service_name=settings.service_name)

    try:
        init_db()
        logger.info("Database initialized")

        await donation_event_producer.start()

        if settings.reconciliation_enabled:
            app.state.sweep_task = asyncio.create_task(
                ReconciliationSweep.run_periodically(
                    get_gateway(),
                    settings.reconciliation_interval_seconds,
                    producer=donation_event_producer
                )
            )

        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown"""
    logger.info("Shutting down Donation Service")

    sweep_task = getattr(app.state, "sweep_task", None)
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            logger.info("Reconciliation sweep stopped")

    await donation_event_producer.stop()
    close_db()
    logger.info("Application shutdown completed successfully")


@app.get("/health")
async def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "timestamp": time.time()
    }


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint"""
    return await metrics_endpoint(request)


@app.get("/health/ready")
async def readiness_check():
    """Readiness check with database connectivity and gateway breaker state"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": settings.service_name,
                "database": "disconnected",
                "error": str(e),
                "timestamp": time.time()
            }
        )

    return {
        "status": "ready",
        "service": settings.service_name,
        "database": "connected",
        "gateway_circuit": gateway_circuit_breaker.get_state(),
        "timestamp": time.time()
    }


app.include_router(donations_router)


if __name__ == "__main__":
    uvicorn.run(
        "donation_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug"
    )
