"""
Shopify -> Lightspeed order bridge - FastAPI app
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi import status
from sqlalchemy import text
import uvicorn

from routes.api import register_routes
from app.database import engine, Base, SessionLocal
from app.config import settings
from app.services.bridge import OrderBridge
from app.workers.scheduler import WorkerScheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(bridge: Optional[OrderBridge] = None, start_workers: bool = True) -> FastAPI:
    """Build the app around a bridge; without one, tables are created and the bridge uses SessionLocal."""
    if bridge is None:
        Base.metadata.create_all(bind=engine)
        bridge = OrderBridge(SessionLocal)

    app = FastAPI(
        title="Lightspeed Order Bridge",
        description="Syncs Shopify orders into Lightspeed Retail as completed sales",
        version="1.0.0",
        docs_url="/docs" if settings.IS_DEVELOPMENT else None,
        redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
    )
    app.state.bridge = bridge
    app.state.scheduler = WorkerScheduler(bridge)

    logger.info("🚀 Starting Lightspeed Order Bridge")
    logger.info(f"📊 Environment: {settings.ENV}")
    logger.info(f"🏬 Stores configured: {len(bridge.stores)}")
    logger.info(f"🔗 Host: {settings.HOST}:{settings.PORT}")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": exc.errors(),
                "message": "Validation error: Please check your request format"
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Never leak internals to webhook senders."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "message": str(exc) if settings.IS_DEVELOPMENT else "An error occurred"
            },
        )

    register_routes(app, settings)

    @app.on_event("startup")
    async def startup() -> None:
        """Load persisted tokens and, when intervals are configured, start the in-process workers."""
        app.state.bridge.startup()
        if start_workers:
            app.state.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        app.state.scheduler.stop_scheduler()

    @app.get("/")
    async def root():
        return {
            "message": "Server running",
            "version": "1.0.0",
            "environment": settings.ENV,
            "health": "/health",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint. Includes DB connectivity check."""
        db_status = "ok"
        db = app.state.bridge.session_factory()
        try:
            db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Health check DB ping failed: %s", e)
            db_status = "error"
        finally:
            db.close()
        return {
            "status": "ok" if db_status == "ok" else "degraded",
            "service": "order-bridge",
            "db": db_status,
            "lightspeed_token": "ready" if app.state.bridge.tokens.has_valid_token() else "missing",
            "environment": settings.ENV,
            "production": settings.IS_PRODUCTION,
        }

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,  # Auto-reload only in development
        log_level=settings.LOG_LEVEL.lower()
    )
