"""
QR Pay Backend - FastAPI Application

Issues signed, short-lived payment QRs for orders and reconciles payment
gateway callbacks exactly once.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from . import __version__
from .config import Settings, settings as default_settings
from .exceptions import PaymentQrError
from .db.init_db import create_engine, create_session_factory, initialize_database
from .mocks.order_store import InMemoryOrderStore
from .services.order_store import OrderStore
from .services.payment_qr_service import PaymentQrEngine
from .services.scheduler import ExpirySweepScheduler
from .services.signature_service import QrSigner
from .api.payments import router as payments_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    order_store: Optional[OrderStore] = None,
    start_scheduler: bool = True
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (module settings when omitted)
        order_store: Order Store collaborator (in-memory mock when omitted)
        start_scheduler: Run the background expiry sweep

    Returns:
        Configured FastAPI app; collaborators are created in its lifespan
    """
    settings = settings or default_settings
    order_store = order_store or InMemoryOrderStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events:
        - Startup: Check signer secret, initialize database, build engine, start sweep
        - Shutdown: Stop sweep, dispose database engine
        """
        # Startup
        logger.info("Starting QR Pay backend server...")
        logger.info(f"Demo mode: {settings.demo_mode}")

        # A missing secret is fatal here, never per request
        signer = QrSigner(settings.payment_hmac_secret)

        db_engine = create_engine(settings.database_path)
        try:
            await initialize_database(db_engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            await db_engine.dispose()
            raise

        engine = PaymentQrEngine(
            session_factory=create_session_factory(db_engine),
            signer=signer,
            order_store=order_store,
            settings=settings,
        )

        app.state.settings = settings
        app.state.engine = engine
        app.state.order_store = order_store

        sweeper = ExpirySweepScheduler(engine.expire_stale, settings.expiry_sweep_interval_seconds)
        if start_scheduler:
            sweeper.start()
            logger.info("APScheduler started for QR expiry sweep")

        logger.info("Server startup complete")

        yield

        # Shutdown
        logger.info("Shutting down QR Pay backend server...")

        try:
            sweeper.shutdown(wait=True)
        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {e}")

        await db_engine.dispose()
        logger.info("Database engine disposed")

    app = FastAPI(
        title="QR Pay API",
        description="Signed payment QR issuance and gateway verification",
        version=__version__,
        lifespan=lifespan,
    )

    # Configure CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentQrError)
    async def payment_qr_error_handler(request: Request, exc: PaymentQrError):
        """
        Handle payment QR errors with the standardized response format.

        The full error is logged; callers get exc.to_public_dict(), which
        hides verification reasons behind a generic rejection.
        """
        logger.warning(
            f"Payment QR error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_public_dict(),
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """
        Handle validation errors with user-friendly messages.

        Used for input validation failures not caught by Pydantic.
        """
        logger.warning(f"Validation error: {str(exc)}")

        return JSONResponse(
            status_code=400,
            content={
                "error_code": "validation_error",
                "message": str(exc),
                "details": {}
            },
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
            },
        )

    @app.get("/api/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status and version information
        """
        return {
            "status": "healthy",
            "version": __version__,
            "demo_mode": settings.demo_mode,
            "qr_ttl_minutes": settings.qr_ttl_minutes,
        }

    app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "qrpay.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.demo_mode,
        log_level=default_settings.log_level.lower()
    )
