import time
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from lms_server.config import get_settings
from lms_server.middleware.correlation import CorrelationMiddleware
from lms_server.routes import hotmart
from lms_server.services.hotmart_service import HotmartService
from lms_server.services.purchase_queue import PurchaseQueue
from lms_server.services.supabase_client import SupabaseClient
from lms_server.utils.logger import logger, setup_logger

settings = get_settings()


def create_app(
    queue: Optional[PurchaseQueue] = None,
    hotmart_service: Optional[HotmartService] = None,
) -> FastAPI:
    """
    Build the API. Tests inject a queue with a fake processor; in production the
    queue runs HotmartService.process_purchase against Supabase.
    """
    setup_logger(level=settings.log_level, log_format=settings.log_format)

    app = FastAPI(title=settings.app_name, version=settings.app_version)
    app.state.limiter = hotmart.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    supabase: Optional[SupabaseClient] = None
    if hotmart_service is None:
        supabase = SupabaseClient(
            settings.supabase_url,
            settings.supabase_service_key,
            timeout=settings.supabase_timeout,
        )
        hotmart_service = HotmartService(supabase)
    if queue is None:
        queue = PurchaseQueue(
            hotmart_service.process_purchase,
            policy=settings.retry_policy(),
            prefix="hotmart",
            key_func=lambda purchase: purchase.transaction_id or "",
        )

    app.state.hotmart = hotmart_service
    app.state.purchase_queue = queue
    app.state.started_at = time.monotonic()

    allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
    )
    app.add_middleware(CorrelationMiddleware)

    @app.on_event("startup")
    async def startup_event():
        queue.start()
        if not settings.supabase_service_key:
            logger.warning("SUPABASE_SERVICE_KEY is not set - purchase processing will fail")
        logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")

    @app.on_event("shutdown")
    async def shutdown_event():
        await queue.stop()
        if supabase is not None:
            await supabase.aclose()
        logger.info("Backend stopped")

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "OK",
            "uptime": round(time.monotonic() - app.state.started_at, 1),
            "queue_processing": queue.is_processing,
        }

    app.include_router(hotmart.router, prefix="/api/hotmart", tags=["Hotmart"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "lms_server.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
    )
