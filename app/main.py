"""
Bitcoin Rewards - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.api.webhooks import router as webhooks_router
from app.db.database import create_tables, engine

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Shopify / Square / BTCPay: אימות חתימה, נרמול והנפקת תגמול."},
    {"name": "Rewards", "description": "היסטוריית תגמולים לפי חנות ולקוח, ותגמול בדיקה ידני."},
    {"name": "Settings", "description": "הגדרות התגמול של חנות."},
    {"name": "Wallet", "description": "ארנק ה-ecash של החנות: יתרה וטעינה מ-token."},
    {
        "name": "Admin Debug",
        "description": "כלי דיאגנוסטיקה לאדמין: circuit breakers, outbox כושל ויומן פעולות Cashu.",
    },
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "שירות תגמולי ביטקוין: webhooks של חנויות, המרת שער, חישוב תגמול "
        "ותשלום דרך Lightning, on-chain או ecash (Cashu)."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook admission gate)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(webhooks_router)
app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables()
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description="בדיקת DB, Redis, BTCPay ו-Celery broker. 503 כשאחת מהן לא זמינה.",
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
