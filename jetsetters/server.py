"""
Jetsetters payments service - FastAPI application
Quotes, ARC Pay checkout, reconciliation and booking cancellation
"""

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from datetime import datetime, timezone
from typing import Optional
import os
import logging

from .database import init_db, close_db, async_session_factory
from .redis_service import redis_service
from .integrations.arc_pay import get_gateway
from .integrations.email import get_notifier
from .services.pricing import PricingService
from .jobs.payment_poller import PaymentPoller, poll_enabled
from .jobs.quote_expiry import QuoteExpirySweeper, expiry_enabled
from .api.routes import payments, bookings, quotes, inquiries, pricing

load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Jetsetters Payments", version="1.0.0")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

health_router = APIRouter(prefix="/api", tags=["Health"])
poller: Optional[PaymentPoller] = None
expiry_sweeper: Optional[QuoteExpirySweeper] = None


@health_router.get("/health")
async def health():
    redis_ok = await redis_service.ping()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "redis": "connected" if redis_ok else "unavailable",
        "gateway_configured": get_gateway().configured,
        "payment_poller": bool(poller and poller.running),
        "quote_expiry": bool(expiry_sweeper and expiry_sweeper.running),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(health_router)
app.include_router(payments.router)
app.include_router(bookings.router)
app.include_router(quotes.router)
app.include_router(inquiries.router)
app.include_router(pricing.router)


# Startup and shutdown events
@app.on_event("startup")
async def startup():
    global poller, expiry_sweeper
    await init_db()
    async with async_session_factory() as session:
        await PricingService(session).seed_defaults()

    try:
        await redis_service.connect()
    except Exception:
        # payment locks will retry the connection on first use
        logger.warning("⚠️ Redis unavailable at startup")

    if poll_enabled():
        poller = PaymentPoller(get_gateway(), redis_service, notifier=get_notifier())
        poller.start()

    if expiry_enabled():
        expiry_sweeper = QuoteExpirySweeper(notifier=get_notifier())
        expiry_sweeper.start()

    logger.info("🚀 Jetsetters payments service started")


@app.on_event("shutdown")
async def shutdown():
    if poller:
        await poller.stop()
    if expiry_sweeper:
        await expiry_sweeper.stop()
    await redis_service.disconnect()
    await close_db()
    logger.info("Database and Redis disconnected")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("jetsetters.server:app", host="0.0.0.0", port=int(os.getenv("PORT", 8001)), reload=True)
