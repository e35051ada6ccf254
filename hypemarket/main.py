from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from hypemarket.config import settings
from hypemarket.api.v1 import listings, offers, orders, payouts, payments
from hypemarket.utils.logger import logger

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.APP_DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(listings.router, prefix=f"{settings.API_V1_PREFIX}/listings", tags=["Listings"])
app.include_router(offers.router, prefix=f"{settings.API_V1_PREFIX}/offers", tags=["Offers"])
app.include_router(orders.router, prefix=f"{settings.API_V1_PREFIX}/orders", tags=["Orders"])
app.include_router(payouts.router, prefix=f"{settings.API_V1_PREFIX}/payouts", tags=["Payouts"])
app.include_router(payments.router, prefix=f"{settings.API_V1_PREFIX}/payments", tags=["Payments"])


@app.get("/")
async def root():
    return {
        "message": "HypeMarket API",
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Start background job scheduler
    from hypemarket.core.scheduler import scheduler, setup_scheduled_tasks
    if settings.APP_ENV != "test" and settings.SCHEDULER_ENABLED:
        setup_scheduled_tasks()
        scheduler.start()
        logger.info("Background job scheduler started")


@app.on_event("shutdown")
async def shutdown_event():
    from hypemarket.core.scheduler import scheduler
    from hypemarket.services.notification_service import notification_service

    if scheduler.running:
        scheduler.shutdown()
    await notification_service.drain()
    logger.info("Shutting down application")
