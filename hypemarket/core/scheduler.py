from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from hypemarket.utils.logger import logger

scheduler = AsyncIOScheduler(timezone="UTC")


def setup_scheduled_tasks():
    """Setup all scheduled background tasks"""
    try:
        # Offer expiration - check every hour
        scheduler.add_job(
            expire_offers,
            IntervalTrigger(hours=1),
            id='expire_offers',
            replace_existing=True,
            max_instances=1
        )

        # Unpaid orders past the payment window - every hour
        scheduler.add_job(
            cancel_unpaid_orders,
            IntervalTrigger(hours=1),
            id='cancel_unpaid_orders',
            replace_existing=True,
            max_instances=1
        )

        # Deliveries the buyer never answered - every hour
        scheduler.add_job(
            auto_complete_orders,
            IntervalTrigger(hours=1),
            id='auto_complete_orders',
            replace_existing=True,
            max_instances=1
        )

        # Clearance delay maturation - every hour
        scheduler.add_job(
            release_matured_credits,
            IntervalTrigger(hours=1),
            id='release_matured_credits',
            replace_existing=True,
            max_instances=1
        )

        # Withdrawals the request-time task did not finish - every 5 minutes
        scheduler.add_job(
            process_pending_withdrawals,
            IntervalTrigger(minutes=5),
            id='process_pending_withdrawals',
            replace_existing=True,
            max_instances=1
        )

        logger.info("Background jobs scheduled successfully")
    except Exception as e:
        logger.error(f"Failed to setup scheduled tasks: {e}")


async def expire_offers():
    """Expire open offers that have passed their expiration date"""
    from hypemarket.database import AsyncSessionLocal
    from hypemarket.services.offer_service import OfferService

    try:
        async with AsyncSessionLocal() as db:
            count = await OfferService(db).expire_stale()
            logger.info(f"Offer expiration job finished: {count} expired")
    except Exception as e:
        logger.error(f"Error in expire_offers job: {e}")


async def cancel_unpaid_orders():
    """Cancel orders still waiting for payment after the payment window"""
    from hypemarket.database import AsyncSessionLocal
    from hypemarket.services.order_service import OrderService

    try:
        async with AsyncSessionLocal() as db:
            count = await OrderService(db).cancel_unpaid()
            logger.info(f"Unpaid order job finished: {count} cancelled")
    except Exception as e:
        logger.error(f"Error in cancel_unpaid_orders job: {e}")


async def auto_complete_orders():
    """Complete delivered orders once the acceptance window has passed"""
    from hypemarket.database import AsyncSessionLocal
    from hypemarket.services.order_service import OrderService

    try:
        async with AsyncSessionLocal() as db:
            count = await OrderService(db).auto_complete_due()
            logger.info(f"Auto-complete job finished: {count} completed")
    except Exception as e:
        logger.error(f"Error in auto_complete_orders job: {e}")


async def release_matured_credits():
    """Move cleared seller proceeds from pending to available"""
    from hypemarket.database import AsyncSessionLocal
    from hypemarket.services.ledger_service import LedgerService

    try:
        async with AsyncSessionLocal() as db:
            count = await LedgerService(db).release_matured()
            logger.info(f"Clearance job finished: {count} credits released")
    except Exception as e:
        logger.error(f"Error in release_matured_credits job: {e}")


async def process_pending_withdrawals():
    """Drive pending and abandoned withdrawals through the payout transfer"""
    from hypemarket.database import AsyncSessionLocal
    from hypemarket.services.ledger_service import LedgerService

    try:
        async with AsyncSessionLocal() as db:
            count = await LedgerService(db).process_pending()
            logger.info(f"Withdrawal job finished: {count} processed")
    except Exception as e:
        logger.error(f"Error in process_pending_withdrawals job: {e}")
