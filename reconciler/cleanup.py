"""
Removal of abandoned orders.

An order is abandoned once it has sat in PENDING longer than the configured
expiry. Cleanup deletes the order together with its line items and checkout
transaction. Stock is only decremented at settlement, so there is nothing to
give back here.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reconciler.config import CleanupSettings, cleanup_settings
from reconciler.events import CheckoutExpired
from reconciler.models import Order, OrderStatus, TransactionStatus
from reconciler.settlement import SettlementOutcome, lock_transaction

logger = logging.getLogger(__name__)


class CleanupResult(BaseModel):
    total_processed: int = 0
    successful: int = 0
    errors: int = 0


def cutoff_time(settings: CleanupSettings) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=settings.expiry_minutes)


def _abandoned(settings: CleanupSettings):
    return (
        Order.status == OrderStatus.PENDING,
        Order.created_at < cutoff_time(settings),
    )


def find_abandoned_orders(db: Session, settings: CleanupSettings, exclude=()):
    stmt = select(Order).where(*_abandoned(settings))
    if exclude:
        stmt = stmt.where(Order.id.not_in(list(exclude)))
    stmt = stmt.order_by(Order.created_at, Order.id).limit(settings.batch_size)
    return list(db.execute(stmt).scalars())


def count_abandoned_orders(db: Session, settings: CleanupSettings) -> int:
    stmt = select(func.count(Order.id)).where(*_abandoned(settings))
    return db.execute(stmt).scalar_one()


def is_order_abandoned(db: Session, order_id: int, settings: CleanupSettings) -> bool:
    stmt = select(func.count(Order.id)).where(Order.id == order_id, *_abandoned(settings))
    return db.execute(stmt).scalar_one() > 0


def delete_order(db: Session, order, settings: CleanupSettings):
    """Mark ``order`` for deletion; line items and transaction go with it."""
    if settings.detailed_logging:
        logger.info("Cleaning up abandoned order %s (created %s)", order.id, order.created_at)
    db.delete(order)


def cleanup_single_order(db: Session, order, settings: CleanupSettings):
    order_id = order.id
    try:
        delete_order(db, order, settings)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if settings.detailed_logging:
        logger.info("Cleaned up abandoned order %s", order_id)


def cleanup_abandoned_orders(db: Session, settings: CleanupSettings) -> CleanupResult:
    """Delete every abandoned order, one batch at a time.

    A failing order is logged, counted and skipped for the rest of the run.
    In dry-run mode a single batch is reported and nothing is deleted.
    """
    result = CleanupResult()
    failed = set()

    while True:
        batch = find_abandoned_orders(db, settings, exclude=failed)
        if not batch:
            break

        for order in batch:
            result.total_processed += 1
            if settings.dry_run:
                logger.info("DRY RUN: would clean up order %s (created %s)", order.id, order.created_at)
                result.successful += 1
                continue
            order_id = order.id
            try:
                cleanup_single_order(db, order, settings)
                result.successful += 1
            except Exception:
                logger.exception("Failed to clean up abandoned order %s", order_id)
                failed.add(order_id)
                result.errors += 1

        if settings.dry_run:
            break

    logger.info(
        "Abandoned order cleanup finished: processed=%s successful=%s errors=%s",
        result.total_processed, result.successful, result.errors,
    )
    return result


def expire_checkout(db: Session, event: CheckoutExpired, settings: CleanupSettings) -> SettlementOutcome:
    """Drop the order behind an expired checkout session unless it was paid."""
    with db.begin():
        tx = lock_transaction(db, event.session_id)
        if tx is None:
            logger.warning("No transaction for expired checkout session %s", event.session_id)
            return SettlementOutcome.UNKNOWN_SESSION
        if tx.status == TransactionStatus.COMPLETED:
            logger.info("Expired checkout session %s was already settled", event.session_id)
            return SettlementOutcome.ALREADY_SETTLED

        order = tx.order
        order_id = order.id
        logger.info("Processing expired checkout for order %s, session %s", order_id, event.session_id)
        delete_order(db, order, settings)

    if settings.detailed_logging:
        logger.info("Cleaned up order %s for expired session %s", order_id, event.session_id)
    return SettlementOutcome.CLEANED_UP


async def run_cleanup_loop(session_factory):
    """Run cleanup every ``interval_seconds`` until cancelled."""
    while True:
        settings = cleanup_settings()
        await asyncio.sleep(settings.interval_seconds)
        if not settings.enabled:
            continue
        try:
            await asyncio.to_thread(_cleanup_once, session_factory, settings)
        except Exception:
            logger.exception("Scheduled abandoned order cleanup failed")


def _cleanup_once(session_factory, settings: CleanupSettings):
    with session_factory() as db:
        return cleanup_abandoned_orders(db, settings)
