"""
Settlement of completed checkouts.

A settlement is one unit of work: the transaction row is locked and
re-checked, the transaction is completed, the order moves to PROCESSING and
every line item's stock is decremented under a row lock. Any failure rolls
the whole unit back.

Both writes are conditional (``status != COMPLETED``, ``quantity >= n``), so
a backend that ignores ``FOR UPDATE`` still settles at most once and never
drives stock negative.
"""
import enum
import logging
from collections import defaultdict

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reconciler.events import CheckoutCompleted, CheckoutFailed
from reconciler.exceptions import InsufficientStockError, StockRecordNotFoundError
from reconciler.models import OrderStatus, Stock, Transaction, TransactionStatus

logger = logging.getLogger(__name__)


class SettlementOutcome(str, enum.Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    UNKNOWN_SESSION = "unknown_session"
    FAILED = "failed"
    CLEANED_UP = "cleaned_up"
    UNCHANGED = "unchanged"


def lock_transaction(db: Session, session_id: str):
    stmt = (
        select(Transaction)
        .where(Transaction.stripe_session_id == session_id)
        .with_for_update()
    )
    return db.execute(stmt).scalar_one_or_none()


def claim_transaction(db: Session, tx, payment_intent_id) -> bool:
    """Flip ``tx`` to COMPLETED unless another settlement got there first."""
    stmt = (
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status != TransactionStatus.COMPLETED)
        .values(status=TransactionStatus.COMPLETED, payment_intent_id=payment_intent_id)
    )
    return db.execute(stmt).rowcount == 1


def requested_quantities(order) -> dict:
    """Total requested quantity per variant id for an order."""
    totals = defaultdict(int)
    for item in order.items:
        totals[item.variant_id] += item.quantity
    return dict(totals)


def decrement_stock(db: Session, order):
    # Ascending variant order keeps lock acquisition consistent across settlements
    for variant_id, quantity in sorted(requested_quantities(order).items()):
        stmt = select(Stock).where(Stock.variant_id == variant_id).with_for_update()
        stock = db.execute(stmt).scalar_one_or_none()
        if stock is None:
            raise StockRecordNotFoundError(variant_id)
        if stock.quantity < quantity:
            raise InsufficientStockError(variant_id, stock.quantity, quantity)

        remaining = stock.quantity - quantity
        result = db.execute(
            update(Stock)
            .where(Stock.id == stock.id, Stock.quantity >= quantity)
            .values(quantity=Stock.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.refresh(stock)
            raise InsufficientStockError(variant_id, stock.quantity, quantity)

        if remaining <= stock.low_stock_threshold:
            logger.warning(
                "Low stock for variant %s: %s left (threshold %s)",
                variant_id, remaining, stock.low_stock_threshold,
            )


def settle_checkout(db: Session, event: CheckoutCompleted) -> SettlementOutcome:
    """Apply a completed checkout at most once.

    Raises a ``SettlementError`` subclass when stock cannot cover the order;
    nothing is written in that case.
    """
    with db.begin():
        tx = lock_transaction(db, event.session_id)
        if tx is None:
            logger.warning("No transaction for checkout session %s", event.session_id)
            return SettlementOutcome.UNKNOWN_SESSION
        if tx.status == TransactionStatus.COMPLETED or not claim_transaction(
            db, tx, event.payment_intent_id
        ):
            logger.info("Checkout session %s already settled", event.session_id)
            return SettlementOutcome.ALREADY_SETTLED

        order = tx.order
        order.status = OrderStatus.PROCESSING
        decrement_stock(db, order)
        order_id = order.id

    logger.info("Settled order %s for checkout session %s", order_id, event.session_id)
    # Confirmation e-mail is sent by the notification service
    logger.info("Order %s ready for confirmation e-mail", order_id)
    return SettlementOutcome.SETTLED


def fail_checkout(db: Session, event: CheckoutFailed) -> SettlementOutcome:
    with db.begin():
        tx = lock_transaction(db, event.session_id)
        if tx is None:
            logger.warning("No transaction for checkout session %s", event.session_id)
            return SettlementOutcome.UNKNOWN_SESSION
        if tx.status == TransactionStatus.COMPLETED:
            logger.info("Checkout session %s already settled", event.session_id)
            return SettlementOutcome.ALREADY_SETTLED
        if tx.status != TransactionStatus.PENDING:
            logger.info("Checkout session %s is %s, leaving it as is",
                        event.session_id, tx.status.value)
            return SettlementOutcome.UNCHANGED
        tx.status = TransactionStatus.FAILED

    logger.info("Marked checkout session %s as failed", event.session_id)
    return SettlementOutcome.FAILED
