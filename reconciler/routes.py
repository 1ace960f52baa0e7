import logging

from fastapi import APIRouter, Depends, HTTPException

from reconciler.auth import require_admin, verify_token
from reconciler.cleanup import (
    CleanupResult,
    cleanup_abandoned_orders,
    cleanup_single_order,
    count_abandoned_orders,
    is_order_abandoned,
)
from reconciler.config import checkout_settings, cleanup_settings
from reconciler.database import SessionLocal
from reconciler.models import Order, OrderStatus, Transaction
from reconciler.stripe_service import create_checkout_session

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(
    prefix="/api/v1/admin/abandoned-orders",
    dependencies=[Depends(require_admin)],
)


@router.post("/api/checkout/{order_id}")
def open_checkout(order_id: int, auth=Depends(verify_token)):
    with SessionLocal() as db:
        order = db.get(Order, order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")

        existing = order.transaction
        if existing:
            return {"session_id": existing.stripe_session_id, "status": existing.status.value}

        if order.status != OrderStatus.PENDING:
            raise HTTPException(status_code=409, detail="Order is not awaiting payment")
        if not order.items:
            raise HTTPException(status_code=409, detail="Order has no line items")

        settings = checkout_settings()
        session = create_checkout_session(
            order, settings.currency, settings.success_url, settings.cancel_url
        )

        tx = Transaction(
            order_id=order.id,
            stripe_session_id=session.id,
            amount=order.total_amount,
        )
        db.add(tx)
        db.commit()
        logger.info("Opened checkout session %s for order %s", session.id, order_id)

        return {"session_id": session.id, "checkout_url": session.url}


@admin_router.get("/count")
def abandoned_order_count() -> int:
    with SessionLocal() as db:
        count = count_abandoned_orders(db, cleanup_settings())
    logger.info("Retrieved abandoned order count: %s", count)
    return count


@admin_router.post("/cleanup", response_model=CleanupResult)
def cleanup_all_abandoned_orders():
    logger.info("Manual abandoned order cleanup requested")
    with SessionLocal() as db:
        return cleanup_abandoned_orders(db, cleanup_settings())


@admin_router.get("/check/{order_id}")
def check_order_abandoned(order_id: int) -> bool:
    with SessionLocal() as db:
        abandoned = is_order_abandoned(db, order_id, cleanup_settings())
    logger.info("Order %s abandoned status: %s", order_id, abandoned)
    return abandoned


@admin_router.delete("/cleanup/{order_id}")
def cleanup_order(order_id: int):
    settings = cleanup_settings()
    with SessionLocal() as db:
        if not is_order_abandoned(db, order_id, settings):
            raise HTTPException(
                status_code=400,
                detail=f"Order {order_id} is not considered abandoned or does not exist",
            )
        cleanup_single_order(db, db.get(Order, order_id), settings)
    return {"message": f"Order {order_id} cleaned up"}


@admin_router.post("/test-cleanup")
def preview_cleanup():
    with SessionLocal() as db:
        count = count_abandoned_orders(db, cleanup_settings())
    message = f"Test cleanup would process {count} abandoned orders"
    logger.info("Test cleanup requested: %s", message)
    return {"message": message}
