import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import stripe
from fastapi import FastAPI, Request, Header, HTTPException
from starlette.concurrency import run_in_threadpool

from reconciler.cleanup import expire_checkout, run_cleanup_loop
from reconciler.config import cleanup_settings, log_level, webhook_secret
from reconciler.database import Base, engine, SessionLocal
from reconciler.events import (
    CheckoutCompleted,
    CheckoutExpired,
    CheckoutFailed,
    IgnoredEvent,
    parse_event,
)
from reconciler.exceptions import (
    MissingSignatureError,
    SettlementError,
    WebhookSecretMissingError,
)
from reconciler.routes import admin_router, router
from reconciler.settlement import fail_checkout, settle_checkout
from reconciler import models, stripe_service  # noqa: F401

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if cleanup_settings().enabled:
        task = asyncio.create_task(run_cleanup_loop(SessionLocal))
        logger.info("Abandoned order cleanup loop started")
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Payment Reconciler", lifespan=lifespan)

app.include_router(router)
app.include_router(admin_router)

Base.metadata.create_all(bind=engine)


def dispatch_event(event) -> str:
    if isinstance(event, IgnoredEvent):
        logger.debug("Ignoring %s event (%s)", event.type, event.reason)
        return event.reason

    with SessionLocal() as db:
        if isinstance(event, CheckoutCompleted):
            return settle_checkout(db, event).value
        if isinstance(event, CheckoutExpired):
            return expire_checkout(db, event, cleanup_settings()).value
        if isinstance(event, CheckoutFailed):
            return fail_checkout(db, event).value

    raise TypeError(f"Unhandled event {event!r}")


@app.post("/api/webhook/stripe")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe_service.construct_event(payload, stripe_signature, webhook_secret())
    except WebhookSecretMissingError:
        logger.error("Rejected webhook: STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    except MissingSignatureError:
        raise HTTPException(status_code=400, detail="Missing signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        status = await run_in_threadpool(dispatch_event, parse_event(event))
    except SettlementError as exc:
        logger.error("Settlement aborted: %s", exc)
        raise HTTPException(status_code=409, detail=str(exc))

    return {"status": status}
