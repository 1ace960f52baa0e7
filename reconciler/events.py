"""
Typed view of the provider events the reconciler understands.

Stripe delivers a loosely typed envelope (``type`` plus ``data.object``);
``parse_event`` narrows it to one of the models below so the webhook route
can dispatch on the class instead of on raw strings.
"""
from typing import Optional, Union

from pydantic import BaseModel

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
CHECKOUT_FAILED = "checkout.session.async_payment_failed"


class CheckoutCompleted(BaseModel):
    session_id: str
    payment_intent_id: Optional[str] = None


class CheckoutExpired(BaseModel):
    session_id: str


class CheckoutFailed(BaseModel):
    session_id: str


class IgnoredEvent(BaseModel):
    type: str
    reason: str = "ignored"


Event = Union[CheckoutCompleted, CheckoutExpired, CheckoutFailed, IgnoredEvent]


def _field(obj, key):
    """Subscript lookup that tolerates missing keys and ``None`` containers.

    Works for plain dicts and for ``stripe.StripeObject``, which is not a
    ``dict`` on current SDK releases.
    """
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def parse_event(event) -> Event:
    event_type = _field(event, "type") or ""
    if event_type not in (CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, CHECKOUT_FAILED):
        return IgnoredEvent(type=event_type)

    session = _field(_field(event, "data"), "object")
    session_id = _field(session, "id")
    if not session_id:
        return IgnoredEvent(type=event_type, reason="no session")

    if event_type == CHECKOUT_COMPLETED:
        payment_intent = _field(session, "payment_intent")
        # Expanded sessions carry the whole intent object
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = _field(payment_intent, "id")
        return CheckoutCompleted(session_id=session_id, payment_intent_id=payment_intent)
    if event_type == CHECKOUT_EXPIRED:
        return CheckoutExpired(session_id=session_id)
    return CheckoutFailed(session_id=session_id)
