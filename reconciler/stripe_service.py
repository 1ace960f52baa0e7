import stripe

from reconciler.config import stripe_secret_key
from reconciler.exceptions import MissingSignatureError, WebhookSecretMissingError


def construct_event(payload: bytes, signature: str, secret):
    """Verify the signature of a webhook body and return the provider event.

    Fails closed when no secret is configured or the signature header is
    absent. A signature mismatch raises ``stripe.SignatureVerificationError``;
    malformed bodies raise ``ValueError`` straight from the SDK.
    """
    if not secret:
        raise WebhookSecretMissingError("Webhook secret not configured")
    if not signature:
        raise MissingSignatureError("Missing signature header")
    return stripe.Webhook.construct_event(payload, signature, secret)


def create_checkout_session(order, currency: str, success_url: str, cancel_url: str):
    stripe.api_key = stripe_secret_key()
    line_items = [
        {
            "price_data": {
                "currency": currency,
                "unit_amount": int(item.price * 100),
                "product_data": {"name": item.variant.sku},
            },
            "quantity": item.quantity,
        }
        for item in order.items
    ]
    return stripe.checkout.Session.create(
        mode="payment",
        line_items=line_items,
        client_reference_id=str(order.id),
        customer_email=order.customer_email,
        success_url=success_url,
        cancel_url=cancel_url,
        idempotency_key=f"order-{order.id}"
    )
