"""
Exceptions raised while verifying and settling payment events.
"""


class WebhookSecretMissingError(Exception):
    """Raised when no webhook signing secret is configured."""
    pass


class SettlementError(Exception):
    """Raised when a settlement cannot be applied; the whole unit is rolled back."""
    pass


class InsufficientStockError(SettlementError):
    def __init__(self, variant_id, available, requested):
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for variant {variant_id}: "
            f"{available} available, {requested} requested"
        )


class StockRecordNotFoundError(SettlementError):
    def __init__(self, variant_id):
        self.variant_id = variant_id
        super().__init__(f"No stock record for variant {variant_id}")


class MissingSignatureError(Exception):
    """Raised when a webhook arrives without a signature header."""
    pass
