# --- START OF FILE payment_errors.py ---

"""
Payment error types.
Validation and fraud errors are raised before any state changes; provider and
delivery errors always carry enough context (charge id) for manual follow-up.
"""


class PaymentError(Exception):
    """Base class for payment lifecycle errors."""


# --- Bad or missing input (user-correctable) ---
class ValidationError(PaymentError):
    pass


class MissingParameter(ValidationError):
    def __init__(self, name: str):
        super().__init__(f"Missing or invalid parameter: {name}")
        self.name = name


class UnknownProduct(ValidationError):
    def __init__(self, product_id):
        super().__init__(f"Invalid product: {product_id}")
        self.product_id = product_id


class InvalidPayload(ValidationError):
    pass


class InvalidProductReference(ValidationError):
    def __init__(self, product_id):
        super().__init__(f"Invalid product ID: {product_id}")
        self.product_id = product_id


# --- Amount tampering ---
class FraudSignal(PaymentError):
    pass


class AmountMismatch(FraudSignal):
    def __init__(self, expected: int, received):
        super().__init__(f"Amount mismatch: Expected {expected}, got {received}")
        self.expected = expected
        self.received = received


# --- Telegram / payment provider failures ---
class ProviderError(PaymentError):
    pass


class InvoiceCreationFailed(ProviderError):
    pass


class RefundFailed(ProviderError):
    pass


# --- Money captured, goods not delivered ---
class DeliveryFailure(PaymentError):
    pass


# --- Idempotent no-ops ---
class AlreadyProcessed(PaymentError):
    pass


class DuplicatePayment(AlreadyProcessed):
    def __init__(self, charge_id: str):
        super().__init__(f"Payment already recorded: {charge_id}")
        self.charge_id = charge_id


class AlreadyRefunded(AlreadyProcessed):
    def __init__(self, charge_id: str):
        super().__init__(f"Already refunded: {charge_id}")
        self.charge_id = charge_id


# --- Refund path ---
class Unauthorized(PaymentError):
    pass


class PaymentNotFound(PaymentError):
    def __init__(self, charge_id: str):
        super().__init__(f"Payment not found: {charge_id}")
        self.charge_id = charge_id

# --- END OF FILE payment_errors.py ---
