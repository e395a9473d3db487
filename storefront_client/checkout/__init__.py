"""Checkout saga: order intent, payment confirmation, verification, address resume."""
from .address import validate_address
from .resume import AddressCaptureStep
from .saga import CheckoutSaga, CheckoutState
from .schema import (
    CartItem,
    CheckoutOutcome,
    Coupon,
    Destination,
    OrderIntent,
    PaymentConfirmation,
    PendingCheckout,
    ShippingAddress,
    VerifyResult,
    to_minor_units,
)
from .verify import build_verification_payload, verify_payment

__all__ = [
    "AddressCaptureStep",
    "CartItem",
    "CheckoutOutcome",
    "CheckoutSaga",
    "CheckoutState",
    "Coupon",
    "Destination",
    "OrderIntent",
    "PaymentConfirmation",
    "PendingCheckout",
    "ShippingAddress",
    "VerifyResult",
    "build_verification_payload",
    "to_minor_units",
    "validate_address",
    "verify_payment",
]
