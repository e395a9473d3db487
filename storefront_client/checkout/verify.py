"""
Payment verification with bounded retry.

Only transport failures (timeout, host unreachable) are retried. A response
from the server, whatever its status, is never re-sent: re-submitting a
rejected verification could process the payment twice.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..api import routes
from ..errors import ApiError, AuthExpiredError, PaymentRejectedError, TransientNetworkError
from .schema import (
    CartItem,
    Coupon,
    PaymentConfirmation,
    ShippingAddress,
    VerifyResult,
    to_minor_units,
)

if TYPE_CHECKING:
    from ..api.client import ApiClient

logger = logging.getLogger(__name__)

VERIFY_ATTEMPTS = 3
VERIFY_BACKOFF = 0.3  # seconds; doubles per attempt
VERIFY_TIMEOUT = 10.0

Sleep = Callable[[float], Awaitable[Any]]


def build_verification_payload(
    confirmation: PaymentConfirmation,
    items: list[CartItem],
    total_amount: int | Decimal,
    coupon: Coupon | None = None,
    address: ShippingAddress | None = None,
) -> dict:
    """Request body for POST /payment/verify. total_amount is in minor units unless a Decimal is given."""
    if isinstance(total_amount, Decimal):
        total_amount = to_minor_units(total_amount)
    payload = {
        "payment_id": confirmation.payment_id,
        "order_id": confirmation.order_id,
        "signature": confirmation.signature,
        "orderItems": [item.to_payload() for item in items],
        "totalAmount": total_amount,
        "couponApplied": coupon.to_payload() if coupon else None,
    }
    if address is not None:
        payload["shippingAddress"] = address.to_payload()
    return payload


async def verify_payment(
    api: ApiClient,
    payload: dict,
    *,
    attempts: int = VERIFY_ATTEMPTS,
    backoff: float = VERIFY_BACKOFF,
    timeout: float = VERIFY_TIMEOUT,
    sleep: Sleep = asyncio.sleep,
) -> VerifyResult:
    """
    Submit a verification and classify the answer.

    Returns a VerifyResult with either success or needs_address set.

    Raises:
        PaymentRejectedError: the server answered and said no
        AuthExpiredError: 401; whether the payment was applied is unknown
        ApiError: 5xx; whether the payment was applied is unknown
        TransientNetworkError: every attempt failed in transport
    """
    for key in ("payment_id", "order_id", "signature"):
        if not payload.get(key):
            raise ValueError(f"verification payload is missing {key}")

    attempt = 0
    while True:
        attempt += 1
        try:
            logger.info("Verifying payment (attempt %d of %d, %d item(s))",
                        attempt, attempts, len(payload.get("orderItems") or []))
            body = await api.post(routes.VERIFY_PAYMENT, json=payload, timeout=timeout)
            break
        except TransientNetworkError as e:
            if attempt >= attempts:
                logger.error("Payment verification gave up after %d attempts: %s", attempt, e.message)
                raise
            delay = backoff * 2 ** (attempt - 1)
            logger.warning("Verification transport failure, retrying in %.1fs: %s", delay, e.message)
            await sleep(delay)
        except AuthExpiredError:
            raise
        except ApiError as e:
            result = VerifyResult.from_body(e.response)
            if result.needs_address:
                return result
            if 400 <= e.status_code < 500:
                logger.warning("Payment verification rejected (status=%d)", e.status_code)
                raise PaymentRejectedError(
                    e.response.get("message") or "Payment verification failed",
                    status_code=e.status_code,
                    response=e.response,
                ) from e
            raise

    result = VerifyResult.from_body(body)
    if result.success or result.needs_address:
        return result
    logger.warning("Payment verification returned neither success nor an address request")
    raise PaymentRejectedError(
        result.message or "Payment verification failed",
        status_code=200,
        response=body if isinstance(body, dict) else {},
    )
