"""Pydantic models for checkout data: cart snapshot, payment confirmation, pending checkout, outcomes."""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any
from urllib.parse import quote, urlencode

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..errors import ApiError, InvalidAmountError


def to_minor_units(total: Any) -> int:
    """499.00 -> 49900. Raises InvalidAmountError for anything that is not a number."""
    try:
        amount = Decimal(str(total))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError("Invalid order amount") from None
    if not amount.is_finite():
        raise InvalidAmountError("Invalid order amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CartItem(BaseModel):
    """One purchased line, snapshotted at payment time. Unknown fields ride along."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    product_id: str = Field(default="", validation_alias=AliasChoices("product_id", "productId", "_id"))
    name: str = ""
    price: Decimal = Decimal("0")
    quantity: int = 1

    def to_payload(self) -> dict:
        payload = dict(self.model_extra or {})
        payload.update({
            "productId": self.product_id,
            "name": self.name,
            "price": float(self.price),
            "quantity": self.quantity,
        })
        return payload


class Coupon(BaseModel):
    """Applied discount reference."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    code: str
    discount_percentage: float = Field(
        default=0, validation_alias=AliasChoices("discount_percentage", "discountPercentage"),
    )

    def to_payload(self) -> dict:
        payload = dict(self.model_extra or {})
        payload.update({"code": self.code, "discountPercentage": self.discount_percentage})
        return payload


class ShippingAddress(BaseModel):
    """Delivery address captured from the user. Checked by checkout.address.validate_address."""
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(default="", validation_alias=AliasChoices("full_name", "fullName", "name"))
    street: str = Field(default="", validation_alias=AliasChoices("street", "addressLine1"))
    apt: str = Field(default="", validation_alias=AliasChoices("apt", "addressLine2"))
    city: str = ""
    state: str = ""
    zip_code: str = Field(default="", validation_alias=AliasChoices("zip_code", "pincode", "postal_code"))
    country: str = "India"
    phone: str = ""
    alt_phone: str = Field(default="", validation_alias=AliasChoices("alt_phone", "altPhone"))
    landmark: str = Field(default="", validation_alias=AliasChoices("landmark", "notes"))
    lat: float | None = None
    lon: float | None = None

    def to_payload(self) -> dict:
        return {
            "fullName": self.full_name,
            "addressLine1": self.street,
            "addressLine2": self.apt,
            "city": self.city,
            "state": self.state,
            "pincode": self.zip_code,
            "country": self.country,
            "phone": self.phone,
            "altPhone": self.alt_phone,
            "notes": self.landmark,
            "lat": self.lat,
            "lon": self.lon,
        }


class OrderIntent(BaseModel):
    """Server-created order the payment widget collects against."""
    provider_order_id: str
    provider_key: str
    amount: int
    currency: str = "INR"
    order_ref: str | None = None

    @classmethod
    def from_response(cls, data: dict, amount: int) -> "OrderIntent":
        """Accepts {providerOrderId, providerKey} and the older {order: {...}, key} shape."""
        order = data.get("order") or {}
        order_id = data.get("providerOrderId") or order.get("id")
        key = data.get("providerKey") or data.get("key")
        if not order_id or not key:
            raise ApiError("Order intent response is missing the order id or key", response=data)
        return cls(
            provider_order_id=str(order_id),
            provider_key=key,
            amount=order.get("amount") or amount,
            currency=order.get("currency") or data.get("currency") or "INR",
            order_ref=str(data["orderId"]) if data.get("orderId") else None,
        )


class PaymentConfirmation(BaseModel):
    """What the payment widget hands back once the user has paid."""
    model_config = ConfigDict(frozen=True)

    payment_id: str
    order_id: str
    signature: str


class PendingCheckout(BaseModel):
    """
    A confirmed payment waiting for a delivery address.

    Immutable: progress (resume_attempts) is recorded by saving a replaced copy.
    """
    model_config = ConfigDict(frozen=True)

    order_ref: str
    payment_id: str
    provider_order_id: str
    signature: str
    items: list[CartItem] = Field(default_factory=list)
    total_amount: int
    coupon: Coupon | None = None
    resume_attempts: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_complete(self) -> bool:
        """All fields needed to re-submit verification are present."""
        return all((self.order_ref, self.payment_id, self.provider_order_id, self.signature))

    @property
    def confirmation(self) -> PaymentConfirmation:
        return PaymentConfirmation(
            payment_id=self.payment_id,
            order_id=self.provider_order_id,
            signature=self.signature,
        )

    def to_payload(self) -> dict:
        """Wire shape used in navigation state and by GET /payment/pending/{orderId}."""
        return {
            "orderId": self.order_ref,
            "payment_id": self.payment_id,
            "order_id": self.provider_order_id,
            "signature": self.signature,
            "orderItems": [item.to_payload() for item in self.items],
            "totalAmount": self.total_amount,
            "couponApplied": self.coupon.to_payload() if self.coupon else None,
        }

    def to_navigation_state(self) -> dict:
        return {"fromCheckout": True, "pendingPayment": self.to_payload()}

    @classmethod
    def from_payload(cls, data: dict, order_ref: str | None = None) -> "PendingCheckout":
        """Rebuild from the wire shape. Raises pydantic.ValidationError on missing fields."""
        coupon = data.get("couponApplied")
        return cls(
            order_ref=order_ref or data.get("orderId") or data.get("order_id") or "",
            payment_id=data.get("payment_id") or data.get("paymentId") or "",
            provider_order_id=data.get("order_id") or data.get("providerOrderId") or "",
            signature=data.get("signature") or "",
            items=data.get("orderItems") or [],
            total_amount=data.get("totalAmount") or 0,
            coupon=coupon or None,
        )

    @classmethod
    def from_navigation_state(cls, state: dict | None, order_ref: str | None = None) -> "PendingCheckout | None":
        if not state or not state.get("fromCheckout"):
            return None
        payload = state.get("pendingPayment")
        if not isinstance(payload, dict):
            return None
        return cls.from_payload(payload, order_ref=order_ref)


class VerifyResult(BaseModel):
    """Body of POST /payment/verify."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    success: bool = False
    needs_address: bool = Field(default=False, validation_alias=AliasChoices("needs_address", "needsAddress"))
    order_id: str | None = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))
    message: str = ""

    @classmethod
    def from_body(cls, body: Any) -> "VerifyResult":
        if not isinstance(body, dict):
            return cls()
        return cls.model_validate(body)


class Destination(str, Enum):
    SUCCESS = "success"
    ADDRESS = "address"
    CANCEL = "cancel"


class CheckoutOutcome(BaseModel):
    """Where the UI should go next, and why."""
    destination: Destination
    message: str = ""
    payment_id: str | None = None
    order_id: str | None = None
    order_ref: str | None = None
    resumable: bool = False
    navigation_state: dict | None = None

    @property
    def path(self) -> str:
        if self.destination is Destination.SUCCESS:
            return "/purchase-success?" + urlencode({
                "payment_id": self.payment_id or "",
                "order_id": self.order_id or "",
            })
        if self.destination is Destination.ADDRESS:
            return f"/location?pendingOrder={quote(self.order_ref or '', safe='')}"
        return "/purchase-cancel"

    @classmethod
    def success(cls, payment_id: str, order_id: str) -> "CheckoutOutcome":
        return cls(
            destination=Destination.SUCCESS,
            message="Order placed successfully",
            payment_id=payment_id,
            order_id=order_id,
        )

    @classmethod
    def needs_address(cls, pending: PendingCheckout, message: str) -> "CheckoutOutcome":
        return cls(
            destination=Destination.ADDRESS,
            message=message,
            payment_id=pending.payment_id,
            order_ref=pending.order_ref,
            resumable=True,
            navigation_state=pending.to_navigation_state(),
        )

    @classmethod
    def cancelled(cls, message: str, order_ref: str | None = None, resumable: bool = False) -> "CheckoutOutcome":
        return cls(
            destination=Destination.CANCEL,
            message=message,
            order_ref=order_ref,
            resumable=resumable,
        )

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json", exclude_none=True)
        data["path"] = self.path
        return data
