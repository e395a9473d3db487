"""Local delivery-address checks, run before an address is attached to any request."""
import re

from pydantic import ValidationError as SchemaError

from ..errors import ValidationError
from .schema import ShippingAddress

PINCODE_PATTERN = re.compile(r"^\d{4,6}$")
PHONE_PATTERN = re.compile(r"^\d{7,15}$")


def validate_address(address: ShippingAddress | dict) -> ShippingAddress:
    """
    Check an address and return it with surrounding whitespace trimmed.

    Raises:
        ValidationError: a required field is empty, or the pincode or phone
            number is malformed
    """
    if not isinstance(address, ShippingAddress):
        try:
            address = ShippingAddress.model_validate(address or {})
        except SchemaError as e:
            raise ValidationError(f"Invalid address: {e.errors()[0]['msg']}") from e

    address = address.model_copy(update={
        "street": address.street.strip(),
        "city": address.city.strip(),
        "zip_code": address.zip_code.strip(),
        "phone": address.phone.strip(),
    })

    if not (address.street and address.city and address.zip_code and address.phone):
        raise ValidationError("Please enter at least Address line 1, City, Pincode and Phone.")
    if not PINCODE_PATTERN.match(address.zip_code):
        raise ValidationError("Enter a valid pincode / postal code.")
    if not PHONE_PATTERN.match(re.sub(r"\s+", "", address.phone)):
        raise ValidationError("Enter a valid phone number.")
    return address
