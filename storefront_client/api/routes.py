"""Storefront API paths used by the client core."""

SIGNUP = "/auth/signup"
LOGIN = "/auth/login"
LOGOUT = "/auth/logout"
PROFILE = "/auth/profile"
REFRESH = "/auth/refresh"

CREATE_INTENT = "/payment/create-intent"
VERIFY_PAYMENT = "/payment/verify"
PENDING_PAYMENT = "/payment/pending/{order_id}"

ADDRESSES = "/addresses"

# A 401 from these paths is final.
NO_RENEWAL = (
    SIGNUP,
    LOGIN,
    LOGOUT,
    REFRESH,
    CREATE_INTENT,
    VERIFY_PAYMENT,
)


def skips_renewal(path: str) -> bool:
    path = "/" + path.lstrip("/").split("?", 1)[0]
    return any(path == p or path.startswith(p + "/") for p in NO_RENEWAL)
