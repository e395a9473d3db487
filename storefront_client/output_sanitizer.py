"""Output sanitization: redact credentials, payment signatures and card numbers before returning to the host."""
import re

# Credential patterns
_CREDENTIAL_PATTERNS = [
    re.compile(r"(?i)(api[_-]?key|secret|password|token)\s*[=:]\s*\S+"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),  # JWTs
    re.compile(r"rzp_(?:live|test)_[A-Za-z0-9]{8,}"),                  # provider keys
]

# JSON members whose values are never shown
_SECRET_FIELDS_PATTERN = re.compile(
    r'"(accessToken|access_token|refreshToken|password|confirmPassword|signature|razorpay_signature)"\s*:\s*"[^"]*"'
)

# Card number patterns (13-19 digits, optionally separated)
_CARD_NUMBER_PATTERN = re.compile(
    r"\b(?:\d{4}[-\s]?){2,4}\d{1,4}\b"
)

# ANSI escape codes
_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


def redact_email(email: str) -> str:
    """Partially redact an email address."""
    if "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def sanitize_output(text: str, max_chars: int = 50000) -> str:
    """
    Sanitize text before returning it to the host.

    - Strips ANSI escape codes
    - Blanks secret JSON members (tokens, passwords, payment signatures)
    - Redacts bearer tokens, JWTs, and other credential patterns
    - Redacts card-like numbers
    - Truncates to max_chars
    """
    text = _ANSI_PATTERN.sub("", text)

    text = _SECRET_FIELDS_PATTERN.sub(lambda m: f'"{m.group(1)}": "[REDACTED]"', text)

    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub("[REDACTED]", text)

    text = _CARD_NUMBER_PATTERN.sub("[CARD REDACTED]", text)

    if len(text) > max_chars:
        text = text[:max_chars] + f"\n\n[... truncated at {max_chars} chars]"

    return text
