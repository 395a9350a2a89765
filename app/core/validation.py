"""
Input Validation Utilities

Validation and masking helpers for the contact and money fields that flow
through webhooks and store settings:
- Email / phone normalization and masking for logs
- Currency codes
- Percentages and amounts
- Mint URLs
"""
import re
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse


class ValidationPatterns:
    """Regex patterns for validation"""

    # Pragmatic email check, the commerce platform already validated it
    EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # International phone (E.164 format)
    PHONE_INTERNATIONAL = re.compile(r"^\+[1-9]\d{6,14}$")

    # ISO 4217 currency code (plus BTC / SATS)
    CURRENCY = re.compile(r"^[A-Z]{3,4}$")


class EmailValidator:
    """Email validation and masking"""

    @staticmethod
    def validate(email: str) -> bool:
        if not email:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))

    @staticmethod
    def normalize(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def mask(email: str) -> str:
        """
        Mask email for logging (privacy).

        Returns:
            Masked email (e.g., jo****@example.com)
        """
        if not email or "@" not in email:
            return "****"
        local, _, domain = email.partition("@")
        return f"{local[:2]}****@{domain}"


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-\(\)]", "", phone)
        return bool(ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """Keep digits and a leading + only"""
        cleaned = re.sub(r"[^\d+]", "", phone)
        if cleaned and not cleaned.startswith("+"):
            cleaned = "+" + cleaned
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., +1555123****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class CurrencyValidator:
    """Currency code normalization"""

    @staticmethod
    def normalize(currency: str | None, default: str = "USD") -> str:
        if not currency or not str(currency).strip():
            return default
        return str(currency).strip().upper()

    @staticmethod
    def validate(currency: str) -> bool:
        return bool(currency and ValidationPatterns.CURRENCY.match(currency))


class AmountValidator:
    """Monetary amount parsing and validation"""

    @staticmethod
    def parse(value) -> Decimal | None:
        """
        Parse a platform amount (string, int or float) into Decimal.

        Returns None for anything that is not a finite number.
        """
        if value is None or isinstance(value, bool):
            return None
        try:
            # float עובר דרך str כדי לא לגרור שגיאת ייצוג בינארית
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
        if not amount.is_finite():
            return None
        return amount

    @staticmethod
    def validate_percentage(value: Decimal) -> tuple[bool, str | None]:
        if value < 0:
            return False, "Percentage cannot be negative"
        if value > 100:
            return False, "Percentage cannot exceed 100"
        return True, None


class UrlValidator:
    """HTTP(S) URL validation for mint and shop endpoints"""

    @staticmethod
    def validate(url: str) -> bool:
        if not url:
            return False
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    @staticmethod
    def normalize(url: str) -> str:
        """Mint URLs are compared as strings: strip whitespace and trailing /"""
        return url.strip().rstrip("/")


# Pydantic field validators for reuse
def percentage_validator(v: Decimal) -> Decimal:
    is_valid, error = AmountValidator.validate_percentage(v)
    if not is_valid:
        raise ValueError(error)
    return v


def optional_url_validator(v: str | None) -> str | None:
    if v is None or v == "":
        return v
    if not UrlValidator.validate(v.strip()):
        raise ValueError(f"Invalid URL: {v}")
    return UrlValidator.normalize(v)
