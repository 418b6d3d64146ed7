"""
Shared helpers for payment gateway adapters.

Setting assertions, amount conversion, ISO code lookups and parsing of the
plain text response formats several gateways answer with.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional, Union
from urllib.parse import unquote_plus, urljoin

import pycountry

from .base import PaymentError

Number = Union[Decimal, int, float, str]


def must_contain_key(settings: Mapping[str, str], key: str, provider: Optional[str] = None) -> None:
    """
    Assert that settings hold a non empty value for key.

    Raises:
        PaymentError: If the key is missing or its value is empty
    """
    if not settings.get(key):
        raise PaymentError(
            message=f"Argument settings must have a non empty value for the key {key}",
            error_code="missing_setting",
            provider=provider,
        )


def must_not_be_empty(value: Optional[str], name: str, provider: Optional[str] = None) -> str:
    if not value:
        raise PaymentError(
            message=f"{name} must have a non empty value",
            error_code="missing_value",
            provider=provider,
        )
    return value


def ensure_max_length(cart_number: str, max_length: int, provider: Optional[str] = None) -> None:
    """Reject cart numbers the gateway would refuse or cut off."""
    if len(cart_number) > max_length:
        raise PaymentError(
            message=f"Cart number of the order can not exceed {max_length} characters.",
            error_code="cart_number_too_long",
            provider=provider,
        )


def truncate(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None or len(value) < max_length:
        return value
    return value[:max_length]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cents(value: Number) -> int:
    """Convert an amount to minor units, rounding half away from zero."""
    return int((_to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(value: Number) -> str:
    """Format an amount with two decimals and a dot separator ("12.50")."""
    return str(_to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def from_cents(value: Union[int, str]) -> Decimal:
    return Decimal(int(value)) / Decimal(100)


def to_decimal(value: Optional[str], default: Decimal = Decimal("0")) -> Decimal:
    """Parse a gateway amount string, falling back to default when it is empty."""
    if value is None or str(value).strip() == "":
        return default
    return Decimal(str(value).strip())


def currency_numeric_code(iso_code: str, provider: Optional[str] = None) -> str:
    """
    Return the ISO 4217 numeric code ("208") for an alphabetic currency code.

    Raises:
        PaymentError: If iso_code is not an ISO 4217 currency code
    """
    currency = pycountry.currencies.get(alpha_3=(iso_code or "").upper())
    if currency is None:
        raise PaymentError(
            message=f"You must specify an ISO 4217 currency code for the {iso_code} currency",
            error_code="invalid_currency",
            provider=provider,
        )
    return currency.numeric


def ensure_iso_currency(iso_code: str, provider: Optional[str] = None) -> str:
    currency_numeric_code(iso_code, provider)
    return iso_code.upper()


def country_numeric_code(alpha_2: Optional[str], provider: Optional[str] = None) -> str:
    """
    Return the ISO 3166 numeric code ("826") for an alpha-2 country code.

    Raises:
        PaymentError: If alpha_2 is not an ISO 3166 country code
    """
    country = pycountry.countries.get(alpha_2=(alpha_2 or "").upper())
    if country is None:
        raise PaymentError(
            message=f"You must specify an ISO 3166 country code for the {alpha_2} country",
            error_code="invalid_country",
            provider=provider,
        )
    return country.numeric


def parse_key_value_response(body: str, separator: str = "&", url_decode: bool = False) -> Dict[str, str]:
    """
    Parse ``key=value`` pairs from a gateway response body.

    ``separator`` is "&" for form encoded answers or "\\n" for line based
    answers (CRLF is handled). Entries without "=" are ignored and only the
    first "=" splits key from value.
    """
    if separator == "\n":
        entries = re.split(r"\r\n|\r|\n", body or "")
    else:
        entries = (body or "").split(separator)

    fields: Dict[str, str] = {}
    for entry in entries:
        if "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        fields[key] = unquote_plus(value) if url_decode else value
    return fields


def snake_to_camel(value: str) -> str:
    head, *tail = value.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in tail)


def absolute_url(url: str, base_url: str) -> str:
    """Resolve a relative continue/cancel URL against the current request URL."""
    if not url or url.lower().startswith(("http://", "https://")):
        return url
    return urljoin(base_url, url)
