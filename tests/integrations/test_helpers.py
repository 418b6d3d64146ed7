"""
Setting assertions, amount conversion and response parsing helpers.
"""

from decimal import Decimal

import pytest

from payment_providers.integrations.payment_gateways.base import PaymentError
from payment_providers.integrations.payment_gateways.helpers import (
    absolute_url,
    country_numeric_code,
    currency_numeric_code,
    ensure_iso_currency,
    ensure_max_length,
    format_amount,
    from_cents,
    must_contain_key,
    must_not_be_empty,
    parse_key_value_response,
    snake_to_camel,
    to_cents,
    to_decimal,
    truncate,
)


class TestSettingAssertions:
    def test_missing_key_raises(self):
        with pytest.raises(PaymentError) as exc_info:
            must_contain_key({}, "merchant", "dibs")

        assert exc_info.value.error_code == "missing_setting"
        assert exc_info.value.provider == "dibs"
        assert str(exc_info.value) == "Argument settings must have a non empty value for the key merchant"

    def test_empty_value_raises(self):
        with pytest.raises(PaymentError):
            must_contain_key({"merchant": ""}, "merchant")

    def test_present_key_passes(self):
        must_contain_key({"merchant": "123"}, "merchant")

    def test_must_not_be_empty(self):
        assert must_not_be_empty("value", "city") == "value"
        with pytest.raises(PaymentError) as exc_info:
            must_not_be_empty("", "city")
        assert exc_info.value.error_code == "missing_value"

    def test_cart_number_length(self):
        ensure_max_length("A" * 40, 40)
        with pytest.raises(PaymentError) as exc_info:
            ensure_max_length("A" * 41, 40, "sagepay")
        assert exc_info.value.error_code == "cart_number_too_long"


class TestAmounts:
    @pytest.mark.parametrize(
        "amount, cents",
        [
            (Decimal("1.445"), 145),
            (Decimal("1.444"), 144),
            (Decimal("150"), 15000),
            ("12.5", 1250),
            (Decimal("-1.445"), -145),
        ],
    )
    def test_to_cents_rounds_half_away_from_zero(self, amount, cents):
        assert to_cents(amount) == cents

    def test_format_amount(self):
        assert format_amount(Decimal("12.5")) == "12.50"
        assert format_amount(Decimal("0.005")) == "0.01"
        assert format_amount(150) == "150.00"

    def test_from_cents(self):
        assert from_cents("1250") == Decimal("12.50")
        assert from_cents(5) == Decimal("0.05")

    def test_to_decimal(self):
        assert to_decimal(" 12.50 ") == Decimal("12.50")
        assert to_decimal("") == Decimal("0")
        assert to_decimal(None, Decimal("1")) == Decimal("1")


class TestIsoCodes:
    def test_currency_numeric_code(self):
        assert currency_numeric_code("DKK") == "208"
        assert currency_numeric_code("eur") == "978"

    def test_unknown_currency(self):
        with pytest.raises(PaymentError) as exc_info:
            currency_numeric_code("XYZ", "epay")
        assert exc_info.value.error_code == "invalid_currency"

    def test_ensure_iso_currency_upper_cases(self):
        assert ensure_iso_currency("gbp") == "GBP"

    def test_country_numeric_code(self):
        assert country_numeric_code("GB") == "826"
        with pytest.raises(PaymentError) as exc_info:
            country_numeric_code(None)
        assert exc_info.value.error_code == "invalid_country"


class TestParsing:
    def test_line_based_response(self):
        body = "VPSProtocol=2.23\r\nStatus=OK\r\nStatusDetail=Server transaction registered\r\nNextURL=https://x?a=b"
        assert parse_key_value_response(body, "\n") == {
            "VPSProtocol": "2.23",
            "Status": "OK",
            "StatusDetail": "Server transaction registered",
            "NextURL": "https://x?a=b",
        }

    def test_form_encoded_response(self):
        body = "result=0&message=Approved+OK&empty=&garbage"
        assert parse_key_value_response(body, url_decode=True) == {
            "result": "0",
            "message": "Approved OK",
            "empty": "",
        }

    def test_truncate(self):
        assert truncate("abcdef", 3) == "abc"
        assert truncate("ab", 3) == "ab"
        assert truncate(None, 3) is None

    def test_snake_to_camel(self):
        assert snake_to_camel("first_name") == "firstName"
        assert snake_to_camel("amount") == "amount"

    def test_absolute_url(self):
        base = "https://shop.example.com/payment-providers/sagepay/callback"
        assert absolute_url("/checkout/thanks", base) == "https://shop.example.com/checkout/thanks"
        assert absolute_url("https://other.example.com/x", base) == "https://other.example.com/x"
        assert absolute_url("", base) == ""
