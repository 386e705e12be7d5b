"""Decimal money helpers.

Amounts are exact ``Decimal`` values in the currency's major unit.
Conversion to processor minor units lives in the processor adapter only.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

# Currencies the processor treats as having no minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

Amount = Union[Decimal, str, int]


def normalize_currency(currency: str) -> str:
    """Upper-case ISO-4217 code, validated for shape."""
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {currency!r}")
    return code


def currency_exponent(currency: str) -> int:
    """Number of minor-unit digits for a currency."""
    return 0 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 2


def to_decimal(value: Amount) -> Decimal:
    """Coerce an amount to Decimal. Floats are refused to avoid binary drift."""
    if isinstance(value, float):
        raise TypeError("Amounts must be Decimal, str or int, not float")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def quantize_amount(value: Amount, currency: str) -> Decimal:
    """Round half-up to the currency's minor-unit precision."""
    exp = Decimal(1).scaleb(-currency_exponent(currency))
    return to_decimal(value).quantize(exp, rounding=ROUND_HALF_UP)


def exact_amount(value: Amount, currency: str) -> Decimal:
    """Normalize to the currency's minor-unit precision without rounding.

    Raises:
        ValueError: the value has more decimal places than the currency allows
    """
    result = to_decimal(value)
    normalized = quantize_amount(result, currency)
    if normalized != result:
        raise ValueError(
            f"Amount {value} has more decimal places than {normalize_currency(currency)} allows"
        )
    return normalized


def fee_for(amount: Decimal, rate: Decimal, currency: str) -> Decimal:
    """Platform fee for an amount at a given rate."""
    return quantize_amount(amount * rate, currency)
