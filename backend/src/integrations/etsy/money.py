"""
Etsy Money objects.

Etsy represents prices as {"amount": int, "divisor": int, "currency_code": str}
where the decimal value is amount / divisor. Conversions use Decimal so
2-decimal prices round-trip exactly.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Union

MONEY_DIVISOR = 100
DEFAULT_CURRENCY = "USD"

Number = Union[int, float, str, Decimal]


def decimal_to_money(amount: Number, currency_code: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    """12.34 -> {"amount": 1234, "divisor": 100, "currency_code": "USD"}"""
    # str() first so 19.99 is read as the literal the caller wrote, not its binary float
    value = Decimal(str(amount)) * MONEY_DIVISOR
    return {
        "amount": int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        "divisor": MONEY_DIVISOR,
        "currency_code": currency_code,
    }


def money_to_decimal(money: Dict[str, Any]) -> Decimal:
    """{"amount": 1234, "divisor": 100} -> Decimal("12.34")"""
    divisor = money.get("divisor") or MONEY_DIVISOR
    return Decimal(int(money["amount"])) / Decimal(int(divisor))
