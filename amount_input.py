import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")

_NOT_AMOUNT_CHARS = re.compile(r"[^\d.,]")


def _normalize_separators(clean: str) -> str:
    if "," in clean:
        # Comma-decimal input such as 100.000,50: dots group thousands.
        if clean.count(",") > 1:
            raise ValueError("Invalid amount")
        return clean.replace(".", "").replace(",", ".")
    if "." not in clean:
        return clean
    parts = clean.split(".")
    last = parts[-1]
    if len(parts) == 2:
        if len(last) == 3:
            return parts[0] + last
        return clean
    if len(last) in (1, 2):
        return "".join(parts[:-1]) + "." + last
    return clean.replace(".", "")


def parse_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    """Parse a user-entered amount into a positive Decimal with two places.

    A comma always marks decimals (``1.234,56``). Without a comma, a dot
    followed by exactly three digits is a thousands separator (``100.000``
    is 100000) and a dot followed by one or two digits is a decimal point.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        if "-" in value:
            raise ValueError("Amount must be positive")
        clean = _NOT_AMOUNT_CHARS.sub("", value)
        if not clean:
            raise ValueError("Invalid amount")
        try:
            amount = Decimal(_normalize_separators(clean))
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    else:
        raise ValueError("Invalid amount")
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValueError("Amount must be positive")
    return amount


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def cents_to_amount(cents: int) -> float:
    return cents / 100
