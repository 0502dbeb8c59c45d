from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any

from balance_sync.sync.domain.exceptions import MalformedBalanceError

BALANCE_PLACES = 6
QUANTUM = Decimal(1).scaleb(-BALANCE_PLACES)
ZERO = Decimal("0")


def parse_balance(value: Any) -> Decimal:
    """
    Parses a decimal-string balance.
    Floats are routed through str() so binary noise is not carried over.
    """
    if isinstance(value, bool) or value is None:
        raise MalformedBalanceError(f"not a balance: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise MalformedBalanceError(f"not a decimal: {value!r}") from exc
    if not amount.is_finite():
        raise MalformedBalanceError(f"not finite: {value!r}")
    if amount < ZERO:
        raise MalformedBalanceError(f"negative balance: {value!r}")
    return amount


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def format_balance(amount: Decimal) -> str:
    return f"{quantize(amount):.{BALANCE_PLACES}f}"


def wei_to_decimal(raw: Any, decimals: int = 18) -> str:
    """
    Converts an integer base-unit amount into a 6-place decimal string,
    truncating (never rounding up) the extra digits.
    """
    text = str(raw).strip() if raw is not None else ""
    if not text or text == "0":
        return format_balance(ZERO)
    try:
        units = int(text)
    except ValueError as exc:
        raise MalformedBalanceError(f"not an integer amount: {raw!r}") from exc
    if units < 0:
        raise MalformedBalanceError(f"negative amount: {raw!r}")
    with localcontext() as ctx:
        ctx.prec = 80
        amount = Decimal(units).scaleb(-int(decimals))
        return f"{amount.quantize(QUANTUM, rounding=ROUND_DOWN):.{BALANCE_PLACES}f}"
