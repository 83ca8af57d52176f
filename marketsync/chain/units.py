"""Conversion between wei integers and decimal ether strings."""

from decimal import Decimal, InvalidOperation

from web3 import Web3

WEI_PER_ETHER = 10**18
ETHER_DECIMALS = 18


def format_ether(wei: int) -> str:
    """
    Format a wei amount as a decimal ether string.

    The result always carries a fractional part and never uses floats:
    ``10**18`` -> ``"1.0"``, ``5 * 10**17`` -> ``"0.5"``.
    """
    sign = "-" if wei < 0 else ""
    whole, fraction = divmod(abs(wei), WEI_PER_ETHER)
    fraction_digits = f"{fraction:0{ETHER_DECIMALS}d}".rstrip("0") or "0"
    return f"{sign}{whole}.{fraction_digits}"


def parse_ether(value: str | int | Decimal) -> int:
    """
    Parse a decimal ether amount into wei.

    Raises:
        ValueError: If the value is not a number, is negative, or has
            more precision than one wei
    """
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid ether amount: {value!r}") from e

    if not amount.is_finite():
        raise ValueError(f"Invalid ether amount: {value!r}")
    if amount < 0:
        raise ValueError(f"Ether amount must be non-negative: {value!r}")
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -ETHER_DECIMALS:
        raise ValueError(f"Ether amount has more than {ETHER_DECIMALS} decimals: {value!r}")

    wei: int = Web3.to_wei(amount, "ether")
    return wei
