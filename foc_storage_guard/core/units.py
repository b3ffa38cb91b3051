"""
Units, constants and human-readable formatting.

Token amounts are integers in base units (18 decimals). Conversions to and
from human decimals go through Decimal so no value ever touches a float.
"""

import math
from decimal import ROUND_DOWN, Context, Decimal, InvalidOperation
from fractions import Fraction
from typing import Dict, Optional, Union


# Size constants (binary units)
BYTES_PER_KIB = 1024
BYTES_PER_MIB = 1024 ** 2
BYTES_PER_GIB = 1024 ** 3
BYTES_PER_TIB = 1024 ** 4

SIZE_UNITS: Dict[str, int] = {
    "bytes": 1,
    "KiB": BYTES_PER_KIB,
    "MiB": BYTES_PER_MIB,
    "GiB": BYTES_PER_GIB,
    "TiB": BYTES_PER_TIB,
}

# Epoch constants: one epoch is 30 seconds, a month is 30 days
EPOCH_SECONDS = 30
EPOCHS_PER_DAY = 24 * 60 * 60 // EPOCH_SECONDS
DAYS_PER_MONTH = 30
EPOCHS_PER_MONTH = EPOCHS_PER_DAY * DAYS_PER_MONTH

# Solidity uint256 max, used as the "unlimited" allowance sentinel
MAX_UINT256 = 2 ** 256 - 1

TOKEN_DECIMALS = 18
ONE_TOKEN = 10 ** TOKEN_DECIMALS

# One-time CDN egress credit top-up when creating a CDN dataset (1 USDFC)
CDN_DATASET_FEE = ONE_TOKEN

# CDN egress price in USDFC per TiB downloaded
CDN_EGRESS_RATE_PER_TIB = 7

# Wide enough for any uint256 amount without rounding
_EXACT = Context(prec=100)

NATIVE_TICKER = "FIL"
STABLE_TICKER = "USDFC"

# Day counts are exact rationals; an unbounded runway is math.inf
Days = Union[Fraction, float]


def to_base_units(amount: Union[str, int, Decimal], decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a human-readable token amount to integer base units.

    Digits beyond the token precision are truncated, never rounded up.

    Args:
        amount: Decimal amount such as "1.5" or Decimal("0.06")
        decimals: Token decimals

    Returns:
        Amount in base units

    Raises:
        ValueError: If amount is not a finite, non-negative number
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid token amount: {amount!r}")

    if not value.is_finite():
        raise ValueError(f"Invalid token amount: {amount!r}")
    if value < 0:
        raise ValueError("Token amount cannot be negative")

    return int(value.scaleb(decimals, context=_EXACT).to_integral_value(rounding=ROUND_DOWN))


def from_base_units(amount: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Convert integer base units to an exact Decimal token amount."""
    return Decimal(amount).scaleb(-decimals, context=_EXACT).normalize(_EXACT) if amount else Decimal(0)


def format_amount(amount: int, ticker: str = STABLE_TICKER) -> str:
    """Format base units as a token amount with at most 8 decimal places."""
    value = from_base_units(amount).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN, context=_EXACT)
    text = format(value.normalize(_EXACT), "f") if value else "0"
    return f"{text} {ticker}"


def format_days(days: Days) -> str:
    """Format a runway in the coarsest unit that keeps it readable.

    Args:
        days: Exact day count, or math.inf for an unbounded runway

    Returns:
        String such as "12 hours", "20.5 days", "3 months" or "Infinity"
    """
    if days == math.inf:
        return "Infinity"
    if days < 1:
        return f"{_trim(Fraction(days) * 24)} hours"
    if days < DAYS_PER_MONTH:
        return f"{_trim(Fraction(days))} days"
    if days < 365:
        return f"{_trim(Fraction(days) / DAYS_PER_MONTH)} months"
    return f"{_trim(Fraction(days) / 365)} years"


def _trim(value: Fraction) -> str:
    """Render a rational with up to 2 decimal places, dropping trailing zeros."""
    rounded = (Decimal(value.numerator) / Decimal(value.denominator)).quantize(Decimal("0.01"))
    text = format(rounded, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def format_size(size_bytes: int) -> str:
    """Format a byte count as TiB, GiB or MiB with two decimals."""
    if size_bytes >= BYTES_PER_TIB:
        unit, divisor = "TiB", BYTES_PER_TIB
    elif size_bytes >= BYTES_PER_GIB:
        unit, divisor = "GiB", BYTES_PER_GIB
    else:
        unit, divisor = "MiB", BYTES_PER_MIB

    value = (Decimal(size_bytes) / Decimal(divisor)).quantize(Decimal("0.01"))
    return f"{value} {unit}"


def convert_size(value: Union[str, int, Decimal], from_unit: str, to_unit: Optional[str] = None) -> Dict[str, Decimal]:
    """Convert a storage size between bytes, KiB, MiB, GiB and TiB.

    Args:
        value: Positive size expressed in from_unit
        from_unit: Source unit name
        to_unit: Target unit name; all units are returned when omitted

    Returns:
        Mapping of unit name to the converted value

    Raises:
        ValueError: If a unit is unknown or value is not positive
    """
    if from_unit not in SIZE_UNITS:
        raise ValueError(f"Unknown size unit: {from_unit}")
    if to_unit is not None and to_unit not in SIZE_UNITS:
        raise ValueError(f"Unknown size unit: {to_unit}")

    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid size value: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Size value must be > 0")

    size_bytes = amount * SIZE_UNITS[from_unit]
    units = [to_unit] if to_unit else list(SIZE_UNITS)
    return {unit: size_bytes / SIZE_UNITS[unit] for unit in units}


def size_to_bytes(value: Union[str, int, Decimal], unit: str) -> int:
    """Convert a size in the given unit to a whole number of bytes (rounded down)."""
    return int(convert_size(value, unit, "bytes")["bytes"])


def egress_credits_gib(credit_amount: int = CDN_DATASET_FEE) -> Decimal:
    """GiB of CDN egress bought by a credit amount at the flat per-TiB rate."""
    return from_base_units(credit_amount) / CDN_EGRESS_RATE_PER_TIB * 1024


def top_up_message(network: str) -> str:
    """Instructions for resolving an insufficient wallet balance."""
    if network == "calibration":
        return (
            "To resolve insufficient balance errors:\n"
            "- For tFIL: visit https://faucet.calibration.fildev.network/\n"
            "- For tUSDFC: visit https://forest-explorer.chainsafe.dev/faucet/calibnet_usdfc"
        )
    return (
        "To resolve insufficient balance errors:\n"
        "- Top up your FIL or USDFC balance\n"
        "- Ensure you have sufficient funds for the operation"
    )
