"""
Storage pricing and cost estimation.

Turns the on-chain price table into per-epoch, per-day and per-month costs
for a byte size. All arithmetic is integer division in base units, matching
how the payments contract itself meters spend.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from .errors import ErrorKind, StorageGuardError
from .models import PriceTable
from .units import (
    BYTES_PER_TIB,
    CDN_DATASET_FEE,
    CDN_EGRESS_RATE_PER_TIB,
    DAYS_PER_MONTH,
    EPOCHS_PER_DAY,
    egress_credits_gib,
    format_amount,
    format_size,
)

logger = logging.getLogger(__name__)

INSOLVENCY_WARNING = (
    "Storage providers consider accounts with less than 30 days of remaining balance "
    "insolvent and may refuse service or remove data. Keep at least 45 days of balance "
    "as a safety margin."
)

# Worked example in the pricing overview: 1 TiB for 1 year
EXAMPLE_SIZE_BYTES = BYTES_PER_TIB
EXAMPLE_DURATION_MONTHS = 12


@dataclass(frozen=True)
class PriceQuote:
    """Storage cost for one byte size, in base units."""
    size_bytes: int
    price_per_tib_per_month: int
    minimum_price_per_month: int
    epochs_per_month: int
    per_epoch: int
    per_day: int
    per_month: int
    applied_minimum: bool


@dataclass(frozen=True)
class StorageCostEstimate:
    """Cost of storing a size for a number of months."""
    size_bytes: int
    size_formatted: str
    duration_months: int
    monthly_cost: int
    storage_cost: int
    cdn_setup_cost: int
    total_cost: int
    egress_credits_gib: Decimal
    price_per_tib_per_month: int
    minimum_price_per_month: int
    applied_minimum: bool


@dataclass(frozen=True)
class StoragePricingInfo:
    """How storage is billed, with a worked example."""
    price_per_tib_per_month: int
    minimum_price_per_month: int
    minimum_threshold_bytes: int  # Sizes below this pay the minimum
    epochs_per_day: int
    epochs_per_month: int
    cdn_egress_rate_per_tib: int
    example: StorageCostEstimate
    insolvency_warning: str = INSOLVENCY_WARNING

    @property
    def message(self) -> str:
        text = (
            f"Storage pricing: {format_amount(self.price_per_tib_per_month)} per TiB per month "
            f"(minimum {format_amount(self.minimum_price_per_month)} per month). "
            f"Example: {self.example.size_formatted} for {self.example.duration_months} months = "
            f"{format_amount(self.example.total_cost)}"
        )
        if self.example.cdn_setup_cost:
            text += (
                f" (includes {format_amount(self.example.cdn_setup_cost)} CDN credits = "
                f"~{self.example.egress_credits_gib:.2f} GiB downloads)"
            )
        return text


def quote_storage(table: PriceTable, size_bytes: int) -> PriceQuote:
    """Quote the cost of storing size_bytes at the given prices.

    The monthly cost is proportional to size but never below the minimum
    monthly price (about 24.567 GiB at $2.50/TiB and $0.06 minimum).

    Args:
        table: Price table read from the chain
        size_bytes: Size to store, must be > 0

    Returns:
        PriceQuote with integer per-epoch, per-day and per-month costs

    Raises:
        StorageGuardError: If size_bytes is not positive
    """
    if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes <= 0:
        raise StorageGuardError(
            f"Storage size must be a positive number of bytes, got {size_bytes!r}",
            ErrorKind.INVALID_INPUT,
        )

    per_month = table.price_per_tib_per_month * size_bytes // BYTES_PER_TIB
    applied_minimum = per_month < table.minimum_price_per_month
    if applied_minimum:
        per_month = table.minimum_price_per_month

    return PriceQuote(
        size_bytes=size_bytes,
        price_per_tib_per_month=table.price_per_tib_per_month,
        minimum_price_per_month=table.minimum_price_per_month,
        epochs_per_month=table.epochs_per_month,
        per_epoch=per_month // table.epochs_per_month,
        per_day=per_month // DAYS_PER_MONTH,
        per_month=per_month,
        applied_minimum=applied_minimum,
    )


def estimate_storage_cost(
    table: PriceTable,
    size_bytes: int,
    duration_months: int,
    create_cdn_dataset: bool = False,
) -> StorageCostEstimate:
    """Estimate the cost of storing a size for a whole number of months.

    Creating a CDN dataset adds a one-time 1 USDFC top-up. It is pre-paid
    egress credit, not a fee.

    Args:
        table: Price table read from the chain
        size_bytes: Size to store, must be > 0
        duration_months: Months of storage, must be > 0
        create_cdn_dataset: Whether a new CDN dataset will be created

    Returns:
        StorageCostEstimate in base units

    Raises:
        StorageGuardError: If size or duration is invalid
    """
    if isinstance(duration_months, bool) or not isinstance(duration_months, int) or duration_months <= 0:
        raise StorageGuardError(
            f"Duration must be a positive number of months, got {duration_months!r}",
            ErrorKind.INVALID_INPUT,
        )

    quote = quote_storage(table, size_bytes)
    storage_cost = quote.per_month * duration_months
    cdn_setup_cost = CDN_DATASET_FEE if create_cdn_dataset else 0

    return StorageCostEstimate(
        size_bytes=size_bytes,
        size_formatted=format_size(size_bytes),
        duration_months=duration_months,
        monthly_cost=quote.per_month,
        storage_cost=storage_cost,
        cdn_setup_cost=cdn_setup_cost,
        total_cost=storage_cost + cdn_setup_cost,
        egress_credits_gib=egress_credits_gib(cdn_setup_cost) if cdn_setup_cost else Decimal(0),
        price_per_tib_per_month=quote.price_per_tib_per_month,
        minimum_price_per_month=quote.minimum_price_per_month,
        applied_minimum=quote.applied_minimum,
    )


def storage_pricing_info(table: PriceTable, include_cdn: bool = True) -> StoragePricingInfo:
    """Describe the pricing model using 1 TiB stored for 1 year as the example.

    Args:
        table: Price table read from the chain
        include_cdn: Whether the example creates a CDN dataset

    Returns:
        StoragePricingInfo with the example estimate and the insolvency warning
    """
    price = table.price_per_tib_per_month
    if price:
        threshold = -(-table.minimum_price_per_month * BYTES_PER_TIB // price)
    else:
        threshold = 0

    return StoragePricingInfo(
        price_per_tib_per_month=price,
        minimum_price_per_month=table.minimum_price_per_month,
        minimum_threshold_bytes=threshold,
        epochs_per_day=EPOCHS_PER_DAY,
        epochs_per_month=table.epochs_per_month,
        cdn_egress_rate_per_tib=CDN_EGRESS_RATE_PER_TIB,
        example=estimate_storage_cost(table, EXAMPLE_SIZE_BYTES, EXAMPLE_DURATION_MONTHS, include_cdn),
    )


class PricingOracle:
    """Quotes storage prices from a freshly read price table.

    The table is read on every call and never cached.
    """

    def __init__(self, reader):
        """Initialize the oracle.

        Args:
            reader: ChainReader used to fetch the price table
        """
        self.reader = reader

    def quote(self, size_bytes: int) -> PriceQuote:
        """Read the price table and quote size_bytes."""
        table = self.reader.read_price_table()
        quote = quote_storage(table, size_bytes)
        logger.debug(
            "Quoted %d bytes: per_month=%d per_day=%d applied_minimum=%s",
            size_bytes, quote.per_month, quote.per_day, quote.applied_minimum,
        )
        return quote

    def estimate(self, size_bytes: int, duration_months: int, create_cdn_dataset: bool = False) -> StorageCostEstimate:
        """Read the price table and estimate a multi-month cost."""
        return estimate_storage_cost(
            self.reader.read_price_table(), size_bytes, duration_months, create_cdn_dataset
        )

    def pricing_info(self, include_cdn: bool = True) -> StoragePricingInfo:
        """Read the price table and describe the pricing model."""
        return storage_pricing_info(self.reader.read_price_table(), include_cdn)
