"""
Unit tests for storage pricing.

Tests quote arithmetic, the minimum monthly price and cost estimates.
"""

from dataclasses import replace
from unittest.mock import Mock

import pytest

from foc_storage_guard.core.errors import ErrorKind, StorageGuardError
from foc_storage_guard.core.pricing import (
    INSOLVENCY_WARNING,
    PriceQuote,
    PricingOracle,
    estimate_storage_cost,
    quote_storage,
    storage_pricing_info,
)
from foc_storage_guard.core.units import BYTES_PER_GIB, BYTES_PER_MIB, BYTES_PER_TIB, EPOCHS_PER_DAY, ONE_TOKEN

from fakes import MINIMUM_PRICE, PRICE_PER_TIB, price_table


class TestQuoteStorage:
    """Test per-epoch, per-day and per-month quotes."""

    def test_150_gib_quote(self):
        """$2.50/TiB/month for 150 GiB is proportional and above the minimum."""
        quote = quote_storage(price_table(), 150 * BYTES_PER_GIB)

        assert isinstance(quote, PriceQuote)
        assert quote.per_month == 366_210_937_500_000_000
        assert quote.per_day == 12_207_031_250_000_000
        assert quote.per_epoch == 366_210_937_500_000_000 // 86400
        assert quote.applied_minimum is False

    def test_one_tib_costs_the_list_price(self):
        quote = quote_storage(price_table(), BYTES_PER_TIB)
        assert quote.per_month == PRICE_PER_TIB

    def test_small_size_applies_minimum(self):
        """1 GiB for a month is billed at exactly the $0.06 minimum."""
        quote = quote_storage(price_table(), BYTES_PER_GIB)

        assert quote.applied_minimum is True
        assert quote.per_month == MINIMUM_PRICE
        assert quote.per_day == MINIMUM_PRICE // 30

    @pytest.mark.parametrize("size", [1, 100, BYTES_PER_MIB, BYTES_PER_GIB, 24 * BYTES_PER_GIB,
                                      25 * BYTES_PER_GIB, BYTES_PER_TIB, 10 * BYTES_PER_TIB])
    def test_per_month_never_below_minimum(self, size):
        assert quote_storage(price_table(), size).per_month >= MINIMUM_PRICE

    def test_minimum_threshold_is_about_24_57_gib(self):
        assert quote_storage(price_table(), 24 * BYTES_PER_GIB).applied_minimum is True
        assert quote_storage(price_table(), 25 * BYTES_PER_GIB).applied_minimum is False

    @pytest.mark.parametrize("size", [0, -1, True, 1.5, "100"])
    def test_invalid_size_raises(self, size):
        with pytest.raises(StorageGuardError) as excinfo:
            quote_storage(price_table(), size)
        assert excinfo.value.kind == ErrorKind.INVALID_INPUT


class TestEstimateStorageCost:
    """Test multi-month cost estimates."""

    def test_estimate_without_cdn(self):
        estimate = estimate_storage_cost(price_table(), BYTES_PER_TIB, 12)

        assert estimate.monthly_cost == PRICE_PER_TIB
        assert estimate.storage_cost == 12 * PRICE_PER_TIB
        assert estimate.cdn_setup_cost == 0
        assert estimate.total_cost == 30 * ONE_TOKEN
        assert estimate.size_formatted == "1.00 TiB"
        assert estimate.egress_credits_gib == 0

    def test_estimate_with_cdn_adds_one_token(self):
        estimate = estimate_storage_cost(price_table(), BYTES_PER_GIB, 1, create_cdn_dataset=True)

        assert estimate.applied_minimum is True
        assert estimate.cdn_setup_cost == ONE_TOKEN
        assert estimate.total_cost == MINIMUM_PRICE + ONE_TOKEN
        assert estimate.egress_credits_gib > 146

    @pytest.mark.parametrize("months", [0, -3, 1.5])
    def test_invalid_duration_raises(self, months):
        with pytest.raises(StorageGuardError) as excinfo:
            estimate_storage_cost(price_table(), BYTES_PER_GIB, months)
        assert excinfo.value.kind == ErrorKind.INVALID_INPUT


class TestStoragePricingInfo:
    """Test the pricing overview and its worked example."""

    def test_example_is_one_tib_for_a_year(self):
        info = storage_pricing_info(price_table(), include_cdn=False)

        assert info.example.size_bytes == BYTES_PER_TIB
        assert info.example.duration_months == 12
        assert info.example.total_cost == 30 * ONE_TOKEN
        assert info.message == (
            "Storage pricing: 2.5 USDFC per TiB per month (minimum 0.06 USDFC per month). "
            "Example: 1.00 TiB for 12 months = 30 USDFC"
        )

    def test_example_with_cdn_adds_credits(self):
        info = storage_pricing_info(price_table())

        assert info.example.total_cost == 31 * ONE_TOKEN
        assert "includes 1 USDFC CDN credits" in info.message

    def test_rates_and_threshold(self):
        info = storage_pricing_info(price_table())

        assert info.price_per_tib_per_month == PRICE_PER_TIB
        assert info.minimum_price_per_month == MINIMUM_PRICE
        assert info.epochs_per_day == EPOCHS_PER_DAY
        assert info.minimum_threshold_bytes == 26388279067
        assert quote_storage(price_table(), info.minimum_threshold_bytes).applied_minimum is False
        assert quote_storage(price_table(), info.minimum_threshold_bytes - 1).applied_minimum is True

    def test_insolvency_warning(self):
        info = storage_pricing_info(price_table())

        assert info.insolvency_warning == INSOLVENCY_WARNING
        assert "30 days" in info.insolvency_warning
        assert "45 days" in info.insolvency_warning

    def test_free_storage_has_no_threshold(self):
        free = replace(price_table(), price_per_tib_per_month=0, minimum_price_per_month=0)
        assert storage_pricing_info(free, include_cdn=False).minimum_threshold_bytes == 0


class TestPricingOracle:
    """Test the oracle reads prices on every call."""

    def test_quote_reads_price_table_each_time(self):
        reader = Mock()
        reader.read_price_table.return_value = price_table()
        oracle = PricingOracle(reader)

        oracle.quote(BYTES_PER_GIB)
        oracle.quote(BYTES_PER_TIB)

        assert reader.read_price_table.call_count == 2

    def test_estimate_uses_fresh_prices(self):
        reader = Mock()
        reader.read_price_table.return_value = price_table()

        estimate = PricingOracle(reader).estimate(BYTES_PER_TIB, 2)

        assert estimate.total_cost == 5 * ONE_TOKEN
        reader.read_price_table.assert_called_once()
