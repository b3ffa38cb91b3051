"""
Unit tests for solvency evaluation and the balance accountant.

Tests deposit sizing, runway arithmetic, allowance checks and chain reads.
"""

import math
import threading
from fractions import Fraction

import pytest

from foc_storage_guard.core.errors import ChainError, ErrorKind, FailureCause, StorageGuardError
from foc_storage_guard.core.models import AccountState, PriceTable
from foc_storage_guard.core.pricing import quote_storage
from foc_storage_guard.core.solvency import BalanceAccountant, days_left, evaluate_solvency, validate_period
from foc_storage_guard.core.units import BYTES_PER_GIB, MAX_UINT256, ONE_TOKEN

from fakes import FakeChain, no_approval, price_table

CAPACITY = 150 * BYTES_PER_GIB
PER_DAY = 12_207_031_250_000_000  # 150 GiB at $2.50/TiB/month


def account(available_funds=0, rate_allowance=MAX_UINT256, lockup_allowance=MAX_UINT256, rate_used=0):
    return AccountState(
        native_balance=ONE_TOKEN,
        stable_balance=100 * ONE_TOKEN,
        available_funds=available_funds,
        rate_allowance=rate_allowance,
        lockup_allowance=lockup_allowance,
        rate_used=rate_used,
    )


def evaluate(acct, persistence_days=365, threshold_days=45, size=CAPACITY):
    return evaluate_solvency(acct, quote_storage(price_table(), size), persistence_days, threshold_days)


class TestEvaluateSolvency:
    """Test the pure solvency evaluation."""

    def test_empty_account_needs_full_period(self):
        """150 GiB for 365 days with nothing deposited."""
        report = evaluate(account(available_funds=0))

        assert report.amount_needed == PER_DAY * 365
        assert report.deposit_needed == PER_DAY * 365
        assert report.available_to_free_up == 0
        assert report.days_left_at_max_burn_rate == 0
        assert report.is_sufficient is False

    def test_long_runway_with_unlimited_allowances_is_sufficient(self):
        """9999 days of runway and unlimited allowances need nothing."""
        report = evaluate(account(available_funds=PER_DAY * 9999))

        assert report.days_left_at_max_burn_rate == 9999
        assert report.is_sufficient is True
        assert report.deposit_needed == 0
        assert report.available_to_free_up == PER_DAY * (9999 - 365)

    def test_exact_threshold_boundary_is_sufficient(self):
        """Exactly 45 days of runway meets a 45 day threshold."""
        report = evaluate(account(available_funds=PER_DAY * 45))

        assert report.days_left_at_max_burn_rate == Fraction(45)
        assert report.is_sufficient is True
        assert report.deposit_needed == 0

    def test_one_base_unit_short_of_threshold_needs_deposit(self):
        report = evaluate(account(available_funds=PER_DAY * 45 - 1))

        assert report.days_left_at_max_burn_rate < 45
        assert report.is_sufficient is False
        assert report.deposit_needed == PER_DAY * 365 - (PER_DAY * 45 - 1)

    def test_short_allowances_are_insufficient_without_deposit(self):
        report = evaluate(account(available_funds=PER_DAY * 400, rate_allowance=0, lockup_allowance=0))

        assert report.is_rate_sufficient is False
        assert report.is_lockup_sufficient is False
        assert report.is_sufficient is False
        assert report.deposit_needed == 0

    def test_zero_burn_rate_has_infinite_runway(self):
        report = evaluate(account(available_funds=0, rate_used=0))
        assert report.days_left_at_burn_rate == math.inf
        assert report.current_monthly_rate == 0

    def test_current_burn_rate_uses_committed_rate(self):
        report = evaluate(account(available_funds=30 * ONE_TOKEN, rate_used=1000))

        assert report.current_monthly_rate == 1000 * 86400
        assert report.days_left_at_burn_rate == Fraction(30 * ONE_TOKEN * 30, 1000 * 86400)

    def test_zero_max_rate_decided_by_allowances(self):
        free = PriceTable(price_per_tib_per_month=0, minimum_price_per_month=0, epochs_per_month=86400)
        quote = quote_storage(free, CAPACITY)

        report = evaluate_solvency(account(), quote, 365, 45)

        assert report.days_left_at_max_burn_rate == math.inf
        assert report.is_sufficient is True

    @pytest.mark.parametrize("available", [0, PER_DAY, PER_DAY * 44, PER_DAY * 365, PER_DAY * 366, PER_DAY * 9999])
    def test_deposit_and_free_up_never_both_positive(self, available):
        report = evaluate(account(available_funds=available))

        assert report.deposit_needed >= 0
        assert report.available_to_free_up >= 0
        assert not (report.deposit_needed > 0 and report.available_to_free_up > 0)

    def test_sufficiency_is_monotonic_in_available_funds(self):
        previous = False
        for available in range(0, PER_DAY * 100, PER_DAY * 5):
            sufficient = evaluate(account(available_funds=available)).is_sufficient
            assert not (previous and not sufficient)
            previous = sufficient

    def test_evaluation_is_idempotent(self):
        acct = account(available_funds=PER_DAY * 10, rate_used=500)
        assert evaluate(acct) == evaluate(acct)

    def test_negative_days_raise(self):
        with pytest.raises(StorageGuardError) as excinfo:
            evaluate(account(), persistence_days=-1)
        assert excinfo.value.kind == ErrorKind.INVALID_INPUT


class TestDaysLeft:
    """Test exact runway arithmetic."""

    def test_exact_rational(self):
        assert days_left(10, 3) == Fraction(100)
        assert days_left(1, 7) == Fraction(30, 7)

    def test_zero_rate_is_infinite(self):
        assert days_left(0, 0) == math.inf


class TestValidatePeriod:
    """Test the 30 day floor on periods."""

    def test_thirty_days_is_allowed(self):
        validate_period("persistence_days", 30)

    @pytest.mark.parametrize("days", [29, 0, -5, 30.5, True])
    def test_invalid_periods_raise(self, days):
        with pytest.raises(StorageGuardError) as excinfo:
            validate_period("persistence_days", days)
        assert excinfo.value.kind == ErrorKind.INVALID_INPUT


class TestBalanceAccountant:
    """Test live balance checks against a fake chain."""

    def test_check_combines_reads(self):
        chain = FakeChain(available_funds=PER_DAY * 9999)
        check = BalanceAccountant(chain).check(CAPACITY, 365, 45)

        assert check.report.is_sufficient is True
        assert check.needs_payment is False
        assert check.account.available_funds == PER_DAY * 9999
        assert chain.read_calls == {"wallet": 1, "approval": 1, "price_table": 1}

    def test_check_reports_deposit_for_empty_account(self):
        check = BalanceAccountant(FakeChain(available_funds=0, approval=no_approval())).check(CAPACITY, 365, 45)

        assert check.needs_payment is True
        assert check.report.deposit_needed == PER_DAY * 365
        assert "deposit of" in check.status_message

    def test_formatted_mirror(self):
        check = BalanceAccountant(FakeChain(available_funds=PER_DAY * 9999)).check(CAPACITY, 365, 45)
        formatted = check.formatted()

        assert formatted["nativeBalance"] == "1 FIL"
        assert formatted["depositNeeded"] == "0 USDFC"
        assert formatted["daysLeftAtBurnRate"] == "Infinity"
        assert formatted["daysLeftAtMaxBurnRate"] == "27.39 years"
        assert formatted["isSufficient"] is True

    def test_reads_run_concurrently(self):
        """All three reads are in flight before any of them returns."""
        barrier = threading.Barrier(3, timeout=5)

        class BarrierChain(FakeChain):
            def _read(self, name, value):
                barrier.wait()
                return super()._read(name, value)

        check = BalanceAccountant(BarrierChain(available_funds=PER_DAY * 9999)).check(CAPACITY, 365, 45)
        assert check.report.is_sufficient is True

    def test_rpc_failure_is_retried(self):
        chain = FakeChain(available_funds=PER_DAY * 9999)
        chain.read_errors["wallet"] = [ChainError("timeout"), ChainError("timeout")]

        check = BalanceAccountant(chain, read_retries=2).check(CAPACITY, 365, 45)

        assert check.report.is_sufficient is True
        assert chain.read_calls["wallet"] == 3

    def test_retries_exhausted_raise_read_failed(self):
        chain = FakeChain()
        chain.read_errors["price_table"] = [ChainError("down")] * 3

        with pytest.raises(StorageGuardError) as excinfo:
            BalanceAccountant(chain, read_retries=1).check(CAPACITY, 365, 45)

        assert excinfo.value.kind == ErrorKind.READ_FAILED
        assert chain.read_calls["price_table"] == 2

    def test_non_rpc_failures_are_not_retried(self):
        chain = FakeChain()
        chain.read_errors["approval"] = [ChainError("bad", FailureCause.TRANSACTION_REVERTED)]

        with pytest.raises(StorageGuardError) as excinfo:
            BalanceAccountant(chain, read_retries=3).check(CAPACITY, 365, 45)

        assert excinfo.value.kind == ErrorKind.READ_FAILED
        assert chain.read_calls["approval"] == 1

    def test_short_periods_rejected_before_reading(self):
        chain = FakeChain()
        with pytest.raises(StorageGuardError) as excinfo:
            BalanceAccountant(chain).check(CAPACITY, 29, 45)

        assert excinfo.value.kind == ErrorKind.INVALID_INPUT
        assert chain.read_calls["wallet"] == 0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            BalanceAccountant(FakeChain(), read_retries=-1)
