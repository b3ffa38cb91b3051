"""
Solvency accounting for storage accounts.

Decides whether an account can keep paying for a requested capacity over a
persistence period, and how much must be deposited when it cannot.

Evaluation order:
1. Burn rates - what the account spends today vs. what the request would cost
2. Runway - days of funds left at each rate (exact rationals)
3. Deposit - top-up owed when the runway at the requested rate is too short
4. Allowances - rate and lockup allowances must be unlimited
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Dict, Tuple, TypeVar, Union

from .errors import ChainError, ErrorKind, FailureCause, StorageGuardError
from .models import AccountState, OperatorApproval, PriceTable, WalletState
from .pricing import PriceQuote, quote_storage
from .units import (
    DAYS_PER_MONTH,
    MAX_UINT256,
    NATIVE_TICKER,
    Days,
    format_amount,
    format_days,
)

logger = logging.getLogger(__name__)

# Storage providers treat accounts with less runway than this as insolvent
MIN_PERIOD_DAYS = 30

T = TypeVar("T")


@dataclass(frozen=True)
class SolvencyReport:
    """Outcome of one solvency evaluation. Never mutated after creation."""
    deposit_needed: int
    available_to_free_up: int
    days_left_at_burn_rate: Days
    days_left_at_max_burn_rate: Days
    is_rate_sufficient: bool
    is_lockup_sufficient: bool
    is_sufficient: bool
    current_monthly_rate: int
    max_monthly_rate: int
    amount_needed: int

    def __post_init__(self):
        """Validate amounts are non-negative."""
        if self.deposit_needed < 0:
            raise ValueError("deposit_needed cannot be negative")
        if self.available_to_free_up < 0:
            raise ValueError("available_to_free_up cannot be negative")


def days_left(available_funds: int, monthly_rate: int) -> Days:
    """Days of runway for available_funds at monthly_rate.

    Returns an exact Fraction, or math.inf when nothing is being spent.
    """
    if monthly_rate == 0:
        return math.inf
    return Fraction(available_funds * DAYS_PER_MONTH, monthly_rate)


def evaluate_solvency(
    account: AccountState,
    quote: PriceQuote,
    persistence_days: int,
    notification_threshold_days: int,
) -> SolvencyReport:
    """Evaluate whether an account can sustain the quoted storage.

    A deposit is requested only when the runway at the requested capacity is
    below the notification threshold. Its size is what the whole persistence
    period needs minus what is already available.

    Args:
        account: Live account state
        quote: Price quote for the requested capacity
        persistence_days: Days the storage must be paid for
        notification_threshold_days: Minimum acceptable runway in days

    Returns:
        SolvencyReport for this account and request

    Raises:
        StorageGuardError: If a day count is negative
    """
    if persistence_days < 0:
        raise StorageGuardError("persistence_days cannot be negative", ErrorKind.INVALID_INPUT)
    if notification_threshold_days < 0:
        raise StorageGuardError("notification_threshold_days cannot be negative", ErrorKind.INVALID_INPUT)

    available = account.available_funds

    # 1. Burn rates
    current_monthly_rate = account.rate_used * quote.epochs_per_month
    max_monthly_rate = quote.per_month

    # 2. Runway at each rate
    days_left_at_burn_rate = days_left(available, current_monthly_rate)
    days_left_at_max_burn_rate = days_left(available, max_monthly_rate)
    runway_ok = days_left_at_max_burn_rate >= notification_threshold_days

    # 3. Deposit owed, gated on runway but sized by the persistence period
    amount_needed = quote.per_day * persistence_days
    deposit_needed = 0 if runway_ok else max(0, amount_needed - available)
    available_to_free_up = max(0, available - amount_needed)

    # 4. Allowances
    is_rate_sufficient = account.rate_allowance == MAX_UINT256
    is_lockup_sufficient = account.lockup_allowance == MAX_UINT256

    return SolvencyReport(
        deposit_needed=deposit_needed,
        available_to_free_up=available_to_free_up,
        days_left_at_burn_rate=days_left_at_burn_rate,
        days_left_at_max_burn_rate=days_left_at_max_burn_rate,
        is_rate_sufficient=is_rate_sufficient,
        is_lockup_sufficient=is_lockup_sufficient,
        is_sufficient=is_rate_sufficient and is_lockup_sufficient and runway_ok,
        current_monthly_rate=current_monthly_rate,
        max_monthly_rate=max_monthly_rate,
        amount_needed=amount_needed,
    )


@dataclass(frozen=True)
class BalanceCheck:
    """Account state, quote and report from one balance check."""
    account: AccountState
    quote: PriceQuote
    report: SolvencyReport
    persistence_days: int
    notification_threshold_days: int

    @property
    def needs_payment(self) -> bool:
        return not self.report.is_sufficient

    @property
    def status_message(self) -> str:
        """One-line summary of the account for progress logs."""
        report = self.report
        if report.is_sufficient:
            state = "sufficient"
        elif report.deposit_needed > 0:
            state = f"deposit of {format_amount(report.deposit_needed)} needed"
        else:
            state = "service allowances need approval"
        return (
            f"{format_amount(self.account.available_funds)} available, "
            f"{format_days(report.days_left_at_max_burn_rate)} of runway at requested capacity ({state})"
        )

    def formatted(self) -> Dict[str, Union[str, bool]]:
        """Human-readable mirror of every monetary and time field."""
        report = self.report
        return {
            "nativeBalance": format_amount(self.account.native_balance, NATIVE_TICKER),
            "stableBalance": format_amount(self.account.stable_balance),
            "availableFunds": format_amount(self.account.available_funds),
            "currentMonthlyRate": format_amount(report.current_monthly_rate),
            "maxMonthlyRate": format_amount(report.max_monthly_rate),
            "depositNeeded": format_amount(report.deposit_needed),
            "availableToFreeUp": format_amount(report.available_to_free_up),
            "daysLeftAtBurnRate": format_days(report.days_left_at_burn_rate),
            "daysLeftAtMaxBurnRate": format_days(report.days_left_at_max_burn_rate),
            "isRateSufficient": report.is_rate_sufficient,
            "isLockupSufficient": report.is_lockup_sufficient,
            "isSufficient": report.is_sufficient,
        }


def read_with_retries(read: Callable[[], T], retries: int) -> T:
    """Run a pure chain read, retrying up to retries extra times on RPC failures.

    Other failure causes are raised on the first attempt.
    """
    attempt = 1
    while True:
        try:
            return read()
        except ChainError as e:
            if e.cause != FailureCause.RPC_FAILURE or attempt > retries:
                raise
            logger.warning("Chain read failed (attempt %d of %d): %s", attempt, retries + 1, e)
            attempt += 1


def validate_period(name: str, days: int) -> None:
    """Reject day counts below the insolvency floor."""
    if isinstance(days, bool) or not isinstance(days, int):
        raise StorageGuardError(f"{name} must be a whole number of days", ErrorKind.INVALID_INPUT)
    if days < MIN_PERIOD_DAYS:
        raise StorageGuardError(
            f"{name} must be greater than or equal to {MIN_PERIOD_DAYS}, got {days}",
            ErrorKind.INVALID_INPUT,
        )


class BalanceAccountant:
    """Reads live account state and evaluates solvency against it.

    The three chain reads are independent and run concurrently. Only pure
    reads are retried, and only on RPC failures.
    """

    def __init__(self, reader, read_retries: int = 0):
        """Initialize the accountant.

        Args:
            reader: ChainReader for balances, allowances and prices
            read_retries: Extra attempts for a read that fails with an RPC error
        """
        if read_retries < 0:
            raise ValueError("read_retries cannot be negative")
        self.reader = reader
        self.read_retries = read_retries

    def read_state(self) -> Tuple[AccountState, PriceTable]:
        """Fetch wallet, operator approval and price table concurrently.

        Raises:
            StorageGuardError: With READ_FAILED if any read fails
        """
        try:
            with ThreadPoolExecutor(max_workers=3) as pool:
                wallet_future = pool.submit(self._read, self.reader.read_wallet)
                approval_future = pool.submit(self._read, self.reader.read_operator_approval)
                table_future = pool.submit(self._read, self.reader.read_price_table)
                wallet: WalletState = wallet_future.result()
                approval: OperatorApproval = approval_future.result()
                table: PriceTable = table_future.result()
        except ChainError as e:
            raise StorageGuardError(f"Failed to read account state: {e}", ErrorKind.READ_FAILED) from e

        return AccountState.from_reads(wallet, approval), table

    def check(
        self,
        capacity_bytes: int,
        persistence_days: int,
        notification_threshold_days: int,
    ) -> BalanceCheck:
        """Read live state and evaluate solvency for a requested capacity.

        Args:
            capacity_bytes: Storage capacity to pay for, > 0
            persistence_days: Days to pay for, >= 30
            notification_threshold_days: Minimum runway in days, >= 30

        Returns:
            BalanceCheck with the account, quote and report

        Raises:
            StorageGuardError: INVALID_INPUT for bad arguments, READ_FAILED for chain errors
        """
        validate_period("persistence_days", persistence_days)
        validate_period("notification_threshold_days", notification_threshold_days)

        account, table = self.read_state()
        quote = quote_storage(table, capacity_bytes)
        report = evaluate_solvency(account, quote, persistence_days, notification_threshold_days)

        logger.info(
            "Balance check: capacity=%d bytes sufficient=%s deposit_needed=%d",
            capacity_bytes, report.is_sufficient, report.deposit_needed,
        )
        return BalanceCheck(
            account=account,
            quote=quote,
            report=report,
            persistence_days=persistence_days,
            notification_threshold_days=notification_threshold_days,
        )

    def _read(self, read: Callable[[], T]) -> T:
        return read_with_retries(read, self.read_retries)
