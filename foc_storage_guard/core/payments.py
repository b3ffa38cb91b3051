"""
Payment orchestration for storage accounts.

Brings an account into a funded, fully approved state with at most one
on-chain transaction:

- Nothing owed and allowances unlimited: no transaction
- Nothing owed but allowances short: approval-only transaction
- Deposit owed: combined permit deposit and approval transaction

Allowances are always set to the unlimited sentinel rather than to the exact
computed need. Transactions are never retried here; callers must serialize
payment attempts per account and re-check state before retrying.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from .errors import ChainError, ErrorKind, FailureCause, StorageGuardError
from .solvency import read_with_retries
from .units import EPOCHS_PER_DAY, MAX_UINT256, format_amount, to_base_units, top_up_message

logger = logging.getLogger(__name__)

CONFIRMATIONS = 1


@dataclass(frozen=True)
class PaymentError:
    """Structured cause of a failed payment attempt."""
    cause: FailureCause
    detail: str


@dataclass(frozen=True)
class PaymentOutcome:
    """Terminal result of one payment attempt."""
    succeeded: bool
    transaction_id: Optional[str] = None
    error: Optional[PaymentError] = None
    deposit_amount: int = 0
    approval_only: bool = False
    message: str = ""

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return None if self.succeeded else ErrorKind.PAYMENT_FAILED


class PaymentOrchestrator:
    """Drives deposit and approval transactions to confirmation."""

    def __init__(
        self,
        reader,
        writer,
        persistence_days: int,
        network: str = "calibration",
        read_retries: int = 0,
    ):
        """Initialize the orchestrator.

        Args:
            reader: ChainReader for wallet balances and current allowances
            writer: ChainWriter that signs and submits transactions
            persistence_days: Days of storage; bounds the max lockup period
            network: Network name, used for top-up instructions
            read_retries: Extra attempts for a pre-submit read failing with an RPC error
        """
        if persistence_days <= 0:
            raise ValueError("persistence_days must be > 0")
        if read_retries < 0:
            raise ValueError("read_retries cannot be negative")
        self.reader = reader
        self.writer = writer
        self.persistence_days = persistence_days
        self.network = network
        self.read_retries = read_retries

    def max_lockup_period(self, persistence_days: Optional[int] = None) -> int:
        """Longest lockup the operator may hold, in epochs."""
        return EPOCHS_PER_DAY * (persistence_days or self.persistence_days)

    def ensure_funded(self, deposit_needed: int, persistence_days: Optional[int] = None) -> PaymentOutcome:
        """Make sure the account is funded and the operator fully approved.

        Args:
            deposit_needed: Amount to deposit in base units, >= 0
            persistence_days: Overrides the configured persistence period for this attempt

        Returns:
            PaymentOutcome; succeeded is False when submission or confirmation failed

        Raises:
            StorageGuardError: INVALID_INPUT for a bad amount, READ_FAILED if state cannot be read
        """
        if isinstance(deposit_needed, bool) or not isinstance(deposit_needed, int) or deposit_needed < 0:
            raise StorageGuardError(
                f"Deposit amount must be a non-negative integer, got {deposit_needed!r}",
                ErrorKind.INVALID_INPUT,
            )

        if deposit_needed == 0:
            approval = self._read(self.reader.read_operator_approval)
            if approval.rate_allowance == MAX_UINT256 and approval.lockup_allowance == MAX_UINT256:
                logger.info("Account already funded and approved, no transaction needed")
                return PaymentOutcome(
                    succeeded=True,
                    message="You have sufficient balance to cover the storage needs.",
                )
            return self._submit(deposit_needed, self.max_lockup_period(persistence_days))

        wallet = self._read(self.reader.read_wallet)
        if wallet.stable_balance < deposit_needed:
            detail = (
                f"Insufficient USDFC wallet balance. Required: {format_amount(deposit_needed)}, "
                f"available: {format_amount(wallet.stable_balance)}"
            )
            logger.warning(detail)
            return PaymentOutcome(
                succeeded=False,
                error=PaymentError(FailureCause.INSUFFICIENT_WALLET_FUNDS, detail),
                deposit_amount=deposit_needed,
                message=f"{detail}\n{top_up_message(self.network)}",
            )
        return self._submit(deposit_needed, self.max_lockup_period(persistence_days))

    def process_payment(self, deposit_amount: Union[str, int, Decimal]) -> PaymentOutcome:
        """Handle a payment request expressed in whole-token decimals (e.g. "1.5")."""
        try:
            amount = to_base_units(deposit_amount)
        except ValueError as e:
            raise StorageGuardError(str(e), ErrorKind.INVALID_INPUT) from e
        return self.ensure_funded(amount)

    def _submit(self, deposit_amount: int, max_lockup_period: int) -> PaymentOutcome:
        approval_only = deposit_amount == 0
        tx_hash = None
        try:
            if approval_only:
                logger.info("Submitting approval-only transaction")
                tx_hash = self.writer.approve_service(MAX_UINT256, MAX_UINT256, max_lockup_period)
            else:
                logger.info("Submitting deposit of %s with approval", format_amount(deposit_amount))
                tx_hash = self.writer.deposit_with_permit_and_approve(
                    deposit_amount, MAX_UINT256, MAX_UINT256, max_lockup_period
                )
            receipt = self.writer.wait_for_receipt(tx_hash, confirmations=CONFIRMATIONS)
        except ChainError as e:
            logger.error("Payment transaction failed (%s): %s", e.cause.value, e)
            return self._failed(e.cause, str(e), e.tx_hash or tx_hash, deposit_amount, approval_only)

        if not receipt.succeeded:
            return self._failed(
                FailureCause.TRANSACTION_REVERTED,
                f"Transaction {receipt.tx_hash} reverted in block {receipt.block_number}",
                receipt.tx_hash, deposit_amount, approval_only,
            )

        logger.info("Payment transaction %s confirmed in block %d", receipt.tx_hash, receipt.block_number)
        if approval_only:
            message = "Storage service allowances approved."
        else:
            message = (
                f"Payment processed successfully. Deposited {format_amount(deposit_amount)} "
                "to cover the storage needs."
            )
        return PaymentOutcome(
            succeeded=True,
            transaction_id=receipt.tx_hash,
            deposit_amount=deposit_amount,
            approval_only=approval_only,
            message=message,
        )

    def _failed(self, cause, detail, tx_hash, deposit_amount, approval_only) -> PaymentOutcome:
        message = f"Payment processing failed\nCause: {cause.value}\nDetails: {detail}"
        if cause == FailureCause.INSUFFICIENT_WALLET_FUNDS:
            message += f"\n{top_up_message(self.network)}"
        return PaymentOutcome(
            succeeded=False,
            transaction_id=tx_hash,
            error=PaymentError(cause, detail),
            deposit_amount=deposit_amount,
            approval_only=approval_only,
            message=message,
        )

    def _read(self, read):
        try:
            return read_with_retries(read, self.read_retries)
        except ChainError as e:
            raise StorageGuardError(f"Failed to read account state: {e}", ErrorKind.READ_FAILED) from e
