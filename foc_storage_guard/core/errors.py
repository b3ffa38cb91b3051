"""
Error taxonomy for storage funding and upload operations.

Every failure a caller can see is classified by an ErrorKind. Collaborator
failures are classified separately (FailureCause) so the payment stage can
report why a transaction did not land.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Caller-visible failure classes."""
    INVALID_INPUT = "invalid_input"
    READ_FAILED = "read_failed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PAYMENT_FAILED = "payment_failed"
    UPLOAD_FAILED = "upload_failed"


class FailureCause(Enum):
    """Why a chain call failed."""
    INSUFFICIENT_WALLET_FUNDS = "insufficient_wallet_funds"
    SIGNATURE_REJECTED = "signature_rejected"
    RPC_FAILURE = "rpc_failure"
    TRANSACTION_REVERTED = "transaction_reverted"


class StorageGuardError(Exception):
    """Raised when an operation fails with a classified error kind."""
    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind


class ChainError(Exception):
    """Raised by chain collaborators when a read, submit or confirm fails."""
    def __init__(self, message: str, cause: FailureCause = FailureCause.RPC_FAILURE,
                 tx_hash: Optional[str] = None):
        super().__init__(message)
        self.cause = cause
        self.tx_hash = tx_hash


class FileStoreError(Exception):
    """Raised by file store collaborators when bytes cannot be stored."""
