"""
Data models shared between the engine and its chain collaborators.

All amounts are integers in token base units. Values are read fresh from the
chain for every check and never cached across calls.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class WalletState:
    """Token balances of the signing wallet and its storage escrow."""
    native_balance: int
    stable_balance: int
    available_funds: int  # Deposited into the payments escrow, spendable

    def __post_init__(self):
        """Validate balances are non-negative."""
        if self.native_balance < 0:
            raise ValueError("native_balance cannot be negative")
        if self.stable_balance < 0:
            raise ValueError("stable_balance cannot be negative")
        if self.available_funds < 0:
            raise ValueError("available_funds cannot be negative")


@dataclass(frozen=True)
class OperatorApproval:
    """Allowances the account grants the storage service operator."""
    is_approved: bool
    rate_allowance: int
    lockup_allowance: int
    rate_used: int
    lockup_used: int = 0
    max_lockup_period: int = 0


@dataclass(frozen=True)
class AccountState:
    """Live account state used for one solvency evaluation."""
    native_balance: int
    stable_balance: int
    available_funds: int
    rate_allowance: int
    lockup_allowance: int
    rate_used: int  # Committed spend per epoch

    def __post_init__(self):
        """Validate amounts are non-negative."""
        for name in ("native_balance", "stable_balance", "available_funds",
                     "rate_allowance", "lockup_allowance", "rate_used"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def from_reads(cls, wallet: WalletState, approval: OperatorApproval) -> "AccountState":
        """Combine the wallet and operator approval reads into one state."""
        return cls(
            native_balance=wallet.native_balance,
            stable_balance=wallet.stable_balance,
            available_funds=wallet.available_funds,
            rate_allowance=approval.rate_allowance,
            lockup_allowance=approval.lockup_allowance,
            rate_used=approval.rate_used,
        )


@dataclass(frozen=True)
class PriceTable:
    """On-chain storage service price table."""
    price_per_tib_per_month: int
    minimum_price_per_month: int
    epochs_per_month: int
    price_per_tib_per_month_cdn: int = 0
    token_address: Optional[str] = None

    def __post_init__(self):
        """Validate prices are usable."""
        if self.price_per_tib_per_month < 0:
            raise ValueError("price_per_tib_per_month cannot be negative")
        if self.minimum_price_per_month < 0:
            raise ValueError("minimum_price_per_month cannot be negative")
        if self.epochs_per_month <= 0:
            raise ValueError("epochs_per_month must be > 0")


@dataclass(frozen=True)
class TransactionReceipt:
    """Confirmed transaction as reported by the chain writer."""
    tx_hash: str
    block_number: int
    succeeded: bool


@dataclass(frozen=True)
class StoredPiece:
    """Result of writing one file through a file store."""
    piece_cid: str
    tx_hash: Optional[str] = None
    dataset_id: Optional[str] = None
    provider_id: Optional[str] = None
    retrieval_url: Optional[str] = None
    events: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Piece:
    """One stored file inside a dataset."""
    piece_id: int
    piece_cid: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Dataset:
    """A client dataset held by one storage provider."""
    dataset_id: int
    provider_id: int
    payer: str
    payee: str
    with_cdn: bool
    pdp_end_epoch: int = 0  # Non-zero once the dataset is terminated
    metadata: Dict[str, str] = field(default_factory=dict)
    pieces: Tuple[Piece, ...] = field(default_factory=tuple)

    @property
    def is_live(self) -> bool:
        return self.pdp_end_epoch == 0


@dataclass(frozen=True)
class Provider:
    """A storage provider from the service provider registry."""
    provider_id: int
    service_provider: str
    payee: str
    name: str
    description: str = ""
    is_active: bool = True
    is_approved: bool = False


@dataclass(frozen=True)
class CreatedDataset:
    """Result of creating a dataset through a file store."""
    dataset_id: str
    tx_hash: Optional[str] = None
