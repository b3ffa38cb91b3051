"""
Base classes for chain and storage collaborators.

The engine only talks to these interfaces. Concrete clients are injected,
which keeps every engine component testable against fakes.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from foc_storage_guard.core.errors import FileStoreError
from foc_storage_guard.core.models import (
    CreatedDataset,
    Dataset,
    OperatorApproval,
    PriceTable,
    Provider,
    StoredPiece,
    TransactionReceipt,
    WalletState,
)


class ChainReader(ABC):
    """Read-only access to balances, allowances and the price table.

    Implementations raise ChainError on failure. Reads are side-effect free
    and safe to issue concurrently.
    """

    network: str = "calibration"

    @abstractmethod
    def read_wallet(self) -> WalletState:
        """Native and stable token balances plus escrowed available funds."""

    @abstractmethod
    def read_operator_approval(self) -> OperatorApproval:
        """Allowances granted to the storage service operator."""

    @abstractmethod
    def read_price_table(self) -> PriceTable:
        """Current storage service prices."""


class CatalogReader(ABC):
    """Read-only access to the wallet's datasets and the provider registry.

    Implementations raise ChainError on failure.
    """

    @abstractmethod
    def list_datasets(self) -> List[Dataset]:
        """All datasets paid for by the wallet, with pieces and metadata."""

    @abstractmethod
    def read_dataset(self, dataset_id: int) -> Optional[Dataset]:
        """One dataset with pieces and metadata, or None if it does not exist."""

    @abstractmethod
    def list_providers(self, only_approved: bool = True) -> List[Provider]:
        """Active providers, limited to those approved by the storage service by default."""

    @abstractmethod
    def read_provider(self, provider_id: int) -> Optional[Provider]:
        """One provider, or None if it is not registered."""


class ChainWriter(ABC):
    """Signs and submits payment transactions.

    Implementations raise ChainError with a FailureCause when submission or
    confirmation fails. Nothing here retries.
    """

    @abstractmethod
    def deposit_with_permit_and_approve(
        self,
        amount: int,
        rate_allowance: int,
        lockup_allowance: int,
        max_lockup_period: int,
    ) -> str:
        """
        Deposit stable tokens and approve the operator in one transaction.

        Args:
            amount: Deposit in base units (> 0)
            rate_allowance: Per-epoch allowance to grant
            lockup_allowance: Total lockup allowance to grant
            max_lockup_period: Longest lockup in epochs

        Returns:
            Submitted transaction hash
        """

    @abstractmethod
    def approve_service(
        self,
        rate_allowance: int,
        lockup_allowance: int,
        max_lockup_period: int,
    ) -> str:
        """Set operator allowances without moving funds. Returns the tx hash."""

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TransactionReceipt:
        """Block until the transaction has the given number of confirmations."""


class FileStore(ABC):
    """Writes file bytes to the storage network."""

    @abstractmethod
    def upload(
        self,
        data: bytes,
        file_name: str,
        dataset_id: Optional[str] = None,
        with_cdn: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredPiece:
        """
        Store bytes and wait for the piece to be confirmed.

        Args:
            data: File contents
            file_name: Name recorded with the piece
            dataset_id: Existing dataset to add to; a new one when omitted
            with_cdn: Whether the dataset serves through the CDN
            metadata: Up to 4 string key-value pairs

        Returns:
            StoredPiece with the piece CID, proof transaction and progress events

        Raises:
            FileStoreError: If the bytes could not be stored
        """

    def create_dataset(
        self,
        provider: Provider,
        with_cdn: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CreatedDataset:
        """
        Create an empty dataset with a provider and wait until it exists.

        Args:
            provider: Registered provider that will hold the dataset
            with_cdn: Whether the dataset serves through the CDN
            metadata: Up to 10 string key-value pairs

        Returns:
            CreatedDataset with the new dataset ID and creation transaction

        Raises:
            FileStoreError: If the store cannot create datasets or creation failed
        """
        raise FileStoreError(f"{type(self).__name__} does not support creating datasets")
