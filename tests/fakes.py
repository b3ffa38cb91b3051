"""
In-memory chain and file store collaborators for tests.
"""

from typing import Dict, List, Optional

from foc_storage_guard.chain.base import CatalogReader, ChainReader, ChainWriter, FileStore
from foc_storage_guard.core.models import (
    CreatedDataset,
    Dataset,
    OperatorApproval,
    PriceTable,
    Piece,
    Provider,
    StoredPiece,
    TransactionReceipt,
    WalletState,
)
from foc_storage_guard.core.units import MAX_UINT256, ONE_TOKEN

# $2.50 per TiB per month, $0.06 minimum per month
PRICE_PER_TIB = 5 * ONE_TOKEN // 2
MINIMUM_PRICE = 6 * ONE_TOKEN // 100
EPOCHS_PER_MONTH = 86400


def price_table() -> PriceTable:
    return PriceTable(
        price_per_tib_per_month=PRICE_PER_TIB,
        minimum_price_per_month=MINIMUM_PRICE,
        epochs_per_month=EPOCHS_PER_MONTH,
        token_address="0x0000000000000000000000000000000000000001",
    )


def unlimited_approval(rate_used: int = 0) -> OperatorApproval:
    return OperatorApproval(
        is_approved=True,
        rate_allowance=MAX_UINT256,
        lockup_allowance=MAX_UINT256,
        rate_used=rate_used,
    )


def no_approval() -> OperatorApproval:
    return OperatorApproval(is_approved=False, rate_allowance=0, lockup_allowance=0, rate_used=0)


class FakeChain(ChainReader, CatalogReader, ChainWriter):
    """Scriptable chain reader and writer.

    Errors queued in read_errors[name] are raised one per call before the
    read starts succeeding.
    """

    def __init__(
        self,
        available_funds: int = 0,
        stable_balance: int = 1000 * ONE_TOKEN,
        approval: Optional[OperatorApproval] = None,
        table: Optional[PriceTable] = None,
        network: str = "calibration",
    ):
        self.wallet = WalletState(
            native_balance=ONE_TOKEN,
            stable_balance=stable_balance,
            available_funds=available_funds,
        )
        self.approval = approval or unlimited_approval()
        self.table = table or price_table()
        self.network = network

        self.read_errors: Dict[str, List[Exception]] = {}
        self.read_calls: Dict[str, int] = {
            "wallet": 0, "approval": 0, "price_table": 0, "datasets": 0, "providers": 0,
        }
        self.datasets: List[Dataset] = []
        self.providers: List[Provider] = []

        self.submit_error: Optional[Exception] = None
        self.receipt_error: Optional[Exception] = None
        self.receipt_succeeded = True
        self.deposits: List[tuple] = []
        self.approvals: List[tuple] = []

    def _read(self, name, value):
        self.read_calls[name] += 1
        queued = self.read_errors.get(name)
        if queued:
            raise queued.pop(0)
        return value

    def read_wallet(self) -> WalletState:
        return self._read("wallet", self.wallet)

    def read_operator_approval(self) -> OperatorApproval:
        return self._read("approval", self.approval)

    def read_price_table(self) -> PriceTable:
        return self._read("price_table", self.table)

    def list_datasets(self) -> List[Dataset]:
        return list(self._read("datasets", self.datasets))

    def read_dataset(self, dataset_id: int) -> Optional[Dataset]:
        found = [d for d in self._read("datasets", self.datasets) if d.dataset_id == dataset_id]
        return found[0] if found else None

    def list_providers(self, only_approved: bool = True) -> List[Provider]:
        providers = self._read("providers", self.providers)
        return [p for p in providers if p.is_active and (p.is_approved or not only_approved)]

    def read_provider(self, provider_id: int) -> Optional[Provider]:
        found = [p for p in self._read("providers", self.providers) if p.provider_id == provider_id]
        return found[0] if found else None

    def deposit_with_permit_and_approve(self, amount, rate_allowance, lockup_allowance, max_lockup_period) -> str:
        if self.submit_error:
            raise self.submit_error
        self.deposits.append((amount, rate_allowance, lockup_allowance, max_lockup_period))
        return "0xdeposit"

    def approve_service(self, rate_allowance, lockup_allowance, max_lockup_period) -> str:
        if self.submit_error:
            raise self.submit_error
        self.approvals.append((rate_allowance, lockup_allowance, max_lockup_period))
        return "0xapprove"

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TransactionReceipt:
        if self.receipt_error:
            raise self.receipt_error
        return TransactionReceipt(tx_hash=tx_hash, block_number=100, succeeded=self.receipt_succeeded)

    @property
    def transaction_count(self) -> int:
        return len(self.deposits) + len(self.approvals)


class FakeFileStore(FileStore):
    """Records uploads and returns a fixed piece."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.uploads: List[dict] = []
        self.created: List[dict] = []

    def upload(self, data, file_name, dataset_id=None, with_cdn=False, metadata=None) -> StoredPiece:
        self.uploads.append({
            "data": data,
            "file_name": file_name,
            "dataset_id": dataset_id,
            "with_cdn": with_cdn,
            "metadata": metadata,
        })
        if self.error:
            raise self.error
        return StoredPiece(
            piece_cid="bafkzcibcpiece",
            tx_hash="0xpiece",
            dataset_id=dataset_id or "42",
            provider_id="7",
            retrieval_url="https://provider.example/piece/bafkzcibcpiece",
            events=("Storage provider selected", "Piece added to dataset"),
        )

    def create_dataset(self, provider, with_cdn=False, metadata=None) -> CreatedDataset:
        self.created.append({"provider": provider, "with_cdn": with_cdn, "metadata": metadata})
        if self.error:
            raise self.error
        return CreatedDataset(dataset_id="43", tx_hash="0xcreate")


def dataset(dataset_id: int = 42, with_cdn: bool = False, pieces=()) -> Dataset:
    return Dataset(
        dataset_id=dataset_id,
        provider_id=7,
        payer="0x00000000000000000000000000000000000000aa",
        payee="0x00000000000000000000000000000000000000bb",
        with_cdn=with_cdn,
        metadata={"withCDN": ""} if with_cdn else {},
        pieces=tuple(pieces),
    )


def provider(provider_id: int = 7, is_approved: bool = True, is_active: bool = True) -> Provider:
    return Provider(
        provider_id=provider_id,
        service_provider="0x00000000000000000000000000000000000000cc",
        payee="0x00000000000000000000000000000000000000bb",
        name=f"provider-{provider_id}",
        is_active=is_active,
        is_approved=is_approved,
    )


def piece(piece_id: int = 0) -> Piece:
    return Piece(piece_id=piece_id, piece_cid=f"bafkzcibpiece{piece_id}", metadata={"name": f"file{piece_id}.txt"})
