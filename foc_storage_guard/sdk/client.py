"""
Storage guard client.

Wires the pricing, solvency, payment and upload components to one wallet and
turns their errors into response objects that always carry succeeded, error
and message.
"""

import importlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from ..chain.base import CatalogReader
from ..chain.filecoin import FilecoinClient
from ..core.errors import ChainError, ErrorKind, FailureCause, FileStoreError, StorageGuardError
from ..core.models import Dataset, Provider
from ..core.payments import PaymentOrchestrator
from ..core.pipeline import PipelineResult, UploadPipeline, UploadRequest, validate_metadata
from ..core.pricing import PricingOracle, StorageCostEstimate, StoragePricingInfo
from ..core.solvency import BalanceAccountant, BalanceCheck, read_with_retries
from ..core.units import CDN_DATASET_FEE, format_amount

logger = logging.getLogger(__name__)

MAX_DATASET_METADATA_ENTRIES = 10


@dataclass(frozen=True)
class BalanceCheckResponse:
    """Result of a balance check request."""
    succeeded: bool
    message: str
    error: Optional[ErrorKind] = None
    check: Optional[BalanceCheck] = None
    formatted: Dict[str, Union[str, bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentResponse:
    """Result of a payment request."""
    succeeded: bool
    message: str
    transaction_id: Optional[str] = None
    error: Optional[ErrorKind] = None
    cause: Optional[FailureCause] = None
    deposit_amount: int = 0


@dataclass(frozen=True)
class DatasetsResponse:
    """Result of listing the wallet's datasets."""
    succeeded: bool
    message: str
    error: Optional[ErrorKind] = None
    datasets: Tuple[Dataset, ...] = ()

    @property
    def count(self) -> int:
        return len(self.datasets)


@dataclass(frozen=True)
class DatasetResponse:
    """Result of fetching one dataset."""
    succeeded: bool
    message: str
    error: Optional[ErrorKind] = None
    dataset: Optional[Dataset] = None


@dataclass(frozen=True)
class ProvidersResponse:
    """Result of listing storage providers."""
    succeeded: bool
    message: str
    error: Optional[ErrorKind] = None
    providers: Tuple[Provider, ...] = ()

    @property
    def count(self) -> int:
        return len(self.providers)


@dataclass(frozen=True)
class DatasetCreationResponse:
    """Result of creating a dataset."""
    succeeded: bool
    message: str
    error: Optional[ErrorKind] = None
    dataset_id: Optional[str] = None
    tx_hash: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    progress_log: List[str] = field(default_factory=list)


class StorageGuardClient:
    """Entry point for balance checks, payments, estimates and uploads.

    One client serves one wallet. Payment requests against the same wallet
    must not overlap; the client does not lock.
    """

    def __init__(
        self,
        reader,
        writer,
        file_store=None,
        persistence_days: int = 365,
        notification_threshold_days: int = 45,
        read_retries: int = 0,
        default_capacity_bytes: Optional[int] = None,
        catalog=None,
    ):
        """Initialize the client.

        Args:
            reader: ChainReader for balances, allowances and prices
            writer: ChainWriter for payment transactions
            file_store: FileStore for uploads (optional; uploads fail without one)
            persistence_days: Default days of storage to pay for
            notification_threshold_days: Default minimum acceptable runway
            read_retries: Extra attempts for reads failing with an RPC error
            default_capacity_bytes: Capacity used when a check names none
            catalog: CatalogReader for datasets and providers; defaults to reader when it is one

        Raises:
            ValueError: If reader or writer is missing
        """
        if reader is None:
            raise ValueError("reader is required")
        if writer is None:
            raise ValueError("writer is required")

        self.reader = reader
        self.writer = writer
        self.file_store = file_store
        self.persistence_days = persistence_days
        self.notification_threshold_days = notification_threshold_days
        self.default_capacity_bytes = default_capacity_bytes

        network = getattr(reader, "network", "calibration")
        self.oracle = PricingOracle(reader)
        self.accountant = BalanceAccountant(reader, read_retries=read_retries)
        self.orchestrator = PaymentOrchestrator(
            reader, writer, persistence_days, network=network, read_retries=read_retries
        )
        if catalog is None and isinstance(reader, CatalogReader):
            catalog = reader
        self.catalog = catalog

    @classmethod
    def from_settings(cls, settings) -> "StorageGuardClient":
        """Build a client for the wallet and network named in settings.

        Raises:
            ValueError: If signer settings are missing or the file store path is invalid
        """
        settings.require_signer()
        chain = FilecoinClient(
            private_key=settings.private_key,
            warm_storage_address=settings.warm_storage_address,
            payments_address=settings.payments_address,
            network=settings.network,
            rpc_url=settings.rpc_url,
            storage_view_address=settings.storage_view_address,
            pdp_verifier_address=settings.pdp_verifier_address,
            provider_registry_address=settings.provider_registry_address,
        )
        file_store = load_file_store(settings.file_store, chain) if settings.file_store else None
        return cls(
            reader=chain,
            writer=chain,
            file_store=file_store,
            persistence_days=settings.persistence_period_days,
            notification_threshold_days=settings.runout_notification_threshold_days,
            read_retries=settings.read_retries,
            default_capacity_bytes=settings.total_storage_needed_bytes,
        )

    def check_balance(
        self,
        capacity_bytes: Optional[int] = None,
        persistence_days: Optional[int] = None,
        notification_threshold_days: Optional[int] = None,
    ) -> BalanceCheckResponse:
        """Check whether the account can sustain capacity_bytes of storage."""
        capacity = capacity_bytes if capacity_bytes is not None else self.default_capacity_bytes
        if capacity is None:
            return BalanceCheckResponse(
                succeeded=False,
                message="capacity_bytes is required",
                error=ErrorKind.INVALID_INPUT,
            )
        try:
            check = self.accountant.check(
                capacity,
                persistence_days if persistence_days is not None else self.persistence_days,
                notification_threshold_days if notification_threshold_days is not None
                else self.notification_threshold_days,
            )
        except StorageGuardError as e:
            return BalanceCheckResponse(succeeded=False, message=str(e), error=e.kind)

        return BalanceCheckResponse(
            succeeded=True,
            message=check.status_message,
            check=check,
            formatted=check.formatted(),
        )

    def process_payment(self, deposit_amount: Union[str, int, Decimal]) -> PaymentResponse:
        """Deposit a whole-token amount and make sure allowances are unlimited."""
        try:
            outcome = self.orchestrator.process_payment(deposit_amount)
        except StorageGuardError as e:
            return PaymentResponse(succeeded=False, message=str(e), error=e.kind)

        return PaymentResponse(
            succeeded=outcome.succeeded,
            message=outcome.message,
            transaction_id=outcome.transaction_id,
            error=outcome.error_kind,
            cause=outcome.error.cause if outcome.error else None,
            deposit_amount=outcome.deposit_amount,
        )

    def estimate(self, size_bytes: int, duration_months: int, create_cdn_dataset: bool = False) -> StorageCostEstimate:
        """Estimate the cost of storing size_bytes for duration_months.

        Raises:
            StorageGuardError: INVALID_INPUT for bad arguments, READ_FAILED for chain errors
        """
        try:
            return self.oracle.estimate(size_bytes, duration_months, create_cdn_dataset)
        except ChainError as e:
            raise StorageGuardError(f"Failed to read service price: {e}", ErrorKind.READ_FAILED) from e

    def upload(self, request: UploadRequest) -> PipelineResult:
        """Run the upload pipeline for one file."""
        if self.file_store is None:
            return PipelineResult(
                succeeded=False,
                message="No file store configured; set FILE_STORE to 'module:factory'",
                error=ErrorKind.UPLOAD_FAILED,
            )
        pipeline = UploadPipeline(self.accountant, self.orchestrator, self.file_store)
        return pipeline.run(request)

    def pricing_info(self, include_cdn: bool = True) -> StoragePricingInfo:
        """Current service prices with a 1 TiB for 12 months example.

        Raises:
            StorageGuardError: READ_FAILED for chain errors
        """
        try:
            return self.oracle.pricing_info(include_cdn)
        except ChainError as e:
            raise StorageGuardError(f"Failed to read service price: {e}", ErrorKind.READ_FAILED) from e

    def list_datasets(self, cdn_only: bool = False) -> DatasetsResponse:
        """List the wallet's datasets, optionally only those served through the CDN."""
        try:
            datasets = self._catalog_read(lambda catalog: catalog.list_datasets())
        except StorageGuardError as e:
            return DatasetsResponse(succeeded=False, message=str(e), error=e.kind)

        if cdn_only:
            datasets = [dataset for dataset in datasets if dataset.with_cdn]
        return DatasetsResponse(
            succeeded=True,
            message=f"Found {len(datasets)} dataset(s)",
            datasets=tuple(datasets),
        )

    def get_dataset(self, dataset_id: Union[int, str]) -> DatasetResponse:
        """Fetch one dataset with its pieces and metadata."""
        try:
            ident = _parse_id("dataset_id", dataset_id)
            dataset = self._catalog_read(lambda catalog: catalog.read_dataset(ident))
        except StorageGuardError as e:
            return DatasetResponse(succeeded=False, message=str(e), error=e.kind)

        if dataset is None:
            return DatasetResponse(
                succeeded=False,
                message=f"Dataset {ident} not found",
                error=ErrorKind.INVALID_INPUT,
            )
        return DatasetResponse(
            succeeded=True,
            message=f"Dataset {ident} has {len(dataset.pieces)} piece(s)",
            dataset=dataset,
        )

    def list_providers(self, only_approved: bool = True) -> ProvidersResponse:
        """List active storage providers, by default only those the service approved."""
        try:
            providers = self._catalog_read(lambda catalog: catalog.list_providers(only_approved))
        except StorageGuardError as e:
            return ProvidersResponse(succeeded=False, message=str(e), error=e.kind)

        return ProvidersResponse(
            succeeded=True,
            message=f"Found {len(providers)} provider(s)",
            providers=tuple(providers),
        )

    def create_dataset(
        self,
        provider_id: Union[int, str],
        with_cdn: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> DatasetCreationResponse:
        """Create an empty dataset with a registered provider.

        A CDN dataset first deposits the one-time CDN fee. The fee stays
        deposited if creation then fails.
        """
        progress = ["Validating provider ID..."]
        try:
            validate_metadata(metadata, MAX_DATASET_METADATA_ENTRIES)
            ident = _parse_id("provider_id", provider_id)
            provider = self._catalog_read(lambda catalog: catalog.read_provider(ident))
        except StorageGuardError as e:
            progress.append(f"Validation failed: {e}")
            return DatasetCreationResponse(succeeded=False, message=str(e), error=e.kind, progress_log=progress)

        if provider is None or not provider.is_active:
            message = f"Provider {ident} not found or inactive"
            progress.append(message)
            return DatasetCreationResponse(
                succeeded=False, message=message, error=ErrorKind.INVALID_INPUT, progress_log=progress
            )
        progress.append(f"Provider validated (ID: {ident})")

        if self.file_store is None:
            return DatasetCreationResponse(
                succeeded=False,
                message="No file store configured; set FILE_STORE to 'module:factory'",
                error=ErrorKind.UPLOAD_FAILED,
                progress_log=progress,
            )

        payment_tx = None
        if with_cdn:
            progress.append(f"Processing CDN payment ({format_amount(CDN_DATASET_FEE)})...")
            try:
                outcome = self.orchestrator.ensure_funded(CDN_DATASET_FEE)
            except StorageGuardError as e:
                progress.append(f"CDN payment failed: {e}")
                return DatasetCreationResponse(succeeded=False, message=str(e), error=e.kind, progress_log=progress)
            if not outcome.succeeded:
                progress.append(f"CDN payment failed: {outcome.message}")
                return DatasetCreationResponse(
                    succeeded=False,
                    message=outcome.message,
                    error=ErrorKind.PAYMENT_FAILED,
                    payment_transaction_id=outcome.transaction_id,
                    progress_log=progress,
                )
            payment_tx = outcome.transaction_id

        progress.append("Creating dataset on blockchain...")
        try:
            created = self.file_store.create_dataset(provider, with_cdn=with_cdn, metadata=dict(metadata or {}) or None)
        except (FileStoreError, ChainError) as e:
            logger.error("Dataset creation with provider %d failed: %s", ident, e)
            progress.append(f"Dataset creation failed: {e}")
            return DatasetCreationResponse(
                succeeded=False,
                message=f"Dataset creation failed: {e}",
                error=ErrorKind.UPLOAD_FAILED,
                payment_transaction_id=payment_tx,
                progress_log=progress,
            )

        progress.append("Dataset created successfully")
        return DatasetCreationResponse(
            succeeded=True,
            message=f"Dataset {created.dataset_id} created with provider {provider.name}",
            dataset_id=created.dataset_id,
            tx_hash=created.tx_hash,
            payment_transaction_id=payment_tx,
            progress_log=progress,
        )

    def _catalog_read(self, read):
        if self.catalog is None:
            raise StorageGuardError("No dataset catalog configured for this client", ErrorKind.INVALID_INPUT)
        catalog = self.catalog
        try:
            return read_with_retries(lambda: read(catalog), self.accountant.read_retries)
        except ValueError as e:
            raise StorageGuardError(str(e), ErrorKind.INVALID_INPUT) from e
        except ChainError as e:
            raise StorageGuardError(f"Failed to read datasets or providers: {e}", ErrorKind.READ_FAILED) from e


def _parse_id(name: str, value: Union[int, str]) -> int:
    if isinstance(value, bool):
        raise StorageGuardError(f"{name} must be a non-negative integer", ErrorKind.INVALID_INPUT)
    try:
        ident = int(value)
    except (TypeError, ValueError) as e:
        raise StorageGuardError(f"{name} must be a non-negative integer, got {value!r}", ErrorKind.INVALID_INPUT) from e
    if ident < 0:
        raise StorageGuardError(f"{name} must be a non-negative integer, got {value!r}", ErrorKind.INVALID_INPUT)
    return ident


def load_file_store(import_path: str, chain):
    """Instantiate a FileStore from a "module:factory" import path.

    The factory is called with the chain client and must return a FileStore.

    Raises:
        ValueError: If the module or factory cannot be found
    """
    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid file store path: {import_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import file store module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if factory is None:
        raise ValueError(f"File store factory {attr!r} not found in {module_name!r}")
    logger.debug("Loading file store from %s", import_path)
    return factory(chain)
