"""
File upload pipeline.

Four stages run in strict order, each gated on the previous one succeeding:

1. check_balance - size the file, quote it, evaluate solvency
2. process_payment - fund and approve the account, or skip when sufficient
3. upload_file - hand the bytes to the file store
4. summary - aggregate the stage outputs into one result

Each stage returns its own ordered list of progress events. The pipeline
concatenates them into the stage log; nothing is reported through callbacks.
A failed stage aborts the rest. Funds already deposited are never reverted.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ChainError, ErrorKind, FileStoreError, StorageGuardError
from .payments import PaymentOutcome
from .solvency import BalanceCheck, validate_period
from .units import format_amount

logger = logging.getLogger(__name__)

MAX_METADATA_ENTRIES = 4

STAGE_CHECK_BALANCE = "check_balance"
STAGE_PROCESS_PAYMENT = "process_payment"
STAGE_UPLOAD_FILE = "upload_file"


class StageFailed(StorageGuardError):
    """Raised when a pipeline stage aborts; carries the events it emitted."""
    def __init__(self, message: str, kind: ErrorKind, stage: str, events: List[str],
                 outcome: Optional[PaymentOutcome] = None):
        super().__init__(message, kind)
        self.stage = stage
        self.events = list(events)
        self.outcome = outcome


@dataclass(frozen=True)
class UploadRequest:
    """Input of one pipeline run."""
    file_path: str
    persistence_days: int
    notification_threshold_days: int
    dataset_id: Optional[str] = None
    cdn_enabled: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)
    auto_payment: bool = True


@dataclass(frozen=True)
class BalanceSnapshot:
    """Output of the check_balance stage."""
    check: BalanceCheck
    file_name: str
    file_size_bytes: int
    needs_payment: bool
    deposit_needed: int
    events: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentStageResult:
    """Output of the process_payment stage."""
    skipped: bool
    outcome: Optional[PaymentOutcome] = None
    events: List[str] = field(default_factory=list)

    @property
    def transaction_id(self) -> Optional[str]:
        return self.outcome.transaction_id if self.outcome else None


@dataclass(frozen=True)
class UploadResult:
    """Output of the upload_file stage."""
    piece_cid: str
    file_name: str
    file_size_bytes: int
    tx_hash: Optional[str] = None
    dataset_id: Optional[str] = None
    retrieval_url: Optional[str] = None
    events: List[str] = field(default_factory=list)


class PipelineContext:
    """Per-run accumulator of stage outputs.

    Each stage writes exactly one field, once, after all earlier fields are
    written. A context is never shared between runs.
    """

    def __init__(self):
        self.balance: Optional[BalanceSnapshot] = None
        self.payment: Optional[PaymentStageResult] = None
        self.upload: Optional[UploadResult] = None

    def record_balance(self, snapshot: BalanceSnapshot) -> None:
        if self.balance is not None:
            raise RuntimeError("balance snapshot already recorded")
        self.balance = snapshot

    def record_payment(self, result: PaymentStageResult) -> None:
        if self.balance is None:
            raise RuntimeError("payment recorded before balance check")
        if self.payment is not None:
            raise RuntimeError("payment result already recorded")
        self.payment = result

    def record_upload(self, result: UploadResult) -> None:
        if self.payment is None:
            raise RuntimeError("upload recorded before payment stage")
        if self.upload is not None:
            raise RuntimeError("upload result already recorded")
        self.upload = result


@dataclass(frozen=True)
class PipelineResult:
    """Aggregated result of one pipeline run."""
    succeeded: bool
    message: str
    piece_identifier: Optional[str] = None
    transaction_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    payment_skipped: Optional[bool] = None
    payment_transaction_id: Optional[str] = None
    deposit_amount: int = 0
    retrieval_url: Optional[str] = None
    error: Optional[ErrorKind] = None
    failed_stage: Optional[str] = None
    stage_log: List[str] = field(default_factory=list)


class UploadPipeline:
    """Runs the check, pay, upload and summary stages for one file."""

    def __init__(self, accountant, orchestrator, file_store):
        """Initialize the pipeline.

        Args:
            accountant: BalanceAccountant for the balance check
            orchestrator: PaymentOrchestrator for funding
            file_store: FileStore that writes the bytes
        """
        self.accountant = accountant
        self.orchestrator = orchestrator
        self.file_store = file_store

    def run(self, request: UploadRequest) -> PipelineResult:
        """Run all stages in order and return the aggregated result.

        Never raises for stage failures; they are reported in the result.
        """
        context = PipelineContext()
        try:
            context.record_balance(self.check_balance(request))
            context.record_payment(self.process_payment(request, context.balance))
            context.record_upload(self.upload_file(request, context.balance))
        except StageFailed as e:
            logger.error("Upload pipeline aborted at %s: %s", e.stage, e)
            return summarize(context, failure=e)
        return summarize(context)

    def check_balance(self, request: UploadRequest) -> BalanceSnapshot:
        """Stage 1: size the file and evaluate solvency for it."""
        events = ["STEP 1: Checking balances and storage metrics..."]
        try:
            _validate_request(request)
            path = Path(request.file_path)
            try:
                if not path.is_file():
                    raise OSError(f"Path is not a file: {path}")
                size = path.stat().st_size
            except OSError as e:
                raise StorageGuardError(
                    f"File not found or inaccessible: {request.file_path}", ErrorKind.INVALID_INPUT
                ) from e
            if size == 0:
                raise StorageGuardError(
                    f"Cannot upload an empty file: {request.file_path}", ErrorKind.INVALID_INPUT
                )

            check = self.accountant.check(size, request.persistence_days, request.notification_threshold_days)
        except StorageGuardError as e:
            events.append(f"Balance check failed: {e}")
            raise StageFailed(str(e), e.kind, STAGE_CHECK_BALANCE, events) from e

        events.append(f"Initial balance: {check.status_message}")
        return BalanceSnapshot(
            check=check,
            file_name=path.name,
            file_size_bytes=size,
            needs_payment=check.needs_payment,
            deposit_needed=check.report.deposit_needed,
            events=events,
        )

    def process_payment(self, request: UploadRequest, snapshot: BalanceSnapshot) -> PaymentStageResult:
        """Stage 2: fund and approve the account when the check says so."""
        if not snapshot.needs_payment:
            return PaymentStageResult(
                skipped=True,
                events=["STEP 2: Balance and allowances are sufficient, skipping payment"],
            )

        events = ["STEP 2: Processing payment and/or setting allowances..."]
        if snapshot.deposit_needed > 0:
            events.append(f"Deposit needed: {format_amount(snapshot.deposit_needed)}")
        else:
            events.append("Deposit sufficient, but allowances need to be set")

        if not request.auto_payment:
            message = (
                f"Insufficient balance: {format_amount(snapshot.deposit_needed)} required. "
                "Enable auto payment or deposit funds first."
            )
            events.append(message)
            raise StageFailed(message, ErrorKind.INSUFFICIENT_BALANCE, STAGE_PROCESS_PAYMENT, events)

        events.append(f"Persistence period: {request.persistence_days} days")
        try:
            outcome = self.orchestrator.ensure_funded(snapshot.deposit_needed, request.persistence_days)
        except StorageGuardError as e:
            events.append(f"Payment failed: {e}")
            raise StageFailed(str(e), e.kind, STAGE_PROCESS_PAYMENT, events) from e

        if not outcome.succeeded:
            events.append(f"Payment failed: {outcome.error.detail if outcome.error else outcome.message}")
            raise StageFailed(outcome.message, ErrorKind.PAYMENT_FAILED, STAGE_PROCESS_PAYMENT, events, outcome)

        events.append("Payment/allowances processed successfully")
        if outcome.transaction_id:
            events.append(f"TX Hash: {outcome.transaction_id}")
        return PaymentStageResult(skipped=False, outcome=outcome, events=events)

    def upload_file(self, request: UploadRequest, snapshot: BalanceSnapshot) -> UploadResult:
        """Stage 3: write the file bytes through the file store."""
        events = ["STEP 3: Uploading file to storage...", f"File: {request.file_path}"]
        try:
            data = Path(request.file_path).read_bytes()
            piece = self.file_store.upload(
                data,
                file_name=snapshot.file_name,
                dataset_id=request.dataset_id,
                with_cdn=request.cdn_enabled,
                metadata=dict(request.metadata) or None,
            )
        except (OSError, FileStoreError, ChainError) as e:
            events.append(f"Upload failed: {e}")
            raise StageFailed(f"Upload failed: {e}", ErrorKind.UPLOAD_FAILED, STAGE_UPLOAD_FILE, events) from e

        events.extend(piece.events)
        events.append("File uploaded successfully")
        events.append(f"Piece CID: {piece.piece_cid}")
        if piece.tx_hash:
            events.append(f"TX Hash: {piece.tx_hash}")
        return UploadResult(
            piece_cid=piece.piece_cid,
            file_name=snapshot.file_name,
            file_size_bytes=len(data),
            tx_hash=piece.tx_hash,
            dataset_id=piece.dataset_id,
            retrieval_url=piece.retrieval_url,
            events=events,
        )


def summarize(context: PipelineContext, failure: Optional[StageFailed] = None) -> PipelineResult:
    """Stage 4: aggregate whatever stages completed into one result.

    Pure; tolerates any stage output being absent.
    """
    balance, payment, upload = context.balance, context.payment, context.upload

    stage_log: List[str] = []
    for stage in (balance, payment, upload):
        if stage is not None:
            stage_log.extend(stage.events)
    if failure is not None:
        stage_log.extend(failure.events)

    failed_outcome = failure.outcome if failure is not None else None
    payment_outcome = payment.outcome if payment is not None else failed_outcome

    succeeded = failure is None and upload is not None
    if succeeded:
        stage_log.append("E2E FILE UPLOAD COMPLETED SUCCESSFULLY")
        if payment is not None and payment.skipped:
            stage_log.append("Payment: not needed (sufficient balance)")
        elif payment_outcome is not None:
            stage_log.append(f"Payment processed: {format_amount(payment_outcome.deposit_amount)}")
        stage_log.append(f"File uploaded: {upload.file_name} ({upload.file_size_bytes} bytes)")
        message = "File successfully stored"
    elif failure is not None:
        message = str(failure)
    else:
        message = "Upload pipeline did not complete"

    return PipelineResult(
        succeeded=succeeded,
        message=message,
        piece_identifier=upload.piece_cid if upload else None,
        transaction_id=upload.tx_hash if upload else None,
        file_name=upload.file_name if upload else (balance.file_name if balance else None),
        file_size_bytes=upload.file_size_bytes if upload else (balance.file_size_bytes if balance else None),
        payment_skipped=payment.skipped if payment else None,
        payment_transaction_id=payment_outcome.transaction_id if payment_outcome else None,
        deposit_amount=payment_outcome.deposit_amount if payment_outcome else 0,
        retrieval_url=upload.retrieval_url if upload else None,
        error=failure.kind if failure is not None else None,
        failed_stage=failure.stage if failure is not None else None,
        stage_log=stage_log,
    )


def _validate_request(request: UploadRequest) -> None:
    if not request.file_path:
        raise StorageGuardError("file_path is required", ErrorKind.INVALID_INPUT)
    validate_period("persistence_days", request.persistence_days)
    validate_period("notification_threshold_days", request.notification_threshold_days)
    validate_metadata(request.metadata, MAX_METADATA_ENTRIES)


def validate_metadata(metadata: Optional[Dict[str, str]], max_entries: int) -> None:
    """Reject metadata that is too large or not string to string."""
    metadata = metadata or {}
    if len(metadata) > max_entries:
        raise StorageGuardError(
            f"Metadata can contain at most {max_entries} key-value pairs",
            ErrorKind.INVALID_INPUT,
        )
    for key, value in metadata.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise StorageGuardError("Metadata keys and values must be strings", ErrorKind.INVALID_INPUT)
