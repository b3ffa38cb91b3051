"""
CLI interface for FOC Storage Guard.

Provides command-line access to balance checks, cost estimates, payments,
uploads and the wallet's datasets.
"""

import json
import logging
import sys
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from foc_storage_guard.config.loader import load_settings
from foc_storage_guard.core.errors import StorageGuardError
from foc_storage_guard.core.pipeline import UploadRequest
from foc_storage_guard.core.units import SIZE_UNITS, convert_size, format_amount, format_size, size_to_bytes
from foc_storage_guard.sdk.client import StorageGuardClient

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _build_client(ctx: typer.Context) -> StorageGuardClient:
    """Load settings and build a client for the configured wallet."""
    settings = load_settings(ctx.obj.get("config") if ctx.obj else None)
    return StorageGuardClient.from_settings(settings)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML settings file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """FOC Storage Guard CLI."""
    load_dotenv()
    _configure_logging(verbose)
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("FOC Storage Guard - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show the loaded settings without touching the chain."""
    try:
        settings = load_settings(ctx.obj.get("config"))
    except (ValueError, OSError) as e:
        console.print(f"[red]Invalid settings:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="FOC Storage Guard Settings")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Network", settings.network)
    table.add_row("RPC URL", settings.rpc_url or "(network default)")
    table.add_row("Warm storage", settings.warm_storage_address or "[red]not set[/]")
    table.add_row("Payments", settings.payments_address or "[red]not set[/]")
    table.add_row("Storage view", settings.storage_view_address or "(not set)")
    table.add_row("PDP verifier", settings.pdp_verifier_address or "(not set)")
    table.add_row("Provider registry", settings.provider_registry_address or "(not set)")
    table.add_row("Signer", "[green]configured[/]" if settings.private_key else "[red]not set[/]")
    table.add_row("Storage needed", f"{settings.total_storage_needed_gib} GiB")
    table.add_row("Persistence period", f"{settings.persistence_period_days} days")
    table.add_row("Runout threshold", f"{settings.runout_notification_threshold_days} days")
    table.add_row("File store", settings.file_store or "(none)")
    console.print(table)

    try:
        settings.require_signer()
    except ValueError as e:
        console.print(f"[yellow]{e}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] FOC Storage Guard is configured")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(
    ctx: typer.Context,
    size: Optional[float] = typer.Option(None, "--size", "-s", help="Storage capacity to check for"),
    unit: str = typer.Option("GiB", "--unit", "-u", help="Unit of --size"),
    persistence_days: Optional[int] = typer.Option(None, "--persistence-days", "-p", help="Days to pay for"),
    threshold_days: Optional[int] = typer.Option(None, "--threshold-days", "-t", help="Minimum runway in days"),
    as_json: bool = typer.Option(False, "--json", help="Print the formatted result as JSON"),
):
    """Check whether the account can sustain the requested storage."""
    try:
        client = _build_client(ctx)
        capacity = size_to_bytes(str(size), unit) if size is not None else None
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.check_balance(capacity, persistence_days, threshold_days)
    if not response.succeeded:
        console.print(f"[red]Balance check failed ({response.error.value}):[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(response.formatted))
    else:
        _display_balance(response)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    ctx: typer.Context,
    size: float = typer.Argument(..., help="Size to store"),
    unit: str = typer.Option("GiB", "--unit", "-u", help="Unit of SIZE"),
    months: int = typer.Option(12, "--months", "-m", help="Months of storage"),
    cdn: bool = typer.Option(False, "--cdn", help="Include the CDN dataset top-up"),
):
    """Estimate the cost of storing a size for a number of months."""
    try:
        client = _build_client(ctx)
        result = client.estimate(size_to_bytes(str(size), unit), months, cdn)
    except StorageGuardError as e:
        console.print(f"[red]Estimate failed ({e.kind.value}):[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]Storage Cost Estimate[/bold]")
    console.print("-" * 40)
    console.print(f"Size: {result.size_formatted}")
    console.print(f"Duration: {result.duration_months} months")
    console.print(f"Monthly cost: {format_amount(result.monthly_cost)}")
    if result.applied_minimum:
        console.print(f"[dim]Minimum monthly price of {format_amount(result.minimum_price_per_month)} applied[/]")
    console.print(f"Storage cost: {format_amount(result.storage_cost)}")
    if result.cdn_setup_cost:
        console.print(
            f"CDN egress credit: {format_amount(result.cdn_setup_cost)} "
            f"(~{result.egress_credits_gib:.2f} GiB of downloads)"
        )
    console.print(f"[bold]Total:[/bold] {format_amount(result.total_cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def convert(
    value: str = typer.Argument(..., help="Size value"),
    from_unit: str = typer.Argument(..., help=f"Source unit: {', '.join(SIZE_UNITS)}"),
    to_unit: Optional[str] = typer.Option(None, "--to", help="Target unit; all units when omitted"),
):
    """Convert a storage size between units."""
    try:
        converted = convert_size(value, from_unit, to_unit)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    for unit_name, amount in converted.items():
        console.print(f"{_trim_decimal(amount)} {unit_name}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pay(
    ctx: typer.Context,
    amount: str = typer.Argument(..., help="USDFC to deposit, e.g. 1.5; 0 to only set allowances"),
):
    """Deposit USDFC and approve the storage service."""
    try:
        client = _build_client(ctx)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.process_payment(amount)
    if not response.succeeded:
        console.print(f"[red]{response.message}[/]")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {response.message}")
    if response.transaction_id:
        console.print(f"TX Hash: {response.transaction_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def upload(
    ctx: typer.Context,
    file_path: str = typer.Argument(..., help="File to upload"),
    dataset_id: Optional[str] = typer.Option(None, "--dataset-id", "-d", help="Existing dataset to add to"),
    cdn: bool = typer.Option(False, "--cdn", help="Serve the dataset through the CDN"),
    metadata: Optional[List[str]] = typer.Option(None, "--meta", help="key=value metadata (up to 4)"),
    persistence_days: Optional[int] = typer.Option(None, "--persistence-days", "-p", help="Days to pay for"),
    threshold_days: Optional[int] = typer.Option(None, "--threshold-days", "-t", help="Minimum runway in days"),
    auto_payment: bool = typer.Option(True, "--auto-payment/--no-auto-payment", help="Pay automatically if needed"),
):
    """Check the balance, pay if needed, then upload a file."""
    try:
        client = _build_client(ctx)
        request = UploadRequest(
            file_path=file_path,
            persistence_days=persistence_days or client.persistence_days,
            notification_threshold_days=threshold_days or client.notification_threshold_days,
            dataset_id=dataset_id,
            cdn_enabled=cdn,
            metadata=_parse_metadata(metadata or []),
            auto_payment=auto_payment,
        )
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    result = client.upload(request)
    for event in result.stage_log:
        console.print(f"[dim]{event}[/]")

    if not result.succeeded:
        stage = f" at {result.failed_stage}" if result.failed_stage else ""
        console.print(f"\n[red]Upload failed{stage} ({result.error.value}):[/] {result.message}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[green]✓[/] {result.message}")
    console.print(f"Piece CID: {result.piece_identifier}")
    if result.transaction_id:
        console.print(f"TX Hash: {result.transaction_id}")
    if result.retrieval_url:
        console.print(f"Retrieval URL: {result.retrieval_url}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pricing(
    ctx: typer.Context,
    cdn: bool = typer.Option(True, "--cdn/--no-cdn", help="Include the CDN dataset top-up in the example"),
):
    """Show how storage is billed, with 1 TiB for 12 months as an example."""
    try:
        client = _build_client(ctx)
        info = client.pricing_info(cdn)
    except StorageGuardError as e:
        console.print(f"[red]Pricing lookup failed ({e.kind.value}):[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Storage Pricing")
    table.add_column("Item")
    table.add_column("Value")
    table.add_row("Price per TiB per month", format_amount(info.price_per_tib_per_month))
    table.add_row("Minimum per month", format_amount(info.minimum_price_per_month))
    table.add_row("Minimum applies below", format_size(info.minimum_threshold_bytes))
    table.add_row("Epochs per day", str(info.epochs_per_day))
    table.add_row("Epochs per month", str(info.epochs_per_month))
    table.add_row("CDN egress", f"{info.cdn_egress_rate_per_tib} USDFC per TiB")
    example = info.example
    table.add_row(
        f"Example: {example.size_formatted} for {example.duration_months} months",
        format_amount(example.total_cost),
    )
    console.print(table)
    if example.cdn_setup_cost:
        console.print(
            f"[dim]Example includes {format_amount(example.cdn_setup_cost)} CDN credits "
            f"(~{example.egress_credits_gib:.2f} GiB of downloads)[/]"
        )
    console.print(f"[yellow]{info.insolvency_warning}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def datasets(
    ctx: typer.Context,
    cdn_only: bool = typer.Option(False, "--cdn-only", help="Only datasets served through the CDN"),
    as_json: bool = typer.Option(False, "--json", help="Print the datasets as JSON"),
):
    """List the wallet's datasets."""
    try:
        client = _build_client(ctx)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.list_datasets(cdn_only=cdn_only)
    if not response.succeeded:
        console.print(f"[red]Dataset lookup failed ({response.error.value}):[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps([_dataset_dict(dataset) for dataset in response.datasets]))
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Datasets ({response.count})")
    table.add_column("ID")
    table.add_column("Provider")
    table.add_column("CDN")
    table.add_column("Pieces")
    table.add_column("Status")
    for dataset in response.datasets:
        table.add_row(
            str(dataset.dataset_id),
            str(dataset.provider_id),
            "yes" if dataset.with_cdn else "no",
            str(len(dataset.pieces)),
            "live" if dataset.is_live else f"ends at epoch {dataset.pdp_end_epoch}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def dataset(
    ctx: typer.Context,
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
):
    """Show one dataset with its pieces."""
    try:
        client = _build_client(ctx)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.get_dataset(dataset_id)
    if not response.succeeded:
        console.print(f"[red]Dataset lookup failed ({response.error.value}):[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)

    found = response.dataset
    console.print(f"\n[bold]Dataset {found.dataset_id}[/bold]")
    console.print(f"Provider: {found.provider_id} (payee {found.payee})")
    console.print(f"CDN: {'yes' if found.with_cdn else 'no'}")
    for key, value in sorted(found.metadata.items()):
        console.print(f"[dim]{key}={value}[/]")

    table = Table(title=f"Pieces ({len(found.pieces)})")
    table.add_column("ID")
    table.add_column("Piece CID")
    table.add_column("Metadata")
    for piece in found.pieces:
        table.add_row(
            str(piece.piece_id),
            piece.piece_cid,
            ", ".join(f"{key}={value}" for key, value in sorted(piece.metadata.items())),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def providers(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include active providers the service has not approved"),
):
    """List active storage providers."""
    try:
        client = _build_client(ctx)
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.list_providers(only_approved=not show_all)
    if not response.succeeded:
        console.print(f"[red]Provider lookup failed ({response.error.value}):[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Storage Providers ({response.count})")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Service provider")
    table.add_column("Approved")
    for provider in response.providers:
        table.add_row(
            str(provider.provider_id),
            provider.name,
            provider.service_provider,
            "[green]yes[/]" if provider.is_approved else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("create-dataset")
def create_dataset(
    ctx: typer.Context,
    provider_id: str = typer.Argument(..., help="Provider that will hold the dataset"),
    cdn: bool = typer.Option(False, "--cdn", help="Serve through the CDN (deposits the 1 USDFC CDN fee)"),
    metadata: Optional[List[str]] = typer.Option(None, "--meta", help="key=value metadata (up to 10)"),
):
    """Create an empty dataset with a storage provider."""
    try:
        client = _build_client(ctx)
        parsed = _parse_metadata(metadata or [])
    except (ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    response = client.create_dataset(provider_id, with_cdn=cdn, metadata=parsed)
    for event in response.progress_log:
        console.print(f"[dim]{event}[/]")

    if not response.succeeded:
        console.print(f"\n[red]Dataset creation failed ({response.error.value}):[/] {response.message}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[green]✓[/] {response.message}")
    if response.tx_hash:
        console.print(f"TX Hash: {response.tx_hash}")
    if response.payment_transaction_id:
        console.print(f"CDN payment TX Hash: {response.payment_transaction_id}")
    sys.exit(EXIT_CODE_PASS)


def _parse_metadata(pairs: List[str]) -> dict:
    """Parse key=value pairs into a metadata dict."""
    metadata = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Metadata must be key=value, got {pair!r}")
        metadata[key] = value
    return metadata


def _dataset_dict(dataset) -> dict:
    return {
        "datasetId": dataset.dataset_id,
        "providerId": dataset.provider_id,
        "payer": dataset.payer,
        "payee": dataset.payee,
        "withCDN": dataset.with_cdn,
        "pdpEndEpoch": dataset.pdp_end_epoch,
        "metadata": dict(dataset.metadata),
        "pieces": [
            {"pieceId": piece.piece_id, "pieceCid": piece.piece_cid, "metadata": dict(piece.metadata)}
            for piece in dataset.pieces
        ],
    }


def _trim_decimal(value) -> str:
    text = format(value, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def _display_balance(response):
    """Display a balance check as a table."""
    formatted = response.formatted
    table = Table(title="Storage Account Balance")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("FIL balance", formatted["nativeBalance"])
    table.add_row("USDFC balance", formatted["stableBalance"])
    table.add_row("Available storage funds", formatted["availableFunds"])
    table.add_row("Current monthly rate", formatted["currentMonthlyRate"])
    table.add_row("Max monthly rate", formatted["maxMonthlyRate"])
    table.add_row("Runway at current rate", formatted["daysLeftAtBurnRate"])
    table.add_row("Runway at max rate", formatted["daysLeftAtMaxBurnRate"])
    table.add_row("Deposit needed", formatted["depositNeeded"])
    table.add_row("Available to free up", formatted["availableToFreeUp"])
    console.print(table)

    if formatted["isSufficient"]:
        console.print("[green]✓[/] Balance and allowances are sufficient")
    else:
        if not formatted["isRateSufficient"] or not formatted["isLockupSufficient"]:
            console.print("[yellow]Service allowances need approval[/]")
        console.print(f"[yellow]{response.message}[/]")


if __name__ == "__main__":
    app()
