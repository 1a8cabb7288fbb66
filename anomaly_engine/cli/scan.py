"""CLI command for scanning an invoice export offline."""

import asyncio
import json
from typing import Optional

import click
from tabulate import tabulate

from anomaly_engine.settings import settings
from anomaly_engine.schemas.anomaly import ScanResponse
from anomaly_engine.services.anomaly_engine import InvoiceAnomalyEngine, ScanResult
from anomaly_engine.services.invoice_repository import InMemoryInvoiceRepository
from anomaly_engine.observability.logging import get_logger


logger = get_logger(__name__)

OFFLINE_TENANT = "offline"


def _render_table(result: ScanResult) -> str:
    table_data = []
    for anomaly in result.anomalies:
        table_data.append([
            anomaly.id,
            anomaly.severity.value,
            anomaly.type.value,
            anomaly.invoice_number,
            anomaly.vendor_name,
            anomaly.amount,
            anomaly.date.isoformat(),
            anomaly.description
        ])

    headers = ["ID", "Severity", "Type", "Invoice", "Vendor", "Amount", "Date", "Description"]
    summary = result.summary
    lines = [
        tabulate(table_data, headers=headers, tablefmt="grid"),
        f"\n📊 {summary.total} anomalies in {result.invoices_scanned} invoices "
        f"(high: {summary.high}, medium: {summary.medium}, low: {summary.low})"
    ]
    return "\n".join(lines)


@click.command(name="anomaly-scan")
@click.argument("export_file", type=click.File("r"))
@click.option('--format', 'output_format', type=click.Choice(["table", "json"]),
              default="table", show_default=True, help='Output format')
@click.option('--as-of', type=click.DateTime(formats=["%Y-%m-%d"]),
              help='Scan date (YYYY-MM-DD); defaults to today')
@click.option('--lookback-days', type=click.IntRange(min=0),
              help='Override the look-back window in days')
@click.option('--tenant', default=OFFLINE_TENANT, show_default=True,
              help='Tenant id to select when rows carry one')
def scan(
    export_file,
    output_format: str,
    as_of,
    lookback_days: Optional[int],
    tenant: str
):
    """Scan a JSON invoice export for anomalies.

    EXPORT_FILE holds {"receivables": [...], "payables": [...], "vendors": {id: name}}.
    """
    try:
        export = json.load(export_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON export: {e}")

    if not isinstance(export, dict):
        raise click.ClickException("Export must be a JSON object")

    config = settings
    if lookback_days is not None:
        config = settings.model_copy(update={"ANOMALY_LOOKBACK_DAYS": lookback_days})

    repository = InMemoryInvoiceRepository(
        receivables=export.get("receivables"),
        payables=export.get("payables"),
        vendors=export.get("vendors"),
    )
    # No narrative or audit trail offline
    engine = InvoiceAnomalyEngine(repository, config=config)

    try:
        result = asyncio.run(
            engine.scan(tenant, user_id=None, as_of=as_of.date() if as_of else None)
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Offline scan rejected export", error_type=type(e).__name__)
        raise click.ClickException(f"Invalid invoice export: {e!r}")

    if output_format == "json":
        response = ScanResponse.from_result(result)
        click.echo(json.dumps(response.model_dump(mode="json", exclude_none=True), indent=2))
        return

    if not result.anomalies:
        click.echo(f"✅ No anomalies in {result.invoices_scanned} invoices")
        return

    click.echo(_render_table(result))


if __name__ == '__main__':
    scan()
