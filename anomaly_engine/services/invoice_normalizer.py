# ==== INVOICE NORMALIZER ==== #

"""
Invoice normalization for anomaly scans.

Receivable and payable invoices come from different tables with different
column names for the amount and the counter-party. This module merges both
into one uniform, immutable ``InvoiceRecord`` shape and attaches vendor
display names, coercing missing values to safe defaults instead of raising.
"""

import datetime as dt
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Sequence


UNKNOWN_VENDOR = "Unknown"
MISSING_INVOICE_NUMBER = "N/A"


class InvoiceSource(str, Enum):
    """Ledger side an invoice came from."""
    RECEIVABLE = "receivable"
    PAYABLE = "payable"


@dataclass(frozen=True)
class InvoiceRecord:
    """Uniform, read-only view of one invoice in a scan snapshot."""

    id: str
    source: InvoiceSource
    vendor_id: Optional[str]
    amount: float
    invoice_date: dt.date
    invoice_number: str = MISSING_INVOICE_NUMBER
    vendor_name: str = UNKNOWN_VENDOR


# ==== FIELD COERCION ==== #


def _coerce_amount(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    amount = float(value)
    # Numeric columns can hold NaN and infinity; treat them like a missing amount
    return amount if math.isfinite(amount) else 0.0


def coerce_date(value: Any) -> dt.date:
    """Accept a date, a datetime or an ISO-8601 string."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    # ISO strings, optionally with a time component
    return dt.date.fromisoformat(str(value)[:10])


def _coerce_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _to_record(
    row: Mapping[str, Any],
    source: InvoiceSource,
    vendor_field: str,
    amount_field: str
) -> InvoiceRecord:
    return InvoiceRecord(
        id=str(row["id"]),
        source=source,
        vendor_id=_coerce_text(row.get(vendor_field)),
        amount=_coerce_amount(row.get(amount_field)),
        invoice_date=coerce_date(row["invoice_date"]),
        invoice_number=_coerce_text(row.get("invoice_number")) or MISSING_INVOICE_NUMBER,
    )


# ==== PUBLIC API ==== #


def normalize_invoices(
    receivables: Iterable[Mapping[str, Any]],
    payables: Iterable[Mapping[str, Any]]
) -> List[InvoiceRecord]:
    """
    Merge receivable and payable rows into one record list.

    Receivables keep their amount in ``total`` and counter-party in
    ``partner_id``; payables use ``total_amount`` and ``supplier_id``.
    Receivables come first, each side in the order given.

    Args:
        receivables: Customer invoice rows
        payables: Supplier invoice rows

    Returns:
        List[InvoiceRecord]: Normalized records tagged with their source
    """
    records = [
        _to_record(row, InvoiceSource.RECEIVABLE, "partner_id", "total")
        for row in receivables
    ]
    records.extend(
        _to_record(row, InvoiceSource.PAYABLE, "supplier_id", "total_amount")
        for row in payables
    )
    return records


def distinct_vendor_ids(records: Sequence[InvoiceRecord]) -> List[str]:
    """Non-null vendor ids in first-seen order."""
    seen = {}
    for record in records:
        if record.vendor_id is not None:
            seen.setdefault(record.vendor_id, None)
    return list(seen)


def resolve_vendor_names(
    records: Sequence[InvoiceRecord],
    vendor_names: Mapping[str, str]
) -> List[InvoiceRecord]:
    """
    Attach display names to records.

    Records whose vendor is null or missing from ``vendor_names`` get the
    ``"Unknown"`` sentinel.
    """
    resolved = []
    for record in records:
        name = None
        if record.vendor_id is not None:
            name = vendor_names.get(record.vendor_id)
        resolved.append(replace(record, vendor_name=name or UNKNOWN_VENDOR))
    return resolved
