# ==== INVOICE REPOSITORY ==== #

"""
Tenant-scoped reads of the invoice corpus.

The repository is the only part of a scan that touches the database: two
bulk invoice reads, one bulk vendor-name lookup and the membership check
that guards them.
"""

import datetime as dt
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anomaly_engine.services.invoice_normalizer import coerce_date
from anomaly_engine.storage.db import get_db_session
from anomaly_engine.storage.models import Invoice, SupplierInvoice, Partner, TenantMember
from anomaly_engine.observability.tracing import get_tracer


tracer = get_tracer(__name__)


class InvoiceRepository(ABC):
    """Source of invoice rows, vendor names and tenant membership."""

    @abstractmethod
    async def is_tenant_member(self, tenant_id: str, user_id: str) -> bool:
        """Whether ``user_id`` belongs to ``tenant_id``."""

    @abstractmethod
    async def fetch_receivables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        """Customer invoice rows dated on or after ``since``, newest first."""

    @abstractmethod
    async def fetch_payables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        """Supplier invoice rows dated on or after ``since``, newest first."""

    @abstractmethod
    async def fetch_vendor_names(self, vendor_ids: Sequence[str]) -> Dict[str, str]:
        """Display names for the given partner ids."""


class SQLInvoiceRepository(InvoiceRepository):
    """Invoice repository over an async SQLAlchemy session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_tenant_member(self, tenant_id: str, user_id: str) -> bool:
        query = select(TenantMember.id).where(
            TenantMember.tenant_id == tenant_id,
            TenantMember.user_id == user_id
        ).limit(1)
        result = await self.db.execute(query)
        return result.scalar_one_or_none() is not None

    async def fetch_receivables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        with tracer.start_as_current_span("fetch_receivables") as span:
            span.set_attribute("tenant", tenant_id)
            query = (
                select(
                    Invoice.id,
                    Invoice.invoice_number,
                    Invoice.partner_id,
                    Invoice.total,
                    Invoice.invoice_date,
                    Invoice.status,
                    Invoice.currency
                )
                .where(Invoice.tenant_id == tenant_id, Invoice.invoice_date >= since)
                .order_by(Invoice.invoice_date.desc())
                .limit(limit)
            )
            result = await self.db.execute(query)
            rows = [dict(row) for row in result.mappings().all()]
            span.set_attribute("rows", len(rows))
            return rows

    async def fetch_payables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        with tracer.start_as_current_span("fetch_payables") as span:
            span.set_attribute("tenant", tenant_id)
            query = (
                select(
                    SupplierInvoice.id,
                    SupplierInvoice.invoice_number,
                    SupplierInvoice.supplier_id,
                    SupplierInvoice.total_amount,
                    SupplierInvoice.invoice_date,
                    SupplierInvoice.status,
                    SupplierInvoice.currency
                )
                .where(
                    SupplierInvoice.tenant_id == tenant_id,
                    SupplierInvoice.invoice_date >= since
                )
                .order_by(SupplierInvoice.invoice_date.desc())
                .limit(limit)
            )
            result = await self.db.execute(query)
            rows = [dict(row) for row in result.mappings().all()]
            span.set_attribute("rows", len(rows))
            return rows

    async def fetch_vendor_names(self, vendor_ids: Sequence[str]) -> Dict[str, str]:
        if not vendor_ids:
            return {}
        query = select(Partner.id, Partner.name).where(Partner.id.in_(list(vendor_ids)))
        result = await self.db.execute(query)
        return {row.id: row.name for row in result.all()}


def _in_window(
    rows: Sequence[Mapping[str, Any]],
    tenant_id: str,
    since: dt.date,
    limit: int
) -> List[Mapping[str, Any]]:
    # Rows without a tenant_id belong to whichever tenant is asked for
    selected = [
        row for row in rows
        if row.get("tenant_id", tenant_id) == tenant_id
        and coerce_date(row["invoice_date"]) >= since
    ]
    selected.sort(key=lambda row: coerce_date(row["invoice_date"]), reverse=True)
    return selected[:limit]


class InMemoryInvoiceRepository(InvoiceRepository):
    """
    Invoice repository over plain row dicts.

    Applies the same window, ordering and limit as the SQL repository, so
    exported data scans identically offline.

    Args:
        receivables: Customer invoice rows (``partner_id``, ``total``)
        payables: Supplier invoice rows (``supplier_id``, ``total_amount``)
        vendors: Partner id to display name
        members: ``(tenant_id, user_id)`` pairs allowed to scan
    """

    def __init__(
        self,
        receivables: Optional[Iterable[Mapping[str, Any]]] = None,
        payables: Optional[Iterable[Mapping[str, Any]]] = None,
        vendors: Optional[Mapping[str, str]] = None,
        members: Optional[Iterable[Tuple[str, str]]] = None
    ):
        self.receivables = list(receivables or [])
        self.payables = list(payables or [])
        self.vendors = dict(vendors or {})
        self.members = set(members or ())
        self.vendor_lookups: List[List[str]] = []

    async def is_tenant_member(self, tenant_id: str, user_id: str) -> bool:
        return (tenant_id, user_id) in self.members

    async def fetch_receivables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        return _in_window(self.receivables, tenant_id, since, limit)

    async def fetch_payables(
        self, tenant_id: str, since: dt.date, limit: int
    ) -> List[Mapping[str, Any]]:
        return _in_window(self.payables, tenant_id, since, limit)

    async def fetch_vendor_names(self, vendor_ids: Sequence[str]) -> Dict[str, str]:
        self.vendor_lookups.append(list(vendor_ids))
        return {
            vendor_id: self.vendors[vendor_id]
            for vendor_id in vendor_ids
            if vendor_id in self.vendors
        }


def get_invoice_repository(db: AsyncSession = Depends(get_db_session)) -> InvoiceRepository:
    """FastAPI dependency for the SQL invoice repository."""
    return SQLInvoiceRepository(db)
