"""SQLAlchemy models read and written by the invoice anomaly engine."""

import datetime as dt
from typing import Dict, Any, Optional

from sqlalchemy import (
    String, JSON, Numeric, Date, DateTime, Float, Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from anomaly_engine.storage.db import Base


class Partner(Base):
    """Customer or supplier counter-party."""

    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class TenantMember(Base):
    """Membership of a user in a tenant."""

    __tablename__ = "tenant_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_member"),
    )


class Invoice(Base):
    """Receivable (customer) invoice."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    total: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=True)
    invoice_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    __table_args__ = (
        Index("ix_invoices_tenant_date", "tenant_id", "invoice_date"),
    )


class SupplierInvoice(Base):
    """Payable (supplier) invoice."""

    __tablename__ = "supplier_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    total_amount: Mapped[Optional[float]] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=True)
    invoice_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    __table_args__ = (
        Index("ix_supplier_invoices_tenant_date", "tenant_id", "invoice_date"),
    )


class AIActionLog(Base):
    """Audit trail of AI-assisted actions for compliance traceability."""

    __tablename__ = "ai_action_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    module: Mapped[str] = mapped_column(String(32), nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    input_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    ai_output: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    model_version: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: dt.datetime.now(dt.timezone.utc),
        nullable=False
    )
