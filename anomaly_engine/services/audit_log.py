# ==== AI ACTION AUDIT LOG ==== #

"""
Compliance audit trail for anomaly scans and reviewer actions.

Every scan leaves one ``ai_action_log`` row describing how many anomalies
were found, of which types, and the mean detector confidence. Reviewer
decisions on individual anomalies (dismiss, investigate) are written to the
same table.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from anomaly_engine.storage.db import get_db_session
from anomaly_engine.storage.models import AIActionLog


ACCOUNTING_MODULE = "accounting"
SCAN_ACTION = "invoice_anomaly_scan"


@dataclass(frozen=True)
class AuditRecord:
    """One audit entry, independent of how it is stored."""

    tenant_id: str
    action_type: str
    user_id: Optional[str]
    module: str = ACCOUNTING_MODULE
    ai_output: Optional[Dict[str, Any]] = None
    input_data: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = None
    model_version: Optional[str] = None


class AuditLogger(ABC):
    """Destination for audit records."""

    @abstractmethod
    async def record(self, entry: AuditRecord) -> None:
        """Persist one audit record; raise on failure."""


class DatabaseAuditLogger(AuditLogger):
    """Audit logger writing to the ``ai_action_log`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(self, entry: AuditRecord) -> None:
        self.db.add(AIActionLog(**asdict(entry)))
        try:
            await self.db.commit()
        except (Exception, asyncio.CancelledError):
            # A timed-out write must not stay pending in the request session
            await self.db.rollback()
            raise


@dataclass
class InMemoryAuditLogger(AuditLogger):
    """Audit logger collecting records in a list (offline runs and tests)."""

    records: list = field(default_factory=list)

    async def record(self, entry: AuditRecord) -> None:
        self.records.append(entry)


def get_audit_logger(db: AsyncSession = Depends(get_db_session)) -> AuditLogger:
    """FastAPI dependency for the database-backed audit logger."""
    return DatabaseAuditLogger(db)
