"""Pydantic schemas for the invoice anomaly API."""

import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from anomaly_engine.services.anomaly_engine import ReviewAction, ScanResult
from anomaly_engine.services.detectors import AnomalyType, Severity


class TenantScopedRequest(BaseModel):
    """Body carrying the tenant a request acts on."""

    tenant_id: Optional[str] = Field(None, description="Tenant the request acts on")

    @field_validator("tenant_id", mode="before")
    @classmethod
    def tenant_id_as_text(cls, value):
        # Non-text ids are rejected as missing (400) by the route
        return value if isinstance(value, str) else None


class ScanRequest(TenantScopedRequest):
    """Request body for an anomaly scan."""


class AnomalyResponse(BaseModel):
    """One detected invoice anomaly."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: AnomalyType
    severity: Severity
    invoice_id: str
    invoice_number: str
    vendor_name: str
    amount: float
    date: dt.date
    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    related_invoice_id: Optional[str] = None


class ScanSummaryResponse(BaseModel):
    """Anomaly counts per severity."""

    model_config = ConfigDict(from_attributes=True)

    total: int
    high: int
    medium: int
    low: int


class ScanResponse(BaseModel):
    """Response schema for an anomaly scan."""

    anomalies: List[AnomalyResponse]
    narrative: str = ""
    summary: ScanSummaryResponse

    @classmethod
    def from_result(cls, result: ScanResult) -> "ScanResponse":
        return cls(
            anomalies=[AnomalyResponse.model_validate(a) for a in result.anomalies],
            narrative=result.narrative,
            summary=ScanSummaryResponse.model_validate(result.summary),
        )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "anomalies": [
                    {
                        "id": "anom-0",
                        "type": "duplicate",
                        "severity": "high",
                        "invoice_id": "inv-1",
                        "invoice_number": "INV-2024-001",
                        "vendor_name": "Acme d.o.o.",
                        "amount": 50000.0,
                        "date": "2024-01-05",
                        "description": "Duplicate amount 50000 with invoice INV-2024-002 (5 days apart)",
                        "confidence": 0.85,
                        "related_invoice_id": "inv-2"
                    }
                ],
                "narrative": "",
                "summary": {"total": 1, "high": 1, "medium": 0, "low": 0}
            }
        }
    )


class ReviewActionRequest(TenantScopedRequest):
    """Reviewer decision on one anomaly."""

    anomaly_id: str = Field(..., min_length=1)
    action: ReviewAction


class ReviewActionResponse(BaseModel):
    """Acknowledgement of a recorded review action."""

    status: str = "recorded"
    tenant_id: str
    anomaly_id: str
    action: ReviewAction
