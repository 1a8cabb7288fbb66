# ==== INVOICE ANOMALY ROUTES ==== #

"""
Invoice anomaly scan routes.

Authentication, tenant id and tenant membership are all verified before the
invoice corpus is read. Anything that fails after that point is reported as
a 500 carrying the underlying message.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from anomaly_engine.schemas.anomaly import (
    ScanRequest,
    ScanResponse,
    ReviewActionRequest,
    ReviewActionResponse,
)
from anomaly_engine.settings import Settings, get_settings
from anomaly_engine.security.auth import require_user
from anomaly_engine.services.anomaly_engine import InvoiceAnomalyEngine
from anomaly_engine.services.audit_log import AuditLogger, get_audit_logger
from anomaly_engine.services.invoice_repository import InvoiceRepository, get_invoice_repository
from anomaly_engine.services.narrative import NarrativeSynthesizer, get_narrative_synthesizer
from anomaly_engine.observability.logging import get_logger
from anomaly_engine.observability.tracing import get_tracer


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)


# ==== DEPENDENCIES ==== #


def get_anomaly_engine(
    repository: InvoiceRepository = Depends(get_invoice_repository),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    narrative: Optional[NarrativeSynthesizer] = Depends(get_narrative_synthesizer),
    config: Settings = Depends(get_settings),
) -> InvoiceAnomalyEngine:
    """FastAPI dependency wiring the engine to its collaborators."""
    return InvoiceAnomalyEngine(
        repository=repository,
        audit_logger=audit_logger,
        narrative=narrative,
        config=config,
    )


async def _authorize_tenant(
    tenant_id: Optional[str],
    user_id: str,
    repository: InvoiceRepository
) -> str:
    """
    Validate the tenant id and the caller's membership.

    Raises:
        HTTPException: 400 for a missing tenant id, 403 for a non-member
    """
    if not tenant_id or not tenant_id.strip():
        raise HTTPException(status_code=400, detail="tenant_id required")

    if not await repository.is_tenant_member(tenant_id, user_id):
        raise HTTPException(status_code=403, detail="Forbidden")

    return tenant_id


# ==== SCAN ENDPOINTS ==== #


@router.post(
    "/invoice-anomaly",
    response_model=ScanResponse,
    response_model_exclude_none=True
)
async def scan_invoice_anomalies(
    body: Optional[ScanRequest] = Body(None),
    user: Dict[str, Any] = Depends(require_user),
    engine: InvoiceAnomalyEngine = Depends(get_anomaly_engine),
) -> ScanResponse:
    """
    Scan a tenant's recent invoices for anomalies.

    Args:
        body (Optional[ScanRequest]): Request with the tenant id; a missing body is a missing tenant
        user (Dict[str, Any]): Authenticated caller's token claims
        engine (InvoiceAnomalyEngine): Engine dependency

    Returns:
        ScanResponse: Ranked anomalies, narrative and severity summary

    Raises:
        HTTPException: 400/401/403 for rejected requests, 500 if the scan fails
    """
    user_id = user["sub"]
    tenant_id = body.tenant_id if body else None

    with tracer.start_as_current_span("scan_invoice_anomalies_endpoint") as span:
        try:
            tenant_id = await _authorize_tenant(tenant_id, user_id, engine.repository)
            span.set_attribute("tenant", tenant_id)

            result = await engine.scan(tenant_id, user_id)
            return ScanResponse.from_result(result)

        except HTTPException:
            raise
        except Exception as e:
            logger.exception(
                "Invoice anomaly scan failed",
                tenant_id=tenant_id,
                error_type=type(e).__name__,
            )
            raise HTTPException(status_code=500, detail=str(e) or "Unknown error")


@router.post("/invoice-anomaly/actions", response_model=ReviewActionResponse)
async def record_anomaly_action(
    body: Optional[ReviewActionRequest] = Body(None),
    user: Dict[str, Any] = Depends(require_user),
    engine: InvoiceAnomalyEngine = Depends(get_anomaly_engine),
) -> ReviewActionResponse:
    """
    Record a reviewer's decision (dismiss or investigate) on one anomaly.

    Args:
        body (Optional[ReviewActionRequest]): Tenant, anomaly id and action
        user (Dict[str, Any]): Authenticated caller's token claims
        engine (InvoiceAnomalyEngine): Engine dependency

    Returns:
        ReviewActionResponse: Acknowledgement of the recorded action
    """
    user_id = user["sub"]
    tenant_id = body.tenant_id if body else None

    try:
        tenant_id = await _authorize_tenant(tenant_id, user_id, engine.repository)
        await engine.record_review_action(tenant_id, user_id, body.anomaly_id, body.action)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(
            "Anomaly review action failed",
            tenant_id=tenant_id,
            anomaly_id=body.anomaly_id,
        )
        raise HTTPException(status_code=500, detail=str(e) or "Unknown error")

    return ReviewActionResponse(
        tenant_id=tenant_id,
        anomaly_id=body.anomaly_id,
        action=body.action,
    )
