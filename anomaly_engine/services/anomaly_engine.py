# ==== INVOICE ANOMALY ENGINE ==== #

"""
Invoice anomaly scan orchestration.

A scan fetches one snapshot of a tenant's recent receivable and payable
invoices, runs every detector over it, and turns the detector outputs into a
deterministic report:

    normalize → resolve vendors → detect (fan-out) → label → dedupe → rank
    → narrative (optional) → audit (best-effort)

Ids are assigned after all detectors finish, in detector order and then
discovery order, so running detectors concurrently never changes the output.
"""

import asyncio
import datetime as dt
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from anomaly_engine.settings import Settings, settings as default_settings
from anomaly_engine.services.invoice_normalizer import (
    InvoiceRecord,
    distinct_vendor_ids,
    normalize_invoices,
    resolve_vendor_names,
)
from anomaly_engine.services.detectors import (
    SEVERITY_RANK,
    Anomaly,
    DetectionThresholds,
    Detector,
    Severity,
    default_detectors,
)
from anomaly_engine.services.invoice_repository import InvoiceRepository
from anomaly_engine.services.narrative import NarrativeSynthesizer
from anomaly_engine.services.audit_log import AuditLogger, AuditRecord, SCAN_ACTION
from anomaly_engine.observability.logging import get_logger, log_business_event
from anomaly_engine.observability.tracing import get_tracer
from anomaly_engine.observability.metrics import (
    anomaly_scans_total,
    anomaly_scan_duration_seconds,
    anomalies_detected_total,
    scanned_invoices_total,
    audit_failures_total,
)


# ==== MODULE INITIALIZATION ==== #


logger = get_logger(__name__)
tracer = get_tracer(__name__)

ANOMALY_ID_PREFIX = "anom"
CLEAN_SCAN_CONFIDENCE = 1.0


class ReviewAction(str, Enum):
    """Reviewer decisions recorded against a single anomaly."""
    DISMISSED = "dismissed"
    INVESTIGATE = "investigate"


@dataclass(frozen=True)
class ScanSummary:
    """Anomaly counts per severity."""

    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


@dataclass
class ScanResult:
    """Everything a scan returns to its caller."""

    anomalies: List[Anomaly]
    narrative: str
    summary: ScanSummary
    invoices_scanned: int = 0
    audit: Optional[AuditRecord] = field(default=None, repr=False)


# ==== PIPELINE STAGES ==== #


def run_detectors(
    records: Sequence[InvoiceRecord],
    detectors: Sequence[Detector]
) -> List[List[Anomaly]]:
    """Run detectors one after another; one output list per detector."""
    snapshot = tuple(records)
    return [detector.detect(snapshot) for detector in detectors]


async def run_detectors_concurrently(
    records: Sequence[InvoiceRecord],
    detectors: Sequence[Detector]
) -> List[List[Anomaly]]:
    """
    Run each detector in a worker thread.

    ``asyncio.gather`` returns results in argument order, so the output is
    identical to ``run_detectors`` regardless of completion order.
    """
    snapshot = tuple(records)
    results = await asyncio.gather(
        *(asyncio.to_thread(detector.detect, snapshot) for detector in detectors)
    )
    return list(results)


def label_anomalies(batches: Sequence[Sequence[Anomaly]]) -> List[Anomaly]:
    """Flatten per-detector outputs and assign ``anom-N`` ids in one pass."""
    labelled = []
    for batch in batches:
        for anomaly in batch:
            labelled.append(replace(anomaly, id=f"{ANOMALY_ID_PREFIX}-{len(labelled)}"))
    return labelled


def deduplicate(anomalies: Sequence[Anomaly]) -> List[Anomaly]:
    """Keep the first anomaly for each ``(invoice_id, type)`` pair."""
    seen = set()
    unique = []
    for anomaly in anomalies:
        key = (anomaly.invoice_id, anomaly.type)
        if key in seen:
            continue
        seen.add(key)
        unique.append(anomaly)
    return unique


def rank_by_severity(anomalies: Sequence[Anomaly]) -> List[Anomaly]:
    """Stable sort: high, then medium, then low; ties keep their order."""
    return sorted(anomalies, key=lambda anomaly: SEVERITY_RANK[anomaly.severity])


def finalize(batches: Sequence[Sequence[Anomaly]]) -> List[Anomaly]:
    """Label, deduplicate and rank raw detector outputs."""
    return rank_by_severity(deduplicate(label_anomalies(batches)))


def analyze_records(
    records: Sequence[InvoiceRecord],
    detectors: Optional[Sequence[Detector]] = None
) -> List[Anomaly]:
    """Synchronously run the full detection pipeline over normalized records."""
    return finalize(run_detectors(records, detectors or default_detectors()))


def summarize(anomalies: Sequence[Anomaly]) -> ScanSummary:
    """Count anomalies per severity."""
    counts = {severity: 0 for severity in Severity}
    for anomaly in anomalies:
        counts[anomaly.severity] += 1
    return ScanSummary(
        total=len(anomalies),
        high=counts[Severity.HIGH],
        medium=counts[Severity.MEDIUM],
        low=counts[Severity.LOW],
    )


def aggregate_confidence(anomalies: Sequence[Anomaly]) -> float:
    """Mean detector confidence, or 1.0 for a clean scan."""
    if not anomalies:
        return CLEAN_SCAN_CONFIDENCE
    return sum(anomaly.confidence for anomaly in anomalies) / len(anomalies)


def distinct_types(anomalies: Sequence[Anomaly]) -> List[str]:
    """Anomaly types in order of first appearance."""
    return list(dict.fromkeys(anomaly.type.value for anomaly in anomalies))


def narrative_findings(anomalies: Sequence[Anomaly], limit: int) -> List[Dict[str, Any]]:
    """Reduce the top ``limit`` anomalies to the fields the narrative needs."""
    return [
        {
            "type": anomaly.type.value,
            "severity": anomaly.severity.value,
            "vendor_name": anomaly.vendor_name,
            "amount": anomaly.amount,
            "description": anomaly.description,
        }
        for anomaly in anomalies[:limit]
    ]


# ==== ENGINE ==== #


class InvoiceAnomalyEngine:
    """
    Runs invoice anomaly scans for a tenant.

    Collaborators are injected so the engine can run against a database in
    production and against in-memory fakes in tests and offline tools.

    Args:
        repository: Source of invoices, vendor names and membership
        audit_logger: Optional destination for the scan audit record
        narrative: Optional narrative synthesizer
        detectors: Detector set; defaults to the configured built-ins
        config: Settings providing window sizes, limits and thresholds
    """

    def __init__(
        self,
        repository: InvoiceRepository,
        audit_logger: Optional[AuditLogger] = None,
        narrative: Optional[NarrativeSynthesizer] = None,
        detectors: Optional[Sequence[Detector]] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository
        self.audit_logger = audit_logger
        self.narrative = narrative
        self.config = config or default_settings
        if detectors is None:
            detectors = default_detectors(DetectionThresholds.from_settings(self.config))
        self.detectors = tuple(detectors)

    async def scan(
        self,
        tenant_id: str,
        user_id: Optional[str],
        as_of: Optional[dt.date] = None
    ) -> ScanResult:
        """
        Run one anomaly scan over the tenant's recent invoices.

        Only the corpus reads can fail the scan; narrative and audit
        failures are logged and absorbed.

        Args:
            tenant_id: Tenant whose invoices are scanned
            user_id: Acting user, recorded in the audit log
            as_of: Scan date; the look-back window ends here (default today)

        Returns:
            ScanResult: Ranked anomalies, narrative and severity summary
        """
        with tracer.start_as_current_span("invoice_anomaly_scan") as span:
            span.set_attribute("tenant", tenant_id)
            start_time = time.perf_counter()

            try:
                records = await self._load_snapshot(tenant_id, as_of or dt.date.today())
                anomalies = await self.detect(records)
            except Exception:
                anomaly_scans_total.labels(outcome="error").inc()
                raise

            narrative = await self._synthesize_narrative(tenant_id, anomalies)
            audit = await self._write_audit(tenant_id, user_id, anomalies)
            summary = summarize(anomalies)

            for anomaly in anomalies:
                anomalies_detected_total.labels(
                    type=anomaly.type.value,
                    severity=anomaly.severity.value
                ).inc()
            anomaly_scans_total.labels(outcome="success").inc()
            duration = time.perf_counter() - start_time
            anomaly_scan_duration_seconds.observe(duration)

            span.set_attribute("invoices_scanned", len(records))
            span.set_attribute("anomalies", summary.total)
            logger.info(
                "Invoice anomaly scan completed",
                tenant_id=tenant_id,
                invoices_scanned=len(records),
                anomalies=summary.total,
                high=summary.high,
                duration_seconds=round(duration, 3),
            )

            return ScanResult(
                anomalies=anomalies,
                narrative=narrative,
                summary=summary,
                invoices_scanned=len(records),
                audit=audit,
            )

    async def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        """Run the detector set and return labelled, deduplicated, ranked anomalies."""
        with tracer.start_as_current_span("run_detectors") as span:
            span.set_attribute("detectors", len(self.detectors))
            if self.config.ANOMALY_PARALLEL_DETECTORS:
                batches = await run_detectors_concurrently(records, self.detectors)
            else:
                batches = run_detectors(records, self.detectors)
            return finalize(batches)

    async def record_review_action(
        self,
        tenant_id: str,
        user_id: str,
        anomaly_id: str,
        action: ReviewAction
    ) -> AuditRecord:
        """
        Record a reviewer's decision on one anomaly.

        Raises:
            RuntimeError: If no audit logger is configured
        """
        if self.audit_logger is None:
            raise RuntimeError("Audit logger not configured")

        entry = AuditRecord(
            tenant_id=tenant_id,
            action_type=f"anomaly_{action.value}",
            user_id=user_id,
            input_data={"anomaly_id": anomaly_id},
        )
        await self.audit_logger.record(entry)
        log_business_event(
            "anomaly_review_action",
            tenant_id,
            user_id=user_id,
            anomaly_id=anomaly_id,
            action=action.value,
        )
        return entry

    # ==== INTERNAL HELPER METHODS ==== #

    async def _load_snapshot(self, tenant_id: str, as_of: dt.date) -> List[InvoiceRecord]:
        """Fetch and normalize the tenant's invoices inside the look-back window."""
        since = as_of - dt.timedelta(days=self.config.ANOMALY_LOOKBACK_DAYS)
        limit = self.config.ANOMALY_MAX_INVOICES_PER_SOURCE

        # One session per request; reads are sequential
        receivables = await self.repository.fetch_receivables(tenant_id, since, limit)
        payables = await self.repository.fetch_payables(tenant_id, since, limit)

        records = normalize_invoices(receivables, payables)
        scanned_invoices_total.labels(source="receivable").inc(len(receivables))
        scanned_invoices_total.labels(source="payable").inc(len(payables))

        vendor_ids = distinct_vendor_ids(records)[:self.config.ANOMALY_MAX_VENDOR_LOOKUP]
        vendor_names = await self.repository.fetch_vendor_names(vendor_ids) if vendor_ids else {}
        return resolve_vendor_names(records, vendor_names)

    async def _synthesize_narrative(self, tenant_id: str, anomalies: List[Anomaly]) -> str:
        if not anomalies or self.narrative is None:
            return ""

        findings = narrative_findings(anomalies, self.config.ANOMALY_NARRATIVE_TOP_N)
        try:
            narrative = await asyncio.wait_for(
                self.narrative.synthesize(findings),
                timeout=self.config.AI_TIMEOUT_SECONDS
            )
        except Exception as e:
            logger.warning(
                "Anomaly narrative unavailable",
                tenant_id=tenant_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ""
        return narrative or ""

    async def _write_audit(
        self,
        tenant_id: str,
        user_id: Optional[str],
        anomalies: List[Anomaly]
    ) -> AuditRecord:
        entry = AuditRecord(
            tenant_id=tenant_id,
            action_type=SCAN_ACTION,
            user_id=user_id,
            ai_output={
                "anomaly_count": len(anomalies),
                "types": distinct_types(anomalies),
            },
            confidence_score=aggregate_confidence(anomalies),
            model_version=self.narrative.model_version if self.narrative else None,
        )
        if self.audit_logger is None:
            return entry

        try:
            await asyncio.wait_for(
                self.audit_logger.record(entry),
                timeout=self.config.AUDIT_TIMEOUT_SECONDS
            )
        except Exception as e:
            audit_failures_total.labels(action_type=SCAN_ACTION).inc()
            logger.warning(
                "Anomaly scan audit write failed",
                tenant_id=tenant_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        return entry
