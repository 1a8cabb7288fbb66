"""Unit tests for the invoice anomaly scan engine."""

import asyncio
import datetime as dt
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest
from freezegun import freeze_time
from prometheus_client import REGISTRY

from anomaly_engine.settings import settings
from anomaly_engine.services.anomaly_engine import (
    InvoiceAnomalyEngine,
    ReviewAction,
    aggregate_confidence,
    deduplicate,
    distinct_types,
    label_anomalies,
    narrative_findings,
    rank_by_severity,
    summarize,
)
from anomaly_engine.services.audit_log import DatabaseAuditLogger, InMemoryAuditLogger, SCAN_ACTION
from anomaly_engine.services.detectors import Anomaly, AnomalyType, Severity
from anomaly_engine.services.invoice_repository import InMemoryInvoiceRepository
from anomaly_engine.services.narrative import NarrativeSynthesizer


TENANT = "tenant-1"
USER = "user-1"
AS_OF = dt.date(2024, 1, 31)


class RecordingNarrative(NarrativeSynthesizer):
    """Narrative synthesizer returning canned text and keeping its inputs."""

    model_version = "mock-model"

    def __init__(self, text: str = "Two invoices look duplicated."):
        self.text = text
        self.calls: List[List[Dict[str, Any]]] = []

    async def synthesize(self, findings: List[Dict[str, Any]]) -> str:
        self.calls.append(findings)
        return self.text


class SlowNarrative(NarrativeSynthesizer):
    """Narrative synthesizer that never answers in time."""

    async def synthesize(self, findings: List[Dict[str, Any]]) -> str:
        await asyncio.sleep(5)
        return "too late"


def make_anomaly(invoice_id: str, anomaly_type: AnomalyType, severity: Severity) -> Anomaly:
    return Anomaly(
        type=anomaly_type,
        severity=severity,
        invoice_id=invoice_id,
        invoice_number=f"INV-{invoice_id}",
        vendor_name="Acme",
        amount=100.0,
        date=dt.date(2024, 1, 3),
        description="test",
        confidence=0.5,
    )


def sample_value(name: str, labels: Dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def duplicate_rows(invoice_factory):
    """Two 50000 invoices from one vendor, five days apart."""
    return [
        invoice_factory.create_receivable(
            total=50000, partner_id="p-a", invoice_date=dt.date(2024, 1, 5), invoice_id="inv-1"
        ),
        invoice_factory.create_receivable(
            total=50000, partner_id="p-a", invoice_date=dt.date(2024, 1, 10), invoice_id="inv-2"
        ),
    ]


@pytest.fixture
def mixed_repository(invoice_factory):
    """Repository with receivables and payables triggering several detectors."""
    receivables = [invoice_factory.create_receivable(total=1000, partner_id="p-a") for _ in range(10)]
    receivables.append(invoice_factory.create_receivable(total=100000, partner_id="p-a"))
    receivables.append(invoice_factory.create_receivable(
        total=20000, partner_id="p-b", invoice_date=dt.date(2024, 1, 6)
    ))
    payables = [
        invoice_factory.create_payable(total_amount=750, supplier_id="s-1",
                                       invoice_date=dt.date(2024, 1, 8)),
        invoice_factory.create_payable(total_amount=750, supplier_id="s-1",
                                       invoice_date=dt.date(2024, 1, 12)),
        invoice_factory.create_payable(total_amount=400, supplier_id=None,
                                       invoice_date=dt.date(2024, 1, 7)),
    ]
    return InMemoryInvoiceRepository(
        receivables=receivables,
        payables=payables,
        vendors={"p-a": "Acme d.o.o.", "p-b": "Beta GmbH", "s-1": "Supply Co"},
    )


@pytest.mark.unit
class TestPipelineStages:
    """Test cases for labelling, deduplication and ranking."""

    def test_labels_follow_detector_then_discovery_order(self):
        """Test ids come from one counter across all detector outputs."""
        batches = [
            [make_anomaly("a", AnomalyType.DUPLICATE, Severity.HIGH),
             make_anomaly("b", AnomalyType.DUPLICATE, Severity.HIGH)],
            [],
            [make_anomaly("a", AnomalyType.ROUND_NUMBER, Severity.LOW)],
        ]

        labelled = label_anomalies(batches)

        assert [a.id for a in labelled] == ["anom-0", "anom-1", "anom-2"]
        assert [a.invoice_id for a in labelled] == ["a", "b", "a"]

    def test_deduplicate_keeps_first_per_invoice_and_type(self):
        """Test only the first anomaly per (invoice, type) survives."""
        anomalies = label_anomalies([[
            make_anomaly("a", AnomalyType.DUPLICATE, Severity.HIGH),
            make_anomaly("a", AnomalyType.DUPLICATE, Severity.HIGH),
            make_anomaly("a", AnomalyType.WEEKEND, Severity.LOW),
        ]])

        unique = deduplicate(anomalies)

        assert [a.id for a in unique] == ["anom-0", "anom-2"]

    def test_rank_is_stable(self):
        """Test severity order with ties kept in their original order."""
        anomalies = label_anomalies([[
            make_anomaly("a", AnomalyType.WEEKEND, Severity.LOW),
            make_anomaly("b", AnomalyType.OUTLIER, Severity.HIGH),
            make_anomaly("c", AnomalyType.UNUSUAL_VENDOR, Severity.MEDIUM),
            make_anomaly("d", AnomalyType.DUPLICATE, Severity.HIGH),
            make_anomaly("e", AnomalyType.ROUND_NUMBER, Severity.LOW),
        ]])

        ranked = rank_by_severity(anomalies)

        assert [a.invoice_id for a in ranked] == ["b", "d", "c", "a", "e"]

    def test_summary_and_confidence(self):
        """Test severity counts and mean confidence."""
        anomalies = [
            make_anomaly("a", AnomalyType.DUPLICATE, Severity.HIGH),
            make_anomaly("b", AnomalyType.WEEKEND, Severity.LOW),
        ]

        summary = summarize(anomalies)

        assert (summary.total, summary.high, summary.medium, summary.low) == (2, 1, 0, 1)
        assert aggregate_confidence(anomalies) == pytest.approx(0.5)
        assert aggregate_confidence([]) == 1.0

    def test_distinct_types_first_appearance(self):
        """Test types are listed once in order of first appearance."""
        anomalies = [
            make_anomaly("a", AnomalyType.OUTLIER, Severity.HIGH),
            make_anomaly("b", AnomalyType.WEEKEND, Severity.LOW),
            make_anomaly("c", AnomalyType.OUTLIER, Severity.HIGH),
        ]

        assert distinct_types(anomalies) == ["outlier", "weekend"]

    def test_narrative_findings_are_reduced_and_capped(self):
        """Test only the top anomalies and selected fields are sent out."""
        anomalies = [make_anomaly(str(i), AnomalyType.WEEKEND, Severity.LOW) for i in range(25)]

        findings = narrative_findings(anomalies, 20)

        assert len(findings) == 20
        assert findings[0] == {
            "type": "weekend",
            "severity": "low",
            "vendor_name": "Acme",
            "amount": 100.0,
            "description": "test",
        }


@pytest.mark.unit
class TestInvoiceAnomalyEngineScan:
    """Test cases for end-to-end scans over an in-memory corpus."""

    @pytest.mark.asyncio
    async def test_duplicate_pair_scenario(self, duplicate_rows):
        """Test two equal round invoices five days apart."""
        repository = InMemoryInvoiceRepository(receivables=duplicate_rows, vendors={"p-a": "Acme"})
        engine = InvoiceAnomalyEngine(repository)

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert [(a.id, a.type.value) for a in result.anomalies] == [
            ("anom-0", "duplicate"),
            ("anom-1", "round_number"),
            ("anom-2", "round_number"),
        ]
        duplicate = result.anomalies[0]
        assert duplicate.severity == Severity.HIGH
        assert duplicate.confidence == 0.85
        assert duplicate.vendor_name == "Acme"
        assert {duplicate.invoice_id, duplicate.related_invoice_id} == {"inv-1", "inv-2"}
        assert "(5 days apart)" in duplicate.description
        summary = result.summary
        assert (summary.total, summary.high, summary.medium, summary.low) == (3, 1, 0, 2)

    @pytest.mark.asyncio
    async def test_single_saturday_invoice_scenario(self, invoice_factory):
        """Test a lone Saturday invoice yields exactly one weekend anomaly."""
        repository = InMemoryInvoiceRepository(receivables=[
            invoice_factory.create_receivable(total=12345, invoice_date=dt.date(2024, 1, 6))
        ])
        engine = InvoiceAnomalyEngine(repository)

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        anomaly, = result.anomalies
        assert anomaly.type == AnomalyType.WEEKEND
        assert anomaly.severity == Severity.LOW
        assert anomaly.confidence == 0.5
        assert anomaly.description == "Invoice dated on Saturday"

    @pytest.mark.asyncio
    async def test_output_invariants(self, mixed_repository):
        """Test no duplicate (invoice, type) pairs and non-decreasing severity rank."""
        result = await InvoiceAnomalyEngine(mixed_repository).scan(TENANT, USER, as_of=AS_OF)

        keys = [(a.invoice_id, a.type) for a in result.anomalies]
        assert len(keys) == len(set(keys))
        order = {"high": 0, "medium": 1, "low": 2}
        ranks = [order[a.severity.value] for a in result.anomalies]
        assert ranks == sorted(ranks)
        assert {a.type for a in result.anomalies} >= {
            AnomalyType.DUPLICATE,
            AnomalyType.WEEKEND,
            AnomalyType.ROUND_NUMBER,
            AnomalyType.OUTLIER,
        }

    @pytest.mark.asyncio
    async def test_scans_are_deterministic(self, mixed_repository):
        """Test two scans of the same corpus are identical, ids included."""
        engine = InvoiceAnomalyEngine(mixed_repository)

        first = await engine.scan(TENANT, USER, as_of=AS_OF)
        second = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert first.anomalies == second.anomalies

    @pytest.mark.asyncio
    async def test_parallel_detectors_match_sequential(self, mixed_repository):
        """Test running detectors in threads does not change the output."""
        parallel_config = settings.model_copy(update={"ANOMALY_PARALLEL_DETECTORS": True})
        sequential = InvoiceAnomalyEngine(mixed_repository)
        parallel = InvoiceAnomalyEngine(mixed_repository, config=parallel_config)

        expected = await sequential.scan(TENANT, USER, as_of=AS_OF)
        actual = await parallel.scan(TENANT, USER, as_of=AS_OF)

        assert actual.anomalies == expected.anomalies

    @pytest.mark.asyncio
    async def test_vendor_names_resolved(self, mixed_repository):
        """Test vendor names are attached and unknown vendors get a sentinel."""
        result = await InvoiceAnomalyEngine(mixed_repository).scan(TENANT, USER, as_of=AS_OF)

        names = {a.invoice_id: a.vendor_name for a in result.anomalies}
        null_vendor_invoice = mixed_repository.payables[2]["id"]
        assert names[null_vendor_invoice] == "Unknown"
        assert "Acme d.o.o." in names.values()
        assert mixed_repository.vendor_lookups == [["p-b", "p-a", "s-1"]]

    @pytest.mark.asyncio
    async def test_empty_corpus_skips_vendor_lookup(self):
        """Test no vendor query is made when there is nothing to resolve."""
        repository = InMemoryInvoiceRepository()

        result = await InvoiceAnomalyEngine(repository).scan(TENANT, USER, as_of=AS_OF)

        assert result.anomalies == []
        assert result.invoices_scanned == 0
        assert repository.vendor_lookups == []

    @pytest.mark.asyncio
    async def test_vendor_lookup_is_capped(self, invoice_factory):
        """Test at most the configured number of vendor ids are looked up."""
        repository = InMemoryInvoiceRepository(
            receivables=[
                invoice_factory.create_receivable(partner_id="p-1", invoice_date=dt.date(2024, 1, 10)),
                invoice_factory.create_receivable(partner_id="p-2", invoice_date=dt.date(2024, 1, 9)),
            ],
            vendors={"p-1": "One", "p-2": "Two"},
        )
        config = settings.model_copy(update={"ANOMALY_MAX_VENDOR_LOOKUP": 1})

        await InvoiceAnomalyEngine(repository, config=config).scan(TENANT, USER, as_of=AS_OF)

        assert repository.vendor_lookups == [["p-1"]]

    @pytest.mark.asyncio
    async def test_per_source_limit(self, invoice_factory):
        """Test only the newest invoices per source are scanned."""
        repository = InMemoryInvoiceRepository(
            receivables=[
                invoice_factory.create_receivable(invoice_date=dt.date(2024, 1, day))
                for day in (8, 9, 10)
            ],
            payables=[invoice_factory.create_payable(invoice_date=dt.date(2024, 1, 9))],
        )
        config = settings.model_copy(update={"ANOMALY_MAX_INVOICES_PER_SOURCE": 2})

        result = await InvoiceAnomalyEngine(repository, config=config).scan(TENANT, USER, as_of=AS_OF)

        assert result.invoices_scanned == 3

    @pytest.mark.asyncio
    async def test_lookback_window_ends_today(self, invoice_factory):
        """Test the 90-day window is measured back from the scan date."""
        repository = InMemoryInvoiceRepository(receivables=[
            invoice_factory.create_receivable(total=12345, invoice_date=dt.date(2024, 1, 6)),
            invoice_factory.create_receivable(total=12345, invoice_date=dt.date(2023, 12, 30)),
        ])

        # 2024-04-05 minus 90 days is 2024-01-06
        with freeze_time("2024-04-05"):
            result = await InvoiceAnomalyEngine(repository).scan(TENANT, USER)

        assert result.invoices_scanned == 1
        assert [a.date for a in result.anomalies] == [dt.date(2024, 1, 6)]

    @pytest.mark.asyncio
    async def test_repository_failure_propagates(self):
        """Test corpus read failures are the only fatal path."""
        repository = InMemoryInvoiceRepository()
        repository.fetch_receivables = AsyncMock(side_effect=RuntimeError("connection refused"))
        before = sample_value("invoice_anomaly_scans_total", {"outcome": "error"})

        with pytest.raises(RuntimeError, match="connection refused"):
            await InvoiceAnomalyEngine(repository).scan(TENANT, USER, as_of=AS_OF)

        assert sample_value("invoice_anomaly_scans_total", {"outcome": "error"}) == before + 1

    @pytest.mark.asyncio
    async def test_empty_detector_set_is_respected(self, duplicate_rows):
        """Test an explicitly empty detector set finds nothing."""
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            detectors=(),
        )

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert engine.detectors == ()
        assert result.anomalies == []
        assert result.invoices_scanned == 2


@pytest.mark.unit
class TestInvoiceAnomalyEngineCollaborators:
    """Test cases for narrative and audit collaborators."""

    @pytest.mark.asyncio
    async def test_narrative_receives_top_findings(self, duplicate_rows):
        """Test the narrative sees ranked, reduced findings and its text is returned."""
        narrative = RecordingNarrative()
        config = settings.model_copy(update={"ANOMALY_NARRATIVE_TOP_N": 1})
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            narrative=narrative,
            config=config,
        )

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.narrative == "Two invoices look duplicated."
        findings, = narrative.calls
        assert len(findings) == 1
        assert findings[0]["type"] == "duplicate"
        assert set(findings[0]) == {"type", "severity", "vendor_name", "amount", "description"}

    @pytest.mark.asyncio
    async def test_narrative_skipped_for_clean_scan(self):
        """Test the narrative is not requested when nothing was found."""
        narrative = RecordingNarrative()
        engine = InvoiceAnomalyEngine(InMemoryInvoiceRepository(), narrative=narrative)

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.narrative == ""
        assert narrative.calls == []

    @pytest.mark.asyncio
    async def test_narrative_failure_is_absorbed(self, duplicate_rows):
        """Test a failing narrative leaves the anomalies intact."""
        narrative = RecordingNarrative()
        narrative.synthesize = AsyncMock(side_effect=RuntimeError("provider down"))
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            narrative=narrative,
        )

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.narrative == ""
        assert result.summary.total == 3

    @pytest.mark.asyncio
    async def test_narrative_timeout_is_absorbed(self, duplicate_rows):
        """Test a slow narrative is abandoned after the configured timeout."""
        config = settings.model_copy(update={"AI_TIMEOUT_SECONDS": 0.01})
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            narrative=SlowNarrative(),
            config=config,
        )

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.narrative == ""
        assert result.summary.total == 3

    @pytest.mark.asyncio
    async def test_audit_record_for_scan(self, duplicate_rows):
        """Test one audit record describes the scan."""
        audit_logger = InMemoryAuditLogger()
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            audit_logger=audit_logger,
            narrative=RecordingNarrative(),
        )

        await engine.scan(TENANT, USER, as_of=AS_OF)

        entry, = audit_logger.records
        assert entry.tenant_id == TENANT
        assert entry.user_id == USER
        assert entry.module == "accounting"
        assert entry.action_type == SCAN_ACTION
        assert entry.ai_output == {"anomaly_count": 3, "types": ["duplicate", "round_number"]}
        assert entry.confidence_score == pytest.approx((0.85 + 0.4 + 0.4) / 3)
        assert entry.model_version == "mock-model"

    @pytest.mark.asyncio
    async def test_clean_scan_confidence(self):
        """Test a scan with no anomalies records confidence 1.0."""
        audit_logger = InMemoryAuditLogger()
        engine = InvoiceAnomalyEngine(InMemoryInvoiceRepository(), audit_logger=audit_logger)

        await engine.scan(TENANT, USER, as_of=AS_OF)

        entry, = audit_logger.records
        assert entry.confidence_score == 1.0
        assert entry.ai_output == {"anomaly_count": 0, "types": []}
        assert entry.model_version is None

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_scan(self, duplicate_rows):
        """Test a failed audit write is counted and the result still returned."""
        audit_logger = InMemoryAuditLogger()
        audit_logger.record = AsyncMock(side_effect=RuntimeError("insert failed"))
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            audit_logger=audit_logger,
        )
        labels = {"action_type": SCAN_ACTION}
        before = sample_value("invoice_anomaly_audit_failures_total", labels)

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.summary.total == 3
        audit_logger.record.assert_awaited_once()
        assert sample_value("invoice_anomaly_audit_failures_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_audit_timeout_rolls_back_session(self, duplicate_rows):
        """Test a slow audit commit is abandoned and its row rolled back."""
        async def slow_commit():
            await asyncio.sleep(1)

        db = MagicMock()
        db.commit = AsyncMock(side_effect=slow_commit)
        db.rollback = AsyncMock()
        config = settings.model_copy(update={"AUDIT_TIMEOUT_SECONDS": 0.05})
        engine = InvoiceAnomalyEngine(
            InMemoryInvoiceRepository(receivables=duplicate_rows),
            audit_logger=DatabaseAuditLogger(db),
            config=config,
        )

        result = await engine.scan(TENANT, USER, as_of=AS_OF)

        assert result.summary.total == 3
        db.add.assert_called_once()
        db.rollback.assert_awaited_once()


@pytest.mark.unit
class TestReviewActions:
    """Test cases for recording reviewer decisions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action, action_type", [
        (ReviewAction.DISMISSED, "anomaly_dismissed"),
        (ReviewAction.INVESTIGATE, "anomaly_investigate"),
    ])
    async def test_action_is_audited(self, action, action_type):
        """Test each decision is written with the anomaly id."""
        audit_logger = InMemoryAuditLogger()
        engine = InvoiceAnomalyEngine(InMemoryInvoiceRepository(), audit_logger=audit_logger)

        await engine.record_review_action(TENANT, USER, "anom-3", action)

        entry, = audit_logger.records
        assert entry.action_type == action_type
        assert entry.input_data == {"anomaly_id": "anom-3"}
        assert entry.module == "accounting"
        assert entry.user_id == USER

    @pytest.mark.asyncio
    async def test_requires_audit_logger(self):
        """Test review actions cannot be silently dropped."""
        engine = InvoiceAnomalyEngine(InMemoryInvoiceRepository())

        with pytest.raises(RuntimeError):
            await engine.record_review_action(TENANT, USER, "anom-0", ReviewAction.DISMISSED)
