# ==== INVOICE ANOMALY DETECTORS ==== #

"""
Rule-based invoice anomaly detectors.

Each detector is a stateless ``Detector`` that reads an immutable snapshot of
``InvoiceRecord`` objects and returns unlabelled ``Anomaly`` candidates in
discovery order. Detectors never depend on each other's output, so they can
run in any order or concurrently; ids are assigned afterwards by the engine.

Detectors:
  1. duplicate     : same vendor, same amount, 1-7 days apart
  2. weekend       : invoice dated on Saturday or Sunday
  3. round_number  : exact multiple of 10,000
  4. outlier       : more than 3σ from the vendor's own average
  5. unusual_vendor: single-invoice vendor billing over 2x the corpus mean
"""

import datetime as dt
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from anomaly_engine.services.invoice_normalizer import InvoiceRecord


# ==== ANOMALY MODEL ==== #


class AnomalyType(str, Enum):
    """Kinds of anomalies the detectors emit."""
    DUPLICATE = "duplicate"
    WEEKEND = "weekend"
    ROUND_NUMBER = "round_number"
    OUTLIER = "outlier"
    UNUSUAL_VENDOR = "unusual_vendor"


class Severity(str, Enum):
    """Anomaly severity tiers, most urgent first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.HIGH: 0,
    Severity.MEDIUM: 1,
    Severity.LOW: 2,
}


@dataclass(frozen=True)
class Anomaly:
    """A suspicious invoice finding. ``id`` is empty until labelled."""

    type: AnomalyType
    severity: Severity
    invoice_id: str
    invoice_number: str
    vendor_name: str
    amount: float
    date: dt.date
    description: str
    confidence: float
    related_invoice_id: Optional[str] = None
    id: str = ""


# ==== THRESHOLDS ==== #


@dataclass(frozen=True)
class DetectionThresholds:
    """
    Hand-tuned heuristic constants used by the detectors.

    Attributes:
        duplicate_window_days: Max days between two duplicate invoices
        duplicate_amount_tolerance: Absolute amount difference treated as equal
        round_number_unit: Amounts that are exact multiples of this are "round"
        outlier_sigma: Standard deviations from the vendor mean for an outlier
        outlier_min_samples: Minimum invoices per vendor for a baseline
        unusual_vendor_multiplier: Multiple of the corpus mean a first-time
            vendor's invoice must exceed
    """

    duplicate_window_days: int = 7
    duplicate_amount_tolerance: float = 0.01
    round_number_unit: int = 10_000
    outlier_sigma: float = 3.0
    outlier_min_samples: int = 3
    unusual_vendor_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "DetectionThresholds":
        return cls(
            duplicate_window_days=settings.ANOMALY_DUPLICATE_WINDOW_DAYS,
            duplicate_amount_tolerance=settings.ANOMALY_DUPLICATE_AMOUNT_TOLERANCE,
            round_number_unit=settings.ANOMALY_ROUND_NUMBER_UNIT,
            outlier_sigma=settings.ANOMALY_OUTLIER_SIGMA,
            outlier_min_samples=settings.ANOMALY_OUTLIER_MIN_SAMPLES,
            unusual_vendor_multiplier=settings.ANOMALY_UNUSUAL_VENDOR_MULTIPLIER,
        )


def format_amount(amount: float) -> str:
    """Render an amount for descriptions; integral values drop the ``.0``."""
    if math.isfinite(amount) and amount == int(amount):
        return str(int(amount))
    return str(amount)


# ==== DETECTOR BASE CLASS ==== #


class Detector(ABC):
    """
    One independent anomaly rule.

    Subclasses set the fixed ``anomaly_type``, ``severity`` and
    ``confidence`` and implement ``detect``. ``detect`` must not mutate the
    records it is given.
    """

    anomaly_type: AnomalyType
    severity: Severity
    confidence: float

    def __init__(self, thresholds: Optional[DetectionThresholds] = None):
        self.thresholds = thresholds or DetectionThresholds()

    @abstractmethod
    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        """Return unlabelled anomalies in discovery order."""

    def _anomaly(
        self,
        record: InvoiceRecord,
        description: str,
        related_invoice_id: Optional[str] = None
    ) -> Anomaly:
        return Anomaly(
            type=self.anomaly_type,
            severity=self.severity,
            invoice_id=record.id,
            invoice_number=record.invoice_number,
            vendor_name=record.vendor_name,
            amount=record.amount,
            date=record.invoice_date,
            description=description,
            confidence=self.confidence,
            related_invoice_id=related_invoice_id,
        )


def _group_by_vendor(records: Sequence[InvoiceRecord]) -> Dict[str, List[int]]:
    """Map each non-null vendor id to the corpus indices of its invoices."""
    groups: Dict[str, List[int]] = defaultdict(list)
    for index, record in enumerate(records):
        if record.vendor_id is not None:
            groups[record.vendor_id].append(index)
    return groups


# ==== DETECTORS ==== #


class DuplicateAmountDetector(Detector):
    """Same vendor billing the same amount twice within a short window."""

    anomaly_type = AnomalyType.DUPLICATE
    severity = Severity.HIGH
    confidence = 0.85

    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        window = self.thresholds.duplicate_window_days
        tolerance = self.thresholds.duplicate_amount_tolerance
        groups = _group_by_vendor(records)
        anomalies = []

        # Pairs (i, j) with i < j in corpus order, compared only within a vendor
        for i, first in enumerate(records):
            if first.vendor_id is None or first.amount <= 0:
                continue
            for j in groups[first.vendor_id]:
                if j <= i:
                    continue
                second = records[j]
                if abs(first.amount - second.amount) >= tolerance:
                    continue
                day_diff = abs((second.invoice_date - first.invoice_date).days)
                if 0 < day_diff <= window:
                    anomalies.append(self._anomaly(
                        first,
                        f"Duplicate amount {format_amount(first.amount)} with invoice "
                        f"{second.invoice_number} ({day_diff} days apart)",
                        related_invoice_id=second.id,
                    ))

        return anomalies


class WeekendDateDetector(Detector):
    """Invoices dated on a Saturday or Sunday."""

    anomaly_type = AnomalyType.WEEKEND
    severity = Severity.LOW
    confidence = 0.5

    _WEEKEND_DAYS = {5: "Saturday", 6: "Sunday"}

    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        anomalies = []
        for record in records:
            day_name = self._WEEKEND_DAYS.get(record.invoice_date.weekday())
            if day_name:
                anomalies.append(self._anomaly(record, f"Invoice dated on {day_name}"))
        return anomalies


class RoundNumberDetector(Detector):
    """Suspiciously round amounts (exact multiples of the round-number unit)."""

    anomaly_type = AnomalyType.ROUND_NUMBER
    severity = Severity.LOW
    confidence = 0.4

    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        unit = self.thresholds.round_number_unit
        return [
            self._anomaly(record, f"Suspiciously round amount: {format_amount(record.amount)}")
            for record in records
            if record.amount >= unit and record.amount % unit == 0
        ]


class StatisticalOutlierDetector(Detector):
    """
    Amounts far from the vendor's own baseline.

    Uses the population mean and standard deviation of each vendor's
    amounts. Vendors with too few invoices have no baseline, and a vendor
    whose amounts are all identical (zero deviation) never yields an outlier.
    """

    anomaly_type = AnomalyType.OUTLIER
    severity = Severity.HIGH
    confidence = 0.9

    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        baselines = self._vendor_baselines(records)
        sigma = self.thresholds.outlier_sigma
        anomalies = []

        for record in records:
            baseline = baselines.get(record.vendor_id)
            if baseline is None:
                continue
            mean, stddev = baseline
            if stddev > 0 and abs(record.amount - mean) > sigma * stddev:
                z_score = (record.amount - mean) / stddev
                anomalies.append(self._anomaly(
                    record,
                    f"Amount {format_amount(record.amount)} is {z_score:.1f}σ "
                    f"from vendor average of {mean:.0f}",
                ))

        return anomalies

    def _vendor_baselines(
        self,
        records: Sequence[InvoiceRecord]
    ) -> Dict[str, Tuple[float, float]]:
        baselines = {}
        for vendor_id, indices in _group_by_vendor(records).items():
            if len(indices) < self.thresholds.outlier_min_samples:
                continue
            amounts = np.array([records[i].amount for i in indices])
            # Population deviation (ddof=0)
            baselines[vendor_id] = (float(np.mean(amounts)), float(np.std(amounts)))
        return baselines


class FirstTimeVendorDetector(Detector):
    """Vendors seen once in the window billing well above the corpus average."""

    anomaly_type = AnomalyType.UNUSUAL_VENDOR
    severity = Severity.MEDIUM
    confidence = 0.65

    def detect(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        if not records:
            return []

        multiplier = self.thresholds.unusual_vendor_multiplier
        average = float(np.mean([record.amount for record in records]))
        groups = _group_by_vendor(records)

        return [
            self._anomaly(
                record,
                f"First-time vendor with amount {format_amount(record.amount)} "
                f"({multiplier:g}x+ above average of {average:.0f})",
            )
            for record in records
            if record.vendor_id is not None
            and len(groups[record.vendor_id]) == 1
            and record.amount > average * multiplier
        ]


# ==== DETECTOR REGISTRY ==== #


def default_detectors(
    thresholds: Optional[DetectionThresholds] = None
) -> Tuple[Detector, ...]:
    """
    Build the detector set in its fixed execution order.

    The order defines anomaly id assignment and deduplication precedence.
    """
    return (
        DuplicateAmountDetector(thresholds),
        WeekendDateDetector(thresholds),
        RoundNumberDetector(thresholds),
        StatisticalOutlierDetector(thresholds),
        FirstTimeVendorDetector(thresholds),
    )
