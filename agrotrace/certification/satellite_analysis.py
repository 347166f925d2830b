# -*- coding: utf-8 -*-
"""
Satellite Compliance Analyzer - NDVI time-series organic-rule screening

Screens a field's vegetation-index history for three organic-farming rule
violations and classifies the field for organic certification:

    1. Synthetic fertilizer: an NDVI rise above the crop's synthetic
       threshold within one detection window, beyond what the seasonal
       green-up of the crop explains.
    2. Pesticide application: a drop above 0.15 followed by a recovery
       above 0.10 within the next window (drop-then-bounce signature).
    3. Land clearing: a drop above 0.40 from the pre-drop level that stays
       down (no bounce) for at least 60 days.

Rules are pure functions over a cloud-filtered, date-sorted series; the
analyzer adds quota reservation, timeout-bounded imagery acquisition,
report retention (90 days) and provenance.

Confidence:
    conf = min(valid/expected, 1) * 0.6
           - violations * 0.02
           - (avg_cloud / 100) * 0.15
           + (0.25 if valid >= 24 else 0)
    clamped to [0.5, 1.0]

Compliance status (first match wins):
    valid < 24                 -> NEEDS_REVIEW
    any HIGH violation         -> INELIGIBLE
    >= 3 MEDIUM violations     -> NEEDS_REVIEW
    1-2 violations             -> NEEDS_REVIEW
    no violations              -> ELIGIBLE
    otherwise (>= 3 LOW only)  -> NEEDS_REVIEW

Zero-Hallucination Guarantees:
    - Verdicts are pure functions of the series, baseline and calibration
    - No model inference; every threshold is a named, configurable constant
    - SHA-256 provenance hash on every completed report

Example:
    >>> analyzer = SatelliteComplianceAnalyzer(imagery=SimulatedImageryProvider())
    >>> field = OrganicField(field_id="FLD-1", producer_id="P-1",
    ...                      crop_type=CropType.AVOCADO)
    >>> report = analyzer.run_analysis(field, AnalysisParams(
    ...     crop_type=CropType.AVOCADO))
    >>> 0.5 <= report.overall_confidence <= 1.0
    True

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from agrotrace.certification import metrics
from agrotrace.certification.baselines import (
    DEFAULT_SEVERITY_CALIBRATION,
    SeverityCalibration,
    get_crop_baseline,
)
from agrotrace.certification.concurrency import call_with_timeout
from agrotrace.certification.config import CertificationConfig, get_config
from agrotrace.certification.imagery import ImageryProvider
from agrotrace.certification.models import (
    AnalysisParams,
    ComplianceStatus,
    CropBaseline,
    CropType,
    NDVIDataPoint,
    OrganicField,
    SatelliteComplianceReport,
    SatelliteStats,
    ViolationFlag,
    ViolationSeverity,
    ViolationType,
    _utcnow,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.certification.quota import ProcessingQuota
from agrotrace.exceptions import (
    ExternalServiceError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_CONFIDENCE = 0.5
MAX_CONFIDENCE = 1.0

_COVERAGE_WEIGHT = 0.6
_VIOLATION_PENALTY = 0.02
_CLOUD_PENALTY = 0.15
_HISTORY_BONUS = 0.25

# Pesticide flags rest on a two-step signature and carry less certainty.
_PESTICIDE_CONFIDENCE_FACTOR = 0.8

_SEVERITY_RANK: Dict[ViolationSeverity, int] = {
    ViolationSeverity.LOW: 1,
    ViolationSeverity.MEDIUM: 2,
    ViolationSeverity.HIGH: 3,
}

_RULE_PRIORITY: Dict[ViolationType, int] = {
    ViolationType.PESTICIDE_APPLICATION: 1,
    ViolationType.SYNTHETIC_FERTILIZER: 2,
    ViolationType.LAND_CLEARING: 3,
}

# Reports that carry no verdict are never served as "latest".
_VERDICT_STATUSES = frozenset({
    ComplianceStatus.ELIGIBLE,
    ComplianceStatus.INELIGIBLE,
    ComplianceStatus.NEEDS_REVIEW,
})


# ---------------------------------------------------------------------------
# Detection thresholds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionThresholds:
    """Rule thresholds, in NDVI units and days."""

    window_days: int = 30
    tolerance_days: int = 5
    pesticide_drop: float = 0.15
    pesticide_recovery: float = 0.10
    clearing_drop: float = 0.40
    clearing_sustained_days: int = 60
    seasonal_allowance: float = 0.10

    @classmethod
    def from_config(cls, config: CertificationConfig) -> DetectionThresholds:
        return cls(
            window_days=config.detection_window_days,
            tolerance_days=config.sampling_tolerance_days,
            pesticide_drop=config.pesticide_drop_threshold,
            pesticide_recovery=config.pesticide_recovery_threshold,
            clearing_drop=config.land_clearing_drop_threshold,
            clearing_sustained_days=config.land_clearing_sustained_days,
            seasonal_allowance=config.seasonal_allowance,
        )

    def within_window(self, earlier: NDVIDataPoint, later: NDVIDataPoint) -> bool:
        """True if two samples are close enough to be compared."""
        gap = (later.sample_date - earlier.sample_date).days
        return 0 < gap <= self.window_days + self.tolerance_days


# =============================================================================
# Pure rule functions
# =============================================================================


def filter_by_cloud(
    points: Iterable[NDVIDataPoint], max_cloud_coverage: float,
) -> List[NDVIDataPoint]:
    """Drop samples above the cloud ceiling and sort the rest by date."""
    return sorted(
        (p for p in points if p.cloud_coverage <= max_cloud_coverage),
        key=lambda p: p.sample_date,
    )


def is_seasonal_rise(
    previous_month: int, current_month: int, baseline: CropBaseline,
) -> bool:
    """True if moving between the two months is an expected green-up.

    A green-up is entering the crop's peak months or leaving its low
    months.
    """
    entering_peak = (
        current_month in baseline.peak_months
        and previous_month not in baseline.peak_months
    )
    leaving_low = (
        previous_month in baseline.low_months
        and current_month not in baseline.low_months
    )
    return entering_peak or leaving_low


def _window_indices(
    points: Sequence[NDVIDataPoint],
    i: int,
    thresholds: DetectionThresholds,
    step: int,
) -> List[int]:
    """Indices of samples within one window before (``step=-1``) or after
    (``step=1``) ``points[i]``, nearest first."""
    span = thresholds.window_days + thresholds.tolerance_days
    found: List[int] = []
    j = i + step
    while 0 <= j < len(points):
        gap = abs((points[j].sample_date - points[i].sample_date).days)
        if gap > span:
            break
        if gap > 0:
            found.append(j)
        j += step
    return found


def _highest(points: Sequence[NDVIDataPoint], indices: Sequence[int]) -> int:
    return max(indices, key=lambda j: points[j].ndvi_average)


def detect_synthetic_fertilizer(
    points: Sequence[NDVIDataPoint],
    baseline: CropBaseline,
    thresholds: DetectionThresholds = DetectionThresholds(),
    calibration: SeverityCalibration = DEFAULT_SEVERITY_CALIBRATION,
) -> List[ViolationFlag]:
    """Flag NDVI rises the crop's seasonal cycle does not explain.

    Each sample is compared with every earlier sample in the window, so a
    rise spread over several dense samples is still seen. The pair that
    exceeds its threshold by the most is reported. A flagged rise is not
    counted again: later flags only use samples from the flag date on.
    """
    band = calibration[ViolationType.SYNTHETIC_FERTILIZER]
    flags: List[ViolationFlag] = []
    last_flagged: Optional[date] = None
    for i, cur in enumerate(points):
        best = None
        for j in _window_indices(points, i, thresholds, -1):
            prev = points[j]
            if last_flagged is not None and prev.sample_date < last_flagged:
                continue
            delta = cur.ndvi_average - prev.ndvi_average
            threshold = baseline.synthetic_threshold
            if is_seasonal_rise(
                prev.sample_date.month, cur.sample_date.month, baseline,
            ):
                threshold += thresholds.seasonal_allowance
            if delta > threshold and (best is None or delta - threshold > best[0]):
                best = (delta - threshold, prev, delta, threshold)
        if best is None:
            continue

        _, prev, delta, threshold = best
        flags.append(ViolationFlag(
            detected_on=cur.sample_date,
            violation_type=ViolationType.SYNTHETIC_FERTILIZER,
            severity=band.classify(delta),
            confidence=cur.confidence,
            ndvi_delta=round(delta, 4),
            description=(
                f"NDVI rose {delta:.2f} in {(cur.sample_date - prev.sample_date).days} "
                f"days, above the {threshold:.2f} expected for "
                f"{baseline.crop_type.value.lower()}; consistent with "
                f"synthetic nitrogen application"
            ),
        ))
        last_flagged = cur.sample_date
    return flags


def detect_pesticide_application(
    points: Sequence[NDVIDataPoint],
    thresholds: DetectionThresholds = DetectionThresholds(),
    calibration: SeverityCalibration = DEFAULT_SEVERITY_CALIBRATION,
) -> List[ViolationFlag]:
    """Flag drop-then-bounce signatures typical of chemical pest control.

    Only local minima are candidates. The drop is measured from the highest
    sample in the window before the trough, the recovery to the highest
    sample in the window after it.
    """
    band = calibration[ViolationType.PESTICIDE_APPLICATION]
    flags: List[ViolationFlag] = []
    i = 1
    while i < len(points) - 1:
        cur = points[i]
        is_trough = (
            points[i - 1].ndvi_average > cur.ndvi_average
            and points[i + 1].ndvi_average >= cur.ndvi_average
        )
        before = _window_indices(points, i, thresholds, -1)
        after = _window_indices(points, i, thresholds, 1)
        if not (is_trough and before and after):
            i += 1
            continue

        peak_after = _highest(points, after)
        drop = cur.ndvi_average - points[_highest(points, before)].ndvi_average
        recovery = points[peak_after].ndvi_average - cur.ndvi_average
        if drop < -thresholds.pesticide_drop and recovery > thresholds.pesticide_recovery:
            flags.append(ViolationFlag(
                detected_on=cur.sample_date,
                violation_type=ViolationType.PESTICIDE_APPLICATION,
                severity=band.classify(abs(drop)),
                confidence=round(cur.confidence * _PESTICIDE_CONFIDENCE_FACTOR, 4),
                ndvi_delta=round(drop, 4),
                description=(
                    f"NDVI dropped {abs(drop):.2f} then recovered "
                    f"{recovery:.2f}; consistent with pesticide application"
                ),
            ))
            i = peak_after
        else:
            i += 1
    return flags


def detect_land_clearing(
    points: Sequence[NDVIDataPoint],
    thresholds: DetectionThresholds = DetectionThresholds(),
    calibration: SeverityCalibration = DEFAULT_SEVERITY_CALIBRATION,
) -> List[ViolationFlag]:
    """Flag large drops that stay down for the sustained period.

    A drop is measured from the highest sample in the window before it.
    After a drop of more than ``clearing_drop``, every following sample
    (each within one window of the previous) must stay more than
    ``clearing_drop`` below that pre-drop level. The drop is flagged once
    the depressed run spans ``clearing_sustained_days``. A flagged run is
    not re-examined for further clearing hits.
    """
    band = calibration[ViolationType.LAND_CLEARING]
    flags: List[ViolationFlag] = []
    i = 1
    while i < len(points):
        cur = points[i]
        before = _window_indices(points, i, thresholds, -1)
        if not before:
            i += 1
            continue
        reference = points[_highest(points, before)].ndvi_average
        delta = cur.ndvi_average - reference
        if delta >= -thresholds.clearing_drop:
            i += 1
            continue

        floor = reference - thresholds.clearing_drop
        last = i
        while (
            last + 1 < len(points)
            and thresholds.within_window(points[last], points[last + 1])
            and points[last + 1].ndvi_average < floor
        ):
            last += 1

        duration = (points[last].sample_date - cur.sample_date).days
        if duration >= thresholds.clearing_sustained_days:
            flags.append(ViolationFlag(
                detected_on=cur.sample_date,
                violation_type=ViolationType.LAND_CLEARING,
                severity=band.classify(abs(delta)),
                confidence=cur.confidence,
                ndvi_delta=round(delta, 4),
                duration_days=duration,
                description=(
                    f"NDVI dropped {abs(delta):.2f} and stayed down for "
                    f"{duration} days; consistent with land clearing"
                ),
            ))
            i = last + 1
        else:
            i += 1
    return flags


def deduplicate_violations(flags: Iterable[ViolationFlag]) -> List[ViolationFlag]:
    """Keep one flag per sample date, the most severe one.

    Several rules can fire on the same drop (a clearing that bounces
    slightly also looks like a pesticide signature). Ties go to the rule
    with the higher priority (land clearing, fertilizer, pesticide).
    """
    best: Dict[date, ViolationFlag] = {}
    for flag in flags:
        current = best.get(flag.detected_on)
        if current is None or _flag_key(flag) > _flag_key(current):
            best[flag.detected_on] = flag
    return [best[d] for d in sorted(best)]


def _flag_key(flag: ViolationFlag):
    return (_SEVERITY_RANK[flag.severity], _RULE_PRIORITY[flag.violation_type])


def detect_violations(
    points: Sequence[NDVIDataPoint],
    baseline: CropBaseline,
    thresholds: DetectionThresholds = DetectionThresholds(),
    calibration: SeverityCalibration = DEFAULT_SEVERITY_CALIBRATION,
) -> List[ViolationFlag]:
    """Run all three rules over a filtered, date-sorted series."""
    flags = (
        detect_synthetic_fertilizer(points, baseline, thresholds, calibration)
        + detect_pesticide_application(points, thresholds, calibration)
        + detect_land_clearing(points, thresholds, calibration)
    )
    return deduplicate_violations(flags)


def calculate_confidence(
    valid_points: int,
    expected_points: int,
    violation_count: int,
    average_cloud_coverage: float,
    min_valid_points: int = 24,
) -> float:
    """Overall report confidence, clamped to [0.5, 1.0]."""
    coverage = (
        min(valid_points / expected_points, 1.0) if expected_points > 0 else 0.0
    )
    confidence = (
        coverage * _COVERAGE_WEIGHT
        - violation_count * _VIOLATION_PENALTY
        - (average_cloud_coverage / 100.0) * _CLOUD_PENALTY
        + (_HISTORY_BONUS if valid_points >= min_valid_points else 0.0)
    )
    return round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence)), 4)


def determine_compliance_status(
    violations: Sequence[ViolationFlag],
    valid_points: int,
    min_valid_points: int = 24,
) -> ComplianceStatus:
    """Classify an analysis from its violations and usable history."""
    if valid_points < min_valid_points:
        return ComplianceStatus.NEEDS_REVIEW
    if any(v.severity == ViolationSeverity.HIGH for v in violations):
        return ComplianceStatus.INELIGIBLE
    medium = sum(1 for v in violations if v.severity == ViolationSeverity.MEDIUM)
    if medium >= 3:
        return ComplianceStatus.NEEDS_REVIEW
    if 1 <= len(violations) <= 2:
        return ComplianceStatus.NEEDS_REVIEW
    if not violations:
        return ComplianceStatus.ELIGIBLE
    return ComplianceStatus.NEEDS_REVIEW


def expected_data_points(start: date, end: date, interval_days: int) -> int:
    """Number of samples a gap-free series over the window would hold."""
    return max(1, math.ceil((end - start).days / interval_days))


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


# =============================================================================
# SatelliteComplianceAnalyzer
# =============================================================================


class SatelliteComplianceAnalyzer:
    """Runs and retains satellite compliance analyses per field.

    Attributes:
        config: CertificationConfig instance.
        thresholds: Detection thresholds derived from config.
        calibration: Severity calibration table in use.
        quota: Shared monthly processing-unit budget.
        _reports: Reports keyed by report_id.
        _idx_field_reports: field_id -> report ids, oldest first.
    """

    def __init__(
        self,
        config: Optional[CertificationConfig] = None,
        imagery: Optional[ImageryProvider] = None,
        quota: Optional[ProcessingQuota] = None,
        provenance: Optional[ProvenanceTracker] = None,
        calibration: Optional[SeverityCalibration] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize SatelliteComplianceAnalyzer.

        Args:
            config: Optional configuration. Uses global config if None.
            imagery: Imagery provider used by ``run_analysis``.
            quota: Shared processing quota; one is created from config
                when None.
            provenance: Optional ProvenanceTracker instance.
            calibration: Severity calibration table override.
            clock: Optional UTC clock.
        """
        self.config = config or get_config()
        self._imagery = imagery
        self._clock = clock or _utcnow
        self.quota = quota or ProcessingQuota(
            self.config.monthly_processing_units, clock=self._clock,
        )
        self._provenance = provenance
        self.thresholds = DetectionThresholds.from_config(self.config)
        self.calibration = dict(calibration or DEFAULT_SEVERITY_CALIBRATION)

        self._reports: Dict[str, SatelliteComplianceReport] = {}
        self._idx_field_reports: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

        logger.info(
            "SatelliteComplianceAnalyzer initialized (window=%dy@%dd, "
            "cloud<=%.0f%%, quota=%.0f units)",
            self.config.analysis_years,
            self.config.sampling_interval_days,
            self.config.max_cloud_coverage,
            self.quota.limit,
        )

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def run_analysis(
        self,
        field: OrganicField,
        params: AnalysisParams,
    ) -> SatelliteComplianceReport:
        """Fetch the field's NDVI history and produce a compliance report.

        Args:
            field: Field to analyse.
            params: Crop type, window and cloud ceiling overrides.

        Returns:
            The stored SatelliteComplianceReport.

        Raises:
            QuotaExceededError: If the monthly budget is exhausted; nothing
                is stored.
            ExternalServiceError: If imagery acquisition fails or times
                out; a FAILED report is stored first.
            ValidationError: If no imagery provider is configured.
        """
        if self._imagery is None:
            raise ValidationError(
                "No imagery provider configured for satellite analysis",
                error_code="IMAGERY_PROVIDER_MISSING",
            )

        start_time = time.monotonic()
        years = params.analysis_years or self.config.analysis_years
        interval = params.interval_days or self.config.sampling_interval_days
        max_cloud = self._max_cloud(params)
        end = self._clock().date()
        start = _years_before(end, years)
        units = self.config.units_per_analysis

        try:
            period = self.quota.reserve(units)
        except QuotaExceededError:
            metrics.record_processing_error("satellite", "quota_exceeded")
            raise

        try:
            raw = call_with_timeout(
                self._imagery.fetch_index_series,
                field, start, end, max_cloud,
                timeout=self.config.imagery_timeout_seconds,
                service="imagery",
            )
        except QuotaExceededError:
            self.quota.release(units, period)
            metrics.record_processing_error("satellite", "provider_quota")
            raise
        except ExternalServiceError as exc:
            self.quota.release(units, period)
            self._store_failed_report(
                field, params, start, end, years, exc, start_time,
            )
            raise
        except Exception:
            self.quota.release(units, period)
            metrics.record_processing_error("satellite", "unclassified")
            logger.exception(
                "Unclassified failure fetching imagery for field %s",
                field.field_id,
            )
            raise

        report = self._build_report(
            field_id=field.field_id,
            crop_type=params.crop_type,
            raw_points=raw,
            start=start,
            end=end,
            years=years,
            interval_days=interval,
            max_cloud=max_cloud,
            requested_by=params.requested_by,
            units_used=units,
            start_time=start_time,
        )
        self._store(report)
        return report

    def analyze_series(
        self,
        points: Sequence[NDVIDataPoint],
        params: AnalysisParams,
        field_id: str = "ADHOC",
        store: bool = False,
    ) -> SatelliteComplianceReport:
        """Analyse a caller-supplied series without imagery or quota.

        The analysis window is the span of the supplied series.
        """
        start_time = time.monotonic()
        interval = params.interval_days or self.config.sampling_interval_days
        if points:
            start = min(p.sample_date for p in points)
            end = max(p.sample_date for p in points)
        else:
            start = end = self._clock().date()
        years = max(1, math.ceil((end - start).days / 365))

        report = self._build_report(
            field_id=field_id,
            crop_type=params.crop_type,
            raw_points=list(points),
            start=start,
            end=end,
            years=years,
            interval_days=interval,
            max_cloud=self._max_cloud(params),
            requested_by=params.requested_by,
            units_used=0.0,
            start_time=start_time,
        )
        if store:
            self._store(report)
        return report

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def get_latest_report(
        self, field_id: str,
    ) -> Optional[SatelliteComplianceReport]:
        """Return the newest unexpired report carrying a verdict, if any."""
        now = self._clock()
        with self._lock:
            candidates = [
                self._reports[rid]
                for rid in self._idx_field_reports.get(field_id, [])
            ]
        for report in sorted(candidates, key=lambda r: r.created_at, reverse=True):
            if report.compliance_status not in _VERDICT_STATUSES:
                continue
            if report.is_expired(now):
                continue
            return report
        return None

    def get_report(self, report_id: str) -> SatelliteComplianceReport:
        """Return a report by id.

        Raises:
            NotFoundError: If the report is unknown.
        """
        report = self._reports.get(report_id)
        if report is None:
            raise NotFoundError("SatelliteComplianceReport", report_id)
        return report

    def list_reports(self, field_id: str) -> List[SatelliteComplianceReport]:
        """Return every stored report for a field, oldest first."""
        with self._lock:
            return [
                self._reports[rid]
                for rid in self._idx_field_reports.get(field_id, [])
            ]

    def purge_expired(self) -> int:
        """Drop expired reports and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                rid for rid, r in self._reports.items() if r.is_expired(now)
            ]
            for rid in expired:
                report = self._reports.pop(rid)
                self._idx_field_reports[report.field_id].remove(rid)
        if expired:
            logger.info("Purged %d expired satellite reports", len(expired))
        return len(expired)

    def get_stats(self) -> SatelliteStats:
        """Summarise analyses run, quota usage and verdict counts."""
        now = self._clock()
        with self._lock:
            reports = list(self._reports.values())
        this_month = [
            r for r in reports
            if (r.created_at.year, r.created_at.month) == (now.year, now.month)
        ]
        counts = {status: 0 for status in ComplianceStatus}
        for r in reports:
            counts[r.compliance_status] += 1
        completed = sum(counts[s] for s in _VERDICT_STATUSES)
        return SatelliteStats(
            analyses_this_month=len(this_month),
            quota_used_units=self.quota.used,
            quota_limit_units=self.quota.limit,
            quota_used_percent=self.quota.used_percent,
            eligible_count=counts[ComplianceStatus.ELIGIBLE],
            ineligible_count=counts[ComplianceStatus.INELIGIBLE],
            needs_review_count=counts[ComplianceStatus.NEEDS_REVIEW],
            failed_count=counts[ComplianceStatus.FAILED],
            soil_tests_avoided=completed,
            estimated_savings_usd=round(
                completed * self.config.soil_test_cost_usd, 2,
            ),
        )

    @property
    def report_count(self) -> int:
        """Return the number of stored reports."""
        return len(self._reports)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _max_cloud(self, params: AnalysisParams) -> float:
        if params.max_cloud_coverage is not None:
            return params.max_cloud_coverage
        return self.config.max_cloud_coverage

    def _build_report(
        self,
        field_id: str,
        crop_type: CropType,
        raw_points: List[NDVIDataPoint],
        start: date,
        end: date,
        years: int,
        interval_days: int,
        max_cloud: float,
        requested_by: str,
        units_used: float,
        start_time: float,
    ) -> SatelliteComplianceReport:
        baseline = get_crop_baseline(crop_type)
        valid = filter_by_cloud(raw_points, max_cloud)
        expected = expected_data_points(start, end, interval_days)
        avg_cloud = (
            sum(p.cloud_coverage for p in valid) / len(valid) if valid else 100.0
        )
        violations = detect_violations(
            valid, baseline, self.thresholds, self.calibration,
        )
        min_valid = self.config.min_valid_points
        confidence = calculate_confidence(
            len(valid), expected, len(violations), avg_cloud, min_valid,
        )
        status = determine_compliance_status(violations, len(valid), min_valid)
        created_at = self._clock()

        report = SatelliteComplianceReport(
            field_id=field_id,
            crop_type=crop_type,
            analysis_start=start,
            analysis_end=end,
            analysis_years=years,
            total_data_points=len(raw_points),
            valid_data_points=len(valid),
            expected_data_points=expected,
            data_coverage_percent=round(min(len(valid) / expected, 1.0) * 100, 2),
            average_cloud_coverage=round(avg_cloud, 2),
            ndvi_history=valid,
            violations=violations,
            violation_count=len(violations),
            high_severity_count=sum(
                1 for v in violations if v.severity == ViolationSeverity.HIGH
            ),
            medium_severity_count=sum(
                1 for v in violations if v.severity == ViolationSeverity.MEDIUM
            ),
            overall_confidence=confidence,
            compliance_status=status,
            processing_units_used=units_used,
            processing_time_ms=round((time.monotonic() - start_time) * 1000, 2),
            requested_by=requested_by,
            created_at=created_at,
            expires_at=created_at + timedelta(
                days=self.config.report_retention_days,
            ),
        )

        for v in violations:
            metrics.record_violation(v.violation_type.value, v.severity.value)
        metrics.record_satellite_analysis(crop_type.value, status.value)
        metrics.observe_duration(
            "satellite_analysis", time.monotonic() - start_time,
        )
        logger.info(
            "Satellite analysis %s for field %s: %s (confidence=%.3f, "
            "valid=%d/%d, violations=%d, high=%d) in %.1f ms",
            report.report_id, field_id, status.value, confidence,
            len(valid), expected, len(violations),
            report.high_severity_count, report.processing_time_ms,
        )
        return report

    def _store_failed_report(
        self,
        field: OrganicField,
        params: AnalysisParams,
        start: date,
        end: date,
        years: int,
        exc: ExternalServiceError,
        start_time: float,
    ) -> SatelliteComplianceReport:
        created_at = self._clock()
        report = SatelliteComplianceReport(
            field_id=field.field_id,
            crop_type=params.crop_type,
            analysis_start=start,
            analysis_end=end,
            analysis_years=years,
            compliance_status=ComplianceStatus.FAILED,
            processing_time_ms=round((time.monotonic() - start_time) * 1000, 2),
            requested_by=params.requested_by,
            created_at=created_at,
            expires_at=created_at + timedelta(
                days=self.config.report_retention_days,
            ),
            failure_reason=str(exc),
        )
        self._store(report)
        metrics.record_satellite_analysis(
            params.crop_type.value, ComplianceStatus.FAILED.value,
        )
        metrics.record_processing_error("satellite", exc.error_code)
        logger.error(
            "Satellite analysis %s for field %s failed: %s",
            report.report_id, field.field_id, exc,
        )
        return report

    def _store(self, report: SatelliteComplianceReport) -> None:
        if self._provenance is not None and report.compliance_status in _VERDICT_STATUSES:
            report.provenance_hash = self._provenance.record(
                entity_type="satellite_analysis",
                entity_id=report.report_id,
                action=report.compliance_status.value.lower(),
                data_hash=self._provenance.build_hash(report),
                user_id=report.requested_by,
            )
        with self._lock:
            self._reports[report.report_id] = report
            self._idx_field_reports.setdefault(report.field_id, []).append(
                report.report_id,
            )


__all__ = [
    "SatelliteComplianceAnalyzer",
    "DetectionThresholds",
    "filter_by_cloud",
    "is_seasonal_rise",
    "detect_synthetic_fertilizer",
    "detect_pesticide_application",
    "detect_land_clearing",
    "deduplicate_violations",
    "detect_violations",
    "calculate_confidence",
    "determine_compliance_status",
    "expected_data_points",
    "MIN_CONFIDENCE",
    "MAX_CONFIDENCE",
]
