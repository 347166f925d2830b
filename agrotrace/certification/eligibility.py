# -*- coding: utf-8 -*-
"""
Certificate Eligibility Evaluator

Decides whether a batch (and, for organic certificates, its fields) can be
issued a requested certificate grade by combining three independent
signals:

    (a) custody stages: every stage the grade requires is APPROVED in the
        stage ledger (``REQUIRED_STAGES_BY_GRADE``);
    (b) evidence: at least 4 inspections and 12 photos in the trailing
        90-day window, and at least 3 verified organic inputs;
    (c) satellite verdict (ORGANIC only): the latest unexpired satellite
        compliance report of every certified field is ELIGIBLE.

Every unmet requirement becomes a ``ValidationIssue`` with a stable code,
the offending field and, where numeric, the required and actual values.

Grade hierarchy: STANDARD (1) < PREMIUM (2) < EXPORT (3) < ORGANIC (4).

Example:
    >>> evaluator = CertificateEligibilityEvaluator(
    ...     ledger=ledger, evidence=evidence, satellite=analyzer)
    >>> result = evaluator.evaluate("BAT-1", CertificateGrade.STANDARD)
    >>> result.is_valid
    True

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Union

from agrotrace.certification import metrics
from agrotrace.certification.config import CertificationConfig, get_config
from agrotrace.certification.evidence import EvidenceAggregator
from agrotrace.certification.models import (
    STAGE_ORDER,
    CertificateGrade,
    ComplianceStatus,
    EvidenceCounts,
    StageType,
    ValidationIssue,
    ValidationResult,
    _utcnow,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.certification.satellite_analysis import SatelliteComplianceAnalyzer
from agrotrace.certification.stage_ledger import StageLedger
from agrotrace.exceptions import EligibilityError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------

_STANDARD_STAGES = frozenset({StageType.HARVEST, StageType.PACKING})
_PREMIUM_STAGES = _STANDARD_STAGES | {StageType.COLD_CHAIN}
_EXPORT_STAGES = _PREMIUM_STAGES | {StageType.EXPORT, StageType.DELIVERY}

REQUIRED_STAGES_BY_GRADE: Dict[CertificateGrade, FrozenSet[StageType]] = {
    CertificateGrade.STANDARD: _STANDARD_STAGES,
    CertificateGrade.PREMIUM: _PREMIUM_STAGES,
    CertificateGrade.EXPORT: _EXPORT_STAGES,
    CertificateGrade.ORGANIC: _EXPORT_STAGES,
}

GRADE_RANK: Dict[CertificateGrade, int] = {
    CertificateGrade.STANDARD: 1,
    CertificateGrade.PREMIUM: 2,
    CertificateGrade.EXPORT: 3,
    CertificateGrade.ORGANIC: 4,
}

SATELLITE_REQUIRED_GRADES = frozenset({CertificateGrade.ORGANIC})


def can_upgrade(
    current: Union[CertificateGrade, str],
    target: Union[CertificateGrade, str],
) -> bool:
    """True iff ``target`` ranks strictly above ``current``."""
    return GRADE_RANK[CertificateGrade(target)] > GRADE_RANK[CertificateGrade(current)]


# =============================================================================
# CertificateEligibilityEvaluator
# =============================================================================


class CertificateEligibilityEvaluator:
    """Combines ledger, evidence and satellite signals into a verdict.

    Attributes:
        config: CertificationConfig instance.
        ledger: StageLedger holding custody stages.
        evidence: EvidenceAggregator supplying recent evidence counts.
        satellite: SatelliteComplianceAnalyzer holding field reports.
    """

    def __init__(
        self,
        ledger: StageLedger,
        evidence: EvidenceAggregator,
        satellite: Optional[SatelliteComplianceAnalyzer] = None,
        config: Optional[CertificationConfig] = None,
        provenance: Optional[ProvenanceTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize CertificateEligibilityEvaluator.

        Args:
            ledger: StageLedger holding the custody stages.
            evidence: Evidence collaborator for inspections and inputs.
            satellite: Analyzer serving the latest report per field.
                Without it ORGANIC evaluations report every field as
                SATELLITE_REPORT_MISSING.
            config: Optional configuration. Uses global config if None.
            provenance: Optional ProvenanceTracker instance.
            clock: Optional UTC clock, for deterministic timestamps.
        """
        self.config = config or get_config()
        self.ledger = ledger
        self.evidence = evidence
        self.satellite = satellite
        self._provenance = provenance
        self._clock = clock or _utcnow
        logger.info("CertificateEligibilityEvaluator initialized")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(
        self,
        batch_id: str,
        grade: Union[CertificateGrade, str],
        field_ids: Sequence[str] = (),
    ) -> ValidationResult:
        """Evaluate whether ``batch_id`` qualifies for ``grade``.

        Args:
            batch_id: Batch to certify.
            grade: Requested certificate grade.
            field_ids: Fields covered by the certificate; required for
                ORGANIC.

        Returns:
            ValidationResult with every error and warning found.

        Raises:
            NotFoundError: If the batch is not registered.
        """
        start_time = time.monotonic()
        grade = CertificateGrade(grade)
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        self._check_stages(batch_id, grade, errors, warnings)
        self._check_evidence(batch_id, field_ids, errors, warnings)
        if grade in SATELLITE_REQUIRED_GRADES:
            self._check_satellite(field_ids, errors, warnings)

        result = ValidationResult(
            is_valid=not errors,
            grade=grade,
            errors=errors,
            warnings=warnings,
            evaluated_at=self._clock(),
        )

        if self._provenance is not None:
            self._provenance.record(
                entity_type="eligibility_evaluation",
                entity_id=batch_id,
                action=f"evaluate_{grade.value.lower()}",
                data_hash=self._provenance.build_hash(result),
            )
        metrics.record_eligibility_evaluation(
            grade.value, "eligible" if result.is_valid else "not_eligible",
        )
        elapsed = time.monotonic() - start_time
        metrics.observe_duration("evaluate_eligibility", elapsed)
        logger.info(
            "Eligibility of batch %s for %s: valid=%s errors=%s "
            "warnings=%d (%.1f ms)",
            batch_id, grade.value, result.is_valid,
            [e.code for e in errors], len(warnings), elapsed * 1000,
        )
        return result

    def require_eligible(
        self,
        batch_id: str,
        grade: Union[CertificateGrade, str],
        field_ids: Sequence[str] = (),
    ) -> ValidationResult:
        """Evaluate and raise if the grade is not achievable.

        Raises:
            EligibilityError: Carrying the failed ValidationResult.
        """
        result = self.evaluate(batch_id, grade, field_ids)
        if not result.is_valid:
            raise EligibilityError(
                f"Batch {batch_id} is not eligible for a "
                f"{result.grade.value} certificate: "
                f"{', '.join(e.code for e in result.errors)}",
                errors=[e.model_dump() for e in result.errors],
                result=result,
                context={"batch_id": batch_id, "grade": result.grade.value},
            )
        return result

    def missing_stages(
        self, batch_id: str, grade: Union[CertificateGrade, str],
    ) -> List[StageType]:
        """Required stages of ``grade`` not yet approved, in custody order."""
        required = REQUIRED_STAGES_BY_GRADE[CertificateGrade(grade)]
        approved = self.ledger.get_approved_stage_types(batch_id)
        return [t for t in STAGE_ORDER if t in required and t not in approved]

    @staticmethod
    def can_upgrade(
        current: Union[CertificateGrade, str],
        target: Union[CertificateGrade, str],
    ) -> bool:
        """True iff ``target`` ranks strictly above ``current``."""
        return can_upgrade(current, target)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_stages(
        self,
        batch_id: str,
        grade: CertificateGrade,
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ) -> None:
        required = REQUIRED_STAGES_BY_GRADE[grade]
        approved = self.ledger.get_approved_stage_types(batch_id)
        complete = self.ledger.is_chain_complete(batch_id)

        if not complete:
            issue = ValidationIssue(
                code="CHAIN_INCOMPLETE",
                field="stages",
                message=(
                    f"Custody chain incomplete: {len(approved)} of "
                    f"{len(STAGE_ORDER)} stages approved"
                ),
                required=len(STAGE_ORDER),
                actual=len(approved),
            )
            if StageType.DELIVERY in required:
                errors.append(issue)
            else:
                warnings.append(issue)

        for stage_type in STAGE_ORDER:
            if stage_type in required and stage_type not in approved:
                errors.append(ValidationIssue(
                    code="MISSING_STAGE",
                    field=f"stages.{stage_type.value}",
                    message=(
                        f"{stage_type.value} stage must be approved for a "
                        f"{grade.value} certificate"
                    ),
                ))

    def _check_evidence(
        self,
        batch_id: str,
        field_ids: Sequence[str],
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ) -> None:
        cfg = self.config
        window = cfg.evidence_window_days
        counts = EvidenceCounts(window_days=window)
        for ref in [batch_id, *field_ids]:
            counts = counts + self.evidence.count_recent_evidence(ref, window)

        minimums = (
            ("INSUFFICIENT_INSPECTIONS", "inspections",
             cfg.min_inspections, counts.inspections,
             f"inspections in the last {window} days"),
            ("INSUFFICIENT_PHOTOS", "photos",
             cfg.min_photos, counts.photos,
             f"inspection photos in the last {window} days"),
            ("INSUFFICIENT_ORGANIC_INPUTS", "organicInputs",
             cfg.min_verified_organic_inputs, counts.verified_organic_inputs,
             "verified organic inputs"),
        )
        for code, field, required, actual, label in minimums:
            if actual < required:
                errors.append(ValidationIssue(
                    code=code,
                    field=field,
                    message=f"At least {required} {label} required, found {actual}",
                    required=required,
                    actual=actual,
                ))

        unverified_inspections = counts.inspections - counts.verified_inspections
        if unverified_inspections > 0:
            warnings.append(ValidationIssue(
                code="UNVERIFIED_INSPECTIONS",
                field="inspections",
                message=f"{unverified_inspections} inspections not yet verified",
                actual=unverified_inspections,
            ))
        unverified_inputs = counts.organic_inputs - counts.verified_organic_inputs
        if unverified_inputs > 0:
            warnings.append(ValidationIssue(
                code="UNVERIFIED_ORGANIC_INPUTS",
                field="organicInputs",
                message=f"{unverified_inputs} organic inputs lack verified receipts",
                actual=unverified_inputs,
            ))

    def _check_satellite(
        self,
        field_ids: Sequence[str],
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ) -> None:
        if not field_ids:
            errors.append(ValidationIssue(
                code="NO_FIELDS",
                field="fieldIds",
                message="Organic certificates must reference at least one field",
            ))
            return

        now = self._clock()
        expiry_horizon = timedelta(days=self.config.report_expiry_warning_days)
        for field_id in field_ids:
            report = (
                self.satellite.get_latest_report(field_id)
                if self.satellite is not None else None
            )
            if report is None:
                errors.append(ValidationIssue(
                    code="SATELLITE_REPORT_MISSING",
                    field=f"satellite.{field_id}",
                    message=(
                        f"No unexpired satellite compliance verdict on file "
                        f"for field {field_id}"
                    ),
                ))
                continue
            if report.compliance_status != ComplianceStatus.ELIGIBLE:
                errors.append(ValidationIssue(
                    code="SATELLITE_NOT_ELIGIBLE",
                    field=f"satellite.{field_id}",
                    message=(
                        f"Satellite verdict for field {field_id} is "
                        f"{report.compliance_status.value} "
                        f"({report.violation_count} violations)"
                    ),
                ))
                continue
            if report.overall_confidence < self.config.low_confidence_warning:
                warnings.append(ValidationIssue(
                    code="SATELLITE_LOW_CONFIDENCE",
                    field=f"satellite.{field_id}",
                    message=(
                        f"Satellite verdict confidence "
                        f"{report.overall_confidence:.2f} is low"
                    ),
                    required=self.config.low_confidence_warning,
                    actual=report.overall_confidence,
                ))
            if report.expires_at - now <= expiry_horizon:
                warnings.append(ValidationIssue(
                    code="REPORT_EXPIRING_SOON",
                    field=f"satellite.{field_id}",
                    message=(
                        f"Satellite report {report.report_id} expires on "
                        f"{report.expires_at.date().isoformat()}"
                    ),
                ))


__all__ = [
    "CertificateEligibilityEvaluator",
    "REQUIRED_STAGES_BY_GRADE",
    "GRADE_RANK",
    "SATELLITE_REQUIRED_GRADES",
    "can_upgrade",
]
