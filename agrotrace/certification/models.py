# -*- coding: utf-8 -*-
"""
Certification Core Data Models

Pydantic v2 data models for the AgroTrace certification core. Defines all
enumerations, core data models and request wrappers required for:

- Batch and field registration
- Ordered chain-of-custody verification stages
- Evidence counts and eligibility validation results
- NDVI time series, violation flags and satellite compliance reports
- Certificate lifecycle, anchoring receipts and verification results

Models:
    - Enumerations (11): StageType, StageStatus, ActorRole, BatchStatus,
        CertificateGrade, CertificationStandard, CertificateStatus,
        CropType, ViolationType, ViolationSeverity, ComplianceStatus
    - Core data models: Batch, OrganicField, StageActor, StageStatusChange,
        VerificationStage, StageHistory, EvidenceCounts, ValidationIssue,
        ValidationResult, CropBaseline, NDVIDataPoint, ViolationFlag,
        SatelliteComplianceReport, SatelliteStats, AnchorReceipt,
        CertificateStatusChange, Certificate, VerificationResult
    - Request models: StageDetails, AnalysisParams, CertificateRequest

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _new_id(prefix: str) -> str:
    """Generate a short prefixed unique identifier."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# =============================================================================
# Enumerations
# =============================================================================


class StageType(str, Enum):
    """Chain-of-custody stages, in their fixed verification order."""

    HARVEST = "HARVEST"
    PACKING = "PACKING"
    COLD_CHAIN = "COLD_CHAIN"
    EXPORT = "EXPORT"
    DELIVERY = "DELIVERY"


STAGE_ORDER: List[StageType] = [
    StageType.HARVEST,
    StageType.PACKING,
    StageType.COLD_CHAIN,
    StageType.EXPORT,
    StageType.DELIVERY,
]


class StageStatus(str, Enum):
    """Review status of a single verification stage."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FLAGGED = "FLAGGED"


class ActorRole(str, Enum):
    """Roles of the parties acting on the stage ledger."""

    PRODUCER = "PRODUCER"
    QA = "QA"
    DRIVER = "DRIVER"
    EXPORTER = "EXPORTER"
    CERTIFIER = "CERTIFIER"
    ADMIN = "ADMIN"


class BatchStatus(str, Enum):
    """Registration status of a batch as recorded by the platform."""

    REGISTERED = "REGISTERED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    ARCHIVED = "ARCHIVED"


class CertificateGrade(str, Enum):
    """Certificate grades, ranked STANDARD < PREMIUM < EXPORT < ORGANIC."""

    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    EXPORT = "EXPORT"
    ORGANIC = "ORGANIC"


class CertificationStandard(str, Enum):
    """External standard a certificate attests to."""

    ORGANIC_USDA = "ORGANIC_USDA"
    ORGANIC_EU = "ORGANIC_EU"
    SENASICA = "SENASICA"
    GLOBALGAP = "GLOBALGAP"


class CertificateStatus(str, Enum):
    """Certificate lifecycle states."""

    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"
    BLOCKCHAIN_FAILED = "BLOCKCHAIN_FAILED"


class CropType(str, Enum):
    """Crops with a calibrated seasonal NDVI baseline."""

    AVOCADO = "AVOCADO"
    BLUEBERRY = "BLUEBERRY"
    STRAWBERRY = "STRAWBERRY"
    RASPBERRY = "RASPBERRY"
    BLACKBERRY = "BLACKBERRY"
    COFFEE = "COFFEE"
    CACAO = "CACAO"


class ViolationType(str, Enum):
    """Organic-farming rule violations detectable from NDVI history."""

    SYNTHETIC_FERTILIZER = "SYNTHETIC_FERTILIZER"
    PESTICIDE_APPLICATION = "PESTICIDE_APPLICATION"
    LAND_CLEARING = "LAND_CLEARING"


class ViolationSeverity(str, Enum):
    """Severity bucket of a detected violation."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ComplianceStatus(str, Enum):
    """Outcome classification of a satellite analysis run."""

    PROCESSING = "PROCESSING"
    ELIGIBLE = "ELIGIBLE"
    INELIGIBLE = "INELIGIBLE"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAILED = "FAILED"


# =============================================================================
# Registration models
# =============================================================================


class Batch(BaseModel):
    """A traceable shipment or lot.

    Attributes:
        batch_id: Unique batch identifier.
        producer_id: Producer that registered the batch.
        crop_type: Crop contained in the batch.
        field_ids: Fields the batch was harvested from.
        status: Platform-side batch status.
        registered_at: Registration timestamp (UTC).
    """

    batch_id: str = Field(
        default="",
        description="Unique batch identifier",
    )
    producer_id: str = Field(
        ...,
        description="Producer that registered the batch",
    )
    crop_type: CropType = Field(
        ...,
        description="Crop contained in the batch",
    )
    field_ids: List[str] = Field(
        default_factory=list,
        description="Fields the batch was harvested from",
    )
    status: BatchStatus = Field(
        default=BatchStatus.REGISTERED,
        description="Platform-side batch status",
    )
    registered_at: datetime = Field(
        default_factory=_utcnow,
        description="Registration timestamp (UTC)",
    )

    model_config = ConfigDict(from_attributes=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if not self.batch_id:
            self.batch_id = _new_id("BAT")


class OrganicField(BaseModel):
    """A producer's field under organic management."""

    field_id: str = Field(
        default="",
        description="Unique field identifier",
    )
    producer_id: str = Field(
        ...,
        description="Producer managing the field",
    )
    crop_type: CropType = Field(
        ...,
        description="Crop grown on the field",
    )
    hectares: float = Field(
        default=0.0, ge=0.0,
        description="Field area in hectares",
    )
    latitude: Optional[float] = Field(
        None, ge=-90.0, le=90.0,
        description="Centroid latitude (WGS84)",
    )
    longitude: Optional[float] = Field(
        None, ge=-180.0, le=180.0,
        description="Centroid longitude (WGS84)",
    )

    model_config = ConfigDict(from_attributes=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if not self.field_id:
            self.field_id = _new_id("FLD")


# =============================================================================
# Stage ledger models
# =============================================================================


class StageActor(BaseModel):
    """The party performing a stage operation."""

    actor_id: str = Field(..., min_length=1, description="Actor identifier")
    role: ActorRole = Field(..., description="Role the actor acts under")

    model_config = ConfigDict(from_attributes=True, frozen=True)


class StageDetails(BaseModel):
    """Optional descriptive data captured when a stage is created."""

    location: Optional[str] = Field(None, description="Free-text location")
    latitude: Optional[float] = Field(
        None, ge=-90.0, le=90.0,
        description="Latitude where the stage happened",
    )
    longitude: Optional[float] = Field(
        None, ge=-180.0, le=180.0,
        description="Longitude where the stage happened",
    )
    notes: Optional[str] = Field(None, description="Actor notes")
    evidence_url: Optional[str] = Field(
        None,
        description="Link to supporting evidence held in object storage",
    )

    model_config = ConfigDict(from_attributes=True)


class StageStatusChange(BaseModel):
    """One status change of a verification stage."""

    from_status: Optional[StageStatus] = Field(
        None, description="Status before the change (None on creation)",
    )
    to_status: StageStatus = Field(..., description="Status after the change")
    actor_id: str = Field(..., description="Actor that made the change")
    notes: Optional[str] = Field(None, description="Reviewer notes")
    changed_at: datetime = Field(
        default_factory=_utcnow,
        description="Timestamp of the change (UTC)",
    )

    model_config = ConfigDict(from_attributes=True)


class VerificationStage(BaseModel):
    """One chain-of-custody step for a batch.

    Attributes:
        stage_id: Unique stage identifier.
        batch_id: Batch the stage belongs to.
        stage_type: Position in the fixed custody order.
        status: Current review status.
        created_by: Actor that created the stage.
        created_at: Creation timestamp.
        updated_by: Actor of the last status change.
        updated_at: Timestamp of the last status change.
        completed_at: Timestamp the stage was approved.
        details: Location, coordinates, notes and evidence link.
        status_history: Every status the stage has passed through.
    """

    stage_id: str = Field(
        default="",
        description="Unique stage identifier",
    )
    batch_id: str = Field(..., description="Batch the stage belongs to")
    stage_type: StageType = Field(..., description="Custody stage type")
    status: StageStatus = Field(
        default=StageStatus.PENDING,
        description="Current review status",
    )
    created_by: str = Field(..., description="Actor that created the stage")
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="Creation timestamp (UTC)",
    )
    updated_by: Optional[str] = Field(
        None, description="Actor of the last status change",
    )
    updated_at: Optional[datetime] = Field(
        None, description="Timestamp of the last status change",
    )
    completed_at: Optional[datetime] = Field(
        None, description="Timestamp the stage was approved",
    )
    details: StageDetails = Field(
        default_factory=StageDetails,
        description="Location, coordinates, notes and evidence link",
    )
    status_history: List[StageStatusChange] = Field(
        default_factory=list,
        description="Every status the stage has passed through",
    )

    model_config = ConfigDict(from_attributes=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if not self.stage_id:
            self.stage_id = _new_id("STG")


class StageHistory(BaseModel):
    """Read model describing a batch's custody progress."""

    batch_id: str = Field(..., description="Batch identifier")
    stages: List[VerificationStage] = Field(
        default_factory=list,
        description="Stages in custody order",
    )
    current_stage: Optional[StageType] = Field(
        None, description="Latest approved stage type",
    )
    next_stage: Optional[StageType] = Field(
        None, description="Stage type that may be created next",
    )
    is_complete: bool = Field(
        default=False,
        description="True once DELIVERY is approved",
    )
    progress_percent: float = Field(
        default=0.0, ge=0.0, le=100.0,
        description="Approved stages as a share of all stages",
    )
    version: int = Field(
        default=0, ge=0,
        description="Ledger version for optimistic concurrency checks",
    )

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Eligibility models
# =============================================================================


class EvidenceCounts(BaseModel):
    """Evidence gathered for a field or batch within a trailing window."""

    inspections: int = Field(default=0, ge=0, description="Inspections")
    verified_inspections: int = Field(
        default=0, ge=0, description="Inspections verified by a certifier",
    )
    photos: int = Field(default=0, ge=0, description="Inspection photos")
    organic_inputs: int = Field(
        default=0, ge=0, description="Organic inputs declared",
    )
    verified_organic_inputs: int = Field(
        default=0, ge=0, description="Organic inputs with verified receipts",
    )
    window_days: int = Field(
        default=90, ge=1, description="Trailing window the counts cover",
    )

    model_config = ConfigDict(from_attributes=True)

    def __add__(self, other: EvidenceCounts) -> EvidenceCounts:
        return EvidenceCounts(
            inspections=self.inspections + other.inspections,
            verified_inspections=(
                self.verified_inspections + other.verified_inspections
            ),
            photos=self.photos + other.photos,
            organic_inputs=self.organic_inputs + other.organic_inputs,
            verified_organic_inputs=(
                self.verified_organic_inputs + other.verified_organic_inputs
            ),
            window_days=max(self.window_days, other.window_days),
        )


class ValidationIssue(BaseModel):
    """One eligibility error or warning."""

    code: str = Field(..., description="Stable machine-readable code")
    field: str = Field(..., description="Offending input or evidence field")
    message: str = Field(..., description="Human-readable explanation")
    required: Optional[float] = Field(
        None, description="Required value, where numeric",
    )
    actual: Optional[float] = Field(
        None, description="Actual value, where numeric",
    )

    model_config = ConfigDict(from_attributes=True)


class ValidationResult(BaseModel):
    """Outcome of an eligibility evaluation."""

    is_valid: bool = Field(..., description="True when no errors were found")
    grade: CertificateGrade = Field(..., description="Grade evaluated")
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)

    def has_error(self, code: str) -> bool:
        """Return True if an error with ``code`` was recorded."""
        return any(e.code == code for e in self.errors)


# =============================================================================
# Satellite models
# =============================================================================


class CropBaseline(BaseModel):
    """Seasonal NDVI baseline for a crop.

    Months are calendar months (1 = January).
    """

    crop_type: CropType = Field(..., description="Crop the baseline is for")
    peak_months: List[int] = Field(
        ..., description="Months of expected canopy peak",
    )
    low_months: List[int] = Field(
        ..., description="Months of expected canopy low",
    )
    healthy_min: float = Field(..., ge=-1.0, le=1.0)
    healthy_max: float = Field(..., ge=-1.0, le=1.0)
    synthetic_threshold: float = Field(
        ..., gt=0.0, le=1.0,
        description="NDVI rise per window indicating synthetic fertilizer",
    )

    model_config = ConfigDict(from_attributes=True, frozen=True)


class NDVIDataPoint(BaseModel):
    """One dated vegetation-index sample for a field."""

    sample_date: date = Field(..., description="Acquisition date")
    ndvi_average: float = Field(..., ge=-1.0, le=1.0)
    ndvi_std_dev: float = Field(default=0.0, ge=0.0)
    ndvi_min: float = Field(default=-1.0, ge=-1.0, le=1.0)
    ndvi_max: float = Field(default=1.0, ge=-1.0, le=1.0)
    cloud_coverage: float = Field(
        default=0.0, ge=0.0, le=100.0,
        description="Scene cloud coverage percentage",
    )
    confidence: float = Field(
        default=1.0, ge=0.0, le=1.0,
        description="Provider confidence in the sample",
    )
    source: str = Field(default="sentinel2", description="Imagery source")

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ViolationFlag(BaseModel):
    """A detected organic-rule breach."""

    detected_on: date = Field(..., description="Sample date the rule fired on")
    violation_type: ViolationType = Field(...)
    severity: ViolationSeverity = Field(...)
    confidence: float = Field(..., ge=0.0, le=1.0)
    affected_area_percent: float = Field(default=100.0, ge=0.0, le=100.0)
    ndvi_delta: float = Field(
        ..., description="Signed NDVI change that triggered the rule",
    )
    duration_days: int = Field(
        default=0, ge=0,
        description="Days the signature persisted (land clearing)",
    )
    description: str = Field(default="")

    model_config = ConfigDict(from_attributes=True)


class AnalysisParams(BaseModel):
    """Parameters of a satellite compliance analysis run."""

    crop_type: CropType = Field(..., description="Crop grown on the field")
    analysis_years: Optional[int] = Field(
        None, ge=1, le=10,
        description="History length in years (config default when None)",
    )
    interval_days: Optional[int] = Field(
        None, ge=1, le=365,
        description="Expected sample spacing (config default when None)",
    )
    max_cloud_coverage: Optional[float] = Field(
        None, ge=0.0, le=100.0,
        description="Cloud ceiling (config default when None)",
    )
    requested_by: str = Field(default="system")

    model_config = ConfigDict(from_attributes=True)


class SatelliteComplianceReport(BaseModel):
    """Analyzer output for one field and analysis window."""

    report_id: str = Field(default="")
    field_id: str = Field(...)
    crop_type: CropType = Field(...)
    analysis_start: date = Field(...)
    analysis_end: date = Field(...)
    analysis_years: int = Field(default=3, ge=1)
    total_data_points: int = Field(default=0, ge=0)
    valid_data_points: int = Field(default=0, ge=0)
    expected_data_points: int = Field(default=0, ge=0)
    data_coverage_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    average_cloud_coverage: float = Field(default=100.0, ge=0.0, le=100.0)
    ndvi_history: List[NDVIDataPoint] = Field(default_factory=list)
    violations: List[ViolationFlag] = Field(default_factory=list)
    violation_count: int = Field(default=0, ge=0)
    high_severity_count: int = Field(default=0, ge=0)
    medium_severity_count: int = Field(default=0, ge=0)
    overall_confidence: float = Field(default=0.5, ge=0.5, le=1.0)
    compliance_status: ComplianceStatus = Field(
        default=ComplianceStatus.PROCESSING,
    )
    processing_units_used: float = Field(default=0.0, ge=0.0)
    processing_time_ms: float = Field(default=0.0, ge=0.0)
    requested_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime = Field(...)
    failure_reason: Optional[str] = Field(None)
    provenance_hash: str = Field(default="")

    model_config = ConfigDict(from_attributes=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if not self.report_id:
            self.report_id = _new_id("SAT")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True once the report may no longer be relied on."""
        return (now or _utcnow()) >= self.expires_at


class SatelliteStats(BaseModel):
    """Usage summary of the satellite analyzer."""

    analyses_this_month: int = Field(default=0, ge=0)
    quota_used_units: float = Field(default=0.0, ge=0.0)
    quota_limit_units: float = Field(default=0.0, ge=0.0)
    quota_used_percent: float = Field(default=0.0, ge=0.0)
    eligible_count: int = Field(default=0, ge=0)
    ineligible_count: int = Field(default=0, ge=0)
    needs_review_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    soil_tests_avoided: int = Field(default=0, ge=0)
    estimated_savings_usd: float = Field(default=0.0, ge=0.0)

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Certificate models
# =============================================================================


class CertificateRequest(BaseModel):
    """Input for certificate generation."""

    batch_id: str = Field(..., min_length=1)
    field_ids: List[str] = Field(default_factory=list)
    grade: CertificateGrade = Field(...)
    standard: Optional[CertificationStandard] = Field(None)
    certifying_body: str = Field(default="AgroTrace Certification")
    requested_by: str = Field(..., min_length=1)
    validity_days: Optional[int] = Field(None, ge=1, le=1825)
    supersedes_certificate_id: Optional[str] = Field(None)
    idempotency_key: Optional[str] = Field(
        None,
        description="Caller-supplied key; defaults to a request fingerprint",
    )

    model_config = ConfigDict(from_attributes=True)


class AnchorReceipt(BaseModel):
    """Proof that a content hash was anchored on a ledger."""

    tx_hash: str = Field(..., min_length=1)
    network: str = Field(...)
    anchored_at: datetime = Field(default_factory=_utcnow)
    explorer_url: Optional[str] = Field(None)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class CertificateStatusChange(BaseModel):
    """One certificate lifecycle transition."""

    from_status: Optional[CertificateStatus] = Field(None)
    to_status: CertificateStatus = Field(...)
    actor_id: str = Field(default="system")
    reason: Optional[str] = Field(None)
    changed_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)


class Certificate(BaseModel):
    """A quality or organic certificate moving through issuance.

    Attributes:
        certificate_id: Unique certificate identifier.
        certificate_number: Human-facing number, assigned once.
        batch_id: Certified batch.
        field_ids: Certified fields (organic grade).
        grade: Certificate grade.
        standard: Standard attested to.
        status: Lifecycle state.
        payload: Canonical payload snapshot the content hash covers.
        content_hash: SHA-256 hex digest of the canonical payload.
        content_id: Content-addressed storage id, None for hash-only.
        anchor: Ledger anchoring receipt once approved.
    """

    certificate_id: str = Field(default="")
    certificate_number: Optional[str] = Field(None)
    batch_id: str = Field(...)
    field_ids: List[str] = Field(default_factory=list)
    grade: CertificateGrade = Field(...)
    standard: Optional[CertificationStandard] = Field(None)
    certifying_body: str = Field(default="AgroTrace Certification")
    status: CertificateStatus = Field(default=CertificateStatus.DRAFT)
    valid_from: Optional[datetime] = Field(None)
    valid_to: Optional[datetime] = Field(None)
    payload: Dict[str, Any] = Field(default_factory=dict)
    content_hash: Optional[str] = Field(None)
    content_id: Optional[str] = Field(None)
    anchor: Optional[AnchorReceipt] = Field(None)
    anchor_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(None)
    requested_by: str = Field(...)
    reviewed_by: Optional[str] = Field(None)
    reviewed_at: Optional[datetime] = Field(None)
    rejection_reason: Optional[str] = Field(None)
    revoked_at: Optional[datetime] = Field(None)
    revocation_reason: Optional[str] = Field(None)
    supersedes_certificate_id: Optional[str] = Field(None)
    idempotency_key: str = Field(default="")
    status_history: List[CertificateStatusChange] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if not self.certificate_id:
            self.certificate_id = _new_id("CRT")

    @property
    def is_hash_only(self) -> bool:
        """True when the payload could not be pinned."""
        return self.content_hash is not None and self.content_id is None


class VerificationResult(BaseModel):
    """Integrity check of an issued certificate."""

    certificate_id: str = Field(...)
    certificate_number: Optional[str] = Field(None)
    is_valid: bool = Field(...)
    hash_matches: bool = Field(...)
    is_expired: bool = Field(...)
    is_revoked: bool = Field(...)
    is_anchored: bool = Field(...)
    checked_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)


__all__ = [
    # Enumerations
    "StageType",
    "STAGE_ORDER",
    "StageStatus",
    "ActorRole",
    "BatchStatus",
    "CertificateGrade",
    "CertificationStandard",
    "CertificateStatus",
    "CropType",
    "ViolationType",
    "ViolationSeverity",
    "ComplianceStatus",
    # Registration
    "Batch",
    "OrganicField",
    # Stage ledger
    "StageActor",
    "StageDetails",
    "StageStatusChange",
    "VerificationStage",
    "StageHistory",
    # Eligibility
    "EvidenceCounts",
    "ValidationIssue",
    "ValidationResult",
    # Satellite
    "CropBaseline",
    "NDVIDataPoint",
    "ViolationFlag",
    "AnalysisParams",
    "SatelliteComplianceReport",
    "SatelliteStats",
    # Certificates
    "CertificateRequest",
    "AnchorReceipt",
    "CertificateStatusChange",
    "Certificate",
    "VerificationResult",
]
