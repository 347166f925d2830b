# -*- coding: utf-8 -*-
"""
AgroTrace Certification Core
============================

This package tracks the custody chain of export batches, decides which
certificate grade a batch qualifies for, analyses multi-year satellite
vegetation-index history of organic fields, and issues certificates whose
content hash is anchored on a public ledger. It supports:

- Ordered custody stages (HARVEST, PACKING, COLD_CHAIN, EXPORT, DELIVERY)
  with role-based review and per-batch optimistic versioning
- Grade eligibility (STANDARD, PREMIUM, EXPORT, ORGANIC) from stages,
  recent evidence and satellite verdicts
- NDVI rule detection for synthetic fertilizer, pesticide application and
  land clearing with a monthly processing-unit quota
- Certificate lifecycle with idempotent issuance, anchoring retries,
  rejection, revocation and integrity verification
- SHA-256 provenance chain tracking for complete audit trails
- Prometheus metrics for observability
- Thread-safe configuration with AGROTRACE_CERT_ env prefix

Key Components:
    - config: CertificationConfig with AGROTRACE_CERT_ env prefix
    - models: Pydantic v2 models for all data structures
    - stage_ledger: Custody stage state machine
    - eligibility: Certificate eligibility evaluator
    - satellite_analysis: Satellite compliance analyzer
    - certificate_issuer: Certificate lifecycle engine
    - anchoring: Anchor and pin collaborators
    - provenance: SHA-256 chain-hashed audit trails
    - metrics: Prometheus metrics
    - setup: CertificationService facade

Example:
    >>> from agrotrace.certification import CertificationService
    >>> service = CertificationService()
    >>> service.register_batch(Batch(producer_id="PRD-1", crop_type="AVOCADO"))
"""

from agrotrace.certification.config import (
    CertificationConfig,
    get_config,
    reset_config,
    set_config,
)
from agrotrace.certification.models import (
    STAGE_ORDER,
    ActorRole,
    AnalysisParams,
    AnchorReceipt,
    Batch,
    BatchStatus,
    Certificate,
    CertificateGrade,
    CertificateRequest,
    CertificateStatus,
    CertificationStandard,
    ComplianceStatus,
    CropType,
    EvidenceCounts,
    NDVIDataPoint,
    OrganicField,
    SatelliteComplianceReport,
    SatelliteStats,
    StageActor,
    StageDetails,
    StageHistory,
    StageStatus,
    StageType,
    ValidationIssue,
    ValidationResult,
    VerificationResult,
    VerificationStage,
    ViolationFlag,
    ViolationSeverity,
    ViolationType,
)
from agrotrace.certification.stage_ledger import StageLedger
from agrotrace.certification.eligibility import (
    CertificateEligibilityEvaluator,
    GRADE_RANK,
    REQUIRED_STAGES_BY_GRADE,
    can_upgrade,
)
from agrotrace.certification.satellite_analysis import SatelliteComplianceAnalyzer
from agrotrace.certification.certificate_issuer import CertificateIssuer
from agrotrace.certification.evidence import (
    EvidenceAggregator,
    InMemoryEvidenceAggregator,
)
from agrotrace.certification.imagery import ImageryProvider, SimulatedImageryProvider
from agrotrace.certification.anchoring import (
    BlockchainAnchor,
    HttpAnchorClient,
    HttpPinService,
    PinService,
    SandboxAnchorClient,
    SandboxPinService,
)
from agrotrace.certification.quota import ProcessingQuota
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.certification.setup import (
    CertificationService,
    get_certification_service,
    reset_certification_service,
)

__all__ = [
    "CertificationConfig",
    "get_config",
    "set_config",
    "reset_config",
    "STAGE_ORDER",
    "ActorRole",
    "AnalysisParams",
    "AnchorReceipt",
    "Batch",
    "BatchStatus",
    "Certificate",
    "CertificateGrade",
    "CertificateRequest",
    "CertificateStatus",
    "CertificationStandard",
    "ComplianceStatus",
    "CropType",
    "EvidenceCounts",
    "NDVIDataPoint",
    "OrganicField",
    "SatelliteComplianceReport",
    "SatelliteStats",
    "StageActor",
    "StageDetails",
    "StageHistory",
    "StageStatus",
    "StageType",
    "ValidationIssue",
    "ValidationResult",
    "VerificationResult",
    "VerificationStage",
    "ViolationFlag",
    "ViolationSeverity",
    "ViolationType",
    "StageLedger",
    "CertificateEligibilityEvaluator",
    "GRADE_RANK",
    "REQUIRED_STAGES_BY_GRADE",
    "can_upgrade",
    "SatelliteComplianceAnalyzer",
    "CertificateIssuer",
    "EvidenceAggregator",
    "InMemoryEvidenceAggregator",
    "ImageryProvider",
    "SimulatedImageryProvider",
    "BlockchainAnchor",
    "PinService",
    "HttpAnchorClient",
    "HttpPinService",
    "SandboxAnchorClient",
    "SandboxPinService",
    "ProcessingQuota",
    "ProvenanceTracker",
    "CertificationService",
    "get_certification_service",
    "reset_certification_service",
]
