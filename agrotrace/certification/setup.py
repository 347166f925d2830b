# -*- coding: utf-8 -*-
"""
Certification Service Facade

Provides the main service class and a process-wide singleton:
- CertificationService: Composes the stage ledger, eligibility evaluator,
  satellite compliance analyzer and certificate issuer behind one API
- get_certification_service(): Thread-safe lazily created singleton
- reset_certification_service(): Replace the singleton (tests, reloads)

Collaborators (evidence store, imagery provider, anchor and pin clients)
can be injected; otherwise sandbox or HTTP implementations are chosen from
configuration.

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from agrotrace.certification.anchoring import (
    BlockchainAnchor,
    HttpAnchorClient,
    HttpPinService,
    PinService,
    SandboxAnchorClient,
    SandboxPinService,
)
from agrotrace.certification.certificate_issuer import CertificateIssuer
from agrotrace.certification.concurrency import shutdown_executor
from agrotrace.certification.config import CertificationConfig, get_config
from agrotrace.certification.eligibility import CertificateEligibilityEvaluator
from agrotrace.certification.evidence import (
    EvidenceAggregator,
    InMemoryEvidenceAggregator,
)
from agrotrace.certification.imagery import ImageryProvider, SimulatedImageryProvider
from agrotrace.certification.models import (
    AnalysisParams,
    Batch,
    Certificate,
    CertificateGrade,
    CertificateRequest,
    CertificateStatus,
    OrganicField,
    SatelliteComplianceReport,
    StageActor,
    StageDetails,
    StageHistory,
    StageStatus,
    StageType,
    ValidationResult,
    VerificationResult,
    VerificationStage,
    _utcnow,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.certification.quota import ProcessingQuota
from agrotrace.certification.satellite_analysis import SatelliteComplianceAnalyzer
from agrotrace.certification.stage_ledger import StageLedger
from agrotrace.exceptions import NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)


class CertificationService:
    """Facade composing all certification engines.

    Attributes:
        config: CertificationConfig instance.
        provenance: Shared ProvenanceTracker.
        ledger: StageLedger instance.
        evidence: EvidenceAggregator instance.
        satellite: SatelliteComplianceAnalyzer instance.
        evaluator: CertificateEligibilityEvaluator instance.
        issuer: CertificateIssuer instance.
    """

    def __init__(
        self,
        config: Optional[CertificationConfig] = None,
        evidence: Optional[EvidenceAggregator] = None,
        imagery: Optional[ImageryProvider] = None,
        anchor: Optional[BlockchainAnchor] = None,
        pin_service: Optional[PinService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the service with all engines.

        Args:
            config: CertificationConfig instance. If None, loads from env.
            evidence: Evidence collaborator; in-memory store when None.
            imagery: Imagery provider; simulated provider when None.
            anchor: Anchor client; chosen from config when None.
            pin_service: Pin client; chosen from config when None.
            clock: Optional UTC clock shared by every engine.
            sleep: Sleep function used between anchor retries.

        Raises:
            ValidationError: If sandbox mode is off, no anchor is given and
                no anchor_url is configured.
        """
        self.config = config or get_config()
        self._clock = clock or _utcnow
        self.provenance = ProvenanceTracker()
        self._fields: Dict[str, OrganicField] = {}
        self._fields_lock = threading.Lock()

        self.ledger = StageLedger(
            config=self.config, provenance=self.provenance, clock=self._clock,
        )
        self.evidence = evidence or InMemoryEvidenceAggregator(clock=self._clock)
        self.quota = ProcessingQuota(
            self.config.monthly_processing_units, clock=self._clock,
        )
        self.satellite = SatelliteComplianceAnalyzer(
            config=self.config,
            imagery=imagery or SimulatedImageryProvider(
                interval_days=self.config.sampling_interval_days,
            ),
            quota=self.quota,
            provenance=self.provenance,
            clock=self._clock,
        )
        self.evaluator = CertificateEligibilityEvaluator(
            ledger=self.ledger,
            evidence=self.evidence,
            satellite=self.satellite,
            config=self.config,
            provenance=self.provenance,
            clock=self._clock,
        )
        self.issuer = CertificateIssuer(
            evaluator=self.evaluator,
            anchor=anchor or self._default_anchor(),
            pin_service=(
                pin_service if pin_service is not None
                else self._default_pin_service()
            ),
            config=self.config,
            provenance=self.provenance,
            clock=self._clock,
            sleep=sleep,
        )

        self._started = False
        logger.info(
            "CertificationService initialized (sandbox=%s)", self.config.use_sandbox,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def startup(self) -> None:
        """Mark the service ready and drop reports that already expired."""
        self.satellite.purge_expired()
        self._started = True
        logger.info("CertificationService started")

    def shutdown(self) -> None:
        """Stop the service and release the external-call pool."""
        self._started = False
        shutdown_executor(wait=False)
        logger.info("CertificationService shutdown")

    @property
    def is_started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Batches and fields
    # ------------------------------------------------------------------

    def register_batch(self, batch: Batch) -> Batch:
        """Register a batch. Delegates to StageLedger."""
        return self.ledger.register_batch(batch)

    def register_field(self, field: OrganicField) -> OrganicField:
        """Register an organic field for satellite analysis.

        Raises:
            StateConflictError: If the field id is already registered.
        """
        with self._fields_lock:
            if field.field_id in self._fields:
                raise StateConflictError(
                    f"Field already registered: {field.field_id}",
                    error_code="DUPLICATE_FIELD",
                    context={"field_id": field.field_id},
                )
            self._fields[field.field_id] = field
        self.provenance.record(
            entity_type="batch_registration",
            entity_id=field.field_id,
            action="register_field",
            data_hash=self.provenance.build_hash(field),
        )
        logger.info(
            "Registered field %s (%s, %.2f ha) for producer %s",
            field.field_id, field.crop_type.value, field.hectares,
            field.producer_id,
        )
        return field.model_copy(deep=True)

    def get_field(self, field_id: str) -> OrganicField:
        with self._fields_lock:
            field = self._fields.get(field_id)
        if field is None:
            raise NotFoundError("OrganicField", field_id)
        return field.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Stage ledger delegation
    # ------------------------------------------------------------------

    def create_stage(
        self,
        batch_id: str,
        actor: StageActor,
        stage_type: Optional[Union[StageType, str]] = None,
        details: Optional[StageDetails] = None,
        expected_version: Optional[int] = None,
    ) -> VerificationStage:
        """Create the next custody stage. Delegates to StageLedger."""
        return self.ledger.create_stage(
            batch_id, actor, stage_type=stage_type, details=details,
            expected_version=expected_version,
        )

    def update_stage_status(
        self,
        stage_id: str,
        new_status: Union[StageStatus, str],
        actor: StageActor,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> VerificationStage:
        """Review a stage. Delegates to StageLedger."""
        return self.ledger.update_stage_status(
            stage_id, new_status, actor, notes=notes,
            expected_version=expected_version,
        )

    def get_stage_history(self, batch_id: str) -> StageHistory:
        return self.ledger.get_stage_history(batch_id)

    # ------------------------------------------------------------------
    # Eligibility and satellite analysis
    # ------------------------------------------------------------------

    def evaluate_eligibility(
        self,
        batch_id: str,
        grade: Union[CertificateGrade, str],
        field_ids: Sequence[str] = (),
    ) -> ValidationResult:
        """Evaluate grade eligibility. Delegates to the evaluator."""
        return self.evaluator.evaluate(batch_id, grade, field_ids)

    def run_satellite_analysis(
        self,
        field_id: str,
        params: Optional[AnalysisParams] = None,
        requested_by: str = "system",
    ) -> SatelliteComplianceReport:
        """Run a satellite compliance analysis for a registered field.

        When ``params`` is omitted the field's crop and the configured
        window are used.
        """
        field = self.get_field(field_id)
        if params is None:
            params = AnalysisParams(
                crop_type=field.crop_type, requested_by=requested_by,
            )
        return self.satellite.run_analysis(field, params)

    def get_latest_report(
        self, field_id: str,
    ) -> Optional[SatelliteComplianceReport]:
        return self.satellite.get_latest_report(field_id)

    # ------------------------------------------------------------------
    # Certificate delegation
    # ------------------------------------------------------------------

    def generate_certificate(self, request: CertificateRequest) -> Certificate:
        """Issue a certificate. Delegates to CertificateIssuer."""
        return self.issuer.generate(request)

    def approve_certificate(
        self, certificate_id: str, reviewer_id: str,
    ) -> Certificate:
        return self.issuer.approve(certificate_id, reviewer_id)

    def reject_certificate(
        self, certificate_id: str, reviewer_id: str, reason: str,
    ) -> Certificate:
        return self.issuer.reject(certificate_id, reviewer_id, reason)

    def revoke_certificate(
        self, certificate_id: str, reason: str, actor_id: str,
    ) -> Certificate:
        return self.issuer.revoke(certificate_id, reason, actor_id)

    def request_upgrade(
        self,
        certificate_id: str,
        target_grade: Union[CertificateGrade, str],
        requested_by: str,
        field_ids: Optional[List[str]] = None,
    ) -> Certificate:
        return self.issuer.request_upgrade(
            certificate_id, target_grade, requested_by, field_ids=field_ids,
        )

    def verify_certificate(self, certificate_id: str) -> VerificationResult:
        return self.issuer.verify(certificate_id)

    def get_certificate(self, certificate_id: str) -> Certificate:
        return self.issuer.get_certificate(certificate_id)

    def list_certificates(
        self,
        batch_id: Optional[str] = None,
        status: Optional[Union[CertificateStatus, str]] = None,
    ) -> List[Certificate]:
        return self.issuer.list_certificates(batch_id=batch_id, status=status)

    # ------------------------------------------------------------------
    # Health & Statistics
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, Any]:
        """Return service health status."""
        return {
            "status": "healthy" if self._started else "starting",
            "service": "certification",
            "sandbox": self.config.use_sandbox,
            "provenance_chain_valid": self.provenance.verify_global_chain(),
            "quota_remaining_units": self.quota.remaining,
            "timestamp": self._clock().isoformat(),
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Return aggregate counts across all engines."""
        return {
            "batches": self.ledger.batch_count,
            "stages": self.ledger.stage_count,
            "completed_chains": self.ledger.completed_count,
            "fields": len(self._fields),
            "certificates": self.issuer.certificate_count,
            "certificates_by_status": self.issuer.count_by_status(),
            "satellite": self.satellite.get_stats().model_dump(),
            "provenance_entries": self.provenance.entry_count,
            "timestamp": self._clock().isoformat(),
        }

    # ------------------------------------------------------------------
    # Collaborator selection
    # ------------------------------------------------------------------

    def _default_anchor(self) -> BlockchainAnchor:
        if self.config.use_sandbox:
            return SandboxAnchorClient(
                network=self.config.anchor_network, clock=self._clock,
            )
        if not self.config.anchor_url:
            raise ValidationError(
                "anchor_url is required when use_sandbox is False",
                error_code="ANCHOR_URL_MISSING",
                invalid_fields={"anchor_url": "required outside sandbox mode"},
            )
        return HttpAnchorClient(
            self.config.anchor_url,
            network=self.config.anchor_network,
            timeout=self.config.anchor_timeout_seconds,
        )

    def _default_pin_service(self) -> Optional[PinService]:
        if self.config.use_sandbox:
            return SandboxPinService()
        if self.config.pin_url:
            return HttpPinService(
                self.config.pin_url, timeout=self.config.pin_timeout_seconds,
            )
        return None


# ---------------------------------------------------------------------------
# Thread-safe singleton
# ---------------------------------------------------------------------------

_service_instance: Optional[CertificationService] = None
_service_lock = threading.Lock()


def get_certification_service() -> CertificationService:
    """Return the singleton CertificationService.

    Thread-safe lazy initialization. Returns the same instance on every
    call within the process.
    """
    global _service_instance
    if _service_instance is None:
        with _service_lock:
            if _service_instance is None:
                _service_instance = CertificationService()
                _service_instance.startup()
    return _service_instance


def reset_certification_service() -> None:
    """Shut down and discard the singleton; the next get creates a new one."""
    global _service_instance
    with _service_lock:
        if _service_instance is not None:
            _service_instance.shutdown()
        _service_instance = None


__all__ = [
    "CertificationService",
    "get_certification_service",
    "reset_certification_service",
]
