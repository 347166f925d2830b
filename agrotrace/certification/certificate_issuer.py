# -*- coding: utf-8 -*-
"""
Certificate Issuer

Drives a certificate through its lifecycle:

    DRAFT -> PROCESSING -> PENDING_REVIEW -> APPROVED -> REVOKED
    PENDING_REVIEW -> REJECTED
    (any non-terminal, not-yet-approved state) -> BLOCKCHAIN_FAILED
    BLOCKCHAIN_FAILED -> APPROVED | BLOCKCHAIN_FAILED

Issuance pipeline (``generate``):
    1. Idempotency: one certificate per request fingerprint (or explicit
       idempotency key) until that certificate is rejected or revoked.
    2. Eligibility via ``CertificateEligibilityEvaluator.require_eligible``;
       an ``EligibilityError`` propagates and nothing is stored.
    3. Upgrade checks when the request supersedes an earlier certificate.
    4. Certificate number ``{prefix}-{year}-{seq:06d}`` from a per-year
       sequence, canonical payload, SHA-256 content hash.
    5. Optional pin of the payload; failure degrades to hash-only.
    6. PENDING_REVIEW.

Approval anchors the stored content hash with bounded, exponentially
backed-off retries. Transient failures leave the certificate in
BLOCKCHAIN_FAILED with number, payload and hash intact, so a later approve
only repeats the anchor step.

Example:
    >>> issuer = CertificateIssuer(evaluator=evaluator,
    ...                            anchor=SandboxAnchorClient())
    >>> cert = issuer.generate(CertificateRequest(
    ...     batch_id="BAT-1", grade="STANDARD", requested_by="USR-1"))
    >>> issuer.approve(cert.certificate_id, "CERTIFIER-1").status
    <CertificateStatus.APPROVED: 'APPROVED'>

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union

from agrotrace.certification import metrics
from agrotrace.certification.anchoring import (
    BlockchainAnchor,
    PinService,
    canonical_json,
    compute_content_hash,
)
from agrotrace.certification.concurrency import KeyedLock, call_with_timeout
from agrotrace.certification.config import CertificationConfig, get_config
from agrotrace.certification.eligibility import (
    CertificateEligibilityEvaluator,
    can_upgrade,
)
from agrotrace.certification.models import (
    STAGE_ORDER,
    AnchorReceipt,
    Certificate,
    CertificateGrade,
    CertificateRequest,
    CertificateStatus,
    CertificateStatusChange,
    ValidationResult,
    VerificationResult,
    _utcnow,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.exceptions import (
    ExternalServiceError,
    InvalidCertificateTransitionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Lifecycle table
# ---------------------------------------------------------------------------

_S = CertificateStatus

CERTIFICATE_TRANSITIONS: Dict[CertificateStatus, FrozenSet[CertificateStatus]] = {
    _S.DRAFT: frozenset({_S.PROCESSING, _S.BLOCKCHAIN_FAILED}),
    _S.PROCESSING: frozenset({_S.PENDING_REVIEW, _S.BLOCKCHAIN_FAILED}),
    _S.PENDING_REVIEW: frozenset({_S.APPROVED, _S.REJECTED, _S.BLOCKCHAIN_FAILED}),
    _S.BLOCKCHAIN_FAILED: frozenset({_S.APPROVED, _S.BLOCKCHAIN_FAILED}),
    _S.APPROVED: frozenset({_S.REVOKED}),
    _S.REJECTED: frozenset(),
    _S.REVOKED: frozenset(),
}

# Statuses after which the same request may be issued again.
_KEY_RELEASING_STATUSES = frozenset({_S.REJECTED, _S.REVOKED})

_PROVENANCE_TYPE: Dict[CertificateStatus, str] = {
    _S.DRAFT: "certificate_issuance",
    _S.PROCESSING: "certificate_issuance",
    _S.PENDING_REVIEW: "certificate_issuance",
    _S.APPROVED: "certificate_review",
    _S.REJECTED: "certificate_review",
    _S.BLOCKCHAIN_FAILED: "certificate_anchor",
    _S.REVOKED: "certificate_revocation",
}


def request_fingerprint(request: CertificateRequest) -> str:
    """Stable digest identifying "the same" issuance request."""
    return hashlib.sha256(canonical_json({
        "batchId": request.batch_id,
        "fieldIds": sorted(set(request.field_ids)),
        "grade": request.grade.value,
        "standard": request.standard.value if request.standard else None,
        "supersedes": request.supersedes_certificate_id,
    }).encode("utf-8")).hexdigest()


# =============================================================================
# CertificateIssuer
# =============================================================================


class CertificateIssuer:
    """Generates, reviews, anchors and revokes certificates.

    Attributes:
        config: CertificationConfig instance.
        evaluator: Eligibility gate for every issuance.
    """

    def __init__(
        self,
        evaluator: CertificateEligibilityEvaluator,
        anchor: BlockchainAnchor,
        pin_service: Optional[PinService] = None,
        config: Optional[CertificationConfig] = None,
        provenance: Optional[ProvenanceTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize CertificateIssuer.

        Args:
            evaluator: Eligibility gate consulted before every issuance.
            anchor: Anchoring client used on approval.
            pin_service: Optional pinning client. Certificates are hash-only
                when it is None or a pin fails.
            config: Optional configuration. Uses global config if None.
            provenance: Optional ProvenanceTracker instance.
            clock: Optional UTC clock, for deterministic timestamps.
            sleep: Sleep function used between anchor retries.
        """
        self.config = config or get_config()
        self.evaluator = evaluator
        self._anchor = anchor
        self._pin_service = pin_service
        self._provenance = provenance
        self._clock = clock or _utcnow
        self._sleep = sleep

        self._certificates: Dict[str, Certificate] = {}
        self._by_key: Dict[str, str] = {}
        self._store_lock = threading.RLock()
        self._request_locks = KeyedLock()
        self._certificate_locks = KeyedLock()
        self._sequences: Dict[int, int] = {}
        self._sequence_lock = threading.Lock()

        logger.info(
            "CertificateIssuer initialized (pinning=%s, max_anchor_attempts=%d)",
            "on" if pin_service is not None else "off",
            self.config.anchor_max_attempts,
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate(self, request: CertificateRequest) -> Certificate:
        """Issue a certificate for ``request`` and leave it PENDING_REVIEW.

        Repeating an identical request returns the certificate already
        issued for it.

        Raises:
            EligibilityError: If the batch does not qualify for the grade.
            ValidationError: If an upgrade request is not strictly upward.
            NotFoundError: If the batch or superseded certificate is unknown.
        """
        key = request.idempotency_key or request_fingerprint(request)
        with self._request_locks.hold(key):
            existing = self._existing_for_key(key)
            if existing is not None:
                logger.info(
                    "Returning existing certificate %s for repeated request",
                    existing.certificate_id,
                )
                return existing.model_copy(deep=True)

            start_time = time.monotonic()
            result = self.evaluator.require_eligible(
                request.batch_id, request.grade, request.field_ids,
            )
            if request.supersedes_certificate_id:
                self._check_upgrade(request)

            cert = Certificate(
                batch_id=request.batch_id,
                field_ids=sorted(set(request.field_ids)),
                grade=request.grade,
                standard=request.standard,
                certifying_body=request.certifying_body,
                requested_by=request.requested_by,
                supersedes_certificate_id=request.supersedes_certificate_id,
                idempotency_key=key,
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            cert.status_history.append(CertificateStatusChange(
                to_status=_S.DRAFT,
                actor_id=request.requested_by,
                changed_at=cert.created_at,
            ))
            metrics.record_certificate_transition(_S.DRAFT.value)
            with self._store_lock:
                self._certificates[cert.certificate_id] = cert
                self._by_key[key] = cert.certificate_id

            try:
                self._issue(cert, request, result)
            except Exception as e:
                logger.exception(
                    "Issuance of certificate %s for batch %s failed",
                    cert.certificate_id, request.batch_id,
                )
                metrics.record_processing_error("certificate_issuer", type(e).__name__)
                with self._store_lock:
                    self._by_key.pop(key, None)
                raise

            elapsed = time.monotonic() - start_time
            metrics.observe_duration("generate_certificate", elapsed)
            logger.info(
                "Generated %s certificate %s (%s) for batch %s "
                "hash=%s... pinned=%s (%.1f ms)",
                cert.grade.value, cert.certificate_number, cert.certificate_id,
                cert.batch_id, cert.content_hash[:16], not cert.is_hash_only,
                elapsed * 1000,
            )
            return cert.model_copy(deep=True)

    def request_upgrade(
        self,
        certificate_id: str,
        target_grade: Union[CertificateGrade, str],
        requested_by: str,
        field_ids: Optional[List[str]] = None,
    ) -> Certificate:
        """Issue a higher-grade certificate superseding an APPROVED one."""
        prior = self._get(certificate_id)
        request = CertificateRequest(
            batch_id=prior.batch_id,
            field_ids=field_ids if field_ids is not None else list(prior.field_ids),
            grade=CertificateGrade(target_grade),
            standard=prior.standard,
            certifying_body=prior.certifying_body,
            requested_by=requested_by,
            supersedes_certificate_id=certificate_id,
        )
        return self.generate(request)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve(self, certificate_id: str, reviewer_id: str) -> Certificate:
        """Anchor the content hash and approve the certificate.

        Returns the certificate in APPROVED, or in BLOCKCHAIN_FAILED when
        anchoring did not succeed; a later call retries only the anchor.

        Raises:
            InvalidCertificateTransitionError: If the certificate is not
                awaiting review or an anchor retry.
        """
        with self._certificate_locks.hold(certificate_id):
            cert = self._get(certificate_id)
            if cert.status not in (_S.PENDING_REVIEW, _S.BLOCKCHAIN_FAILED):
                raise self._transition_error(cert, _S.APPROVED)

            start_time = time.monotonic()
            if cert.anchor is None:
                receipt = self._anchor_with_retry(cert)
                if receipt is None:
                    self._transition(
                        cert, _S.BLOCKCHAIN_FAILED, reviewer_id, cert.last_error,
                    )
                    logger.error(
                        "Certificate %s left in BLOCKCHAIN_FAILED after %d "
                        "anchor attempts: %s",
                        certificate_id, cert.anchor_attempts, cert.last_error,
                    )
                    return cert.model_copy(deep=True)
                cert.anchor = receipt
                self._record(cert, "certificate_anchor", "anchor", reviewer_id)
            else:
                logger.info(
                    "Certificate %s already anchored in %s, skipping anchor",
                    certificate_id, cert.anchor.tx_hash,
                )

            now = self._clock()
            validity = self._validity_days(cert)
            cert.valid_from = now
            cert.valid_to = now + timedelta(days=validity)
            cert.reviewed_by = reviewer_id
            cert.reviewed_at = now
            cert.last_error = None
            self._transition(cert, _S.APPROVED, reviewer_id)

            elapsed = time.monotonic() - start_time
            metrics.observe_duration("approve_certificate", elapsed)
            logger.info(
                "Approved certificate %s by %s, anchored as %s on %s (%.1f ms)",
                cert.certificate_number, reviewer_id, cert.anchor.tx_hash,
                cert.anchor.network, elapsed * 1000,
            )
            return cert.model_copy(deep=True)

    def reject(
        self, certificate_id: str, reviewer_id: str, reason: str,
    ) -> Certificate:
        """Reject a certificate awaiting review.

        Raises:
            ValidationError: If the reason is too short.
            InvalidCertificateTransitionError: If not PENDING_REVIEW.
        """
        reason = (reason or "").strip()
        minimum = self.config.min_rejection_reason_length
        if len(reason) < minimum:
            raise ValidationError(
                f"Rejection reason must be at least {minimum} characters",
                invalid_fields={"reason": f"min length {minimum}"},
            )
        with self._certificate_locks.hold(certificate_id):
            cert = self._get(certificate_id)
            if cert.status != _S.PENDING_REVIEW:
                raise self._transition_error(cert, _S.REJECTED)
            cert.reviewed_by = reviewer_id
            cert.reviewed_at = self._clock()
            cert.rejection_reason = reason
            self._transition(cert, _S.REJECTED, reviewer_id, reason)
            self._release_key(cert)
            logger.info(
                "Rejected certificate %s by %s: %s",
                cert.certificate_id, reviewer_id, reason,
            )
            return cert.model_copy(deep=True)

    def revoke(
        self, certificate_id: str, reason: str, actor_id: str,
    ) -> Certificate:
        """Permanently revoke an APPROVED certificate."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(
                "Revocation reason is required",
                invalid_fields={"reason": "required"},
            )
        with self._certificate_locks.hold(certificate_id):
            cert = self._get(certificate_id)
            if cert.status != _S.APPROVED:
                raise self._transition_error(cert, _S.REVOKED)
            self._transition(cert, _S.REVOKED, actor_id, reason)
            cert.revoked_at = cert.updated_at
            cert.revocation_reason = reason
            self._release_key(cert)
            logger.warning(
                "Revoked certificate %s by %s: %s",
                cert.certificate_number, actor_id, reason,
            )
            return cert.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def verify(self, certificate_id: str) -> VerificationResult:
        """Recompute the content hash and check expiry and revocation."""
        cert = self._get(certificate_id)
        now = self._clock()
        hash_matches = (
            cert.content_hash is not None
            and compute_content_hash(cert.payload) == cert.content_hash
        )
        is_expired = cert.valid_to is not None and now > cert.valid_to
        is_revoked = cert.status == _S.REVOKED
        is_anchored = cert.anchor is not None
        result = VerificationResult(
            certificate_id=cert.certificate_id,
            certificate_number=cert.certificate_number,
            is_valid=(
                cert.status == _S.APPROVED
                and hash_matches
                and is_anchored
                and not is_expired
            ),
            hash_matches=hash_matches,
            is_expired=is_expired,
            is_revoked=is_revoked,
            is_anchored=is_anchored,
            checked_at=now,
        )
        if not hash_matches:
            logger.warning(
                "Content hash mismatch for certificate %s", certificate_id,
            )
        return result

    def get_certificate(self, certificate_id: str) -> Certificate:
        """Return a copy of one certificate.

        Raises:
            NotFoundError: If the certificate id is unknown.
        """
        return self._get(certificate_id).model_copy(deep=True)

    def list_certificates(
        self,
        batch_id: Optional[str] = None,
        status: Optional[Union[CertificateStatus, str]] = None,
    ) -> List[Certificate]:
        """Certificates filtered by batch and status, oldest first."""
        status = CertificateStatus(status) if status is not None else None
        with self._store_lock:
            certs = list(self._certificates.values())
        return [
            c.model_copy(deep=True)
            for c in sorted(certs, key=lambda c: c.created_at)
            if (batch_id is None or c.batch_id == batch_id)
            and (status is None or c.status == status)
        ]

    def count_by_status(self) -> Dict[str, int]:
        """Number of certificates per status, every status present."""
        counts = {s.value: 0 for s in CertificateStatus}
        with self._store_lock:
            for cert in self._certificates.values():
                counts[cert.status.value] += 1
        return counts

    @property
    def certificate_count(self) -> int:
        return len(self._certificates)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _issue(
        self,
        cert: Certificate,
        request: CertificateRequest,
        result: ValidationResult,
    ) -> None:
        self._transition(cert, _S.PROCESSING, request.requested_by)
        cert.certificate_number = self._next_certificate_number()
        cert.payload = self._build_payload(cert, request, result)
        cert.content_hash = compute_content_hash(cert.payload)
        cert.content_id = self._pin(cert)
        self._transition(cert, _S.PENDING_REVIEW, request.requested_by)

    def _build_payload(
        self,
        cert: Certificate,
        request: CertificateRequest,
        result: ValidationResult,
    ) -> Dict[str, Any]:
        approved = self.evaluator.ledger.get_approved_stage_types(cert.batch_id)
        payload: Dict[str, Any] = {
            "version": PAYLOAD_VERSION,
            "certificateId": cert.certificate_id,
            "certificateNumber": cert.certificate_number,
            "batchId": cert.batch_id,
            "fieldIds": sorted(cert.field_ids),
            "grade": cert.grade.value,
            "standard": cert.standard.value if cert.standard else None,
            "certifyingBody": cert.certifying_body,
            "requestedBy": cert.requested_by,
            "issuedAt": cert.created_at.isoformat(),
            "validityDays": self._validity_days(cert, request),
            "supersedesCertificateId": cert.supersedes_certificate_id,
            "stages": [t.value for t in STAGE_ORDER if t in approved],
            "warnings": sorted({w.code for w in result.warnings}),
        }
        satellite = self.evaluator.satellite
        if satellite is not None and cert.field_ids:
            reports = []
            for field_id in sorted(cert.field_ids):
                report = satellite.get_latest_report(field_id)
                if report is not None:
                    reports.append({
                        "fieldId": field_id,
                        "reportId": report.report_id,
                        "complianceStatus": report.compliance_status.value,
                        "overallConfidence": report.overall_confidence,
                        "provenanceHash": report.provenance_hash,
                    })
            payload["satellite"] = reports
        return payload

    def _pin(self, cert: Certificate) -> Optional[str]:
        if self._pin_service is None:
            return None
        try:
            content_id = call_with_timeout(
                self._pin_service.pin,
                cert.payload,
                timeout=self.config.pin_timeout_seconds,
                service="pin",
            )
        except ExternalServiceError as e:
            metrics.record_pin_attempt("failure")
            logger.warning(
                "Pinning certificate %s failed, continuing hash-only: %s",
                cert.certificate_id, e,
            )
            return None
        except Exception:
            metrics.record_pin_attempt("failure")
            logger.exception(
                "Unexpected pin failure for certificate %s, continuing hash-only",
                cert.certificate_id,
            )
            return None
        metrics.record_pin_attempt("success")
        return content_id

    def _anchor_with_retry(self, cert: Certificate) -> Optional[AnchorReceipt]:
        max_attempts = max(1, self.config.anchor_max_attempts)
        for attempt in range(1, max_attempts + 1):
            cert.anchor_attempts += 1
            try:
                receipt = call_with_timeout(
                    self._anchor.anchor,
                    cert.content_hash,
                    timeout=self.config.anchor_timeout_seconds,
                    service="blockchain_anchor",
                )
            except ExternalServiceError as e:
                cert.last_error = str(e)
                if not e.retryable:
                    metrics.record_anchor_attempt("rejected")
                    logger.error(
                        "Anchor permanently rejected for certificate %s: %s",
                        cert.certificate_id, e,
                    )
                    return None
                metrics.record_anchor_attempt(
                    "timeout" if e.error_code == "EXTERNAL_TIMEOUT"
                    else "transient_failure"
                )
                if attempt < max_attempts:
                    delay = self.config.anchor_retry_backoff_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        "Anchor attempt %d/%d for certificate %s failed (%s), "
                        "retrying in %.2fs",
                        attempt, max_attempts, cert.certificate_id, e, delay,
                    )
                    self._sleep(delay)
            except Exception as e:
                logger.exception(
                    "Unexpected anchor failure for certificate %s (attempt %d)",
                    cert.certificate_id, attempt,
                )
                metrics.record_processing_error("certificate_issuer", type(e).__name__)
                raise
            else:
                metrics.record_anchor_attempt("success")
                return receipt
        return None

    def _check_upgrade(self, request: CertificateRequest) -> None:
        prior = self._get(request.supersedes_certificate_id)
        if prior.status != _S.APPROVED:
            raise ValidationError(
                f"Only APPROVED certificates can be upgraded; "
                f"{prior.certificate_id} is {prior.status.value}",
                invalid_fields={"supersedes_certificate_id": "not approved"},
            )
        if prior.batch_id != request.batch_id:
            raise ValidationError(
                "Upgrade must be for the same batch as the superseded certificate",
                invalid_fields={"batch_id": "differs from superseded certificate"},
            )
        if not can_upgrade(prior.grade, request.grade):
            raise ValidationError(
                f"Cannot upgrade from {prior.grade.value} to "
                f"{request.grade.value}; upgrades must be strictly upward",
                invalid_fields={"grade": "not above current grade"},
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        cert: Certificate,
        to_status: CertificateStatus,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> None:
        if to_status not in CERTIFICATE_TRANSITIONS[cert.status]:
            raise self._transition_error(cert, to_status)
        now = self._clock()
        cert.status_history.append(CertificateStatusChange(
            from_status=cert.status,
            to_status=to_status,
            actor_id=actor_id,
            reason=reason,
            changed_at=now,
        ))
        from_status = cert.status
        cert.status = to_status
        cert.updated_at = now
        metrics.record_certificate_transition(to_status.value)
        self._record(cert, _PROVENANCE_TYPE[to_status], to_status.value.lower(), actor_id)
        logger.debug(
            "Certificate %s: %s -> %s",
            cert.certificate_id, from_status.value, to_status.value,
        )

    @staticmethod
    def _transition_error(
        cert: Certificate, to_status: CertificateStatus,
    ) -> InvalidCertificateTransitionError:
        return InvalidCertificateTransitionError(
            f"Certificate {cert.certificate_id} cannot move from "
            f"{cert.status.value} to {to_status.value}",
            context={
                "certificate_id": cert.certificate_id,
                "from_status": cert.status.value,
                "to_status": to_status.value,
            },
        )

    def _record(
        self, cert: Certificate, entity_type: str, action: str, actor_id: str,
    ) -> None:
        if self._provenance is None:
            return
        self._provenance.record(
            entity_type=entity_type,
            entity_id=cert.certificate_id,
            action=action,
            data_hash=cert.content_hash or self._provenance.build_hash(
                {"certificate_id": cert.certificate_id, "status": cert.status.value}
            ),
            user_id=actor_id,
        )

    def _next_certificate_number(self) -> str:
        year = self._clock().year
        with self._sequence_lock:
            seq = self._sequences.get(year, 0) + 1
            self._sequences[year] = seq
        return f"{self.config.certificate_number_prefix}-{year}-{seq:06d}"

    def _validity_days(
        self, cert: Certificate, request: Optional[CertificateRequest] = None,
    ) -> int:
        if request is not None and request.validity_days:
            return request.validity_days
        return int(cert.payload.get("validityDays") or self.config.certificate_validity_days)

    def _existing_for_key(self, key: str) -> Optional[Certificate]:
        with self._store_lock:
            certificate_id = self._by_key.get(key)
            if certificate_id is None:
                return None
            cert = self._certificates[certificate_id]
            if cert.status in _KEY_RELEASING_STATUSES:
                del self._by_key[key]
                return None
            return cert

    def _release_key(self, cert: Certificate) -> None:
        with self._store_lock:
            if self._by_key.get(cert.idempotency_key) == cert.certificate_id:
                del self._by_key[cert.idempotency_key]

    def _get(self, certificate_id: str) -> Certificate:
        with self._store_lock:
            cert = self._certificates.get(certificate_id)
        if cert is None:
            raise NotFoundError("Certificate", certificate_id)
        return cert


__all__ = [
    "CertificateIssuer",
    "CERTIFICATE_TRANSITIONS",
    "PAYLOAD_VERSION",
    "request_fingerprint",
]
