# -*- coding: utf-8 -*-
"""Tests for the certificate issuance lifecycle."""

import threading
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from agrotrace.certification.anchoring import HttpPinService, compute_content_hash
from agrotrace.certification.certificate_issuer import (
    CERTIFICATE_TRANSITIONS,
    CertificateIssuer,
    request_fingerprint,
)
from agrotrace.certification.config import CertificationConfig
from agrotrace.certification.models import (
    AnalysisParams,
    CertificateGrade,
    CertificateRequest,
    CertificateStatus,
    CropType,
)
from agrotrace.exceptions import (
    AnchorRejectedError,
    EligibilityError,
    ExternalServiceError,
    InvalidCertificateTransitionError,
    NotFoundError,
    ValidationError,
)

from conftest import FakeAnchor, FakePinService, make_series


class SlowAnchor:
    """Anchor that never answers in time."""

    def anchor(self, content_hash):
        time.sleep(0.5)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def anchor():
    return FakeAnchor()


@pytest.fixture
def pin_service():
    return FakePinService()


@pytest.fixture
def make_issuer(evaluator, config, provenance, clock, sleeps, advance_chain):
    """Build an issuer over a batch with a complete custody chain."""
    advance_chain()

    def _make(anchor=None, pin_service=None, config_override=None):
        return CertificateIssuer(
            evaluator=evaluator,
            anchor=anchor or FakeAnchor(),
            pin_service=pin_service,
            config=config_override or config,
            provenance=provenance,
            clock=clock,
            sleep=sleeps.append,
        )

    return _make


@pytest.fixture
def issuer(make_issuer, anchor, pin_service):
    return make_issuer(anchor=anchor, pin_service=pin_service)


def _request(grade=CertificateGrade.EXPORT, **kwargs):
    kwargs.setdefault("batch_id", "BAT-001")
    kwargs.setdefault("requested_by", "USR-1")
    return CertificateRequest(grade=grade, **kwargs)


class TestGenerate:
    """Certificate generation."""

    def test_pending_review_with_number_and_hash(self, issuer, pin_service):
        """A fresh certificate is numbered, hashed, pinned and awaiting review."""
        cert = issuer.generate(_request())

        assert cert.status == CertificateStatus.PENDING_REVIEW
        assert cert.certificate_number == "AGT-MX-2026-000001"
        assert cert.content_hash == compute_content_hash(cert.payload)
        assert cert.content_id == "bafkreifake0001"
        assert pin_service.pinned == [cert.payload]
        assert [c.to_status for c in cert.status_history] == [
            CertificateStatus.DRAFT,
            CertificateStatus.PROCESSING,
            CertificateStatus.PENDING_REVIEW,
        ]

    def test_payload_contents(self, issuer):
        """The payload carries the certified facts."""
        cert = issuer.generate(_request())

        payload = cert.payload
        assert payload["certificateNumber"] == cert.certificate_number
        assert payload["grade"] == "EXPORT"
        assert payload["stages"] == [
            "HARVEST", "PACKING", "COLD_CHAIN", "EXPORT", "DELIVERY",
        ]
        assert payload["validityDays"] == 365
        assert payload["warnings"] == []
        assert "satellite" not in payload

    def test_organic_payload_references_report(self, issuer, analyzer):
        """ORGANIC payloads reference the satellite verdict used."""
        report = analyzer.analyze_series(
            make_series([0.65] * 30),
            AnalysisParams(crop_type=CropType.AVOCADO),
            field_id="FLD-001",
            store=True,
        )

        cert = issuer.generate(_request(CertificateGrade.ORGANIC, field_ids=["FLD-001"]))

        assert cert.payload["satellite"] == [{
            "fieldId": "FLD-001",
            "reportId": report.report_id,
            "complianceStatus": "ELIGIBLE",
            "overallConfidence": report.overall_confidence,
            "provenanceHash": report.provenance_hash,
        }]

    def test_repeated_request_is_idempotent(self, issuer):
        """The same request returns the same certificate."""
        first = issuer.generate(_request())
        second = issuer.generate(_request(requested_by="USR-2"))

        assert second.certificate_id == first.certificate_id
        assert issuer.certificate_count == 1

    def test_explicit_idempotency_key(self, issuer):
        """A caller key overrides the request fingerprint."""
        first = issuer.generate(_request(idempotency_key="order-77"))
        second = issuer.generate(
            _request(CertificateGrade.PREMIUM, idempotency_key="order-77"),
        )

        assert second.certificate_id == first.certificate_id

    def test_concurrent_requests_issue_once(self, issuer):
        """Parallel identical requests produce one certificate."""
        ids = []
        lock = threading.Lock()

        def worker():
            cert = issuer.generate(_request())
            with lock:
                ids.append(cert.certificate_id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 1
        assert issuer.certificate_count == 1

    def test_numbers_are_sequential(self, issuer):
        """A different grade is a new certificate with the next number."""
        issuer.generate(_request(CertificateGrade.STANDARD))
        cert = issuer.generate(_request(CertificateGrade.PREMIUM))

        assert cert.certificate_number == "AGT-MX-2026-000002"

    def test_ineligible_batch(self, issuer, ledger, batch):
        """An ineligible request raises and stores nothing."""
        ledger.register_batch(batch.model_copy(update={"batch_id": "BAT-002"}))

        with pytest.raises(EligibilityError) as exc_info:
            issuer.generate(_request(batch_id="BAT-002"))

        assert "CHAIN_INCOMPLETE" in exc_info.value.error_codes
        assert issuer.certificate_count == 0

    def test_pin_failure_is_hash_only(self, make_issuer):
        """A pin failure degrades the certificate to hash-only."""
        issuer = make_issuer(pin_service=FakePinService(fail=True))

        cert = issuer.generate(_request())

        assert cert.status == CertificateStatus.PENDING_REVIEW
        assert cert.content_id is None
        assert cert.is_hash_only

    def test_unexpected_pin_error_is_hash_only(self, make_issuer):
        """Any pin collaborator error leaves issuance hash-only."""

        class BrokenPinService:
            def pin(self, payload):
                raise ValueError("Expecting value: line 1 column 1 (char 0)")

        issuer = make_issuer(pin_service=BrokenPinService())

        cert = issuer.generate(_request())

        assert cert.status == CertificateStatus.PENDING_REVIEW
        assert cert.content_id is None
        assert issuer.count_by_status()["PROCESSING"] == 0

    def test_non_json_pin_answer_is_hash_only(self, make_issuer):
        """A gateway answering 200 with a non-JSON body does not block issuance."""
        response = Mock()
        response.status_code = 200
        response.json.side_effect = ValueError("Expecting value")
        session = Mock()
        session.post.return_value = response
        issuer = make_issuer(
            pin_service=HttpPinService("https://pins.example", session=session),
        )

        cert = issuer.generate(_request())

        assert cert.status == CertificateStatus.PENDING_REVIEW
        assert cert.is_hash_only

    def test_fingerprint_ignores_requester(self):
        """Who asks does not change the request fingerprint."""
        assert request_fingerprint(_request(requested_by="A")) == request_fingerprint(
            _request(requested_by="B"),
        )
        assert request_fingerprint(_request(field_ids=["F2", "F1"])) == request_fingerprint(
            _request(field_ids=["F1", "F2"]),
        )


class TestApprove:
    """Approval and anchoring."""

    def test_approve(self, issuer, anchor, clock):
        """Approval anchors the hash and starts a one-year validity."""
        cert = issuer.generate(_request())

        approved = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert approved.status == CertificateStatus.APPROVED
        assert approved.anchor.tx_hash == f"0x{cert.content_hash}"
        assert anchor.calls == [cert.content_hash]
        assert approved.valid_from == clock()
        assert approved.valid_to - approved.valid_from == timedelta(days=365)
        assert approved.reviewed_by == "CERTIFIER-1"
        assert approved.anchor_attempts == 1

    def test_request_validity(self, issuer):
        """A requested validity period is honored."""
        cert = issuer.generate(_request(validity_days=30))

        approved = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert approved.valid_to - approved.valid_from == timedelta(days=30)

    def test_transient_failures_are_retried(self, make_issuer, sleeps):
        """Two transient failures then success, with exponential backoff."""
        anchor = FakeAnchor([ExternalServiceError("busy"), ExternalServiceError("busy")])
        issuer = make_issuer(anchor=anchor)
        cert = issuer.generate(_request())

        approved = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert approved.status == CertificateStatus.APPROVED
        assert approved.anchor_attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_exhausted_retries_leave_blockchain_failed(self, make_issuer, sleeps):
        """When every attempt fails the certificate waits for a retry."""
        anchor = FakeAnchor([ExternalServiceError("busy")] * 3)
        issuer = make_issuer(anchor=anchor)
        cert = issuer.generate(_request())

        failed = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert failed.status == CertificateStatus.BLOCKCHAIN_FAILED
        assert failed.anchor is None
        assert "busy" in failed.last_error
        assert sleeps == [0.5, 1.0]

        retried = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert retried.status == CertificateStatus.APPROVED
        assert retried.certificate_number == cert.certificate_number
        assert retried.content_hash == cert.content_hash
        assert retried.anchor_attempts == 4
        assert retried.last_error is None

    def test_permanent_rejection_is_not_retried(self, make_issuer, sleeps):
        """A rejected hash fails after one attempt."""
        anchor = FakeAnchor([AnchorRejectedError("malformed")])
        issuer = make_issuer(anchor=anchor)
        cert = issuer.generate(_request())

        failed = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert failed.status == CertificateStatus.BLOCKCHAIN_FAILED
        assert failed.anchor_attempts == 1
        assert len(anchor.calls) == 1
        assert sleeps == []

    def test_anchor_timeout(self, make_issuer, config):
        """An anchor past its deadline counts as a failed attempt."""
        issuer = make_issuer(
            anchor=SlowAnchor(),
            config_override=CertificationConfig(
                anchor_timeout_seconds=0.05, anchor_max_attempts=1,
            ),
        )
        cert = issuer.generate(_request())

        failed = issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert failed.status == CertificateStatus.BLOCKCHAIN_FAILED
        assert "did not respond" in failed.last_error

    def test_unexpected_anchor_error_propagates(self, make_issuer):
        """Unclassified anchor errors are raised; the status is unchanged."""
        issuer = make_issuer(anchor=FakeAnchor([RuntimeError("driver bug")]))
        cert = issuer.generate(_request())

        with pytest.raises(RuntimeError):
            issuer.approve(cert.certificate_id, "CERTIFIER-1")

        assert issuer.get_certificate(cert.certificate_id).status == (
            CertificateStatus.PENDING_REVIEW
        )

    def test_double_approve(self, issuer):
        """An APPROVED certificate cannot be approved again."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        with pytest.raises(InvalidCertificateTransitionError):
            issuer.approve(cert.certificate_id, "CERTIFIER-1")

    def test_unknown_certificate(self, issuer):
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            issuer.approve("CRT-404", "CERTIFIER-1")
        with pytest.raises(NotFoundError):
            issuer.get_certificate("CRT-404")


class TestReject:
    """Rejection."""

    def test_short_reason(self, issuer):
        """Reasons under ten characters are refused."""
        cert = issuer.generate(_request())

        with pytest.raises(ValidationError):
            issuer.reject(cert.certificate_id, "CERTIFIER-1", "  no  ")

    def test_reject_frees_request(self, issuer):
        """After rejection the same request issues a new certificate."""
        cert = issuer.generate(_request())

        rejected = issuer.reject(cert.certificate_id, "CERTIFIER-1", "Photos do not match the lot")
        again = issuer.generate(_request())

        assert rejected.status == CertificateStatus.REJECTED
        assert rejected.rejection_reason == "Photos do not match the lot"
        assert again.certificate_id != cert.certificate_id
        assert again.certificate_number == "AGT-MX-2026-000002"

    def test_only_pending_review(self, issuer):
        """APPROVED certificates cannot be rejected."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        with pytest.raises(InvalidCertificateTransitionError):
            issuer.reject(cert.certificate_id, "CERTIFIER-1", "Changed my mind entirely")


class TestRevoke:
    """Revocation."""

    def test_revoke_approved(self, issuer):
        """Revoked certificates no longer verify."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        revoked = issuer.revoke(cert.certificate_id, "Lot recalled", "ADMIN-1")
        result = issuer.verify(cert.certificate_id)

        assert revoked.status == CertificateStatus.REVOKED
        assert revoked.revocation_reason == "Lot recalled"
        assert result.is_revoked is True
        assert result.is_valid is False

    def test_revoke_requires_reason(self, issuer):
        """An empty reason is refused."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        with pytest.raises(ValidationError):
            issuer.revoke(cert.certificate_id, "   ", "ADMIN-1")

    def test_only_approved_can_be_revoked(self, issuer):
        """Pending and revoked certificates cannot be revoked."""
        cert = issuer.generate(_request())

        with pytest.raises(InvalidCertificateTransitionError):
            issuer.revoke(cert.certificate_id, "Lot recalled", "ADMIN-1")

        issuer.approve(cert.certificate_id, "CERTIFIER-1")
        issuer.revoke(cert.certificate_id, "Lot recalled", "ADMIN-1")

        with pytest.raises(InvalidCertificateTransitionError):
            issuer.revoke(cert.certificate_id, "Again", "ADMIN-1")

    def test_refused_revoke_leaves_record_untouched(self, issuer):
        """A revoke refused for status writes no revocation fields."""
        cert = issuer.generate(_request())

        with pytest.raises(InvalidCertificateTransitionError):
            issuer.revoke(cert.certificate_id, "Lot recalled", "ADMIN-1")

        pending = issuer.get_certificate(cert.certificate_id)
        assert pending.revoked_at is None
        assert pending.revocation_reason is None

        approved = issuer.approve(cert.certificate_id, "CERTIFIER-1")
        assert approved.status == CertificateStatus.APPROVED
        assert approved.revoked_at is None
        assert approved.revocation_reason is None

    def test_revoked_at_is_transition_time(self, issuer, clock):
        """revoked_at records when the revocation happened."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")
        clock.advance(days=3)

        revoked = issuer.revoke(cert.certificate_id, "Lot recalled", "ADMIN-1")

        assert revoked.revoked_at == clock()
        assert revoked.status_history[-1].changed_at == clock()

    def test_transition_table(self):
        """Terminal states have no exits."""
        assert CERTIFICATE_TRANSITIONS[CertificateStatus.REVOKED] == frozenset()
        assert CERTIFICATE_TRANSITIONS[CertificateStatus.REJECTED] == frozenset()
        assert CERTIFICATE_TRANSITIONS[CertificateStatus.APPROVED] == {
            CertificateStatus.REVOKED,
        }


class TestVerify:
    """Integrity verification."""

    def test_approved_is_valid(self, issuer):
        """An approved, anchored, unexpired certificate verifies."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        result = issuer.verify(cert.certificate_id)

        assert result.is_valid is True
        assert result.hash_matches is True
        assert result.is_anchored is True
        assert result.certificate_number == cert.certificate_number

    def test_pending_is_not_valid(self, issuer):
        """Unanchored certificates do not verify."""
        cert = issuer.generate(_request())

        result = issuer.verify(cert.certificate_id)

        assert result.is_valid is False
        assert result.is_anchored is False
        assert result.hash_matches is True

    def test_tampered_payload(self, issuer):
        """Changing the stored payload breaks the hash."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")
        issuer._certificates[cert.certificate_id].payload["grade"] = "ORGANIC"

        result = issuer.verify(cert.certificate_id)

        assert result.hash_matches is False
        assert result.is_valid is False

    def test_expired(self, issuer, clock):
        """A certificate past its validity no longer verifies."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")
        clock.advance(days=366)

        result = issuer.verify(cert.certificate_id)

        assert result.is_expired is True
        assert result.is_valid is False

    def test_returned_copies_are_isolated(self, issuer):
        """Editing a returned certificate does not touch the stored one."""
        cert = issuer.generate(_request())
        cert.payload["grade"] = "ORGANIC"

        assert issuer.verify(cert.certificate_id).hash_matches is True


class TestUpgrade:
    """Grade upgrades."""

    def test_upgrade_approved(self, issuer):
        """An APPROVED certificate can be superseded by a higher grade."""
        cert = issuer.generate(_request(CertificateGrade.STANDARD))
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        upgraded = issuer.request_upgrade(cert.certificate_id, "PREMIUM", "USR-2")

        assert upgraded.grade == CertificateGrade.PREMIUM
        assert upgraded.supersedes_certificate_id == cert.certificate_id
        assert upgraded.payload["supersedesCertificateId"] == cert.certificate_id

    def test_same_grade_is_not_an_upgrade(self, issuer):
        """Upgrades must be strictly upward."""
        cert = issuer.generate(_request(CertificateGrade.EXPORT))
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        with pytest.raises(ValidationError):
            issuer.request_upgrade(cert.certificate_id, CertificateGrade.STANDARD, "USR-2")

    def test_pending_cannot_be_upgraded(self, issuer):
        """Only APPROVED certificates can be upgraded."""
        cert = issuer.generate(_request(CertificateGrade.STANDARD))

        with pytest.raises(ValidationError):
            issuer.request_upgrade(cert.certificate_id, CertificateGrade.PREMIUM, "USR-2")


class TestQueries:
    """Listing, counting and provenance."""

    def test_list_and_count(self, issuer):
        """Certificates can be filtered by status."""
        first = issuer.generate(_request(CertificateGrade.STANDARD))
        issuer.generate(_request(CertificateGrade.PREMIUM))
        issuer.approve(first.certificate_id, "CERTIFIER-1")

        approved = issuer.list_certificates(status="APPROVED")
        by_batch = issuer.list_certificates(batch_id="BAT-001")
        counts = issuer.count_by_status()

        assert [c.certificate_id for c in approved] == [first.certificate_id]
        assert len(by_batch) == 2
        assert counts["APPROVED"] == 1
        assert counts["PENDING_REVIEW"] == 1

    def test_provenance_chain(self, issuer, provenance):
        """The certificate lifecycle is recorded and verifiable."""
        cert = issuer.generate(_request())
        issuer.approve(cert.certificate_id, "CERTIFIER-1")

        valid, chain = provenance.verify_chain(cert.certificate_id)

        assert valid is True
        assert [e["action"] for e in chain] == [
            "processing", "pending_review", "anchor", "approved",
        ]
        assert provenance.verify_global_chain() is True
