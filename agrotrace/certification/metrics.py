# -*- coding: utf-8 -*-
"""
Prometheus Metrics - AgroTrace Certification Core

11 Prometheus metrics for certification core self-monitoring.

Metrics:
    1.  agrotrace_cert_stages_created_total (Counter) [stage_type]
    2.  agrotrace_cert_stage_transitions_total (Counter) [from_status, to_status]
    3.  agrotrace_cert_eligibility_evaluations_total (Counter) [grade, result]
    4.  agrotrace_cert_satellite_analyses_total (Counter) [crop_type, compliance_status]
    5.  agrotrace_cert_violations_detected_total (Counter) [violation_type, severity]
    6.  agrotrace_cert_quota_units_used (Gauge) []
    7.  agrotrace_cert_certificate_transitions_total (Counter) [status]
    8.  agrotrace_cert_anchor_attempts_total (Counter) [outcome]
    9.  agrotrace_cert_pin_attempts_total (Counter) [outcome]
    10. agrotrace_cert_processing_errors_total (Counter) [engine, error_type]
    11. agrotrace_cert_operation_duration_seconds (Histogram) [operation]

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Verification stages created by stage type
stages_created_total = Counter(
    "agrotrace_cert_stages_created_total",
    "Total verification stages created",
    labelnames=["stage_type"],
)

# 2. Stage status transitions
stage_transitions_total = Counter(
    "agrotrace_cert_stage_transitions_total",
    "Total verification stage status transitions",
    labelnames=["from_status", "to_status"],
)

# 3. Eligibility evaluations by grade and result
eligibility_evaluations_total = Counter(
    "agrotrace_cert_eligibility_evaluations_total",
    "Total certificate eligibility evaluations",
    labelnames=["grade", "result"],
)

# 4. Satellite analyses by crop and compliance status
satellite_analyses_total = Counter(
    "agrotrace_cert_satellite_analyses_total",
    "Total satellite compliance analyses",
    labelnames=["crop_type", "compliance_status"],
)

# 5. Violations detected by type and severity
violations_detected_total = Counter(
    "agrotrace_cert_violations_detected_total",
    "Total organic-rule violations detected from NDVI history",
    labelnames=["violation_type", "severity"],
)

# 6. Processing units consumed in the current month
quota_units_used = Gauge(
    "agrotrace_cert_quota_units_used",
    "Imagery processing units consumed in the current month",
)

# 7. Certificate lifecycle transitions by target status
certificate_transitions_total = Counter(
    "agrotrace_cert_certificate_transitions_total",
    "Total certificate lifecycle transitions",
    labelnames=["status"],
)

# 8. Anchoring attempts by outcome
anchor_attempts_total = Counter(
    "agrotrace_cert_anchor_attempts_total",
    "Total blockchain anchoring attempts",
    labelnames=["outcome"],
)

# 9. Pin attempts by outcome
pin_attempts_total = Counter(
    "agrotrace_cert_pin_attempts_total",
    "Total content-addressed pin attempts",
    labelnames=["outcome"],
)

# 10. Processing errors by engine and error type
processing_errors_total = Counter(
    "agrotrace_cert_processing_errors_total",
    "Total processing errors by engine and error type",
    labelnames=["engine", "error_type"],
)

# 11. Operation duration histogram
operation_duration_seconds = Histogram(
    "agrotrace_cert_operation_duration_seconds",
    "Certification core operation duration in seconds",
    labelnames=["operation"],
    buckets=(
        0.001, 0.005, 0.01, 0.05, 0.1, 0.25,
        0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0,
    ),
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_stage_created(stage_type: str) -> None:
    """Record the creation of a verification stage.

    Args:
        stage_type: Stage type (HARVEST, PACKING, ...).
    """
    stages_created_total.labels(stage_type=stage_type).inc()


def record_stage_transition(from_status: str, to_status: str) -> None:
    """Record a verification stage status transition."""
    stage_transitions_total.labels(
        from_status=from_status, to_status=to_status,
    ).inc()


def record_eligibility_evaluation(grade: str, result: str) -> None:
    """Record an eligibility evaluation.

    Args:
        grade: Requested certificate grade.
        result: Evaluation result (eligible, not_eligible).
    """
    eligibility_evaluations_total.labels(grade=grade, result=result).inc()


def record_satellite_analysis(crop_type: str, compliance_status: str) -> None:
    """Record a completed or failed satellite analysis."""
    satellite_analyses_total.labels(
        crop_type=crop_type, compliance_status=compliance_status,
    ).inc()


def record_violation(violation_type: str, severity: str) -> None:
    """Record a detected violation flag."""
    violations_detected_total.labels(
        violation_type=violation_type, severity=severity,
    ).inc()


def update_quota_units(units: float) -> None:
    """Set the processing units consumed in the current month."""
    quota_units_used.set(units)


def record_certificate_transition(status: str) -> None:
    """Record a certificate entering ``status``."""
    certificate_transitions_total.labels(status=status).inc()


def record_anchor_attempt(outcome: str) -> None:
    """Record an anchoring attempt.

    Args:
        outcome: success, transient_failure, timeout or rejected.
    """
    anchor_attempts_total.labels(outcome=outcome).inc()


def record_pin_attempt(outcome: str) -> None:
    """Record a pin attempt (success or failure)."""
    pin_attempts_total.labels(outcome=outcome).inc()


def record_processing_error(engine: str, error_type: str) -> None:
    """Record a processing error.

    Args:
        engine: Engine that raised (stage_ledger, satellite, issuer, ...).
        error_type: Error class or code.
    """
    processing_errors_total.labels(engine=engine, error_type=error_type).inc()


def observe_duration(operation: str, seconds: float) -> None:
    """Observe the duration of a core operation."""
    operation_duration_seconds.labels(operation=operation).observe(seconds)


__all__ = [
    "record_stage_created",
    "record_stage_transition",
    "record_eligibility_evaluation",
    "record_satellite_analysis",
    "record_violation",
    "update_quota_units",
    "record_certificate_transition",
    "record_anchor_attempt",
    "record_pin_attempt",
    "record_processing_error",
    "observe_duration",
]
