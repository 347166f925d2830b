# -*- coding: utf-8 -*-
"""
Certification Core Service Configuration

Centralized configuration for the AgroTrace certification core covering:
- Evidence minimums and the trailing evidence window
- Certificate numbering, validity and review rules
- Satellite analysis window, sampling interval and cloud ceiling
- Violation detection thresholds (fertilizer, pesticide, land clearing)
- Monthly imagery processing-unit budget
- Timeouts and retry policy for external collaborators
- Anchoring network and collaborator endpoints
- Feature toggle (use_sandbox for development mode)
- Logging level

All settings can be overridden via environment variables with the
``AGROTRACE_CERT_`` prefix (e.g. ``AGROTRACE_CERT_MIN_INSPECTIONS``).

Example:
    >>> from agrotrace.certification.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.min_inspections, cfg.report_retention_days)

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "AGROTRACE_CERT_"


# ---------------------------------------------------------------------------
# CertificationConfig
# ---------------------------------------------------------------------------


@dataclass
class CertificationConfig:
    """Complete configuration for the AgroTrace certification core.

    Attributes are grouped by concern: logging, evidence, certificates,
    satellite analysis, detection thresholds, quota, external calls,
    and feature toggles.

    Attributes:
        log_level: Logging level for the certification service.
        min_inspections: Inspections required within the evidence window.
        min_photos: Photos required within the evidence window.
        min_verified_organic_inputs: Verified organic inputs required.
        evidence_window_days: Trailing window for evidence counting.
        certificate_validity_days: Validity of an issued certificate.
        certificate_number_prefix: Prefix of issued certificate numbers.
        min_rejection_reason_length: Minimum characters in a rejection reason.
        report_retention_days: Days a satellite report may be relied on.
        report_expiry_warning_days: Warn when a report expires this soon.
        low_confidence_warning: Warn below this satellite confidence.
        analysis_years: Default history length for satellite analysis.
        sampling_interval_days: Expected spacing of NDVI samples.
        max_cloud_coverage: Samples above this cloud percentage are dropped.
        min_valid_points: Valid samples needed for a definitive verdict.
        detection_window_days: Window in which a rise/drop must occur.
        sampling_tolerance_days: Slack added to the window for sample jitter.
        pesticide_drop_threshold: NDVI drop that starts a pesticide signature.
        pesticide_recovery_threshold: NDVI bounce that completes it.
        land_clearing_drop_threshold: NDVI drop indicating clearing.
        land_clearing_sustained_days: Days the clearing drop must persist.
        seasonal_allowance: Extra rise tolerated during seasonal green-up.
        monthly_processing_units: Imagery processing-unit budget per month.
        processing_units_per_request: Units consumed per imagery request.
        requests_per_analysis: Imagery requests issued per field analysis.
        imagery_timeout_seconds: Timeout for an imagery fetch.
        anchor_timeout_seconds: Timeout for a single anchoring call.
        pin_timeout_seconds: Timeout for a payload pin.
        anchor_max_attempts: Anchoring attempts per approval call.
        anchor_retry_backoff_seconds: Base delay for exponential backoff.
        anchor_network: Ledger network used for anchoring.
        anchor_url: Anchoring bridge base URL (HTTP client).
        pin_url: Pinning service base URL (HTTP client).
        use_sandbox: Use deterministic sandbox collaborators.
        soil_test_cost_usd: Lab soil-test cost used for savings estimates.
    """

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    # -- Evidence minimums ---------------------------------------------------
    min_inspections: int = 4
    min_photos: int = 12
    min_verified_organic_inputs: int = 3
    evidence_window_days: int = 90

    # -- Certificates --------------------------------------------------------
    certificate_validity_days: int = 365
    certificate_number_prefix: str = "AGT-MX"
    min_rejection_reason_length: int = 10

    # -- Satellite reports ---------------------------------------------------
    report_retention_days: int = 90
    report_expiry_warning_days: int = 14
    low_confidence_warning: float = 0.7

    # -- Satellite analysis --------------------------------------------------
    analysis_years: int = 3
    sampling_interval_days: int = 30
    max_cloud_coverage: float = 50.0
    min_valid_points: int = 24

    # -- Detection thresholds ------------------------------------------------
    detection_window_days: int = 30
    sampling_tolerance_days: int = 5
    pesticide_drop_threshold: float = 0.15
    pesticide_recovery_threshold: float = 0.10
    land_clearing_drop_threshold: float = 0.40
    land_clearing_sustained_days: int = 60
    seasonal_allowance: float = 0.10

    # -- Imagery quota -------------------------------------------------------
    monthly_processing_units: float = 1000.0
    processing_units_per_request: float = 0.5
    requests_per_analysis: int = 10

    # -- External calls ------------------------------------------------------
    imagery_timeout_seconds: float = 60.0
    anchor_timeout_seconds: float = 30.0
    pin_timeout_seconds: float = 30.0
    anchor_max_attempts: int = 3
    anchor_retry_backoff_seconds: float = 0.5
    anchor_network: str = "POLYGON"
    anchor_url: str = ""
    pin_url: str = ""

    # -- Feature toggles -----------------------------------------------------
    use_sandbox: bool = True

    # -- Reporting -----------------------------------------------------------
    soil_test_cost_usd: float = 350.0

    @property
    def units_per_analysis(self) -> float:
        """Processing units reserved for one field analysis."""
        return self.processing_units_per_request * self.requests_per_analysis

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> CertificationConfig:
        """Build a CertificationConfig from environment variables.

        Every field can be overridden via ``AGROTRACE_CERT_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).
        Integer values are parsed via ``int()``; day and count settings
        below 1 keep their defaults. Evidence minimums and the expiry
        warning may be 0.
        Float values are parsed via ``float()``.

        Returns:
            Populated CertificationConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int, minimum: int = 1) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                parsed = int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default
            if parsed < minimum:
                logger.warning(
                    "%s%s=%d is below the minimum of %d, using default %d",
                    prefix, name, parsed, minimum, default,
                )
                return default
            return parsed

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %s",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        config = cls(
            log_level=_str("LOG_LEVEL", cls.log_level),
            min_inspections=_int("MIN_INSPECTIONS", cls.min_inspections, minimum=0),
            min_photos=_int("MIN_PHOTOS", cls.min_photos, minimum=0),
            min_verified_organic_inputs=_int(
                "MIN_VERIFIED_ORGANIC_INPUTS", cls.min_verified_organic_inputs,
                minimum=0,
            ),
            evidence_window_days=_int(
                "EVIDENCE_WINDOW_DAYS", cls.evidence_window_days,
            ),
            certificate_validity_days=_int(
                "CERTIFICATE_VALIDITY_DAYS", cls.certificate_validity_days,
            ),
            certificate_number_prefix=_str(
                "CERTIFICATE_NUMBER_PREFIX", cls.certificate_number_prefix,
            ),
            min_rejection_reason_length=_int(
                "MIN_REJECTION_REASON_LENGTH", cls.min_rejection_reason_length,
            ),
            report_retention_days=_int(
                "REPORT_RETENTION_DAYS", cls.report_retention_days,
            ),
            report_expiry_warning_days=_int(
                "REPORT_EXPIRY_WARNING_DAYS", cls.report_expiry_warning_days,
                minimum=0,
            ),
            low_confidence_warning=_float(
                "LOW_CONFIDENCE_WARNING", cls.low_confidence_warning,
            ),
            analysis_years=_int("ANALYSIS_YEARS", cls.analysis_years),
            sampling_interval_days=_int(
                "SAMPLING_INTERVAL_DAYS", cls.sampling_interval_days,
            ),
            max_cloud_coverage=_float(
                "MAX_CLOUD_COVERAGE", cls.max_cloud_coverage,
            ),
            min_valid_points=_int("MIN_VALID_POINTS", cls.min_valid_points),
            detection_window_days=_int(
                "DETECTION_WINDOW_DAYS", cls.detection_window_days,
            ),
            sampling_tolerance_days=_int(
                "SAMPLING_TOLERANCE_DAYS", cls.sampling_tolerance_days,
            ),
            pesticide_drop_threshold=_float(
                "PESTICIDE_DROP_THRESHOLD", cls.pesticide_drop_threshold,
            ),
            pesticide_recovery_threshold=_float(
                "PESTICIDE_RECOVERY_THRESHOLD",
                cls.pesticide_recovery_threshold,
            ),
            land_clearing_drop_threshold=_float(
                "LAND_CLEARING_DROP_THRESHOLD",
                cls.land_clearing_drop_threshold,
            ),
            land_clearing_sustained_days=_int(
                "LAND_CLEARING_SUSTAINED_DAYS",
                cls.land_clearing_sustained_days,
            ),
            seasonal_allowance=_float(
                "SEASONAL_ALLOWANCE", cls.seasonal_allowance,
            ),
            monthly_processing_units=_float(
                "MONTHLY_PROCESSING_UNITS", cls.monthly_processing_units,
            ),
            processing_units_per_request=_float(
                "PROCESSING_UNITS_PER_REQUEST",
                cls.processing_units_per_request,
            ),
            requests_per_analysis=_int(
                "REQUESTS_PER_ANALYSIS", cls.requests_per_analysis,
            ),
            imagery_timeout_seconds=_float(
                "IMAGERY_TIMEOUT_SECONDS", cls.imagery_timeout_seconds,
            ),
            anchor_timeout_seconds=_float(
                "ANCHOR_TIMEOUT_SECONDS", cls.anchor_timeout_seconds,
            ),
            pin_timeout_seconds=_float(
                "PIN_TIMEOUT_SECONDS", cls.pin_timeout_seconds,
            ),
            anchor_max_attempts=_int(
                "ANCHOR_MAX_ATTEMPTS", cls.anchor_max_attempts,
            ),
            anchor_retry_backoff_seconds=_float(
                "ANCHOR_RETRY_BACKOFF_SECONDS",
                cls.anchor_retry_backoff_seconds,
            ),
            anchor_network=_str("ANCHOR_NETWORK", cls.anchor_network),
            anchor_url=_str("ANCHOR_URL", cls.anchor_url),
            pin_url=_str("PIN_URL", cls.pin_url),
            use_sandbox=_bool("USE_SANDBOX", cls.use_sandbox),
            soil_test_cost_usd=_float(
                "SOIL_TEST_COST_USD", cls.soil_test_cost_usd,
            ),
        )

        logger.info(
            "CertificationConfig loaded: evidence=%d insp/%d photos/%d inputs "
            "in %dd, validity=%dd, retention=%dd, window=%dy@%dd, "
            "cloud<=%.0f%%, min_points=%d, quota=%.0f units "
            "(%.2f x %d per analysis), anchor=%s attempts=%d, "
            "sandbox=%s, anchor_url=%s, pin_url=%s",
            config.min_inspections,
            config.min_photos,
            config.min_verified_organic_inputs,
            config.evidence_window_days,
            config.certificate_validity_days,
            config.report_retention_days,
            config.analysis_years,
            config.sampling_interval_days,
            config.max_cloud_coverage,
            config.min_valid_points,
            config.monthly_processing_units,
            config.processing_units_per_request,
            config.requests_per_analysis,
            config.anchor_network,
            config.anchor_max_attempts,
            config.use_sandbox,
            "***" if config.anchor_url else "(unset)",
            "***" if config.pin_url else "(unset)",
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[CertificationConfig] = None
_config_lock = threading.Lock()


def get_config() -> CertificationConfig:
    """Return the singleton CertificationConfig, creating from env if needed."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = CertificationConfig.from_env()
    return _config_instance


def set_config(config: CertificationConfig) -> None:
    """Replace the singleton CertificationConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("CertificationConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "CertificationConfig",
    "get_config",
    "set_config",
    "reset_config",
]
