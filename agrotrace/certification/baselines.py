# -*- coding: utf-8 -*-
"""
Static calibration tables for satellite compliance analysis.

- ``CROP_NDVI_BASELINES``: per-crop seasonal NDVI baseline (peak and low
  months, healthy index range, synthetic-fertilizer rise threshold).
- ``DEFAULT_SEVERITY_CALIBRATION``: per-violation magnitude bands mapping a
  rule hit to LOW / MEDIUM / HIGH. Replaceable per analyzer instance.

Months are calendar months (1 = January).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping

from agrotrace.certification.models import (
    CropBaseline,
    CropType,
    ViolationSeverity,
    ViolationType,
)
from agrotrace.exceptions import ValidationError


# ---------------------------------------------------------------------------
# Crop baselines
# ---------------------------------------------------------------------------

_BERRY_CANE = dict(
    peak_months=[6, 7, 8],
    low_months=[12, 1, 2],
    healthy_min=0.40,
    healthy_max=0.75,
    synthetic_threshold=0.22,
)

CROP_NDVI_BASELINES: Dict[CropType, CropBaseline] = {
    CropType.AVOCADO: CropBaseline(
        crop_type=CropType.AVOCADO,
        peak_months=[5, 6, 7, 8],
        low_months=[11, 12, 1],
        healthy_min=0.45,
        healthy_max=0.85,
        synthetic_threshold=0.25,
    ),
    CropType.BLUEBERRY: CropBaseline(
        crop_type=CropType.BLUEBERRY, **_BERRY_CANE,
    ),
    CropType.STRAWBERRY: CropBaseline(
        crop_type=CropType.STRAWBERRY,
        peak_months=[4, 5, 6],
        low_months=[9, 10],
        healthy_min=0.35,
        healthy_max=0.70,
        synthetic_threshold=0.20,
    ),
    CropType.RASPBERRY: CropBaseline(
        crop_type=CropType.RASPBERRY, **_BERRY_CANE,
    ),
    CropType.BLACKBERRY: CropBaseline(
        crop_type=CropType.BLACKBERRY, **_BERRY_CANE,
    ),
    CropType.COFFEE: CropBaseline(
        crop_type=CropType.COFFEE,
        peak_months=[7, 8, 9, 10],
        low_months=[2, 3],
        healthy_min=0.50,
        healthy_max=0.80,
        synthetic_threshold=0.20,
    ),
    CropType.CACAO: CropBaseline(
        crop_type=CropType.CACAO,
        peak_months=[7, 8, 9, 10],
        low_months=[2, 3, 4],
        healthy_min=0.55,
        healthy_max=0.85,
        synthetic_threshold=0.20,
    ),
}


def get_crop_baseline(crop_type: CropType) -> CropBaseline:
    """Return the seasonal baseline for ``crop_type``.

    Raises:
        ValidationError: If no baseline is calibrated for the crop.
    """
    baseline = CROP_NDVI_BASELINES.get(CropType(crop_type))
    if baseline is None:
        raise ValidationError(
            f"No NDVI baseline calibrated for crop {crop_type}",
            invalid_fields={"crop_type": "no calibrated baseline"},
        )
    return baseline


# ---------------------------------------------------------------------------
# Severity calibration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeverityBand:
    """Magnitude bands for one violation type.

    A hit whose magnitude is above ``high_above`` is HIGH, above
    ``medium_above`` is MEDIUM, otherwise LOW. Magnitudes are absolute
    NDVI deltas.
    """

    medium_above: float
    high_above: float

    def classify(self, magnitude: float) -> ViolationSeverity:
        if magnitude > self.high_above:
            return ViolationSeverity.HIGH
        if magnitude > self.medium_above:
            return ViolationSeverity.MEDIUM
        return ViolationSeverity.LOW


SeverityCalibration = Mapping[ViolationType, SeverityBand]

DEFAULT_SEVERITY_CALIBRATION: Dict[ViolationType, SeverityBand] = {
    # Rises above 0.35 in one window are HIGH, any other hit MEDIUM.
    ViolationType.SYNTHETIC_FERTILIZER: SeverityBand(
        medium_above=0.0, high_above=0.35,
    ),
    # Drop-then-bounce signatures are MEDIUM; NDVI deltas never exceed 2.0.
    ViolationType.PESTICIDE_APPLICATION: SeverityBand(
        medium_above=0.0, high_above=2.0,
    ),
    # Sustained clearing is always HIGH.
    ViolationType.LAND_CLEARING: SeverityBand(
        medium_above=0.0, high_above=0.0,
    ),
}


__all__ = [
    "CROP_NDVI_BASELINES",
    "get_crop_baseline",
    "SeverityBand",
    "SeverityCalibration",
    "DEFAULT_SEVERITY_CALIBRATION",
]
