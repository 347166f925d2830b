# -*- coding: utf-8 -*-
"""
Evidence aggregation boundary.

The eligibility evaluator only needs counts of recent field inspections,
inspection photos and organic inputs for a field or batch.
``EvidenceAggregator`` is that contract; ``InMemoryEvidenceAggregator``
backs it with in-memory records for development, sandbox deployments and
tests.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from agrotrace.certification.models import EvidenceCounts, _utcnow
from agrotrace.exceptions import ValidationError

logger = logging.getLogger(__name__)


@runtime_checkable
class EvidenceAggregator(Protocol):
    """Supplies evidence counts for a field or batch."""

    def count_recent_evidence(
        self, ref: str, window_days: int,
    ) -> EvidenceCounts:
        """Count evidence recorded for ``ref`` in the trailing window."""
        ...


@dataclass(frozen=True)
class _Inspection:
    inspected_at: datetime
    photos: int
    verified: bool


@dataclass(frozen=True)
class _OrganicInput:
    applied_at: datetime
    verified: bool


class InMemoryEvidenceAggregator:
    """Evidence store keyed by field or batch id.

    Example:
        >>> agg = InMemoryEvidenceAggregator()
        >>> agg.record_inspection("FLD-1", photos=3, verified=True)
        >>> agg.count_recent_evidence("FLD-1", 90).photos
        3
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._inspections: Dict[str, List[_Inspection]] = {}
        self._inputs: Dict[str, List[_OrganicInput]] = {}
        self._lock = threading.Lock()

    def record_inspection(
        self,
        ref: str,
        inspected_at: Optional[datetime] = None,
        photos: int = 0,
        verified: bool = False,
    ) -> None:
        """Record a field inspection and the number of photos taken."""
        if photos < 0:
            raise ValidationError(
                "Photo count cannot be negative",
                invalid_fields={"photos": "must be >= 0"},
            )
        entry = _Inspection(inspected_at or self._clock(), photos, verified)
        with self._lock:
            self._inspections.setdefault(ref, []).append(entry)

    def record_organic_input(
        self,
        ref: str,
        applied_at: Optional[datetime] = None,
        verified: bool = False,
    ) -> None:
        """Record an organic input application (compost, biocontrol, ...)."""
        entry = _OrganicInput(applied_at or self._clock(), verified)
        with self._lock:
            self._inputs.setdefault(ref, []).append(entry)

    def count_recent_evidence(
        self, ref: str, window_days: int,
    ) -> EvidenceCounts:
        """Count evidence recorded for ``ref`` within ``window_days``.

        Organic inputs count over the same window as inspections.
        """
        cutoff = self._clock() - timedelta(days=window_days)
        with self._lock:
            inspections = [
                i for i in self._inspections.get(ref, [])
                if i.inspected_at >= cutoff
            ]
            inputs = [
                i for i in self._inputs.get(ref, []) if i.applied_at >= cutoff
            ]
        counts = EvidenceCounts(
            inspections=len(inspections),
            verified_inspections=sum(1 for i in inspections if i.verified),
            photos=sum(i.photos for i in inspections),
            organic_inputs=len(inputs),
            verified_organic_inputs=sum(1 for i in inputs if i.verified),
            window_days=window_days,
        )
        logger.debug("Evidence for %s over %dd: %s", ref, window_days, counts)
        return counts


__all__ = [
    "EvidenceAggregator",
    "InMemoryEvidenceAggregator",
]
