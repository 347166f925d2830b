# -*- coding: utf-8 -*-
"""
Monthly imagery processing-unit budget.

``ProcessingQuota`` is shared process-wide by concurrent analysis requests.
Units are reserved with an atomic compare-and-increment before imagery is
fetched, so concurrent runs can never spend past the monthly limit. A run
whose fetch fails releases its reservation. The counter rolls over when
the calendar month (UTC) changes.

Example:
    >>> quota = ProcessingQuota(monthly_limit=10.0)
    >>> period = quota.reserve(5.0)
    >>> quota.remaining
    5.0
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Tuple

from agrotrace.certification import metrics
from agrotrace.certification.models import _utcnow
from agrotrace.exceptions import QuotaExceededError, ValidationError

logger = logging.getLogger(__name__)

Period = Tuple[int, int]


class ProcessingQuota:
    """Thread-safe monthly processing-unit counter."""

    def __init__(
        self,
        monthly_limit: float,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if monthly_limit <= 0:
            raise ValidationError(
                "monthly_limit must be positive",
                invalid_fields={"monthly_limit": "must be > 0"},
            )
        self._limit = float(monthly_limit)
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._period: Period = self._current_period()
        self._used = 0.0
        self._reservations = 0

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve(self, units: float) -> Period:
        """Atomically reserve ``units`` from this month's budget.

        Returns:
            The (year, month) period the units were charged to.

        Raises:
            QuotaExceededError: If the reservation would exceed the limit.
        """
        if units <= 0:
            raise ValidationError(
                "Reserved units must be positive",
                invalid_fields={"units": "must be > 0"},
            )
        with self._lock:
            self._roll_over()
            if self._used + units > self._limit:
                logger.warning(
                    "Processing quota exceeded: used=%.1f requested=%.1f "
                    "limit=%.1f",
                    self._used, units, self._limit,
                )
                raise QuotaExceededError(
                    f"Monthly imagery budget exhausted: {self._used:.1f} of "
                    f"{self._limit:.1f} units used, {units:.1f} requested",
                    used=self._used,
                    limit=self._limit,
                    requested=units,
                )
            self._used += units
            self._reservations += 1
            used = self._used
            period = self._period
        metrics.update_quota_units(used)
        return period

    def release(self, units: float, period: Period) -> None:
        """Return ``units`` reserved in ``period`` to the budget.

        Releases for a past month are ignored; that budget is gone.
        """
        with self._lock:
            self._roll_over()
            if period != self._period:
                return
            self._used = max(0.0, self._used - units)
            self._reservations = max(0, self._reservations - 1)
            used = self._used
        metrics.update_quota_units(used)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def used(self) -> float:
        with self._lock:
            self._roll_over()
            return self._used

    @property
    def remaining(self) -> float:
        with self._lock:
            self._roll_over()
            return self._limit - self._used

    @property
    def used_percent(self) -> float:
        """Share of the monthly budget already reserved, in percent."""
        return round(self.used / self._limit * 100, 2)

    @property
    def reservations(self) -> int:
        """Successful reservations this month."""
        with self._lock:
            self._roll_over()
            return self._reservations

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _current_period(self) -> Period:
        now = self._clock()
        return (now.year, now.month)

    def _roll_over(self) -> None:
        period = self._current_period()
        if period != self._period:
            logger.info(
                "Processing quota rolled over from %d-%02d (%.1f units used)",
                self._period[0], self._period[1], self._used,
            )
            self._period = period
            self._used = 0.0
            self._reservations = 0


__all__ = ["ProcessingQuota"]
