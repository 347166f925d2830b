# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures."""

import threading
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import pytest

from agrotrace.certification.config import CertificationConfig, reset_config
from agrotrace.certification.eligibility import CertificateEligibilityEvaluator
from agrotrace.certification.evidence import InMemoryEvidenceAggregator
from agrotrace.certification.models import (
    STAGE_ORDER,
    ActorRole,
    AnchorReceipt,
    Batch,
    CropType,
    NDVIDataPoint,
    OrganicField,
    StageActor,
    StageStatus,
    StageType,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.certification.satellite_analysis import SatelliteComplianceAnalyzer
from agrotrace.certification.stage_ledger import StageLedger
from agrotrace.exceptions import ExternalServiceError


FIXED_NOW = datetime(2026, 10, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_series(
    values: List[float],
    start: date = date(2024, 1, 1),
    interval_days: int = 30,
    cloud: float = 10.0,
) -> List[NDVIDataPoint]:
    """Build an NDVI series with one sample every ``interval_days``."""
    return [
        NDVIDataPoint(
            sample_date=start + timedelta(days=i * interval_days),
            ndvi_average=value,
            cloud_coverage=cloud,
            confidence=round(1.0 - cloud / 200.0, 4),
        )
        for i, value in enumerate(values)
    ]


class FlatImageryProvider:
    """Imagery provider returning a constant NDVI series."""

    def __init__(self, ndvi: float = 0.65, cloud: float = 10.0, interval_days: int = 30):
        self.ndvi = ndvi
        self.cloud = cloud
        self.interval_days = interval_days
        self.calls = 0

    def fetch_index_series(self, field, start, end, max_cloud_coverage):
        self.calls += 1
        count = (end - start).days // self.interval_days + 1
        return make_series(
            [self.ndvi] * count, start=start,
            interval_days=self.interval_days, cloud=self.cloud,
        )


class FailingImageryProvider:
    """Imagery provider whose every request fails."""

    def __init__(self, error: Exception):
        self.error = error

    def fetch_index_series(self, field, start, end, max_cloud_coverage):
        raise self.error


class FakeAnchor:
    """Anchor client that replays scripted outcomes.

    Each outcome is an exception to raise or None for success. Once the
    script is exhausted every call succeeds.
    """

    def __init__(self, outcomes: Optional[list] = None, network: str = "POLYGON"):
        self.outcomes = list(outcomes or [])
        self.network = network
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def anchor(self, content_hash: str) -> AnchorReceipt:
        with self._lock:
            self.calls.append(content_hash)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        return AnchorReceipt(
            tx_hash=f"0x{content_hash}",
            network=self.network,
            anchored_at=FIXED_NOW,
            explorer_url=f"https://polygonscan.com/tx/0x{content_hash}",
        )


class FakePinService:
    """Pin service that can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.pinned: List[dict] = []

    def pin(self, payload: dict) -> str:
        if self.fail:
            raise ExternalServiceError("gateway down", service="pin")
        self.pinned.append(payload)
        return f"bafkreifake{len(self.pinned):04d}"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_config():
    """Reset the global configuration around every test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return CertificationConfig(anchor_retry_backoff_seconds=0.5)


@pytest.fixture
def provenance():
    return ProvenanceTracker()


@pytest.fixture
def actors():
    """One actor per role, keyed by role name in lowercase."""
    return {
        role.value.lower(): StageActor(actor_id=f"{role.value}-1", role=role)
        for role in ActorRole
    }


@pytest.fixture
def batch():
    return Batch(
        batch_id="BAT-001",
        producer_id="PRD-001",
        crop_type=CropType.AVOCADO,
        field_ids=["FLD-001"],
    )


@pytest.fixture
def organic_field():
    return OrganicField(
        field_id="FLD-001",
        producer_id="PRD-001",
        crop_type=CropType.AVOCADO,
        hectares=4.5,
        latitude=19.41,
        longitude=-102.05,
    )


@pytest.fixture
def ledger(config, provenance, clock, batch):
    """Stage ledger with BAT-001 registered."""
    ledger = StageLedger(config=config, provenance=provenance, clock=clock)
    ledger.register_batch(batch)
    return ledger


@pytest.fixture
def advance_chain(ledger, actors):
    """Create and approve stages in order up to and including ``upto``."""

    def _advance(batch_id: str = "BAT-001", upto: StageType = StageType.DELIVERY):
        admin = actors["admin"]
        for stage_type in STAGE_ORDER:
            stage = ledger.create_stage(batch_id, admin, stage_type=stage_type)
            ledger.update_stage_status(stage.stage_id, StageStatus.APPROVED, admin)
            if stage_type == upto:
                break

    return _advance


@pytest.fixture
def evidence(clock):
    """Evidence store holding enough recent evidence for BAT-001."""
    store = InMemoryEvidenceAggregator(clock=clock)
    for days_ago in (5, 20, 40, 60):
        store.record_inspection(
            "BAT-001",
            inspected_at=clock() - timedelta(days=days_ago),
            photos=3,
            verified=True,
        )
    for days_ago in (10, 30, 50):
        store.record_organic_input(
            "BAT-001",
            applied_at=clock() - timedelta(days=days_ago),
            verified=True,
        )
    return store


@pytest.fixture
def imagery():
    return FlatImageryProvider()


@pytest.fixture
def analyzer(config, imagery, provenance, clock):
    return SatelliteComplianceAnalyzer(
        config=config, imagery=imagery, provenance=provenance, clock=clock,
    )


@pytest.fixture
def evaluator(ledger, evidence, analyzer, config, provenance, clock):
    return CertificateEligibilityEvaluator(
        ledger=ledger,
        evidence=evidence,
        satellite=analyzer,
        config=config,
        provenance=provenance,
        clock=clock,
    )
