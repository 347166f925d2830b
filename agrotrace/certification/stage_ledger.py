# -*- coding: utf-8 -*-
"""
Stage Ledger - ordered chain-of-custody verification per batch

Records the verification stages of every batch in the fixed custody order
HARVEST -> PACKING -> COLD_CHAIN -> EXPORT -> DELIVERY and enforces the
per-stage review lifecycle:

    PENDING  -> APPROVED | REJECTED | FLAGGED
    APPROVED -> (terminal)
    REJECTED -> PENDING            (retry)
    FLAGGED  -> APPROVED | REJECTED

A stage may only be created once its predecessor is APPROVED, and only
one stage of each type exists per batch, so the approved stages of a batch
always form a gapless prefix of the custody order. Which roles may create
or review each stage type is fixed in ``STAGE_PERMISSIONS``.

Every read-validate-write on a batch runs inside a per-batch exclusive
section and bumps a per-batch version counter that callers may pass back
as ``expected_version`` for optimistic checks.

Example:
    >>> from agrotrace.certification.stage_ledger import StageLedger
    >>> ledger = StageLedger()
    >>> ledger.register_batch(Batch(batch_id="BAT-1", producer_id="P-1",
    ...                             crop_type=CropType.AVOCADO))
    >>> stage = ledger.create_stage("BAT-1", StageActor(
    ...     actor_id="P-1", role=ActorRole.PRODUCER))
    >>> stage.stage_type
    <StageType.HARVEST: 'HARVEST'>

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Union

from agrotrace.certification import metrics
from agrotrace.certification.concurrency import KeyedLock
from agrotrace.certification.config import CertificationConfig, get_config
from agrotrace.certification.models import (
    STAGE_ORDER,
    ActorRole,
    Batch,
    StageActor,
    StageDetails,
    StageHistory,
    StageStatus,
    StageStatusChange,
    StageType,
    VerificationStage,
    _utcnow,
)
from agrotrace.certification.provenance import ProvenanceTracker
from agrotrace.exceptions import (
    ConcurrentModificationError,
    InvalidStageOrderError,
    InvalidStatusTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------

STATUS_TRANSITIONS: Dict[StageStatus, FrozenSet[StageStatus]] = {
    StageStatus.PENDING: frozenset({
        StageStatus.APPROVED, StageStatus.REJECTED, StageStatus.FLAGGED,
    }),
    StageStatus.APPROVED: frozenset(),
    StageStatus.REJECTED: frozenset({StageStatus.PENDING}),
    StageStatus.FLAGGED: frozenset({
        StageStatus.APPROVED, StageStatus.REJECTED,
    }),
}

_R = ActorRole

STAGE_PERMISSIONS: Dict[StageType, Dict[str, FrozenSet[ActorRole]]] = {
    StageType.HARVEST: {
        "create": frozenset({_R.PRODUCER, _R.ADMIN}),
        "review": frozenset({_R.QA, _R.CERTIFIER, _R.ADMIN}),
    },
    StageType.PACKING: {
        "create": frozenset({_R.PRODUCER, _R.QA, _R.ADMIN}),
        "review": frozenset({_R.QA, _R.CERTIFIER, _R.ADMIN}),
    },
    StageType.COLD_CHAIN: {
        "create": frozenset({_R.PRODUCER, _R.QA, _R.DRIVER, _R.ADMIN}),
        "review": frozenset({_R.QA, _R.CERTIFIER, _R.ADMIN}),
    },
    StageType.EXPORT: {
        "create": frozenset({_R.EXPORTER, _R.ADMIN}),
        "review": frozenset({_R.EXPORTER, _R.CERTIFIER, _R.ADMIN}),
    },
    StageType.DELIVERY: {
        "create": frozenset({_R.DRIVER, _R.EXPORTER, _R.ADMIN}),
        "review": frozenset({_R.QA, _R.CERTIFIER, _R.ADMIN}),
    },
}


def is_gapless_prefix(approved: Set[StageType]) -> bool:
    """Return True if ``approved`` equals a prefix of the custody order."""
    return approved == set(STAGE_ORDER[:len(approved)])


# =============================================================================
# StageLedger
# =============================================================================


class StageLedger:
    """Per-batch ordered record of verification stages.

    Attributes:
        config: CertificationConfig instance.
        _batches: Registered batches keyed by batch_id.
        _stages: Stages keyed by stage_id.
        _idx_batch_stages: batch_id -> stage_type -> stage_id.
        _versions: Per-batch version counters.
        _completed_at: When each batch's chain was completed.
    """

    def __init__(
        self,
        config: Optional[CertificationConfig] = None,
        provenance: Optional[ProvenanceTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize StageLedger.

        Args:
            config: Optional configuration. Uses global config if None.
            provenance: Optional ProvenanceTracker instance.
            clock: Optional UTC clock, for deterministic timestamps.
        """
        self.config = config or get_config()
        self._provenance = provenance
        self._clock = clock or _utcnow

        self._batches: Dict[str, Batch] = {}
        self._stages: Dict[str, VerificationStage] = {}
        self._idx_batch_stages: Dict[str, Dict[StageType, str]] = {}
        self._versions: Dict[str, int] = {}
        self._completed_at: Dict[str, datetime] = {}
        self._locks = KeyedLock()

        logger.info("StageLedger initialized")

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def register_batch(self, batch: Batch) -> Batch:
        """Register a batch so stages can be recorded against it.

        Raises:
            StateConflictError: If the batch id is already registered.
        """
        with self._locks.hold(batch.batch_id):
            if batch.batch_id in self._batches:
                raise StateConflictError(
                    f"Batch {batch.batch_id} is already registered",
                    error_code="DUPLICATE_BATCH",
                    context={"batch_id": batch.batch_id},
                )
            self._batches[batch.batch_id] = batch
            self._idx_batch_stages[batch.batch_id] = {}
            self._versions[batch.batch_id] = 0

        if self._provenance is not None:
            self._provenance.record(
                entity_type="batch_registration",
                entity_id=batch.batch_id,
                action="register",
                data_hash=self._provenance.build_hash(batch),
                user_id=batch.producer_id,
            )
        logger.info(
            "Registered batch %s (producer=%s, crop=%s)",
            batch.batch_id, batch.producer_id, batch.crop_type.value,
        )
        return batch

    def get_batch(self, batch_id: str) -> Batch:
        """Return a registered batch.

        Raises:
            NotFoundError: If the batch is unknown.
        """
        batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    # ------------------------------------------------------------------
    # Stage creation
    # ------------------------------------------------------------------

    def create_stage(
        self,
        batch_id: str,
        actor: StageActor,
        stage_type: Optional[Union[StageType, str]] = None,
        details: Optional[StageDetails] = None,
        expected_version: Optional[int] = None,
    ) -> VerificationStage:
        """Create the next verification stage for a batch.

        Args:
            batch_id: Batch to record the stage against.
            actor: Actor creating the stage.
            stage_type: Requested stage type. When omitted the next type
                in custody order is used.
            details: Optional location, coordinates, notes and evidence.
            expected_version: Optional ledger version for an optimistic
                concurrency check.

        Returns:
            The new PENDING VerificationStage.

        Raises:
            NotFoundError: If the batch is unknown.
            InvalidStageOrderError: If the requested type is not the next
                one in order, or the chain is already complete.
            StateConflictError: If the next stage already exists and is
                awaiting resolution.
            ConcurrentModificationError: If ``expected_version`` is stale.
            PermissionDeniedError: If the actor's role may not create it.
        """
        start_time = time.monotonic()
        requested = self._coerce_stage_type(stage_type)

        with self._locks.hold(batch_id):
            self.get_batch(batch_id)
            self._check_version(batch_id, expected_version)

            next_type = self._next_stage_type(batch_id)
            if next_type is None:
                raise InvalidStageOrderError(
                    f"Batch {batch_id} has completed every custody stage",
                    context={"batch_id": batch_id},
                )
            if requested is not None and requested != next_type:
                raise InvalidStageOrderError(
                    f"Stage {requested.value} is out of order for batch "
                    f"{batch_id}; expected {next_type.value}",
                    context={
                        "batch_id": batch_id,
                        "requested": requested.value,
                        "expected": next_type.value,
                    },
                )

            self._check_permission(actor, next_type, "create")

            existing_id = self._idx_batch_stages[batch_id].get(next_type)
            if existing_id is not None:
                existing = self._stages[existing_id]
                raise StateConflictError(
                    f"Stage {next_type.value} already exists for batch "
                    f"{batch_id} with status {existing.status.value}",
                    error_code="STAGE_EXISTS",
                    context={
                        "batch_id": batch_id,
                        "stage_id": existing_id,
                        "status": existing.status.value,
                    },
                )

            now = self._clock()
            stage = VerificationStage(
                batch_id=batch_id,
                stage_type=next_type,
                created_by=actor.actor_id,
                created_at=now,
                details=details or StageDetails(),
                status_history=[
                    StageStatusChange(
                        to_status=StageStatus.PENDING,
                        actor_id=actor.actor_id,
                        changed_at=now,
                    ),
                ],
            )
            self._stages[stage.stage_id] = stage
            self._idx_batch_stages[batch_id][next_type] = stage.stage_id
            self._bump_version(batch_id)
            snapshot = stage.model_copy(deep=True)

        if self._provenance is not None:
            self._provenance.record(
                entity_type="stage_creation",
                entity_id=stage.stage_id,
                action="create",
                data_hash=self._provenance.build_hash(snapshot),
                user_id=actor.actor_id,
            )
        metrics.record_stage_created(next_type.value)

        elapsed = time.monotonic() - start_time
        metrics.observe_duration("create_stage", elapsed)
        logger.info(
            "Created stage %s %s for batch %s by %s (%.1f ms)",
            stage.stage_id, next_type.value, batch_id,
            actor.actor_id, elapsed * 1000,
        )
        return snapshot

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def update_stage_status(
        self,
        stage_id: str,
        new_status: Union[StageStatus, str],
        actor: StageActor,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> VerificationStage:
        """Move a stage to a new review status.

        Setting the status a stage already has is a no-op success.

        Raises:
            NotFoundError: If the stage is unknown.
            InvalidStatusTransitionError: If the transition is not allowed.
            PermissionDeniedError: If the actor's role may not review it.
            ConcurrentModificationError: If ``expected_version`` is stale.
        """
        start_time = time.monotonic()
        target = self._coerce_status(new_status)

        stage = self._stages.get(stage_id)
        if stage is None:
            raise NotFoundError("VerificationStage", stage_id)
        batch_id = stage.batch_id

        with self._locks.hold(batch_id):
            self._check_version(batch_id, expected_version)
            current = stage.status
            if target == current:
                logger.debug(
                    "Stage %s already %s; nothing to do", stage_id, current.value,
                )
                return stage.model_copy(deep=True)

            if target not in STATUS_TRANSITIONS[current]:
                raise InvalidStatusTransitionError(
                    f"Stage {stage_id} cannot move from {current.value} "
                    f"to {target.value}",
                    context={
                        "stage_id": stage_id,
                        "from_status": current.value,
                        "to_status": target.value,
                        "allowed": sorted(
                            s.value for s in STATUS_TRANSITIONS[current]
                        ),
                    },
                )

            operation = "create" if target == StageStatus.PENDING else "review"
            self._check_permission(actor, stage.stage_type, operation)

            now = self._clock()
            stage.status = target
            stage.updated_by = actor.actor_id
            stage.updated_at = now
            stage.status_history.append(
                StageStatusChange(
                    from_status=current,
                    to_status=target,
                    actor_id=actor.actor_id,
                    notes=notes,
                    changed_at=now,
                )
            )
            if target == StageStatus.APPROVED:
                stage.completed_at = now
                if stage.stage_type == StageType.DELIVERY:
                    self._completed_at[batch_id] = now
                    logger.info("Batch %s custody chain complete", batch_id)
            self._bump_version(batch_id)
            snapshot = stage.model_copy(deep=True)

        if self._provenance is not None:
            self._provenance.record(
                entity_type="stage_transition",
                entity_id=stage_id,
                action=f"{current.value.lower()}_to_{target.value.lower()}",
                data_hash=self._provenance.build_hash(snapshot),
                user_id=actor.actor_id,
            )
        metrics.record_stage_transition(current.value, target.value)

        elapsed = time.monotonic() - start_time
        metrics.observe_duration("update_stage_status", elapsed)
        logger.info(
            "Stage %s (%s, batch %s) %s -> %s by %s (%.1f ms)",
            stage_id, stage.stage_type.value, batch_id,
            current.value, target.value, actor.actor_id, elapsed * 1000,
        )
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_stage(self, stage_id: str) -> VerificationStage:
        """Return a copy of a stage.

        Raises:
            NotFoundError: If the stage is unknown.
        """
        stage = self._stages.get(stage_id)
        if stage is None:
            raise NotFoundError("VerificationStage", stage_id)
        return stage.model_copy(deep=True)

    def get_stage_history(self, batch_id: str) -> StageHistory:
        """Return the ordered stage history and progress of a batch.

        Raises:
            NotFoundError: If the batch is unknown.
        """
        with self._locks.hold(batch_id):
            self.get_batch(batch_id)
            by_type = self._idx_batch_stages[batch_id]
            stages = [
                self._stages[by_type[t]].model_copy(deep=True)
                for t in STAGE_ORDER if t in by_type
            ]
            approved = self._approved_types(batch_id)
            version = self._versions[batch_id]
            next_type = self._next_stage_type(batch_id)

        current = STAGE_ORDER[len(approved) - 1] if approved else None
        return StageHistory(
            batch_id=batch_id,
            stages=stages,
            current_stage=current,
            next_stage=next_type,
            is_complete=next_type is None,
            progress_percent=round(len(approved) / len(STAGE_ORDER) * 100, 2),
            version=version,
        )

    def get_approved_stage_types(self, batch_id: str) -> Set[StageType]:
        """Return the set of APPROVED stage types for a batch."""
        self.get_batch(batch_id)
        with self._locks.hold(batch_id):
            return self._approved_types(batch_id)

    def is_chain_complete(self, batch_id: str) -> bool:
        """Return True once the batch's DELIVERY stage is APPROVED."""
        self.get_batch(batch_id)
        return batch_id in self._completed_at

    def get_version(self, batch_id: str) -> int:
        """Return the current ledger version of a batch."""
        self.get_batch(batch_id)
        return self._versions[batch_id]

    def list_stages(
        self,
        status: Optional[StageStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[VerificationStage]:
        """List stages across all batches, optionally filtered by status."""
        stages = list(self._stages.values())
        if status is not None:
            stages = [s for s in stages if s.status == status]
        return [s.model_copy(deep=True) for s in stages[offset:offset + limit]]

    @property
    def batch_count(self) -> int:
        """Return the number of registered batches."""
        return len(self._batches)

    @property
    def stage_count(self) -> int:
        """Return the number of recorded stages."""
        return len(self._stages)

    @property
    def completed_count(self) -> int:
        """Return the number of batches with a complete custody chain."""
        return len(self._completed_at)

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the batch lock)
    # ------------------------------------------------------------------

    def _approved_types(self, batch_id: str) -> Set[StageType]:
        return {
            self._stages[sid].stage_type
            for sid in self._idx_batch_stages[batch_id].values()
            if self._stages[sid].status == StageStatus.APPROVED
        }

    def _next_stage_type(self, batch_id: str) -> Optional[StageType]:
        approved = self._approved_types(batch_id)
        for stage_type in STAGE_ORDER:
            if stage_type not in approved:
                return stage_type
        return None

    def _check_version(
        self, batch_id: str, expected_version: Optional[int],
    ) -> None:
        if expected_version is None:
            return
        actual = self._versions[batch_id]
        if expected_version != actual:
            raise ConcurrentModificationError(
                f"Batch {batch_id} changed since version {expected_version}",
                expected_version=expected_version,
                actual_version=actual,
            )

    def _bump_version(self, batch_id: str) -> None:
        self._versions[batch_id] += 1

    @staticmethod
    def _check_permission(
        actor: StageActor, stage_type: StageType, operation: str,
    ) -> None:
        allowed = STAGE_PERMISSIONS[stage_type][operation]
        if actor.role not in allowed:
            raise PermissionDeniedError(
                f"Role {actor.role.value} may not {operation} "
                f"{stage_type.value} stages",
                role=actor.role.value,
                operation=f"{operation}:{stage_type.value}",
            )

    @staticmethod
    def _coerce_stage_type(
        value: Optional[Union[StageType, str]],
    ) -> Optional[StageType]:
        if value is None or isinstance(value, StageType):
            return value
        try:
            return StageType(value)
        except ValueError:
            raise ValidationError(
                f"Unknown stage type: {value}",
                invalid_fields={"stage_type": "not a known stage type"},
            )

    @staticmethod
    def _coerce_status(value: Union[StageStatus, str]) -> StageStatus:
        if isinstance(value, StageStatus):
            return value
        try:
            return StageStatus(value)
        except ValueError:
            raise ValidationError(
                f"Unknown stage status: {value}",
                invalid_fields={"status": "not a known stage status"},
            )


__all__ = [
    "StageLedger",
    "STATUS_TRANSITIONS",
    "STAGE_PERMISSIONS",
    "is_gapless_prefix",
]
