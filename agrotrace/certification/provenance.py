# -*- coding: utf-8 -*-
"""
Provenance Tracking for the Certification Core

Provides SHA-256 based audit trail tracking for every decision the
certification core takes. Maintains an in-memory chain-hashed operation log
for tamper-evident provenance.

Operation Types:
    - batch_registration: Batch or field registered
    - stage_creation: Verification stage created
    - stage_transition: Verification stage status changed
    - eligibility_evaluation: Certificate eligibility evaluated
    - satellite_analysis: Satellite compliance analysis completed
    - certificate_issuance: Certificate payload built and hashed
    - certificate_review: Certificate approved or rejected
    - certificate_anchor: Content hash anchored on a ledger
    - certificate_revocation: Certificate revoked

Zero-Hallucination Guarantees:
    - All hashes are deterministic SHA-256
    - Chain hashing links operations in sequence
    - Every entry stores its predecessor so links can be recomputed
    - JSON export for external audit systems

Example:
    >>> from agrotrace.certification.provenance import ProvenanceTracker
    >>> tracker = ProvenanceTracker()
    >>> chain_hash = tracker.record(
    ...     "stage_creation", "STG-abc123def456", "create", "abc123",
    ... )
    >>> valid, chain = tracker.verify_chain("STG-abc123def456")
    >>> assert valid is True

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Valid operation types
# ---------------------------------------------------------------------------

VALID_OPERATION_TYPES = frozenset({
    "batch_registration",
    "stage_creation",
    "stage_transition",
    "eligibility_evaluation",
    "satellite_analysis",
    "certificate_issuance",
    "certificate_review",
    "certificate_anchor",
    "certificate_revocation",
})


# =============================================================================
# ProvenanceTracker
# =============================================================================


class ProvenanceTracker:
    """Tracks provenance for certification operations with SHA-256 chain hashing.

    Maintains an ordered log of operations whose hashes chain together to
    provide a tamper-evident audit trail, grouped by entity.

    Attributes:
        _chain_store: In-memory chain storage grouped by entity_id.
        _global_chain: Flat list of all entries in order.
        _last_chain_hash: Most recent chain hash for linking.

    Example:
        >>> tracker = ProvenanceTracker()
        >>> tracker.record("stage_creation", "STG-1", "create", "abc")
        >>> tracker.entry_count
        1
    """

    _GENESIS_HASH = hashlib.sha256(
        b"agrotrace-certification-genesis"
    ).hexdigest()

    def __init__(self) -> None:
        """Initialize ProvenanceTracker."""
        self._chain_store: Dict[str, List[Dict[str, Any]]] = {}
        self._global_chain: List[Dict[str, Any]] = []
        self._last_chain_hash: str = self._GENESIS_HASH
        self._lock = threading.Lock()
        logger.info("ProvenanceTracker initialized for certification core")

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        data_hash: str,
        user_id: str = "system",
    ) -> str:
        """Record a provenance entry for an entity operation.

        Args:
            entity_type: Type of entity (one of VALID_OPERATION_TYPES).
            entity_id: Unique entity identifier.
            action: Action performed (create, approve, anchor, revoke, ...).
            data_hash: SHA-256 hash of the operation data.
            user_id: Actor who performed the operation.

        Returns:
            Chain hash of the new entry.
        """
        if entity_type not in VALID_OPERATION_TYPES:
            logger.warning(
                "Recording provenance with unknown entity type %s", entity_type,
            )

        timestamp = _utcnow().isoformat()

        with self._lock:
            previous_hash = self._last_chain_hash
            chain_hash = self._compute_chain_hash(
                previous_hash, data_hash, action, timestamp,
            )
            entry = {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "data_hash": data_hash,
                "user_id": user_id,
                "timestamp": timestamp,
                "previous_hash": previous_hash,
                "chain_hash": chain_hash,
            }
            self._chain_store.setdefault(entity_id, []).append(entry)
            self._global_chain.append(entry)
            self._last_chain_hash = chain_hash

        logger.debug(
            "Recorded provenance: %s/%s action=%s hash=%s",
            entity_type, entity_id, action, chain_hash[:16],
        )
        return chain_hash

    def verify_chain(self, entity_id: str) -> Tuple[bool, List[Dict[str, Any]]]:
        """Verify the integrity of the provenance chain for an entity.

        Recomputes every entry's chain hash from its stored predecessor,
        data hash, action and timestamp.

        Args:
            entity_id: Entity ID whose chain to verify.

        Returns:
            Tuple of (is_valid, chain_entries).
        """
        chain = self.get_chain(entity_id)
        for i, entry in enumerate(chain):
            expected = self._compute_chain_hash(
                entry.get("previous_hash", ""),
                entry.get("data_hash", ""),
                entry.get("action", ""),
                entry.get("timestamp", ""),
            )
            if expected != entry.get("chain_hash"):
                logger.warning(
                    "Chain verification failed for %s at index %d",
                    entity_id, i,
                )
                return False, chain
        return True, chain

    def verify_global_chain(self) -> bool:
        """Verify that every entry links to its predecessor in order."""
        with self._lock:
            entries = list(self._global_chain)
        previous = self._GENESIS_HASH
        for entry in entries:
            if entry["previous_hash"] != previous:
                return False
            previous = entry["chain_hash"]
        return True

    def get_chain(self, entity_id: str) -> List[Dict[str, Any]]:
        """Get the provenance chain for an entity, oldest first."""
        with self._lock:
            return list(self._chain_store.get(entity_id, []))

    def get_global_chain(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get the most recent entries across all entities, newest first."""
        with self._lock:
            return list(reversed(self._global_chain[-limit:]))

    def _compute_chain_hash(
        self,
        previous_hash: str,
        data_hash: str,
        action: str,
        timestamp: str,
    ) -> str:
        combined = json.dumps({
            "previous": previous_hash,
            "data": data_hash,
            "action": action,
            "timestamp": timestamp,
        }, sort_keys=True)
        return hashlib.sha256(combined.encode("utf-8")).hexdigest()

    @property
    def entry_count(self) -> int:
        """Return the total number of provenance entries."""
        return len(self._global_chain)

    @property
    def entity_count(self) -> int:
        """Return the number of unique entities tracked."""
        return len(self._chain_store)

    def export_json(self) -> str:
        """Export all provenance records as a JSON string."""
        with self._lock:
            return json.dumps(self._global_chain, indent=2, default=str)

    def build_hash(self, data: Any) -> str:
        """Build a SHA-256 hash for arbitrary data.

        Pydantic models are dumped in JSON mode before hashing.

        Args:
            data: Data to hash (model, dict, list, or other).

        Returns:
            Hex-encoded SHA-256 hash.
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        serialized = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


__all__ = [
    "ProvenanceTracker",
    "VALID_OPERATION_TYPES",
]
