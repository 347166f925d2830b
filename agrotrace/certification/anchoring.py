# -*- coding: utf-8 -*-
"""
Anchoring and pinning collaborators for certificate issuance.

Contracts:
    - ``BlockchainAnchor.anchor(content_hash) -> AnchorReceipt``: embeds a
      certificate content hash in a ledger transaction. Transient failures
      raise a retryable ``ExternalServiceError``; a malformed hash or any
      other permanent refusal raises ``AnchorRejectedError``.
    - ``PinService.pin(payload) -> content id``: stores the canonical
      payload in content-addressed storage. Optional; failures degrade the
      certificate to hash-only.

Implementations:
    - ``SandboxAnchorClient`` / ``SandboxPinService``: deterministic,
      in-process simulations for development and sandbox deployments.
    - ``HttpAnchorClient`` / ``HttpPinService``: thin ``requests`` clients
      for an anchoring bridge and a pinning gateway, each call bounded by a
      timeout.

Canonical serialization (shared by hashing and pinning): sorted keys,
compact separators, ASCII-escaped, UTF-8 encoded.

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import requests

from agrotrace.certification.models import AnchorReceipt, _utcnow
from agrotrace.exceptions import AnchorRejectedError, ExternalServiceError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXPLORER_URLS: Dict[str, str] = {
    "POLYGON": "https://polygonscan.com/tx/",
    "BASE": "https://basescan.org/tx/",
    "ETHEREUM": "https://etherscan.io/tx/",
}

_CONTENT_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------


def canonical_json(payload: Dict[str, Any]) -> str:
    """Serialize ``payload`` deterministically."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )


def compute_content_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical serialization of ``payload``."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def validate_content_hash(content_hash: str) -> None:
    """Reject anything that is not a lowercase 64-character hex digest.

    Raises:
        AnchorRejectedError: If the hash is malformed.
    """
    if not isinstance(content_hash, str) or not _CONTENT_HASH_RE.match(content_hash):
        raise AnchorRejectedError(
            "Content hash must be a 64-character lowercase hex SHA-256 digest",
            context={"content_hash": str(content_hash)[:80]},
        )


def explorer_url(network: str, tx_hash: str) -> Optional[str]:
    """Block explorer link for a transaction, if the network is known."""
    base = EXPLORER_URLS.get(network.upper())
    return f"{base}{tx_hash}" if base else None


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class BlockchainAnchor(Protocol):
    """Anchors content hashes on a ledger."""

    def anchor(self, content_hash: str) -> AnchorReceipt:
        ...


@runtime_checkable
class PinService(Protocol):
    """Stores payloads in content-addressed storage."""

    def pin(self, payload: Dict[str, Any]) -> str:
        ...


# =============================================================================
# Sandbox implementations
# =============================================================================


class SandboxAnchorClient:
    """Deterministic anchor simulation.

    The transaction hash is derived from the network and the content hash,
    so anchoring the same certificate twice yields the same receipt.
    """

    def __init__(
        self,
        network: str = "POLYGON",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.network = network.upper()
        self._clock = clock or _utcnow
        self._anchored: Dict[str, AnchorReceipt] = {}
        self._lock = threading.Lock()
        logger.info("SandboxAnchorClient initialized (network=%s)", self.network)

    def anchor(self, content_hash: str) -> AnchorReceipt:
        validate_content_hash(content_hash)
        with self._lock:
            receipt = self._anchored.get(content_hash)
            if receipt is None:
                digest = hashlib.sha256(
                    f"{self.network}:{content_hash}".encode("utf-8")
                ).hexdigest()
                tx_hash = f"0x{digest}"
                receipt = AnchorReceipt(
                    tx_hash=tx_hash,
                    network=self.network,
                    anchored_at=self._clock(),
                    explorer_url=explorer_url(self.network, tx_hash),
                )
                self._anchored[content_hash] = receipt
        logger.info(
            "Sandbox anchored %s... as %s", content_hash[:16], receipt.tx_hash[:18],
        )
        return receipt

    @property
    def anchor_count(self) -> int:
        """Return the number of distinct hashes anchored."""
        return len(self._anchored)


class SandboxPinService:
    """Deterministic content-addressed storage simulation."""

    def __init__(self) -> None:
        self._pins: Dict[str, str] = {}
        self._lock = threading.Lock()

    def pin(self, payload: Dict[str, Any]) -> str:
        body = canonical_json(payload)
        digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
        content_id = f"bafkrei{digest[:52]}"
        with self._lock:
            self._pins[content_id] = body
        logger.info("Sandbox pinned payload as %s", content_id)
        return content_id

    def get(self, content_id: str) -> Optional[Dict[str, Any]]:
        """Return a pinned payload, if present."""
        body = self._pins.get(content_id)
        return json.loads(body) if body is not None else None


# =============================================================================
# HTTP implementations
# =============================================================================


class HttpAnchorClient:
    """Anchors content hashes through an HTTP anchoring bridge.

    ``POST {base_url}/anchors`` with ``{"contentHash", "network"}``; the
    bridge answers ``{"txHash", "network", "timestamp"}``. 4xx answers are
    permanent rejections, 5xx answers and network errors are transient.
    """

    def __init__(
        self,
        base_url: str,
        network: str = "POLYGON",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.network = network.upper()
        self.timeout = timeout
        self._session = session or requests.Session()

    def anchor(self, content_hash: str) -> AnchorReceipt:
        validate_content_hash(content_hash)
        try:
            response = self._session.post(
                f"{self.base_url}/anchors",
                json={"contentHash": content_hash, "network": self.network},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Anchoring bridge unreachable: %s", e)
            raise ExternalServiceError(
                f"Anchoring bridge unreachable: {e}",
                service="blockchain_anchor",
            ) from e

        if 400 <= response.status_code < 500:
            raise AnchorRejectedError(
                f"Anchoring bridge rejected hash ({response.status_code}): "
                f"{response.text[:200]}",
                context={"status_code": response.status_code},
            )
        if response.status_code >= 500:
            raise ExternalServiceError(
                f"Anchoring bridge error ({response.status_code})",
                service="blockchain_anchor",
                context={"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"Anchoring bridge returned a non-JSON body: {e}",
                service="blockchain_anchor",
            ) from e
        tx_hash = data.get("txHash")
        if not tx_hash:
            raise ExternalServiceError(
                "Anchoring bridge response missing txHash",
                service="blockchain_anchor",
            )
        network = str(data.get("network") or self.network).upper()
        anchored_at = (
            datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
            if data.get("timestamp") else _utcnow()
        )
        return AnchorReceipt(
            tx_hash=tx_hash,
            network=network,
            anchored_at=anchored_at,
            explorer_url=explorer_url(network, tx_hash),
        )


class HttpPinService:
    """Pins canonical payloads through an HTTP pinning gateway.

    ``POST {base_url}/pins`` with the payload as JSON; the content id is
    read from ``cid``, ``IpfsHash`` or ``Hash``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def pin(self, payload: Dict[str, Any]) -> str:
        try:
            response = self._session.post(
                f"{self.base_url}/pins",
                data=canonical_json(payload),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise ExternalServiceError(
                f"Pinning gateway failed: {e}", service="pin",
            ) from e
        except ValueError as e:
            raise ExternalServiceError(
                f"Pinning gateway returned a non-JSON body: {e}", service="pin",
            ) from e

        content_id = data.get("cid") or data.get("IpfsHash") or data.get("Hash")
        if not content_id:
            raise ExternalServiceError(
                "Pinning gateway response missing content id", service="pin",
            )
        return content_id


__all__ = [
    "BlockchainAnchor",
    "PinService",
    "SandboxAnchorClient",
    "SandboxPinService",
    "HttpAnchorClient",
    "HttpPinService",
    "EXPLORER_URLS",
    "canonical_json",
    "compute_content_hash",
    "validate_content_hash",
    "explorer_url",
]
