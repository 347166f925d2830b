# -*- coding: utf-8 -*-
"""
Concurrency primitives for the certification core.

- ``KeyedLock``: one exclusive section per key (batch id, certificate id,
  request fingerprint) so read-validate-write sequences on the same entity
  never interleave, while different entities proceed in parallel.
- ``call_with_timeout``: runs a blocking collaborator call on a shared
  thread pool and converts a timeout into a retryable
  ``ExternalServiceError``.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from agrotrace.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_WORKERS = 8


class KeyedLock:
    """Registry of per-key mutexes.

    Locks are reference counted and dropped once no caller holds or waits
    on them, so the registry does not grow with the number of keys seen.

    Example:
        >>> locks = KeyedLock()
        >>> with locks.hold("BAT-1"):
        ...     pass
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the exclusive section for ``key``."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refcounts[key] = self._refcounts.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                self._refcounts[key] -= 1
                if self._refcounts[key] == 0:
                    del self._refcounts[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


# ---------------------------------------------------------------------------
# Timeout-bounded external calls
# ---------------------------------------------------------------------------

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        with _executor_lock:
            if _executor is None:
                _executor = ThreadPoolExecutor(
                    max_workers=_DEFAULT_MAX_WORKERS,
                    thread_name_prefix="agrotrace-external",
                )
    return _executor


def call_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    service: str,
    **kwargs: Any,
) -> T:
    """Call ``func`` and wait at most ``timeout`` seconds for the result.

    Exceptions raised by ``func`` propagate unchanged. A call still running
    at the deadline is abandoned (its worker finishes in the background)
    and reported as a retryable failure of ``service``.

    Args:
        func: Blocking callable.
        timeout: Seconds to wait.
        service: Collaborator name used in the error.

    Returns:
        Whatever ``func`` returns.

    Raises:
        ExternalServiceError: If the deadline passes.
    """
    future = _get_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("%s call timed out after %.1fs", service, timeout)
        raise ExternalServiceError(
            f"{service} did not respond within {timeout:.1f}s",
            service=service,
            retryable=True,
            error_code="EXTERNAL_TIMEOUT",
            context={"timeout_seconds": timeout},
        )


def shutdown_executor(wait: bool = False) -> None:
    """Shut down the shared external-call pool (service shutdown)."""
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None


__all__ = [
    "KeyedLock",
    "call_with_timeout",
    "shutdown_executor",
]
