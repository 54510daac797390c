"""Retrying remote client shared by every resource service.

``AtlasClient.do`` runs one blocking admin API call on a worker thread and
retries it only when it fails with :class:`~matlas.errors.TransientError`.
Backoff starts at ``backoff_ms`` and doubles each attempt. The backoff sleep
is an ``asyncio.sleep``, so cancelling the calling task aborts the retry loop
immediately with ``asyncio.CancelledError``.

Retry state is local to each call, which keeps the client safe to share
between concurrent executor workers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from .config import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BACKOFF_MS, RetryConfig
from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdminTransport(Protocol):
    """Surface shared by :class:`~matlas.atlas_api.AtlasAdminAPI` and test fakes."""

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any: ...

    def post(self, path: str, body: Any) -> Any: ...

    def patch(self, path: str, body: Any) -> Any: ...

    def put(self, path: str, body: Any) -> Any: ...

    def delete(self, path: str) -> Any: ...

    def list_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]: ...


@dataclass
class CallStats:
    """Counters for calls issued through the client."""

    calls: int = 0
    retries: int = 0
    failures: int = 0


class AtlasClient:
    """Shared, concurrency-safe wrapper around an admin API transport."""

    def __init__(
        self,
        api: AdminTransport,
        retry: RetryConfig | None = None,
    ) -> None:
        self.api = api
        self._retry = retry or RetryConfig(DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BACKOFF_MS)
        self.stats = CallStats()

    @property
    def retry(self) -> RetryConfig:
        return self._retry

    async def do(self, fn: Callable[[], T], operation: str = "admin API call") -> T:
        """Execute ``fn`` with automatic retry on transient failures.

        Args:
            fn: Zero-argument callable performing exactly one blocking API call.
            operation: Human-readable name for logging.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            TransientError: If every attempt failed transiently.
            asyncio.CancelledError: If the calling task was cancelled.
            MatlasError: Any non-transient error, immediately.
        """
        loop = asyncio.get_running_loop()
        attempts = max(1, self._retry.max_attempts)
        last_error: TransientError | None = None

        for attempt in range(1, attempts + 1):
            self.stats.calls += 1
            try:
                return await loop.run_in_executor(None, fn)
            except TransientError as e:
                last_error = e
                if attempt >= attempts:
                    break

                wait_seconds = self._retry.backoff_ms * (2 ** (attempt - 1)) / 1000.0
                self.stats.retries += 1
                logger.warning(
                    "Transient admin API failure, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "wait_seconds": wait_seconds,
                        "error": str(e),
                    },
                )
                # Cancellation propagates out of the sleep unchanged
                await asyncio.sleep(wait_seconds)
            except Exception:
                self.stats.failures += 1
                raise

        self.stats.failures += 1
        # SAFETY: loop runs at least once, so last_error is set before reaching here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error
