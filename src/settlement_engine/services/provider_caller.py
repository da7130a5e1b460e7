"""Timeout and retry policy around provider adapter calls."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, TypeVar

from settlement_engine.config import ProviderCallSettings
from settlement_engine.errors import ProviderTransientError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ProviderCaller:
    """Runs provider calls with a hard timeout and bounded retries.

    Only ProviderTransientError is retried; every other error propagates on
    the first attempt. Adapter calls must carry idempotency keys so a retry
    after a timeout cannot double-charge or double-pay.
    """

    def __init__(
        self,
        settings: ProviderCallSettings | None = None,
        *,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or ProviderCallSettings()
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="provider-call"
        )

    def call(self, operation: str, func: Callable[..., R], *args, **kwargs) -> R:
        """Call func(*args, **kwargs) under the timeout/retry policy."""
        attempts = self.settings.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._call_once(operation, func, *args, **kwargs)
            except ProviderTransientError:
                if attempt >= attempts:
                    logger.error(
                        "Provider call %s failed after %d attempts", operation, attempt
                    )
                    raise
                delay = self.settings.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Provider call %s failed transiently (attempt %d/%d), retrying in %.2fs",
                    operation,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _call_once(self, operation: str, func: Callable[..., R], *args, **kwargs) -> R:
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self.settings.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ProviderTransientError(f"Provider call {operation} timed out") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
