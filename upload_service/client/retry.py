from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from upload_service.config import UploadConfig
from upload_service.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Exponential backoff with uniform jitter, retrying only TransientError."""

    def __init__(
        self,
        max_retries: int = 3,
        base_backoff_ms: int = 1000,
        max_backoff_ms: int = 30_000,
        max_jitter_ms: int = 500,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_backoff_ms = base_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.max_jitter_ms = max_jitter_ms
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: UploadConfig, **kwargs) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_backoff_ms=config.base_backoff_ms,
            max_backoff_ms=config.max_backoff_ms,
            max_jitter_ms=config.max_jitter_ms,
            **kwargs,
        )

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt counts from 0)."""
        backoff = min(self.base_backoff_ms * (2**attempt), self.max_backoff_ms)
        jitter = self._rng.uniform(0, self.max_jitter_ms) if self.max_jitter_ms else 0.0
        return (backoff + jitter) / 1000.0

    async def backoff(self, attempt: int) -> None:
        await self._sleep(self.delay_seconds(attempt))

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        on_retry: Callable[[int, TransientError], None] | None = None,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except TransientError as exc:
                if attempt >= self.max_retries:
                    raise
                if on_retry is not None:
                    on_retry(attempt + 1, exc)
                logger.debug("retrying (attempt %d): %s", attempt + 1, exc)
                await self.backoff(attempt)
                attempt += 1
