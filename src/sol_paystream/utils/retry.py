"""Exponential backoff policy shared by webhook delivery and reconnects."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ..config.settings import RetryConfig, WebhookConfig

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RetryPolicy:
    """Capped exponential backoff with additive jitter.

    The delay before retry ``n`` (1-based) is ``min(base * 2 ** (n - 1), max_delay)``
    plus a uniform jitter in ``[0, jitter]``.
    """

    max_attempts: int = 5
    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            jitter=config.jitter_seconds,
        )

    @classmethod
    def for_webhooks(cls, config: WebhookConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=max(config.base_delay_seconds * 2 ** config.max_attempts, config.base_delay_seconds),
            jitter=0.0,
        )

    def wait_strategy(self):
        strategy = wait_exponential(multiplier=self.base_delay, exp_base=2, max=self.max_delay)
        if self.jitter > 0:
            strategy = strategy + wait_random(0, self.jitter)
        return strategy

    def delay_for(self, attempt: int) -> float:
        """Return the wait before retry number ``attempt`` (1-based)."""

        state = RetryCallState(None, None, (), {})
        state.attempt_number = max(attempt, 1)
        return float(self.wait_strategy()(state))

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Optional[SleepFn] = None,
    ) -> T:
        """Await ``operation`` until it succeeds or the attempt cap is reached.

        The last exception is re-raised once attempts are exhausted.
        """

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait_strategy(),
            retry=retry_if_exception_type(retry_on),
            sleep=sleep or asyncio.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover


__all__ = ["RetryPolicy"]
