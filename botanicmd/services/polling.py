"""
Generic "poll until condition or exhausted" helper.

Used wherever a record is written elsewhere and only eventually becomes
visible (webhook-populated subscriptions). Each round is an explicit timed
suspension followed by one check; there is no spin-polling.

Usage:
    policy = RetryPolicy(max_attempts=3, initial_delay_seconds=5.0, backoff_factor=1.5)
    result = await poll_until(fetch_record, lambda r: r is not None, policy)
    if result.satisfied:
        ...
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from botanicmd.config import ReconcilerConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded schedule of increasing waits."""

    max_attempts: int = 3
    initial_delay_seconds: float = 5.0
    backoff_factor: float = 1.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must not be negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delays(self) -> list[float]:
        """Wait before each check, in order."""
        return [
            self.initial_delay_seconds * self.backoff_factor**n for n in range(self.max_attempts)
        ]

    @classmethod
    def from_config(cls, config: ReconcilerConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            backoff_factor=config.backoff_factor,
        )


@dataclass
class PollResult(Generic[T]):
    satisfied: bool
    value: T | None
    attempts: int


async def poll_until(
    check: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    label: str = "poll",
) -> PollResult[T]:
    """
    Wait, check, repeat until ``predicate`` holds or the policy is exhausted.

    A check that raises counts as an unsatisfied round; the last successfully
    observed value is returned either way.
    """
    value: T | None = None
    for attempt, delay in enumerate(policy.delays(), start=1):
        await sleep(delay)
        try:
            value = await check()
        except Exception as e:
            logger.warning(f"{label}_check_failed", attempt=attempt, error=str(e))
            continue

        satisfied = predicate(value)
        logger.info(f"{label}_attempt", attempt=attempt, delay_seconds=delay, satisfied=satisfied)
        if satisfied:
            return PollResult(satisfied=True, value=value, attempts=attempt)

    return PollResult(satisfied=False, value=value, attempts=policy.max_attempts)
