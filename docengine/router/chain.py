"""Fallback chains of extraction strategies.

Each strategy makes one attempt and reports Success or Failure; it never
raises for an ordinary provider failure. A FallbackChain tries strategies in
order, sleeping an exponentially growing delay between them, and returns
every recorded failure when none succeeds.

Cancellation of the awaiting task propagates through the chain.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from tenacity import RetryCallState, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    strategy: str


@dataclass(frozen=True)
class Failure:
    strategy: str
    reason: str

    def __str__(self) -> str:
        return f"{self.strategy}: {self.reason}"


class Strategy(ABC, Generic[T]):
    """One step of a fallback chain."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def attempt(self) -> Success[T] | Failure:
        """Make one attempt.

        Returns:
            Success with the produced value, or Failure with a reason
        """
        pass


@dataclass
class ChainOutcome(Generic[T]):
    """Result of running a chain: the first success, plus failures before it."""

    result: Success[T] | None = None
    failures: list[Failure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result is not None

    def reasons(self) -> list[str]:
        return [str(f) for f in self.failures]


class FallbackChain(Generic[T]):
    """Ordered strategies tried until one succeeds.

    Args:
        strategies: Strategies in priority order
        delay_seconds: Base delay before the next strategy; the n-th
            switch waits delay_seconds * 2**(n - 1)
    """

    def __init__(self, strategies: list[Strategy[T]], delay_seconds: float = 0.0) -> None:
        self.strategies = strategies
        self.delay_seconds = delay_seconds
        self._wait = wait_exponential(multiplier=delay_seconds, exp_base=2)

    def delay_before(self, switch: int) -> float:
        """Seconds to wait before the n-th switch to a later strategy."""
        state = RetryCallState(
            retry_object=None, fn=None, args=(), kwargs={}  # type: ignore[arg-type]
        )
        state.attempt_number = switch
        return self._wait(state)

    async def run(self) -> ChainOutcome[T]:
        outcome: ChainOutcome[T] = ChainOutcome()
        for i, strategy in enumerate(self.strategies):
            if i > 0 and self.delay_seconds > 0:
                delay = self.delay_before(i)
                logger.debug(f"Waiting {delay:.1f}s before strategy {strategy.name}")
                await asyncio.sleep(delay)

            result = await strategy.attempt()
            if isinstance(result, Success):
                outcome.result = result
                return outcome

            logger.warning(f"Strategy {strategy.name} failed: {result.reason}")
            outcome.failures.append(result)
        return outcome
