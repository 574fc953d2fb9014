"""
Ordered fallback between alternative execution strategies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackStrategy(Generic[T]):
    name: str
    run: Callable[[], Awaitable[T]]


class FallbackChain(Generic[T]):
    """
    Tries strategies in order and returns the first success.

    A strategy that raises is logged and the next one is tried. If every
    strategy fails, the last error is raised.
    """

    def __init__(self, strategies: Sequence[FallbackStrategy[T]], label: str = "fallback chain"):
        if not strategies:
            raise ValueError("FallbackChain needs at least one strategy")
        self.strategies: List[FallbackStrategy[T]] = list(strategies)
        self.label = label
        self.attempted: List[str] = []

    async def run(self) -> T:
        last_error: Optional[Exception] = None
        for index, strategy in enumerate(self.strategies):
            self.attempted.append(strategy.name)
            try:
                result = await strategy.run()
            except Exception as exc:
                last_error = exc
                remaining = len(self.strategies) - index - 1
                if remaining:
                    logger.warning(
                        "%s: strategy '%s' failed, trying next (%d left): %s",
                        self.label, strategy.name, remaining, exc
                    )
                else:
                    logger.error("%s: strategy '%s' failed, none left: %s", self.label, strategy.name, exc)
                continue
            if index:
                logger.info("%s: succeeded with fallback strategy '%s'", self.label, strategy.name)
            return result
        raise last_error
