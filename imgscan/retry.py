"""Bounded retry with jittered delays and wholesale strategy fallback.

The controller is a small state machine. Each attempt of a strategy ends
in one of four transitions::

    Attempt(strategy, n) -> SUCCESS   page content returned
                         -> RETRY     same strategy, attempt n + 1
                         -> FALLBACK  alternate strategy, attempt 1
                         -> FAIL      raise FetchExhaustedError

A strategy chain is exhausted after its configured number of attempts;
the alternate chain runs at most once per fetch.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import ScanConfig
from .errors import FetchExhaustedError, ImgScanError
from .fetchers import PageFetcher
from .models import FetchStrategy, PageContent

logger = logging.getLogger("imgscan")


class Transition(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FALLBACK = "fallback"
    FAIL = "fail"


@dataclass(frozen=True)
class Attempt:
    strategy: FetchStrategy
    number: int
    fallback: bool = False


def jittered_delay(config: ScanConfig, rng: Optional[random.Random] = None) -> float:
    """Uniform random pause between attempts."""
    chooser = rng or random
    return chooser.uniform(config.retry_delay_min, config.retry_delay_max)


class FetchController:
    """Runs fetchers through the retry/fallback state machine."""

    def __init__(
        self,
        config: ScanConfig,
        fetchers: Dict[FetchStrategy, PageFetcher],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.fetchers = fetchers
        self._sleep = sleep
        self._rng = rng

    def attempts_for(self, strategy: FetchStrategy) -> int:
        if strategy is FetchStrategy.RENDER:
            return max(1, self.config.render_attempts)
        return max(1, self.config.static_attempts)

    def next_transition(self, attempt: Attempt, succeeded: bool) -> Transition:
        if succeeded:
            return Transition.SUCCESS
        if attempt.number < self.attempts_for(attempt.strategy):
            return Transition.RETRY
        if not attempt.fallback and attempt.strategy.alternate in self.fetchers:
            return Transition.FALLBACK
        return Transition.FAIL

    async def fetch(
        self, url: str, strategy: FetchStrategy, errors: List[str]
    ) -> Tuple[PageContent, FetchStrategy]:
        """Fetch ``url`` starting with ``strategy``.

        Failed attempts are appended to ``errors`` as they happen; the list
        is shared with the caller so partial failure stays inspectable.
        """
        attempt = Attempt(strategy=strategy, number=1)
        while True:
            fetcher = self.fetchers[attempt.strategy]
            content: Optional[PageContent] = None
            try:
                content = await fetcher.fetch(url)
            except (ImgScanError, OSError) as exc:
                message = (
                    f"{attempt.strategy.value} attempt {attempt.number}/"
                    f"{self.attempts_for(attempt.strategy)} failed: "
                    f"{type(exc).__name__}: {exc}"
                )
                errors.append(message)
                logger.warning("%s (%s)", message, url)

            transition = self.next_transition(attempt, content is not None)
            if transition is Transition.SUCCESS:
                assert content is not None
                return content, attempt.strategy
            if transition is Transition.RETRY:
                await self._sleep(jittered_delay(self.config, self._rng))
                attempt = Attempt(attempt.strategy, attempt.number + 1, attempt.fallback)
            elif transition is Transition.FALLBACK:
                logger.info(
                    "Falling back from %s to %s for %s",
                    attempt.strategy.value,
                    attempt.strategy.alternate.value,
                    url,
                )
                attempt = Attempt(attempt.strategy.alternate, 1, fallback=True)
            else:
                logger.error("Every fetch strategy failed for %s", url)
                raise FetchExhaustedError(f"all fetch strategies failed for {url}")
