"""
Opportunistic refresh trigger.

Recommendation queries call ``maybe_refresh`` before reading the pair table.
When the last recorded attempt is older than the update period, an inline
aggregation pass runs; if another process holds the refresh lock the query
simply proceeds with the counts already stored.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from schemas.recommendation_schemas import RefreshOutcome
from services.configuration import ConfigurationStore
from settings import SETTINGS_LAST_UPDATE, UPDATE_PERIOD_SECONDS

logger = logging.getLogger(__name__)


class RefreshTrigger:
    def __init__(
        self,
        aggregator,
        config: ConfigurationStore,
        update_period: int = UPDATE_PERIOD_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.aggregator = aggregator
        self.config = config
        self.update_period = update_period
        self._clock = clock

    async def last_attempt(self) -> int:
        """Epoch seconds of the last refresh attempt, 0 when none was recorded."""
        return await self.config.get_int(SETTINGS_LAST_UPDATE, default=0)

    async def is_stale(self) -> bool:
        return self._clock() > await self.last_attempt() + self.update_period

    async def maybe_refresh(self) -> Optional[RefreshOutcome]:
        """
        Run a pass when the period has elapsed since the last attempt.

        Returns None when no pass was due. Store failures during the pass
        propagate to the caller.
        """
        if not await self.is_stale():
            return None

        logger.debug("Co-purchase index stale, running inline refresh")
        return await self.aggregator.refresh()
