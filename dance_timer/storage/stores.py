"""
Asynchronous adapters over the SQLite repositories.

The timer state machine runs on an asyncio loop and must never block it, so
repository calls are pushed to a worker thread.
"""

import asyncio
from typing import Optional

from .models import DanceRecord, PricingRule
from .repository import HistoryRepository, RuleRepository


class AsyncRuleStore:
    """Read access to pricing rules for the timer."""

    def __init__(self, repository: RuleRepository):
        self.repository = repository

    async def get_default_rule_with_tiers(self) -> Optional[PricingRule]:
        return await asyncio.to_thread(self.repository.get_default_rule_with_tiers)

    async def get_rule_with_tiers(self, rule_id: int) -> Optional[PricingRule]:
        return await asyncio.to_thread(self.repository.get_rule_with_tiers, rule_id)


class AsyncHistoryStore:
    """Write access to the dance history for the timer."""

    def __init__(self, repository: HistoryRepository):
        self.repository = repository

    async def insert(self, record: DanceRecord) -> int:
        return await asyncio.to_thread(self.repository.insert, record)
