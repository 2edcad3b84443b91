"""
Unit tests for storage layer.

Tests schema creation, pricing rule CRUD, default rule handling and the
dance history ledger.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta

import pytest

from dance_timer.storage.db import get_connection
from dance_timer.storage.models import DanceRecord, PriceTier, validate_tier
from dance_timer.storage.repository import (
    DEFAULT_RULES,
    HistoryRepository,
    RuleRepository,
    initialize_schema,
)
from dance_timer.storage.stores import AsyncHistoryStore, AsyncRuleStore


def _record(start, seconds=300, cost=20.0, rule_name="4 min / 20", rule_id=1):
    return DanceRecord(
        start_time=start,
        end_time=start + timedelta(seconds=seconds),
        duration_seconds=seconds,
        cost=cost,
        pricing_rule_name=rule_name,
        pricing_rule_id=rule_id,
    )


class StorageTestCase:
    """Fresh database per test."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.rules = RuleRepository(self.db_path)
        self.history = HistoryRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_tables_created(self):
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            tables = [row[0] for row in cursor.fetchall()]
            for name in ("dance_records", "price_tiers", "pricing_rules"):
                assert name in tables

            cursor = conn.execute("PRAGMA table_info(dance_records)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'start_time', 'end_time', 'duration_seconds', 'cost',
                'pricing_rule_name', 'pricing_rule_id'
            ]
        finally:
            conn.close()

    def test_schema_is_idempotent(self):
        initialize_schema(self.db_path)
        assert self.rules.list_rules() == []


class TestTierValidation:
    """Test input validation at the editing boundary."""

    def test_valid_tier(self):
        tier = validate_tier(4, 20)
        assert tier.duration_minutes == 4.0
        assert tier.price == 20.0

    def test_free_tier_allowed(self):
        assert validate_tier(1, 0).price == 0

    @pytest.mark.parametrize("minutes,price", [(0, 10), (-1, 10), (3, -5), (None, 5)])
    def test_invalid_tier_rejected(self, minutes, price):
        with pytest.raises(ValueError):
            validate_tier(minutes, price)


class TestRuleRepository(StorageTestCase):
    """Test pricing rule CRUD and the single-default constraint."""

    def test_first_rule_becomes_default(self):
        first = self.rules.create_rule("A", [PriceTier(4, 20)])
        self.rules.create_rule("B", [PriceTier(3, 10)])
        default = self.rules.get_default_rule_with_tiers()
        assert default.id == first
        assert default.name == "A"
        assert default.tiers[0].price == 20

    def test_create_as_default_moves_flag(self):
        self.rules.create_rule("A", [PriceTier(4, 20)])
        second = self.rules.create_rule("B", [PriceTier(3, 10)], is_default=True)
        defaults = [rule for rule in self.rules.list_rules() if rule.is_default]
        assert [rule.id for rule in defaults] == [second]

    def test_set_as_default(self):
        first = self.rules.create_rule("A", [PriceTier(4, 20)])
        second = self.rules.create_rule("B", [PriceTier(3, 10)])
        assert self.rules.set_as_default(second)
        assert self.rules.get_default_rule_with_tiers().id == second
        assert not self.rules.get_rule_with_tiers(first).is_default
        assert not self.rules.set_as_default(999)

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            self.rules.create_rule("  ", [PriceTier(4, 20)])

    def test_tiers_sorted_by_duration(self):
        rule_id = self.rules.create_rule("Mixed", [PriceTier(4, 20), PriceTier(1, 5)])
        rule = self.rules.get_rule_with_tiers(rule_id)
        assert [tier.duration_minutes for tier in rule.tiers] == [1, 4]
        assert all(tier.rule_id == rule_id for tier in rule.tiers)

    def test_update_replaces_tiers(self):
        rule_id = self.rules.create_rule("A", [PriceTier(4, 20), PriceTier(2, 12)])
        assert self.rules.update_rule(rule_id, "A2", [PriceTier(5, 25)])
        rule = self.rules.get_rule_with_tiers(rule_id)
        assert rule.name == "A2"
        assert [(t.duration_minutes, t.price) for t in rule.tiers] == [(5, 25)]
        assert not self.rules.update_rule(999, "X", [])

    def test_delete_cascades_tiers(self):
        rule_id = self.rules.create_rule("A", [PriceTier(4, 20)])
        assert self.rules.delete_rule(rule_id)
        assert self.rules.get_rule_with_tiers(rule_id) is None
        assert self.rules.get_default_rule_with_tiers() is None
        assert not self.rules.delete_rule(rule_id)

        conn = get_connection(self.db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM price_tiers").fetchone()[0]
            assert count == 0
        finally:
            conn.close()

    def test_seed_default_rules(self):
        assert self.rules.seed_default_rules()
        rules = self.rules.list_rules()
        assert [rule.name for rule in rules] == [name for name, _, _ in DEFAULT_RULES]
        assert self.rules.get_default_rule_with_tiers().name == "4 min / 20"
        # Seeding twice does nothing
        assert not self.rules.seed_default_rules()
        assert len(self.rules.list_rules()) == 3


class TestHistoryRepository(StorageTestCase):
    """Test the dance history ledger."""

    def test_insert_and_get(self):
        start = datetime(2024, 3, 4, 20, 15, 0)
        record_id = self.history.insert(_record(start))
        record = self.history.get_by_id(record_id)
        assert record.id == record_id
        assert record.start_time == start
        assert record.duration_seconds == 300
        assert record.pricing_rule_name == "4 min / 20"
        assert self.history.get_by_id(999) is None

    def test_get_all_newest_first(self):
        base = datetime(2024, 3, 4, 20, 0, 0)
        for hours in (0, 2, 1):
            self.history.insert(_record(base + timedelta(hours=hours)))
        records = self.history.get_all()
        assert [r.start_time.hour for r in records] == [22, 21, 20]
        assert len(self.history.get_all(limit=2)) == 2

    def test_history_survives_rule_delete(self):
        rule_id = self.rules.create_rule("Gone", [PriceTier(4, 20)])
        self.history.insert(_record(datetime(2024, 1, 1, 12), rule_name="Gone", rule_id=rule_id))
        self.rules.delete_rule(rule_id)
        record = self.history.get_all()[0]
        assert record.pricing_rule_name == "Gone"
        assert record.pricing_rule_id == rule_id

    def test_date_range_and_costs(self):
        # Wednesday
        now = datetime(2024, 5, 15, 18, 0, 0)
        self.history.insert(_record(datetime(2024, 5, 15, 10), cost=20))
        self.history.insert(_record(datetime(2024, 5, 13, 10), cost=10))  # Monday
        self.history.insert(_record(datetime(2024, 5, 5, 10), cost=40))   # earlier this month
        self.history.insert(_record(datetime(2024, 4, 30, 10), cost=80))  # last month

        assert self.history.today_cost(now) == 20
        assert self.history.week_cost(now) == 30
        assert self.history.month_cost(now) == 70
        assert self.history.total_count() == 4

        in_range = self.history.get_by_date_range(datetime(2024, 5, 1), datetime(2024, 5, 14))
        assert [r.cost for r in in_range] == [10, 40]

    def test_empty_costs(self):
        assert self.history.today_cost() == 0
        assert self.history.total_count() == 0

    def test_delete_and_delete_all(self):
        first = self.history.insert(_record(datetime(2024, 1, 1, 12)))
        self.history.insert(_record(datetime(2024, 1, 2, 12)))
        assert self.history.delete(first)
        assert not self.history.delete(first)
        assert self.history.total_count() == 1
        assert self.history.delete_all() == 1
        assert self.history.get_all() == []


class TestAsyncStores(StorageTestCase):
    """Test the asyncio adapters used by the timer."""

    @pytest.mark.asyncio
    async def test_default_rule_lookup(self):
        self.rules.seed_default_rules()
        rule = await AsyncRuleStore(self.rules).get_default_rule_with_tiers()
        assert rule.name == "4 min / 20"

    @pytest.mark.asyncio
    async def test_insert(self):
        record_id = await AsyncHistoryStore(self.history).insert(_record(datetime(2024, 1, 1, 12)))
        assert self.history.get_by_id(record_id) is not None

    def test_adapters_are_awaitable(self):
        rule = asyncio.run(AsyncRuleStore(self.rules).get_default_rule_with_tiers())
        assert rule is None
