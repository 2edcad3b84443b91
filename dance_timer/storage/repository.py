"""
Repository pattern for data access.

Handles pricing rules, their tiers and the dance history ledger.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import DanceRecord, PriceTier, PricingRule

_RECORD_COLUMNS = """
    id, start_time, end_time, duration_seconds, cost,
    pricing_rule_name, pricing_rule_id
"""

# Presets inserted on first use; the first one becomes the default
DEFAULT_RULES: Tuple[Tuple[str, float, float], ...] = (
    ("4 min / 20", 4.0, 20.0),
    ("3 min / 10", 3.0, 10.0),
    ("1 min / 5", 1.0, 5.0),
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the rule, tier and history tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pricing_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS price_tiers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id INTEGER NOT NULL
                    REFERENCES pricing_rules(id) ON DELETE CASCADE,
                duration_minutes REAL NOT NULL,
                price REAL NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_price_tiers_rule_id ON price_tiers(rule_id)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS dance_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                duration_seconds INTEGER NOT NULL,
                cost REAL NOT NULL,
                pricing_rule_name TEXT NOT NULL,
                pricing_rule_id INTEGER NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class RuleRepository:
    """Repository for pricing rules and their price tiers."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def list_rules(self) -> List[PricingRule]:
        """Return every rule with its tiers, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT id, name, is_default, created_at FROM pricing_rules "
                "ORDER BY created_at ASC, id ASC"
            )
            rows = cursor.fetchall()
            return [self._build_rule(conn, row) for row in rows]
        finally:
            conn.close()

    def get_rule_with_tiers(self, rule_id: int) -> Optional[PricingRule]:
        """Return a single rule with its tiers, or None if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, name, is_default, created_at FROM pricing_rules WHERE id = ?",
                (rule_id,)
            ).fetchone()
            if row is None:
                return None
            return self._build_rule(conn, row)
        finally:
            conn.close()

    def get_default_rule_with_tiers(self) -> Optional[PricingRule]:
        """Return the default rule with its tiers, or None if no rule is default."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, name, is_default, created_at FROM pricing_rules "
                "WHERE is_default = 1 LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            return self._build_rule(conn, row)
        finally:
            conn.close()

    def create_rule(
        self,
        name: str,
        tiers: Iterable[PriceTier],
        is_default: bool = False
    ) -> int:
        """Insert a new rule and its tiers.

        The first rule ever created becomes the default automatically.

        Args:
            name: Display name of the rule
            tiers: Price tiers belonging to the rule
            is_default: Make this rule the default

        Returns:
            The id of the new rule

        Raises:
            ValueError: If the name is empty
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("rule name is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            existing = conn.execute("SELECT COUNT(*) FROM pricing_rules").fetchone()[0]
            make_default = is_default or existing == 0
            if make_default:
                conn.execute("UPDATE pricing_rules SET is_default = 0")
            cursor = conn.execute(
                "INSERT INTO pricing_rules (name, is_default, created_at) VALUES (?, ?, ?)",
                (name, 1 if make_default else 0, datetime.now().isoformat())
            )
            rule_id = cursor.lastrowid
            self._insert_tiers(conn, rule_id, tiers)
            conn.commit()
            return rule_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def update_rule(self, rule_id: int, name: str, tiers: Iterable[PriceTier]) -> bool:
        """Rename a rule and replace all of its tiers.

        Returns:
            True if the rule existed and was updated
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("rule name is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE pricing_rules SET name = ? WHERE id = ?", (name, rule_id)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return False
            conn.execute("DELETE FROM price_tiers WHERE rule_id = ?", (rule_id,))
            self._insert_tiers(conn, rule_id, tiers)
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule; its tiers are removed by the cascade.

        History records keep their own copy of the rule name and id.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM pricing_rules WHERE id = ?", (rule_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def set_as_default(self, rule_id: int) -> bool:
        """Make ``rule_id`` the only default rule.

        Clearing and setting happen in one transaction so there is never
        more than one default.

        Returns:
            True if the rule exists
        """
        conn = get_connection(self.db_path)
        try:
            exists = conn.execute(
                "SELECT 1 FROM pricing_rules WHERE id = ?", (rule_id,)
            ).fetchone()
            if exists is None:
                return False
            conn.execute("UPDATE pricing_rules SET is_default = 0")
            conn.execute("UPDATE pricing_rules SET is_default = 1 WHERE id = ?", (rule_id,))
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def seed_default_rules(self) -> bool:
        """Insert the preset rules if the store has none.

        Returns:
            True if presets were inserted
        """
        if self.list_rules():
            return False
        for index, (name, minutes, price) in enumerate(DEFAULT_RULES):
            self.create_rule(
                name,
                [PriceTier(duration_minutes=minutes, price=price)],
                is_default=(index == 0)
            )
        return True

    @staticmethod
    def _insert_tiers(conn, rule_id: int, tiers: Iterable[PriceTier]) -> None:
        for order, tier in enumerate(tiers):
            conn.execute(
                "INSERT INTO price_tiers (rule_id, duration_minutes, price, sort_order) "
                "VALUES (?, ?, ?, ?)",
                (rule_id, tier.duration_minutes, tier.price, tier.sort_order or order)
            )

    @staticmethod
    def _build_rule(conn, row) -> PricingRule:
        tier_rows = conn.execute(
            "SELECT id, rule_id, duration_minutes, price, sort_order FROM price_tiers "
            "WHERE rule_id = ? ORDER BY duration_minutes ASC",
            (row[0],)
        ).fetchall()
        tiers = tuple(
            PriceTier(
                id=t[0],
                rule_id=t[1],
                duration_minutes=t[2],
                price=t[3],
                sort_order=t[4]
            )
            for t in tier_rows
        )
        return PricingRule(
            id=row[0],
            name=row[1],
            is_default=bool(row[2]),
            created_at=datetime.fromisoformat(row[3]),
            tiers=tiers
        )


class HistoryRepository:
    """Repository for finished dance sessions.

    Records are immutable once written; they can only be deleted.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, record: DanceRecord) -> int:
        """Insert a finished session and return its id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO dance_records
                (start_time, end_time, duration_seconds, cost,
                 pricing_rule_name, pricing_rule_id)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.start_time.isoformat(),
                record.end_time.isoformat(),
                record.duration_seconds,
                record.cost,
                record.pricing_rule_name,
                record.pricing_rule_id
            ))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def get_all(self, limit: Optional[int] = None) -> List[DanceRecord]:
        """Return records newest first."""
        query = f"SELECT {_RECORD_COLUMNS} FROM dance_records ORDER BY start_time DESC, id DESC"
        params: list = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return self._fetch(query, params)

    def get_by_id(self, record_id: int) -> Optional[DanceRecord]:
        records = self._fetch(
            f"SELECT {_RECORD_COLUMNS} FROM dance_records WHERE id = ?", [record_id]
        )
        return records[0] if records else None

    def get_by_date_range(self, start: datetime, end: datetime) -> List[DanceRecord]:
        """Return records that started in ``[start, end)``, newest first."""
        return self._fetch(
            f"SELECT {_RECORD_COLUMNS} FROM dance_records "
            "WHERE start_time >= ? AND start_time < ? ORDER BY start_time DESC",
            [start.isoformat(), end.isoformat()]
        )

    def cost_in_range(self, start: datetime, end: datetime) -> float:
        """Sum of costs for records that started in ``[start, end)``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(cost), 0) FROM dance_records "
                "WHERE start_time >= ? AND start_time < ?",
                (start.isoformat(), end.isoformat())
            ).fetchone()
            return float(row[0] or 0)
        finally:
            conn.close()

    def today_cost(self, now: Optional[datetime] = None) -> float:
        start = _start_of_day(now or datetime.now())
        return self.cost_in_range(start, start + timedelta(days=1))

    def week_cost(self, now: Optional[datetime] = None) -> float:
        """Cost since Monday 00:00 of the current week."""
        now = now or datetime.now()
        start = _start_of_day(now) - timedelta(days=now.weekday())
        return self.cost_in_range(start, _start_of_day(now) + timedelta(days=1))

    def month_cost(self, now: Optional[datetime] = None) -> float:
        """Cost since the first day of the current month."""
        now = now or datetime.now()
        start = _start_of_day(now).replace(day=1)
        return self.cost_in_range(start, _start_of_day(now) + timedelta(days=1))

    def total_count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM dance_records").fetchone()[0]
        finally:
            conn.close()

    def delete(self, record_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM dance_records WHERE id = ?", (record_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_all(self) -> int:
        """Delete every record and return how many were removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM dance_records")
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _fetch(self, query: str, params: list) -> List[DanceRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            records = []
            for row in cursor.fetchall():
                records.append(DanceRecord(
                    id=row[0],
                    start_time=datetime.fromisoformat(row[1]),
                    end_time=datetime.fromisoformat(row[2]),
                    duration_seconds=row[3],
                    cost=row[4],
                    pricing_rule_name=row[5],
                    pricing_rule_id=row[6]
                ))
            return records
        finally:
            conn.close()


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)
