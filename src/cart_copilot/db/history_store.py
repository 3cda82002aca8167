"""
Purchase history store

The copilot only reads from here: purchase dates for cadence learning, stored
preference rules and per-item cadence overrides. SQLiteHistoryStore backs it
with aiosqlite; InMemoryHistoryStore is used in tests and demos.
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiosqlite
from pydantic import BaseModel, Field

from cart_copilot.control_panel.preferences import PreferenceRule
from cart_copilot.core.config import CopilotConfig
from cart_copilot.core.models import item_key

logger = logging.getLogger(__name__)


class PurchaseRecord(BaseModel):
    product_id: Optional[str] = None
    name: str
    purchased_at: date
    quantity: int = Field(default=1, ge=1)
    category: Optional[str] = None

    @property
    def key(self) -> str:
        return item_key(self.product_id, self.name)


class HistoryStore(ABC):
    """Read-only view of a household's shopping history"""

    @abstractmethod
    async def get_purchase_history(self, household_id: str, key: str) -> List[PurchaseRecord]:
        """Purchases of one item, oldest first"""

    @abstractmethod
    async def get_preferences(self, household_id: str) -> List[PreferenceRule]:
        ...

    @abstractmethod
    async def get_cadence_overrides(self, household_id: str) -> Dict[str, int]:
        """User-set restock cadences in days, keyed by item key"""


class InMemoryHistoryStore(HistoryStore):

    def __init__(
        self,
        purchases: Optional[Dict[str, Iterable[PurchaseRecord]]] = None,
        preferences: Optional[Dict[str, Iterable[PreferenceRule]]] = None,
        cadence_overrides: Optional[Dict[str, Dict[str, int]]] = None,
    ):
        self.purchases = {h: list(p) for h, p in (purchases or {}).items()}
        self.preferences = {h: list(p) for h, p in (preferences or {}).items()}
        self.cadence_overrides = {h: dict(c) for h, c in (cadence_overrides or {}).items()}

    async def get_purchase_history(self, household_id: str, key: str) -> List[PurchaseRecord]:
        records = [r for r in self.purchases.get(household_id, []) if r.key == key]
        return sorted(records, key=lambda r: r.purchased_at)

    async def get_preferences(self, household_id: str) -> List[PreferenceRule]:
        return list(self.preferences.get(household_id, []))

    async def get_cadence_overrides(self, household_id: str) -> Dict[str, int]:
        return dict(self.cadence_overrides.get(household_id, {}))


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS purchases (
        household_id TEXT NOT NULL,
        product_id TEXT,
        name TEXT NOT NULL,
        quantity INTEGER DEFAULT 1,
        category TEXT,
        purchased_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS preference_rules (
        household_id TEXT NOT NULL,
        rule_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cadence_overrides (
        household_id TEXT NOT NULL,
        item_key TEXT NOT NULL,
        cadence_days INTEGER NOT NULL,
        PRIMARY KEY (household_id, item_key)
    )
    """,
]


class SQLiteHistoryStore(HistoryStore):
    """History tables in a local SQLite file"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or CopilotConfig.get_history_db_path())

    async def initialize(self):
        """Create the schema if missing"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()

    async def _fetch(self, query: str, params: tuple) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def get_purchase_history(self, household_id: str, key: str) -> List[PurchaseRecord]:
        rows = await self._fetch(
            "SELECT product_id, name, quantity, category, purchased_at FROM purchases "
            "WHERE household_id = ? AND (product_id = ? OR product_id IS NULL OR product_id = '') "
            "ORDER BY purchased_at ASC",
            (household_id, key),
        )
        records = [
            PurchaseRecord(
                product_id=row["product_id"] or None,
                name=row["name"],
                quantity=row["quantity"] or 1,
                category=row["category"],
                purchased_at=date.fromisoformat(row["purchased_at"][:10]),
            )
            for row in rows
        ]
        return [r for r in records if r.key == key]

    async def get_preferences(self, household_id: str) -> List[PreferenceRule]:
        rows = await self._fetch(
            "SELECT rule_json FROM preference_rules WHERE household_id = ?",
            (household_id,),
        )
        return [PreferenceRule.model_validate(json.loads(row["rule_json"])) for row in rows]

    async def get_cadence_overrides(self, household_id: str) -> Dict[str, int]:
        rows = await self._fetch(
            "SELECT item_key, cadence_days FROM cadence_overrides WHERE household_id = ?",
            (household_id,),
        )
        return {row["item_key"]: int(row["cadence_days"]) for row in rows}
