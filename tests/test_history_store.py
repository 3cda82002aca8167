"""Tests for the purchase history stores."""

import json
from datetime import date

import aiosqlite
import pytest

from cart_copilot.control_panel.preferences import brand_preference
from cart_copilot.db.history_store import InMemoryHistoryStore, PurchaseRecord, SQLiteHistoryStore


@pytest.fixture
async def sqlite_store(tmp_path) -> SQLiteHistoryStore:
    store = SQLiteHistoryStore(str(tmp_path / "data" / "history.db"))
    await store.initialize()
    async with aiosqlite.connect(store.db_path) as db:
        await db.executemany(
            "INSERT INTO purchases (household_id, product_id, name, quantity, purchased_at) VALUES (?, ?, ?, ?, ?)",
            [
                ("home", "200", "Pão de Forma", 1, "2026-10-17T09:30:00"),
                ("home", "200", "Pão de Forma", 2, "2026-10-03"),
                ("home", None, "Bananas", 1, "2026-10-01"),
                ("home", "100", "Leite", 6, "2026-09-01"),
                ("away", "200", "Pão de Forma", 1, "2026-10-18"),
            ],
        )
        await db.execute(
            "INSERT INTO preference_rules (household_id, rule_json) VALUES (?, ?)",
            ("home", brand_preference("Mimosa", "dairy").model_dump_json()),
        )
        await db.execute(
            "INSERT INTO cadence_overrides (household_id, item_key, cadence_days) VALUES (?, ?, ?)",
            ("home", "100", 10),
        )
        await db.commit()
    return store


class TestSQLiteHistoryStore:
    async def test_initialize_creates_file(self, tmp_path) -> None:
        store = SQLiteHistoryStore(str(tmp_path / "nested" / "h.db"))
        await store.initialize()
        await store.initialize()

        assert store.db_path.exists()
        assert await store.get_purchase_history("home", "200") == []

    async def test_history_is_oldest_first_and_scoped(self, sqlite_store) -> None:
        history = await sqlite_store.get_purchase_history("home", "200")

        assert [r.purchased_at for r in history] == [date(2026, 10, 3), date(2026, 10, 17)]
        assert history[0].quantity == 2

    async def test_items_without_id_match_by_name(self, sqlite_store) -> None:
        history = await sqlite_store.get_purchase_history("home", "bananas")

        assert len(history) == 1
        assert history[0].product_id is None

    async def test_preferences_and_overrides(self, sqlite_store) -> None:
        rules = await sqlite_store.get_preferences("home")

        assert [r.name for r in rules] == ["Prefer Mimosa"]
        assert await sqlite_store.get_cadence_overrides("home") == {"100": 10}
        assert await sqlite_store.get_cadence_overrides("away") == {}


class TestInMemoryHistoryStore:
    async def test_sorted_and_keyed(self) -> None:
        store = InMemoryHistoryStore(purchases={"home": [
            PurchaseRecord(product_id="1", name="A", purchased_at=date(2026, 10, 5)),
            PurchaseRecord(product_id="1", name="A", purchased_at=date(2026, 9, 5)),
            PurchaseRecord(name="Loose  Carrots", purchased_at=date(2026, 9, 1)),
        ]})

        history = await store.get_purchase_history("home", "1")

        assert [r.purchased_at.month for r in history] == [9, 10]
        assert len(await store.get_purchase_history("home", "loose carrots")) == 1

    async def test_returns_copies(self) -> None:
        store = InMemoryHistoryStore(cadence_overrides={"home": {"1": 3}})

        overrides = await store.get_cadence_overrides("home")
        overrides["1"] = 99

        assert await store.get_cadence_overrides("home") == {"1": 3}
        assert json.dumps(await store.get_preferences("home")) == "[]"
