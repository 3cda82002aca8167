"""Pytest fixtures for Cart Copilot tests."""

import asyncio
from datetime import date, timedelta
from typing import Dict, List, Optional, Set
from urllib.parse import parse_qs, unquote_plus, urlparse

import pytest

from cart_copilot.db.history_store import InMemoryHistoryStore, PurchaseRecord
from cart_copilot.tools import browser_tools
from cart_copilot.tools.base_tool import ToolConfig, ToolContext
from cart_copilot.utils import popup_dismisser

BASE_URL = "https://shop.test"

LOGGED_IN_MARKER = '[data-testid="account-name"]'
LOGIN_ERROR = '.login-error'
LOGIN_FIELDS = {'input[type="email"]', 'input[type="password"]', 'button[type="submit"]'}
PRODUCT_UNAVAILABLE = '[data-testid="product-unavailable"]'
ADD_TO_CART = 'button[data-testid="add-to-cart"]'


class FakeLocator:
    """Enough of playwright's Locator for the tools under test"""

    def __init__(self, page: "FakePage", selector: str, index: int = 0, parent: Optional["FakeLocator"] = None):
        self.page = page
        self.selector = selector
        self.index = index
        self.parent = parent

    @property
    def path(self) -> str:
        own = self.selector if self.index == 0 else f"{self.selector}#{self.index}"
        return f"{self.parent.path} >> {own}" if self.parent else own

    @property
    def first(self) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, 0, self.parent)

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, index, self.parent)

    def locator(self, selector: str) -> "FakeLocator":
        return FakeLocator(self.page, selector, 0, self)

    async def is_visible(self) -> bool:
        return self.page.is_selector_visible(self.selector)

    async def click(self):
        self.page.clicks.append(self.path)
        self.page.on_click(self)

    async def fill(self, value: str):
        if self.page.fill_errors:
            raise self.page.fill_errors.pop(0)
        self.page.fills.append((self.path, value))

    async def press(self, key: str):
        self.page.presses.append((self.path, key))


class FakePage:
    """
    In-memory stand-in for a playwright Page on the grocery site.

    Extraction scripts are answered from plain lists; visibility is a set of
    selectors, optionally scoped to URLs containing a given fragment.
    """

    def __init__(self):
        self.url = "about:blank"
        self.visits: List[str] = []
        self.visible: Set[str] = set()
        self.visible_on: Dict[str, Set[str]] = {}
        self.clicks: List[str] = []
        self.fills: List[tuple] = []
        self.presses: List[tuple] = []
        self.fill_errors: List[Exception] = []
        self.goto_delay = 0.0
        self.page_dismissals = 0
        self.screenshots: List[str] = []
        self.init_scripts: List[str] = []
        self.evaluations: List[str] = []

        self.orders: List[dict] = []
        self.order_items: Dict[str, List[dict]] = {}
        self.failing_orders: Set[str] = set()
        self.cart: List[dict] = []
        self.search_results: Dict[str, List[dict]] = {}
        self.slots: List[dict] = []
        self.slots_error: Optional[Exception] = None
        self.search_error: Optional[Exception] = None
        self.accept_login = True

    # -- navigation ---------------------------------------------------

    async def goto(self, url: str, timeout: Optional[int] = None, **kwargs):
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        self.url = url
        self.visits.append(url)
        # A new document starts with a fresh in-page popup counter
        self.page_dismissals = 0

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[int] = None):
        return None

    async def add_init_script(self, script: Optional[str] = None, **kwargs):
        self.init_scripts.append(script)

    async def screenshot(self, path: Optional[str] = None, **kwargs):
        self.screenshots.append(path)
        if path:
            with open(path, "wb") as handle:
                handle.write(b"\x89PNG")
        return b"\x89PNG"

    # -- locators -----------------------------------------------------

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def is_selector_visible(self, selector: str) -> bool:
        if selector in self.visible:
            return True
        return any(fragment in self.url and selector in selectors for fragment, selectors in self.visible_on.items())

    def on_click(self, locator: FakeLocator):
        if locator.selector == 'button[type="submit"]':
            self.visible.add(LOGGED_IN_MARKER if self.accept_login else LOGIN_ERROR)

    # -- scripts ------------------------------------------------------

    async def evaluate(self, script: str, arg=None):
        self.evaluations.append(script)
        if script == popup_dismisser.OBSERVER_SCRIPT:
            count, self.page_dismissals = self.page_dismissals, 0
            return {"attached": True, "count": count}
        if script in (popup_dismisser.DETACH_SCRIPT, popup_dismisser.COLLECT_SCRIPT):
            count, self.page_dismissals = self.page_dismissals, 0
            return count
        if script == browser_tools.EXTRACT_ORDERS_SCRIPT:
            return [dict(o) for o in self.orders[:arg["limit"]]]
        if script == browser_tools.EXTRACT_ORDER_ITEMS_SCRIPT:
            order_id = parse_qs(urlparse(self.url).query).get("orderID", [""])[0]
            if order_id in self.failing_orders:
                raise Exception("net::ERR_CONNECTION_RESET while loading order")
            return [dict(i) for i in self.order_items.get(order_id, [])]
        if script == browser_tools.EXTRACT_CART_SCRIPT:
            return [dict(row) for row in self.cart]
        if script == browser_tools.EXTRACT_SEARCH_RESULTS_SCRIPT:
            if self.search_error is not None:
                raise self.search_error
            query = unquote_plus(parse_qs(urlparse(self.url).query).get("q", [""])[0])
            return [dict(r) for r in self.search_results.get(query, [])[:arg["limit"]]]
        if script == browser_tools.EXTRACT_SLOTS_SCRIPT:
            if self.slots_error is not None:
                raise self.slots_error
            return [dict(s) for s in self.slots]
        if script == browser_tools.FIND_CART_ROW_SCRIPT:
            wanted = (arg.get("name") or "").lower()
            for index, row in enumerate(self.cart):
                if (arg.get("productId") and row.get("product_id") == arg["productId"]) or row["name"].lower() == wanted:
                    return {"index": index, "selector": arg["selectors"][0]}
            return {"index": -1, "selector": None}
        raise AssertionError("Unexpected script evaluated")


def line(product_id: str, name: str, quantity: int = 1, unit_price: float = 1.0, **extra) -> dict:
    row = {"product_id": product_id, "name": name, "quantity": quantity, "unit_price": unit_price}
    row.update(extra)
    return row


def _day(offset: int) -> str:
    return (date.today() + timedelta(days=offset)).isoformat()


def product_url(product_id: str) -> str:
    return f"{BASE_URL}/pt/produtos/{product_id}.html"


@pytest.fixture
def fake_page() -> FakePage:
    page = FakePage()
    page.visible |= LOGIN_FIELDS
    return page


@pytest.fixture
def tool_context(fake_page: FakePage, tmp_path) -> ToolContext:
    return ToolContext(
        page=fake_page,
        base_url=BASE_URL,
        session_id="test-session",
        config=ToolConfig(screenshot_dir=str(tmp_path / "shots")),
    )


@pytest.fixture
def grocery_page(fake_page: FakePage) -> FakePage:
    """
    Three past orders, A newest:
      Milk in A (6), B (6) and C (4)
      Bread only in A
      Coffee in B and C, out of stock on its product page
    """
    fake_page.orders = [
        {"order_id": "C", "placed_at": "2026-09-01T10:00:00"},
        {"order_id": "A", "placed_at": "2026-10-10T10:00:00"},
        {"order_id": "B", "placed_at": "2026-09-20T10:00:00"},
    ]
    fake_page.order_items = {
        "A": [
            line("100", "Leite Meio Gordo 1L", 6, 0.89, brand="Mimosa", size="1 L"),
            line("200", "Pão de Forma", 1, 1.49),
        ],
        "B": [
            line("100", "Leite Meio Gordo 1L", 6, 0.89, brand="Mimosa", size="1 L"),
            line("300", "Café Moído Delta 250g", 1, 3.99, brand="Delta", size="250 g", url=product_url("300")),
        ],
        "C": [
            line("100", "Leite Meio Gordo 1L", 4, 0.89, brand="Mimosa", size="1 L"),
            line("300", "Café Moído Delta 250g", 2, 3.99, brand="Delta", size="250 g", url=product_url("300")),
        ],
    }
    fake_page.visible_on["/pt/produtos/"] = {ADD_TO_CART}
    fake_page.visible_on["/pt/produtos/300.html"] = {PRODUCT_UNAVAILABLE}
    fake_page.search_results = {
        "café moído delta": [
            {"product_id": "301", "name": "Café Moído Delta Lote Chávena 250g", "brand": "Delta",
             "size": "250 g", "unit_price": 4.19, "available": True},
            {"product_id": "302", "name": "Café Moído Nicola 250g", "brand": "Nicola",
             "size": "250 g", "unit_price": 3.79, "available": True},
            {"product_id": "303", "name": "Café Moído Premium 250g", "brand": "Delta",
             "size": "250 g", "unit_price": 9.99, "available": True},
        ],
    }
    fake_page.slots = [
        {"slot_id": "s-paid", "date": _day(1), "start_time": "09:00", "end_time": "11:00",
         "delivery_cost": 3.5, "available": True},
        {"slot_id": "s-free", "date": _day(2), "start_time": "10:00", "end_time": "12:00",
         "delivery_cost": 0.0, "available": True},
        {"slot_id": "s-full", "date": _day(1), "start_time": "12:00", "end_time": "14:00",
         "delivery_cost": 0.0, "available": False},
    ]
    return fake_page


@pytest.fixture
def history_store() -> InMemoryHistoryStore:
    """Bread bought two days before the reference date, milk long ago"""
    reference = date(2026, 10, 19)
    purchases = {
        "home": [
            PurchaseRecord(product_id="200", name="Pão de Forma", purchased_at=reference - timedelta(days=d))
            for d in (30, 16, 9, 2)
        ] + [
            PurchaseRecord(product_id="100", name="Leite Meio Gordo 1L", purchased_at=reference - timedelta(days=d))
            for d in (60, 40)
        ],
    }
    return InMemoryHistoryStore(purchases=purchases)


@pytest.fixture
def page_factory(grocery_page: FakePage):
    closed = []

    async def factory():
        async def closer():
            closed.append(True)
        return grocery_page, closer

    factory.closed = closed
    return factory
