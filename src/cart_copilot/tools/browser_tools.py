"""
Site actions

Concrete BaseTool subclasses for the grocery site. Extraction is done in the
page with `page.evaluate(SCRIPT, {"selectors": [...]})`; the selector strings
always come from the registry so that the scripts stay site-agnostic.

None of these tools can check out or pay. Cart edits and slot selection are
the furthest they go.
"""
import logging
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import BaseModel, Field

from cart_copilot.core.errors import AuthError, SelectorError
from cart_copilot.core.models import (
    AvailabilityResult,
    CartItem,
    CartSnapshot,
    DeliverySlot,
    OrderDetail,
    OrderLineItem,
    OrderSummary,
    SubstituteCandidate,
    item_key,
)
from cart_copilot.tools.base_tool import BaseTool, ToolContext

logger = logging.getLogger(__name__)


SITE_PATHS = {
    "login": "/pt/login",
    "order_history": "/pt/historico-encomendas",
    "order_detail": "/pt/historico-encomendas/detalhe?orderID={order_id}",
    "cart": "/pt/carrinho-compras",
    "search": "/pt/pesquisa?q={query}",
    "product": "/pt/produtos/{product_id}.html",
    "slots": "/pt/agendar-entrega",
}


# ============================================
# IN-PAGE EXTRACTION SCRIPTS
# ============================================

# Shared prelude: pick the first candidate selector that matches anything
_FIRST_MATCH = """
    const firstMatch = (candidates, root) => {
        for (const sel of candidates) {
            let found = [];
            try { found = Array.from((root || document).querySelectorAll(sel)); } catch (e) { continue; }
            if (found.length) return found;
        }
        return [];
    };
    const text = (el, sel) => {
        const node = sel ? el.querySelector(sel) : el;
        return node ? (node.textContent || '').trim() : '';
    };
    const price = (raw) => {
        if (!raw) return 0;
        const m = String(raw).replace(/\\s/g, '').match(/(\\d+(?:[.,]\\d+)?)/);
        return m ? parseFloat(m[1].replace(',', '.')) : 0;
    };
"""

EXTRACT_ORDERS_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    return firstMatch(args.selectors).slice(0, args.limit).map((card) => ({
        order_id: card.getAttribute('data-order-id') || text(card, '.order-number'),
        placed_at: card.getAttribute('data-order-date') || null,
        total: price(card.getAttribute('data-order-total') || text(card, '.order-total')),
        item_count: parseInt(card.getAttribute('data-item-count') || '0', 10) || null,
        detail_url: (card.querySelector('a[href]') || {}).href || null,
    })).filter((o) => o.order_id);
}
"""

EXTRACT_ORDER_ITEMS_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    return firstMatch(args.selectors).map((row) => ({
        product_id: row.getAttribute('data-product-id') || null,
        name: row.getAttribute('data-product-name') || text(row, '.product-name'),
        quantity: parseInt(row.getAttribute('data-quantity') || text(row, '.product-quantity') || '1', 10) || 1,
        unit_price: price(row.getAttribute('data-price') || text(row, '.product-price')),
        url: (row.querySelector('a[href]') || {}).href || null,
        brand: row.getAttribute('data-brand') || null,
        size: row.getAttribute('data-size') || null,
        category: row.getAttribute('data-category') || null,
    })).filter((i) => i.name);
}
"""

EXTRACT_CART_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    const unavailable = (row) => args.unavailableSelectors.some((sel) => {
        try { return !!row.querySelector(sel); } catch (e) { return false; }
    });
    return firstMatch(args.selectors).map((row) => ({
        product_id: row.getAttribute('data-product-id') || null,
        name: row.getAttribute('data-product-name') || text(row, '.product-name'),
        quantity: parseInt(row.getAttribute('data-quantity') || '1', 10) || 1,
        unit_price: price(row.getAttribute('data-price') || text(row, '.product-price')),
        available: !unavailable(row),
        url: (row.querySelector('a[href]') || {}).href || null,
    })).filter((i) => i.name);
}
"""

EXTRACT_SEARCH_RESULTS_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    return firstMatch(args.selectors).slice(0, args.limit).map((tile) => ({
        product_id: tile.getAttribute('data-pid') || tile.getAttribute('data-product-id') || '',
        name: tile.getAttribute('data-product-name') || text(tile, '.product-name'),
        url: (tile.querySelector('a[href]') || {}).href || null,
        brand: tile.getAttribute('data-brand') || null,
        size: tile.getAttribute('data-size') || null,
        unit_price: price(tile.getAttribute('data-price') || text(tile, '.price')),
        price_per_unit: text(tile, '.price-per-unit') || null,
        image_url: (tile.querySelector('img') || {}).src || null,
        available: !tile.querySelector('[disabled], .unavailable'),
    })).filter((p) => p.product_id && p.name);
}
"""

EXTRACT_SLOTS_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    return firstMatch(args.selectors).map((cell) => {
        const time = cell.getAttribute('data-time') || '';
        const [start, end] = time.split('-').map((t) => t.trim());
        return {
            slot_id: cell.getAttribute('data-slot-id') || `${cell.getAttribute('data-date')}-${start}`,
            date: cell.getAttribute('data-date'),
            start_time: start || '',
            end_time: end || '',
            delivery_cost: price(cell.getAttribute('data-price')),
            available: !cell.classList.contains('unavailable') && !cell.hasAttribute('disabled'),
        };
    }).filter((s) => s.date && s.start_time);
}
"""

FIND_CART_ROW_SCRIPT = """
(args) => {
""" + _FIRST_MATCH + """
    const wanted = (args.name || '').toLowerCase();
    const rows = firstMatch(args.selectors);
    for (let i = 0; i < rows.length; i++) {
        const row = rows[i];
        const pid = row.getAttribute('data-product-id');
        const name = (row.getAttribute('data-product-name') || text(row, '.product-name')).toLowerCase();
        if ((args.productId && pid === args.productId) || (wanted && name === wanted)) {
            return { index: i, selector: args.selectors.find((s) => document.querySelector(s)) };
        }
    }
    return { index: -1, selector: null };
}
"""


# ============================================
# INPUT MODELS
# ============================================

class NavigateInput(BaseModel):
    url: str = Field(min_length=1)


class LoginInput(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1)


class OrderHistoryInput(BaseModel):
    max_orders: int = Field(default=3, ge=1, le=10)


class OrderDetailInput(BaseModel):
    order_id: str = Field(min_length=1)
    detail_url: Optional[str] = None


class EmptyInput(BaseModel):
    pass


class ItemRef(BaseModel):
    product_id: Optional[str] = None
    name: str = Field(min_length=1)
    url: Optional[str] = None

    @property
    def key(self) -> str:
        return item_key(self.product_id, self.name)


class AvailabilityInput(BaseModel):
    items: List[ItemRef] = Field(min_length=1)


class SearchInput(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=10, ge=1, le=50)


class AddToCartInput(ItemRef):
    quantity: int = Field(default=1, ge=1)


class RemoveFromCartInput(ItemRef):
    pass


class UpdateQuantityInput(ItemRef):
    quantity: int = Field(ge=1)


class ExtractSlotsInput(BaseModel):
    days_ahead: int = Field(default=7, ge=1, le=21)


class SelectSlotInput(BaseModel):
    slot_id: str = Field(min_length=1)


# ============================================
# HELPERS
# ============================================

async def _goto(context: ToolContext, path: str):
    # Navigation replaces the document and its popup counter
    if context.popup_observer is not None:
        await context.popup_observer.collect()
    await context.page.goto(context.url(path), timeout=context.config.navigation_timeout_ms)


async def _find_cart_row(context: ToolContext, ref: ItemRef):
    """Return a locator for the cart row matching ref, or None"""
    candidates = context.resolver.registry.candidates("cart.item_row")
    found = await context.page.evaluate(
        FIND_CART_ROW_SCRIPT,
        {"selectors": candidates, "productId": ref.product_id, "name": ref.name},
    )
    if not found or found.get("index", -1) < 0:
        return None
    return context.page.locator(found["selector"]).nth(found["index"])


# ============================================
# TOOLS
# ============================================

class NavigateTool(BaseTool):
    name = "navigate"
    description = "Open a site path or absolute URL"
    input_model = NavigateInput

    async def run(self, params: NavigateInput, context: ToolContext):
        await _goto(context, params.url)
        return {"url": context.page.url}


class LoginTool(BaseTool):
    name = "login"
    description = "Sign in with email and password"
    input_model = LoginInput

    async def run(self, params: LoginInput, context: ToolContext):
        page, resolver = context.page, context.resolver
        await _goto(context, SITE_PATHS["login"])

        if await resolver.is_visible(page, "login.logged_in_marker"):
            logger.info("LOGIN: Session already authenticated")
            return {"logged_in": True, "already": True}

        await (await resolver.locate(page, "login.email_input")).fill(params.email)
        await (await resolver.locate(page, "login.password_input")).fill(params.password)
        await (await resolver.locate(page, "login.submit_button")).click()
        await page.wait_for_load_state("domcontentloaded", timeout=context.config.navigation_timeout_ms)

        if await resolver.is_visible(page, "login.error_message"):
            raise AuthError("Login rejected: the site reported invalid credentials")
        if not await resolver.is_visible(page, "login.logged_in_marker"):
            raise AuthError("Login could not be confirmed")

        logger.info(f"LOGIN: Signed in as {params.email}")
        return {"logged_in": True, "already": False}


class LoadOrderHistoryTool(BaseTool):
    name = "load_order_history"
    description = "List the most recent orders, newest first"
    input_model = OrderHistoryInput

    async def run(self, params: OrderHistoryInput, context: ToolContext) -> List[OrderSummary]:
        await _goto(context, SITE_PATHS["order_history"])
        raw = await context.page.evaluate(
            EXTRACT_ORDERS_SCRIPT,
            {"selectors": context.resolver.registry.candidates("orders.order_card"), "limit": params.max_orders},
        )
        orders = [OrderSummary.model_validate(o) for o in raw or []]
        orders.sort(key=lambda o: o.placed_at or datetime.min, reverse=True)
        logger.info(f"ORDERS: Found {len(orders)} orders")
        return orders[:params.max_orders]


class LoadOrderDetailTool(BaseTool):
    name = "load_order_detail"
    description = "Read the line items of one order"
    input_model = OrderDetailInput

    async def run(self, params: OrderDetailInput, context: ToolContext) -> OrderDetail:
        await _goto(context, params.detail_url or SITE_PATHS["order_detail"].format(order_id=params.order_id))
        raw = await context.page.evaluate(
            EXTRACT_ORDER_ITEMS_SCRIPT,
            {"selectors": context.resolver.registry.candidates("order_detail.item_row")},
        )
        items = [OrderLineItem.model_validate(i) for i in raw or []]
        return OrderDetail(order_id=params.order_id, items=items)


class ScanCartTool(BaseTool):
    name = "scan_cart"
    description = "Read the current cart"
    input_model = EmptyInput

    async def run(self, params: EmptyInput, context: ToolContext) -> CartSnapshot:
        await _goto(context, SITE_PATHS["cart"])
        return await scan_current_cart(context)


async def scan_current_cart(context: ToolContext) -> CartSnapshot:
    registry = context.resolver.registry
    raw = await context.page.evaluate(
        EXTRACT_CART_SCRIPT,
        {
            "selectors": registry.candidates("cart.item_row"),
            "unavailableSelectors": registry.candidates("cart.unavailable_badge"),
        },
    )
    return CartSnapshot(items=[CartItem.model_validate(i) for i in raw or []], url=context.page.url)


class CheckAvailabilityTool(BaseTool):
    """
    Check items against the cart first, then against their product page.
    Items found in neither place are reported available with a note.
    """
    name = "check_availability"
    description = "Check whether items can currently be bought"
    input_model = AvailabilityInput

    async def run(self, params: AvailabilityInput, context: ToolContext) -> List[AvailabilityResult]:
        await _goto(context, SITE_PATHS["cart"])
        cart = await scan_current_cart(context)

        results = []
        for item in params.items:
            in_cart = cart.find(item.key)
            if in_cart is not None:
                results.append(AvailabilityResult(
                    product_id=item.product_id,
                    name=item.name,
                    available=in_cart.available,
                    reason=None if in_cart.available else "Marked unavailable in cart",
                ))
                continue

            if item.url:
                await _goto(context, item.url)
                if await context.resolver.is_visible(context.page, "product.unavailable_marker"):
                    results.append(AvailabilityResult(
                        product_id=item.product_id, name=item.name, available=False, reason="Out of stock"
                    ))
                    continue
                if await context.resolver.is_visible(context.page, "product.add_to_cart"):
                    results.append(AvailabilityResult(product_id=item.product_id, name=item.name, available=True))
                    continue

            results.append(AvailabilityResult(
                product_id=item.product_id, name=item.name, available=True, reason="Not verified"
            ))
        return results


class SearchProductsTool(BaseTool):
    name = "search_products"
    description = "Search the catalogue"
    input_model = SearchInput

    async def run(self, params: SearchInput, context: ToolContext) -> List[SubstituteCandidate]:
        await _goto(context, SITE_PATHS["search"].format(query=quote_plus(params.query)))
        raw = await context.page.evaluate(
            EXTRACT_SEARCH_RESULTS_SCRIPT,
            {"selectors": context.resolver.registry.candidates("search.product_tile"), "limit": params.max_results},
        )
        return [SubstituteCandidate.model_validate(p) for p in raw or []]


class AddToCartTool(BaseTool):
    """
    Add a product from its page. A product that cannot be added is a normal
    outcome and comes back as {"added": False, "reason": ...}.
    """
    name = "add_to_cart"
    changes_cart = True
    description = "Add a product to the cart"
    input_model = AddToCartInput

    async def run(self, params: AddToCartInput, context: ToolContext):
        page, resolver = context.page, context.resolver
        if params.url:
            target = params.url
        elif params.product_id:
            target = SITE_PATHS["product"].format(product_id=params.product_id)
        else:
            return {"added": False, "reason": "No product page to add from"}

        await _goto(context, target)
        if await resolver.is_visible(page, "product.unavailable_marker"):
            return {"added": False, "reason": "Product unavailable"}

        button = await resolver.try_resolve(page, "product.add_to_cart")
        if button is None:
            return {"added": False, "reason": "Add-to-cart button not found"}

        await page.locator(button).first.click()
        if params.quantity > 1:
            quantity_input = await resolver.try_resolve(page, "cart.quantity_input")
            if quantity_input is not None:
                field = page.locator(quantity_input).first
                await field.fill(str(params.quantity))
                await field.press("Enter")
        logger.info(f"CART: Added {params.quantity} x {params.name}")
        return {"added": True, "quantity": params.quantity}


class RemoveFromCartTool(BaseTool):
    name = "remove_from_cart"
    changes_cart = True
    description = "Remove a product from the cart"
    input_model = RemoveFromCartInput

    async def run(self, params: RemoveFromCartInput, context: ToolContext):
        await _goto(context, SITE_PATHS["cart"])
        row = await _find_cart_row(context, params)
        if row is None:
            return {"removed": False, "reason": "Not in cart"}

        button = await context.resolver.resolve(context.page, "cart.remove_button")
        await row.locator(button).first.click()
        logger.info(f"CART: Removed {params.name}")
        return {"removed": True}


class UpdateQuantityTool(BaseTool):
    name = "update_quantity"
    changes_cart = True
    description = "Set the quantity of a cart line"
    input_model = UpdateQuantityInput

    async def run(self, params: UpdateQuantityInput, context: ToolContext):
        await _goto(context, SITE_PATHS["cart"])
        row = await _find_cart_row(context, params)
        if row is None:
            return {"updated": False, "reason": "Not in cart"}

        selector = await context.resolver.resolve(context.page, "cart.quantity_input")
        field = row.locator(selector).first
        await field.fill(str(params.quantity))
        await field.press("Enter")
        logger.info(f"CART: {params.name} quantity set to {params.quantity}")
        return {"updated": True, "quantity": params.quantity}


class ExtractSlotsTool(BaseTool):
    name = "extract_slots"
    description = "Read delivery slots"
    input_model = ExtractSlotsInput

    async def run(self, params: ExtractSlotsInput, context: ToolContext) -> List[DeliverySlot]:
        await _goto(context, SITE_PATHS["slots"])
        raw = await context.page.evaluate(
            EXTRACT_SLOTS_SCRIPT,
            {"selectors": context.resolver.registry.candidates("slots.slot_cell"), "daysAhead": params.days_ahead},
        )
        return [DeliverySlot.model_validate(s) for s in raw or []]


class SelectSlotTool(BaseTool):
    name = "select_slot"
    changes_cart = True
    description = "Reserve a delivery slot"
    input_model = SelectSlotInput

    async def run(self, params: SelectSlotInput, context: ToolContext):
        page = context.page
        await _goto(context, SITE_PATHS["slots"])
        cell = await context.resolver.resolve(page, "slots.slot_cell")
        selector = f'{cell}[data-slot-id="{params.slot_id}"]'
        target = page.locator(selector).first
        if not await target.is_visible():
            raise SelectorError(f"Slot {params.slot_id} not found", selector=selector)
        await target.click()
        logger.info(f"SLOTS: Selected slot {params.slot_id}")
        return {"selected": True, "slot_id": params.slot_id}


# Every tool the workers may call. There is no checkout entry.
TOOLS = {
    tool.name: tool
    for tool in (
        NavigateTool(),
        LoginTool(),
        LoadOrderHistoryTool(),
        LoadOrderDetailTool(),
        ScanCartTool(),
        CheckAvailabilityTool(),
        SearchProductsTool(),
        AddToCartTool(),
        RemoveFromCartTool(),
        UpdateQuantityTool(),
        ExtractSlotsTool(),
        SelectSlotTool(),
    )
}
