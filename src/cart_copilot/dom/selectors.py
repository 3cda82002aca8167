"""
Selector chains

A logical UI target ("cart.item_row", "login.submit_button") maps to an
ordered list of candidate selectors. The first candidate with a visible match
wins. Site-specific strings live only in the registry below.
"""
import logging
from typing import Dict, Iterable, List, Optional

from playwright.async_api import Locator, Page
from pydantic import BaseModel, Field, field_validator

from cart_copilot.core.errors import SelectorError

logger = logging.getLogger(__name__)


class SelectorChain(BaseModel):
    name: str
    candidates: List[str] = Field(min_length=1)
    description: str = ""

    @field_validator("candidates")
    @classmethod
    def _no_blank_candidates(cls, value: List[str]) -> List[str]:
        cleaned = [c.strip() for c in value if c and c.strip()]
        if not cleaned:
            raise ValueError("selector chain needs at least one non-empty candidate")
        return cleaned


def _chain(name: str, *candidates: str, description: str = "") -> SelectorChain:
    return SelectorChain(name=name, candidates=list(candidates), description=description)


DEFAULT_SELECTORS: List[SelectorChain] = [
    # Login
    _chain("login.email_input", 'input[type="email"]', 'input[name="email"]', '#email'),
    _chain("login.password_input", 'input[type="password"]', 'input[name="password"]', '#password'),
    _chain("login.submit_button", 'button[type="submit"]', 'button:has-text("Iniciar sessão")', 'button:has-text("Login")'),
    _chain("login.error_message", '.login-error', '[role="alert"]', '.alert-danger'),
    _chain("login.logged_in_marker", '[data-testid="account-name"]', '.auc-header-account span', '.user-name'),
    # Order history
    _chain("orders.order_card", '[data-testid="order-card"]', '.auc-orders__order-card', '.order-history-item'),
    _chain("order_detail.item_row", '[data-testid="order-item"]', '.auc-order-detail__product', '.order-product'),
    # Cart
    _chain("cart.item_row", '[data-testid="cart-item"]', '.auc-cart__product', '.cart-item'),
    _chain("cart.unavailable_badge", '[data-testid="unavailable"]', '.auc-product__unavailable', '.out-of-stock'),
    _chain("cart.quantity_input", 'input[data-testid="quantity"]', 'input.quantity', 'input[name="quantity"]'),
    _chain("cart.remove_button", 'button[data-testid="remove-item"]', 'button.remove-product', 'button:has-text("Remover")'),
    # Search and product pages
    _chain("search.product_tile", '[data-testid="product-tile"]', '.auc-product', '.product-tile'),
    _chain("product.add_to_cart", 'button[data-testid="add-to-cart"]', 'button.auc-button__add-to-cart', 'button:has-text("Adicionar")'),
    _chain("product.unavailable_marker", '[data-testid="product-unavailable"]', '.auc-product__no-stock', '.unavailable'),
    # Delivery slots
    _chain("slots.slot_cell", '[data-testid="delivery-slot"]', '.auc-slot', '.delivery-slot'),
    # Competing modal that must stay on screen while reordering
    _chain("modal.reorder", '[data-testid="reorder-modal"]', '.auc-modal--reorder', '.merge-cart-modal'),
]


class SelectorRegistry:
    """Lookup table of selector chains by logical name"""

    def __init__(self, chains: Optional[Iterable[SelectorChain]] = None):
        self._chains: Dict[str, SelectorChain] = {}
        for chain in chains if chains is not None else DEFAULT_SELECTORS:
            self.register(chain)

    def register(self, chain: SelectorChain):
        self._chains[chain.name] = chain

    def get(self, name: str) -> SelectorChain:
        chain = self._chains.get(name)
        if chain is None:
            raise SelectorError(f"Unknown logical selector '{name}'", selector=name)
        return chain

    def candidates(self, name: str) -> List[str]:
        return list(self.get(name).candidates)

    def names(self) -> List[str]:
        return sorted(self._chains)


class SelectorResolver:
    """Resolves logical names to the first currently-visible candidate"""

    def __init__(self, registry: Optional[SelectorRegistry] = None):
        self.registry = registry or SelectorRegistry()

    async def try_resolve(self, page: Page, name: str) -> Optional[str]:
        chain = self.registry.get(name)
        for index, candidate in enumerate(chain.candidates):
            try:
                visible = await page.locator(candidate).first.is_visible()
            except Exception as e:
                # Malformed candidate for this engine; move to the next one
                logger.debug(f"SELECTORS: Candidate '{candidate}' for {name} raised: {e}")
                continue
            if visible:
                if index > 0:
                    logger.info(f"SELECTORS: {name} resolved by fallback #{index}: {candidate}")
                return candidate
        return None

    async def resolve(self, page: Page, name: str) -> str:
        selector = await self.try_resolve(page, name)
        if selector is None:
            raise SelectorError(f"No visible element for '{name}'", selector=name)
        return selector

    async def locate(self, page: Page, name: str) -> Locator:
        return page.locator(await self.resolve(page, name)).first

    async def is_visible(self, page: Page, name: str) -> bool:
        return await self.try_resolve(page, name) is not None
