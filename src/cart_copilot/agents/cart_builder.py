"""
Cart Builder

Loads the last N orders, merges their line items and compares the result with
the live cart. Items missing from the cart become additions; items present
with a different quantity become quantity changes.
"""
import logging
from collections import Counter
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from cart_copilot.control_panel.confidence import confidence_from_cart_analysis
from cart_copilot.core.config import CartBuilderConfig, MergeStrategy
from cart_copilot.core.errors import error_from_tool_error, raise_if_cancelled
from cart_copilot.core.models import (
    CartSnapshot,
    MergedCartItem,
    OrderDetail,
    OrderSummary,
    QuantityChange,
)
from cart_copilot.tools.base_tool import ToolContext, raise_for_result
from cart_copilot.tools.browser_tools import (
    AddToCartTool,
    LoadOrderDetailTool,
    LoadOrderHistoryTool,
    ScanCartTool,
    UpdateQuantityTool,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


class CartBuilderResult(BaseModel):
    orders_analyzed: List[str] = Field(default_factory=list)
    merged_items: List[MergedCartItem] = Field(default_factory=list)
    added_items: List[MergedCartItem] = Field(default_factory=list)
    quantity_changes: List[QuantityChange] = Field(default_factory=list)
    cart_before: CartSnapshot = Field(default_factory=CartSnapshot)
    cart_after: Optional[CartSnapshot] = None
    failed_additions: List[str] = Field(default_factory=list)
    notices: List[str] = Field(default_factory=list)
    item_confidences: Dict[str, float] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0, le=1)


# ----------------------------------------------------------------------
# Merge
# ----------------------------------------------------------------------

def _merged_quantity(quantities: List[int], strategy: MergeStrategy) -> int:
    """quantities are ordered newest order first"""
    if strategy == MergeStrategy.LATEST:
        return quantities[0]
    if strategy == MergeStrategy.MOST_FREQUENT:
        counts = Counter(quantities)
        # max() keeps the first maximal element, i.e. the newest on ties
        return max(quantities, key=lambda q: counts[q])
    return sum(quantities)


def merge_orders(orders: List[OrderDetail], strategy: MergeStrategy = MergeStrategy.COMBINED) -> List[MergedCartItem]:
    """
    Merge line items across orders.

    Args:
        orders: Order details, newest first
        strategy: How quantities from several orders are combined

    Returns:
        One MergedCartItem per distinct product, in first-seen order. Product
        attributes are taken from the newest order containing the item.
    """
    merged: Dict[str, MergedCartItem] = {}
    for order in orders:
        for line in order.items:
            existing = merged.get(line.key)
            if existing is None:
                merged[line.key] = MergedCartItem(
                    **line.model_dump(),
                    source_orders=[order.order_id],
                    appearance_count=1,
                    quantities=[line.quantity],
                )
                continue
            existing.quantities.append(line.quantity)
            if order.order_id not in existing.source_orders:
                existing.source_orders.append(order.order_id)
                existing.appearance_count = len(existing.source_orders)

    for item in merged.values():
        item.quantity = max(1, _merged_quantity(item.quantities, strategy))
    return list(merged.values())


def quantity_consistency(quantities: List[int]) -> float:
    """Share of orders whose quantity equals the most common one"""
    if not quantities:
        return 0.0
    return Counter(quantities).most_common(1)[0][1] / len(quantities)


def diff_against_cart(merged: List[MergedCartItem], cart: CartSnapshot):
    added: List[MergedCartItem] = []
    changes: List[QuantityChange] = []
    for item in merged:
        in_cart = cart.find(item.key)
        if in_cart is None:
            added.append(item)
        elif in_cart.quantity != item.quantity:
            changes.append(QuantityChange(
                item_id=item.key,
                product_id=item.product_id,
                name=item.name,
                previous_quantity=in_cart.quantity,
                new_quantity=item.quantity,
                unit_price=item.unit_price,
                reason="merged",
            ))
    return added, changes


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------

class CartBuilder:

    def __init__(self, config: Optional[CartBuilderConfig] = None):
        self.config = config or CartBuilderConfig()

    async def run(
        self,
        context: ToolContext,
        is_cancelled: Optional[Callable[[], bool]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CartBuilderResult:
        result = CartBuilderResult()

        def progress(percent: float, action: str):
            if on_progress:
                on_progress(percent, action)

        raise_if_cancelled(is_cancelled, "cart building")
        progress(5, "Loading order history")
        history = await LoadOrderHistoryTool().execute({"max_orders": self.config.max_orders}, context)
        summaries: List[OrderSummary] = raise_for_result(history)
        logger.info(f"CART_BUILDER: {len(summaries)} orders in history")

        details: List[OrderDetail] = []
        last_error = None
        for index, summary in enumerate(summaries):
            raise_if_cancelled(is_cancelled, "order loading")
            progress(10 + 50 * index / max(1, len(summaries)), f"Loading order {summary.order_id}")
            detail = await LoadOrderDetailTool().execute(
                {"order_id": summary.order_id, "detail_url": summary.detail_url}, context
            )
            if not detail.success:
                last_error = detail.error
                result.notices.append(f"Order {summary.order_id} could not be loaded: {detail.error.message}")
                logger.warning(f"CART_BUILDER: Skipping order {summary.order_id}: {detail.error.message}")
                continue
            order: OrderDetail = detail.data
            if order.placed_at is None:
                order.placed_at = summary.placed_at
            details.append(order)

        if summaries and not details:
            raise error_from_tool_error(last_error)
        if not summaries:
            result.notices.append("No previous orders found")

        result.orders_analyzed = [d.order_id for d in details]
        result.merged_items = merge_orders(details, self.config.merge_strategy)

        raise_if_cancelled(is_cancelled, "cart scan")
        progress(65, "Reading current cart")
        result.cart_before = raise_for_result(await ScanCartTool().execute({}, context))
        result.added_items, result.quantity_changes = diff_against_cart(result.merged_items, result.cart_before)

        for item in result.merged_items:
            item_confidence = confidence_from_cart_analysis(
                len(details), item.appearance_count, quantity_consistency(item.quantities)
            )
            result.item_confidences[item.key] = item_confidence.score
        if result.item_confidences:
            scores = list(result.item_confidences.values())
            result.confidence = sum(scores) / len(scores)

        if self.config.apply_to_cart:
            await self._apply(context, result, is_cancelled, progress)

        progress(100, "Cart built")
        logger.info(
            f"CART_BUILDER: {len(result.merged_items)} merged items, "
            f"{len(result.added_items)} to add, {len(result.quantity_changes)} quantity changes"
        )
        return result

    async def _apply(self, context: ToolContext, result: CartBuilderResult, is_cancelled, progress):
        """Put the proposed items in the live cart. Failed additions stay listed for review."""
        total = len(result.added_items) + len(result.quantity_changes)
        done = 0
        for item in result.added_items:
            raise_if_cancelled(is_cancelled, "cart filling")
            outcome = await AddToCartTool().execute(
                {"product_id": item.product_id, "name": item.name, "url": item.url, "quantity": item.quantity},
                context,
            )
            if not outcome.success or not outcome.data.get("added"):
                reason = outcome.error.message if outcome.error else outcome.data.get("reason")
                result.failed_additions.append(item.key)
                result.notices.append(f"{item.name} could not be added: {reason}")
            done += 1
            progress(70 + 25 * done / max(1, total), f"Adding {item.name}")

        for change in result.quantity_changes:
            raise_if_cancelled(is_cancelled, "cart filling")
            outcome = await UpdateQuantityTool().execute(
                {"product_id": change.product_id, "name": change.name, "quantity": max(1, change.new_quantity)},
                context,
            )
            if not outcome.success or not outcome.data.get("updated"):
                reason = outcome.error.message if outcome.error else outcome.data.get("reason")
                result.notices.append(f"Quantity of {change.name} could not be updated: {reason}")
            done += 1

        scan = await ScanCartTool().execute({}, context)
        if scan.success:
            result.cart_after = scan.data
