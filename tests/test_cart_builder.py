"""Tests for the Cart Builder worker."""

import pytest

from cart_copilot.agents.cart_builder import (
    CartBuilder,
    diff_against_cart,
    merge_orders,
    quantity_consistency,
)
from cart_copilot.core.config import CartBuilderConfig, MergeStrategy
from cart_copilot.core.errors import NetworkError, SessionCancelledError
from cart_copilot.core.models import CartItem, CartSnapshot, OrderDetail, OrderLineItem

from conftest import line


def _orders():
    """Newest first"""
    return [
        OrderDetail(order_id="A", items=[
            OrderLineItem(**line("100", "Milk", 6)),
            OrderLineItem(**line(None, "Loose Bananas", 2)),
        ]),
        OrderDetail(order_id="B", items=[
            OrderLineItem(**line("100", "Milk", 6)),
            OrderLineItem(**line(None, "loose  bananas", 1)),
        ]),
        OrderDetail(order_id="C", items=[OrderLineItem(**line("100", "Milk", 4))]),
    ]


class TestMerge:
    @pytest.mark.parametrize(
        "strategy,milk,bananas",
        [
            (MergeStrategy.COMBINED, 16, 3),
            (MergeStrategy.LATEST, 6, 2),
            (MergeStrategy.MOST_FREQUENT, 6, 2),
        ],
    )
    def test_strategies(self, strategy, milk, bananas) -> None:
        merged = {item.key: item for item in merge_orders(_orders(), strategy)}

        assert merged["100"].quantity == milk
        assert merged["loose bananas"].quantity == bananas

    def test_items_without_id_merge_by_normalized_name(self) -> None:
        merged = merge_orders(_orders())

        assert [item.key for item in merged] == ["100", "loose bananas"]
        assert merged[1].source_orders == ["A", "B"]
        assert merged[1].name == "Loose Bananas"

    def test_provenance(self) -> None:
        milk = merge_orders(_orders())[0]

        assert milk.source_orders == ["A", "B", "C"]
        assert milk.appearance_count == 3
        assert milk.quantities == [6, 6, 4]

    def test_quantity_consistency(self) -> None:
        assert quantity_consistency([6, 6, 4]) == pytest.approx(2 / 3)
        assert quantity_consistency([]) == 0.0


class TestDiff:
    def test_missing_items_are_added_and_mismatches_change(self) -> None:
        merged = merge_orders(_orders())
        cart = CartSnapshot(items=[CartItem(product_id="100", name="Milk", quantity=2)])

        added, changes = diff_against_cart(merged, cart)

        assert [item.key for item in added] == ["loose bananas"]
        assert len(changes) == 1
        assert changes[0].previous_quantity == 2
        assert changes[0].new_quantity == 16

    def test_matching_quantity_is_untouched(self) -> None:
        merged = merge_orders(_orders())
        cart = CartSnapshot(items=[
            CartItem(product_id="100", name="Milk", quantity=16),
            CartItem(name="Loose bananas", quantity=3),
        ])

        assert diff_against_cart(merged, cart) == ([], [])


class TestCartBuilderRun:
    async def test_builds_from_three_orders(self, grocery_page, tool_context) -> None:
        progress = []

        result = await CartBuilder().run(tool_context, on_progress=lambda p, a: progress.append(p))

        assert result.orders_analyzed == ["A", "B", "C"]
        merged = {item.key: item for item in result.merged_items}
        assert merged["100"].quantity == 16
        assert merged["100"].source_orders == ["A", "B", "C"]
        assert merged["200"].quantity == 1
        assert merged["300"].quantity == 3
        assert merged["300"].source_orders == ["B", "C"]
        assert [item.key for item in result.added_items] == ["100", "200", "300"]
        assert progress[-1] == 100
        assert progress == sorted(progress)

    async def test_unavailable_addition_becomes_notice(self, grocery_page, tool_context) -> None:
        result = await CartBuilder().run(tool_context)

        assert result.failed_additions == ["300"]
        assert any("could not be added: Product unavailable" in n for n in result.notices)
        assert result.cart_after is not None

    async def test_dry_run_leaves_cart_alone(self, grocery_page, tool_context) -> None:
        result = await CartBuilder(CartBuilderConfig(apply_to_cart=False)).run(tool_context)

        assert result.cart_after is None
        assert not any("/pt/produtos/" in url for url in grocery_page.visits)

    async def test_item_confidences(self, grocery_page, tool_context) -> None:
        result = await CartBuilder(CartBuilderConfig(apply_to_cart=False)).run(tool_context)

        assert result.item_confidences["100"] > result.item_confidences["200"]
        assert 0 < result.confidence <= 1

    async def test_failed_order_is_skipped_with_notice(self, grocery_page, tool_context) -> None:
        grocery_page.failing_orders.add("B")

        result = await CartBuilder(CartBuilderConfig(apply_to_cart=False)).run(tool_context)

        assert result.orders_analyzed == ["A", "C"]
        assert any(n.startswith("Order B could not be loaded") for n in result.notices)

    async def test_all_orders_failing_is_fatal(self, grocery_page, tool_context) -> None:
        grocery_page.failing_orders |= {"A", "B", "C"}

        with pytest.raises(NetworkError):
            await CartBuilder().run(tool_context)

    async def test_no_history(self, fake_page, tool_context) -> None:
        result = await CartBuilder().run(tool_context)

        assert result.merged_items == []
        assert "No previous orders found" in result.notices

    async def test_max_orders_limits_history(self, grocery_page, tool_context) -> None:
        result = await CartBuilder(CartBuilderConfig(max_orders=1, apply_to_cart=False)).run(tool_context)

        assert len(result.orders_analyzed) == 1

    async def test_cancellation(self, grocery_page, tool_context) -> None:
        with pytest.raises(SessionCancelledError):
            await CartBuilder().run(tool_context, is_cancelled=lambda: True)
