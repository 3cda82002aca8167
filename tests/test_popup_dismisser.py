"""Tests for popup suppression."""

import pytest

from cart_copilot.tools.browser import PageSession
from cart_copilot.tools.browser_tools import NavigateTool
from cart_copilot.utils.popup_dismisser import (
    DEFAULT_POPUP_PATTERNS,
    PopupObserver,
    PopupPattern,
    is_dangerous_text,
    select_popup_to_dismiss,
    sort_patterns,
)

REORDER_MODAL = '[data-testid="reorder-modal"]'


class TestSelection:
    def test_patterns_sorted_by_priority(self) -> None:
        priorities = [p.priority for p in sort_patterns(DEFAULT_POPUP_PATTERNS)]

        assert priorities == sorted(priorities, reverse=True)

    def test_highest_priority_visible_wins(self) -> None:
        chosen = select_popup_to_dismiss(
            DEFAULT_POPUP_PATTERNS, {"cookie-consent", "cart-removal-cancel"}, competing_modal_visible=False
        )

        assert chosen.name == "cart-removal-cancel"

    def test_modal_guard_skips_flagged_patterns(self) -> None:
        chosen = select_popup_to_dismiss(
            DEFAULT_POPUP_PATTERNS, {"cookie-consent", "cart-removal-cancel"}, competing_modal_visible=True
        )

        assert chosen.name == "cookie-consent"

    def test_nothing_eligible(self) -> None:
        assert select_popup_to_dismiss(DEFAULT_POPUP_PATTERNS, {"modal-close-aria"}, True) is None
        assert select_popup_to_dismiss(DEFAULT_POPUP_PATTERNS, set(), False) is None

    def test_dangerous_text_is_never_selected(self) -> None:
        risky = PopupPattern(name="pay", selector="button", text_match="Finalizar compra", priority=200)

        assert is_dangerous_text("  Finalizar compra ")
        assert select_popup_to_dismiss([risky], {"pay"}, False) is None

    @pytest.mark.parametrize(
        "pattern,expected",
        [
            (PopupPattern(name="a", selector="#x", priority=1), "#x"),
            (PopupPattern(name="b", selector="a, button", text_match="Não", priority=1),
             'a:has-text("Não"), button:has-text("Não")'),
            (PopupPattern(name="c", selector="button", text_match="Ok", exact_match=True, priority=1),
             'button:text-is("Ok")'),
        ],
    )
    def test_playwright_selector(self, pattern, expected) -> None:
        assert pattern.playwright_selector() == expected


class TestObserver:
    async def test_attach_is_idempotent(self, fake_page) -> None:
        observer = PopupObserver(fake_page)

        assert await observer.attach() is True
        assert await observer.attach() is False
        assert len(fake_page.init_scripts) == 1

    async def test_detach_then_reattach_keeps_single_init_script(self, fake_page) -> None:
        observer = PopupObserver(fake_page)
        await observer.attach()
        await observer.detach()

        assert observer.attached is False
        assert await observer.attach() is True
        assert len(fake_page.init_scripts) == 1

    async def test_sweep_clicks_highest_priority(self, fake_page) -> None:
        fake_page.visible |= {"#onetrust-accept-btn-handler", 'button:has-text("Cancelar")'}
        observer = PopupObserver(fake_page)

        assert await observer.sweep() == "cart-removal-cancel"
        assert fake_page.clicks == ['button:has-text("Cancelar")']
        assert observer.dismissal_count == 1

    async def test_sweep_respects_reorder_modal(self, fake_page) -> None:
        fake_page.visible |= {"#onetrust-accept-btn-handler", 'button:has-text("Cancelar")', REORDER_MODAL}
        observer = PopupObserver(fake_page)

        assert await observer.sweep() == "cookie-consent"

    async def test_sweep_with_nothing_visible(self, fake_page) -> None:
        assert await PopupObserver(fake_page).sweep() is None
        assert fake_page.clicks == []

    async def test_count_accumulates_across_navigations(self, fake_page, tool_context) -> None:
        observer = PopupObserver(fake_page)
        await observer.attach()
        tool_context.popup_observer = observer

        fake_page.page_dismissals = 2
        await NavigateTool().execute({"url": "/"}, tool_context)
        fake_page.page_dismissals = 1
        await NavigateTool().execute({"url": "/pt/carrinho-compras"}, tool_context)
        fake_page.page_dismissals = 3

        assert await observer.detach() == 6

    async def test_collect_folds_in_page_count(self, fake_page) -> None:
        observer = PopupObserver(fake_page)
        await observer.attach()
        fake_page.page_dismissals = 4

        assert await observer.collect() == 4
        assert await observer.collect() == 4
        assert observer.dismissal_count == 4

    async def test_collect_before_attach_reads_nothing(self, fake_page) -> None:
        fake_page.page_dismissals = 4

        assert await PopupObserver(fake_page).collect() == 0
        assert fake_page.evaluations == []

    async def test_page_session_total_includes_every_document(self, page_factory, grocery_page) -> None:
        page_session = PageSession("popups", page_factory)

        async with page_session as context:
            assert context.popup_observer is page_session.popup_observer
            grocery_page.page_dismissals = 2
            await NavigateTool().execute({"url": "/pt/historico-encomendas"}, context)
            grocery_page.page_dismissals = 1

        assert page_session.popups_dismissed == 3
        assert page_factory.closed == [True]
