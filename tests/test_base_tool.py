"""Tests for the Action Executor."""

from pathlib import Path

import pytest
from pydantic import BaseModel

from cart_copilot.core.errors import ErrorCode, RetryConfig, SelectorError
from cart_copilot.tools.base_tool import BaseTool, ToolContext, raise_for_result
from cart_copilot.tools.browser_tools import TOOLS, AddToCartTool, LoginTool, NavigateTool

from conftest import ADD_TO_CART, product_url


class CountInput(BaseModel):
    fail_times: int = 0
    error: str = "net::ERR_CONNECTION_RESET"


class CountingTool(BaseTool):
    """Fails the first fail_times calls with the given message"""
    name = "counting"
    input_model = CountInput

    def __init__(self):
        self.calls = 0

    async def run(self, params: CountInput, context: ToolContext):
        self.calls += 1
        if self.calls <= params.fail_times:
            raise Exception(params.error)
        return {"calls": self.calls}


class TestValidation:
    async def test_invalid_input_never_touches_page(self, tool_context, fake_page) -> None:
        result = await LoginTool().execute({"email": "not-an-email", "password": ""}, tool_context)

        assert result.success is False
        assert result.error.code == ErrorCode.VALIDATION
        assert result.error.recoverable is False
        assert fake_page.visits == []
        assert fake_page.screenshots == []

    async def test_missing_input_is_validation_error(self, tool_context) -> None:
        result = await NavigateTool().execute(None, tool_context)

        assert result.error.code == ErrorCode.VALIDATION


class TestExecution:
    async def test_success_returns_data(self, tool_context, fake_page) -> None:
        result = await NavigateTool().execute({"url": "/pt/carrinho-compras"}, tool_context)

        assert result.success is True
        assert result.data == {"url": "https://shop.test/pt/carrinho-compras"}
        assert result.duration_ms >= 0

    async def test_exception_is_categorized(self, tool_context) -> None:
        result = await CountingTool().execute({"fail_times": 1}, tool_context)

        assert result.success is False
        assert result.error.code == ErrorCode.NETWORK
        assert result.error.recoverable is True

    async def test_retry_recovers_network_errors(self, tool_context) -> None:
        tool_context.config.retry = RetryConfig(max_retries=2, base_delay_ms=1, max_delay_ms=2)
        tool = CountingTool()

        result = await tool.execute({"fail_times": 2}, tool_context)

        assert result.success is True
        assert result.data == {"calls": 3}

    async def test_retry_skips_non_recoverable(self, tool_context) -> None:
        tool_context.config.retry = RetryConfig(max_retries=3, base_delay_ms=1, max_delay_ms=2)
        tool = CountingTool()

        result = await tool.execute({"fail_times": 5, "error": "Login rejected: unauthorized"}, tool_context)

        assert result.error.code == ErrorCode.AUTH
        assert tool.calls == 1

    async def test_cart_changes_are_not_retried(self, tool_context, grocery_page) -> None:
        tool_context.config.retry = RetryConfig(max_retries=2, base_delay_ms=1, max_delay_ms=2)
        grocery_page.visible.add('input[data-testid="quantity"]')
        grocery_page.fill_errors.append(TimeoutError("Timeout 10000ms exceeded"))

        result = await AddToCartTool().execute(
            {"product_id": "100", "name": "Leite Meio Gordo 1L", "url": product_url("100"), "quantity": 6},
            tool_context,
        )

        assert result.success is False
        assert result.error.code == ErrorCode.TIMEOUT
        assert grocery_page.clicks.count(ADD_TO_CART) == 1

    def test_only_cart_tools_opt_out_of_retry(self) -> None:
        changing = {name for name, tool in TOOLS.items() if tool.changes_cart}

        assert changing == {"add_to_cart", "remove_from_cart", "update_quantity", "select_slot"}


class TestScreenshots:
    async def test_disabled_by_default(self, tool_context, fake_page) -> None:
        await NavigateTool().execute({"url": "/"}, tool_context)

        assert fake_page.screenshots == []

    async def test_captured_on_success_and_failure(self, tool_context, fake_page) -> None:
        tool_context.config.capture_screenshots = True

        ok = await NavigateTool().execute({"url": "/"}, tool_context)
        failed = await CountingTool().execute({"fail_times": 1}, tool_context)

        assert len(ok.screenshots) == 1 and ok.screenshots[0].endswith("navigate-done.png")
        assert len(failed.screenshots) == 1 and failed.screenshots[0].endswith("counting-error.png")
        assert Path(ok.screenshots[0]).parent.name == "test-session"
        assert tool_context.screenshots == ok.screenshots + failed.screenshots


class TestRegistry:
    def test_no_checkout_tool(self) -> None:
        assert not any("checkout" in name or "pay" in name for name in TOOLS)

    async def test_raise_for_result(self, tool_context) -> None:
        result = await CountingTool().execute({"fail_times": 1, "error": "element not found"}, tool_context)

        with pytest.raises(SelectorError):
            raise_for_result(result)
