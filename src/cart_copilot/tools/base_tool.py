"""
Action Executor

Every browser action is a BaseTool with a pydantic input model. execute()
validates, runs (optionally under retry), categorizes failures and captures
screenshots. Nothing raised inside a tool escapes execute().

Tools that change the cart are never retried: a failure after the click
leaves the cart in an unknown state, so the result goes back to the caller.
"""
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from playwright.async_api import Page
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cart_copilot.core.config import CopilotConfig
from cart_copilot.core.errors import (
    ErrorCode,
    RetryConfig,
    ToolError,
    categorize_error,
    error_from_tool_error,
    with_retry,
)
from cart_copilot.dom.selectors import SelectorResolver

logger = logging.getLogger(__name__)


class ToolConfig(BaseModel):
    navigation_timeout_ms: int = 30000
    element_timeout_ms: int = 10000
    screenshot_dir: str = Field(default_factory=CopilotConfig.get_screenshot_dir)
    capture_screenshots: bool = False
    retry: Optional[RetryConfig] = None


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[ToolError] = None
    duration_ms: int = 0
    screenshots: List[str] = Field(default_factory=list)


class ToolContext(BaseModel):
    """Everything a tool needs to act on one session's page"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    page: Any
    config: ToolConfig = Field(default_factory=ToolConfig)
    resolver: SelectorResolver = Field(default_factory=SelectorResolver)
    base_url: str = Field(default_factory=CopilotConfig.get_base_url)
    session_id: str = "local"
    screenshots: List[str] = Field(default_factory=list)
    popup_observer: Any = None

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def screenshot(self, name: str) -> str:
        directory = Path(self.config.screenshot_dir) / self.session_id
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{int(time.time() * 1000)}-{name}.png"
        await self.page.screenshot(path=str(path))
        return str(path)


class BaseTool(ABC):
    """A single named browser action"""

    name: str = "tool"
    description: str = ""
    input_model: Type[BaseModel]
    changes_cart: bool = False

    @abstractmethod
    async def run(self, params: BaseModel, context: ToolContext) -> Any:
        """Perform the action. Raise on failure; return JSON-able data on success."""

    async def execute(self, raw_input: Optional[Dict[str, Any]], context: ToolContext) -> ToolResult:
        started = time.monotonic()

        try:
            params = self.input_model.model_validate(raw_input or {})
        except ValidationError as e:
            logger.warning(f"TOOL: {self.name} rejected input: {e.error_count()} validation error(s)")
            return ToolResult(
                success=False,
                error=ToolError(code=ErrorCode.VALIDATION, message=str(e), recoverable=False),
                duration_ms=self._elapsed(started),
            )

        screenshots: List[str] = []
        try:
            if context.config.retry is not None and not self.changes_cart:
                data = await with_retry(lambda: self.run(params, context), context.config.retry)
            else:
                data = await self.run(params, context)
        except Exception as e:
            error = categorize_error(e)
            logger.error(f"TOOL: {self.name} failed [{error.code.value}]: {error.message}")
            await self._capture(context, f"{self.name}-error", screenshots)
            return ToolResult(
                success=False,
                error=error,
                duration_ms=self._elapsed(started),
                screenshots=screenshots,
            )

        await self._capture(context, f"{self.name}-done", screenshots)
        return ToolResult(success=True, data=data, duration_ms=self._elapsed(started), screenshots=screenshots)

    async def _capture(self, context: ToolContext, name: str, screenshots: List[str]):
        if not context.config.capture_screenshots:
            return
        try:
            path = await context.screenshot(name)
            screenshots.append(path)
            context.screenshots.append(path)
        except Exception as e:
            logger.warning(f"TOOL: Screenshot '{name}' failed: {e}")

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def raise_for_result(result: ToolResult) -> Any:
    """Return the data of a successful result or raise the matching CopilotError"""
    if result.success:
        return result.data
    raise error_from_tool_error(result.error)
