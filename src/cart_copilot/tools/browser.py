"""
Browser lifecycle

launch_browser() starts Chromium with a throwaway persistent profile.
PageSession owns one page for one copilot session together with its selector
resolver and popup observer; entering it attaches the observer, leaving it
detaches and closes whatever the factory opened.
"""
import logging
import shutil
import tempfile
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import async_playwright

from cart_copilot.core.config import CopilotConfig
from cart_copilot.dom.selectors import SelectorResolver
from cart_copilot.tools.base_tool import ToolConfig, ToolContext
from cart_copilot.utils.popup_dismisser import PopupObserver

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-sandbox',
    '--disable-notifications',
    '--disable-infobars',
    '--disable-extensions',
    '--disable-default-apps',
    '--no-first-run',
    '--disable-features=TranslateUI',
]

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
    window.alert = () => {};
    window.open = () => null;
"""


class BrowserHandle:
    """Playwright driver, persistent context and the page in use"""

    def __init__(self, playwright, context, page, profile_path: str):
        self.playwright = playwright
        self.context = context
        self.page = page
        self.profile_path = profile_path

    async def close(self):
        try:
            await self.context.close()
        finally:
            await self.playwright.stop()
            shutil.rmtree(self.profile_path, ignore_errors=True)
            logger.info("BROWSER: Closed and removed temporary profile")


async def launch_browser(headless: Optional[bool] = None) -> BrowserHandle:
    if headless is None:
        headless = CopilotConfig.get_headless()

    playwright = await async_playwright().start()
    profile_path = tempfile.mkdtemp(prefix='cart_copilot_chrome_')
    logger.info(f"BROWSER: Launching Chromium (headless={headless}) with profile at {profile_path}")

    context = await playwright.chromium.launch_persistent_context(
        user_data_dir=profile_path,
        headless=headless,
        args=BROWSER_ARGS,
        viewport={'width': 1366, 'height': 900},
        locale='pt-PT',
        permissions=[],
        ignore_https_errors=True,
    )

    page = context.pages[0] if context.pages else await context.new_page()
    await page.add_init_script(STEALTH_SCRIPT)
    return BrowserHandle(playwright, context, page, profile_path)


# A page factory returns (page, closer). Tests pass one that hands out a fake page.
PageFactory = Callable[[], Awaitable[Any]]


async def default_page_factory():
    handle = await launch_browser()
    return handle.page, handle.close


class PageSession:
    """Owned page resource for exactly one copilot session"""

    def __init__(
        self,
        session_id: str,
        page_factory: Optional[PageFactory] = None,
        tool_config: Optional[ToolConfig] = None,
        resolver: Optional[SelectorResolver] = None,
    ):
        self.session_id = session_id
        self.page_factory = page_factory or default_page_factory
        self.tool_config = tool_config or ToolConfig()
        self.resolver = resolver or SelectorResolver()
        self.page = None
        self.popup_observer: Optional[PopupObserver] = None
        self._closer: Optional[Callable[[], Awaitable[None]]] = None
        self._context: Optional[ToolContext] = None

    async def open(self) -> ToolContext:
        self.page, self._closer = await self.page_factory()
        self.popup_observer = PopupObserver(self.page, resolver=self.resolver)
        await self.popup_observer.attach()
        self._context = ToolContext(
            page=self.page,
            config=self.tool_config,
            resolver=self.resolver,
            session_id=self.session_id,
            popup_observer=self.popup_observer,
        )
        logger.info(f"BROWSER: Page session {self.session_id} opened")
        return self._context

    def context(self) -> ToolContext:
        if self.page is None or self._context is None:
            raise RuntimeError("Page session is not open")
        return self._context

    async def close(self):
        if self.page is None:
            return
        try:
            if self.popup_observer is not None:
                await self.popup_observer.detach()
        finally:
            closer, self._closer = self._closer, None
            self.page = None
            self._context = None
            if closer is not None:
                await closer()
            logger.info(f"BROWSER: Page session {self.session_id} closed")

    @property
    def popups_dismissed(self) -> int:
        return self.popup_observer.dismissal_count if self.popup_observer else 0

    async def __aenter__(self) -> ToolContext:
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
