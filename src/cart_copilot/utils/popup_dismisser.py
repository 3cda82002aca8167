"""
Popup suppression

A priority-ordered table of interstitial popups and an observer that dismisses
them as soon as they appear. Patterns flagged `skip_while_modal_visible` are
left alone while the reorder (merge/replace) modal is on screen, since that
flow needs its dialog to persist.
"""
import json
import logging
from typing import Iterable, List, Optional, Sequence, Set

from playwright.async_api import Page
from pydantic import BaseModel, Field

from cart_copilot.dom.selectors import SelectorResolver

logger = logging.getLogger(__name__)


class PopupPattern(BaseModel):
    name: str
    selector: str
    priority: int = Field(ge=0)
    text_match: Optional[str] = None
    exact_match: bool = False
    skip_while_modal_visible: bool = False
    description: str = ""

    def playwright_selector(self) -> str:
        if not self.text_match:
            return self.selector
        text = json.dumps(self.text_match, ensure_ascii=False)
        pseudo = f":text-is({text})" if self.exact_match else f":has-text({text})"
        return ", ".join(f"{part.strip()}{pseudo}" for part in self.selector.split(","))


DEFAULT_POPUP_PATTERNS: List[PopupPattern] = [
    PopupPattern(
        name="cart-removal-cancel",
        selector="button",
        text_match="Cancelar",
        priority=100,
        skip_while_modal_visible=True,
        description='Cart removal confirmation, click "Cancelar" to keep items',
    ),
    PopupPattern(
        name="notification-subscription-nao",
        selector='button, a, span[role="button"], div[role="button"]',
        text_match="Não",
        priority=95,
        skip_while_modal_visible=True,
        description='Notification subscription prompt, click "Não"',
    ),
    PopupPattern(
        name="subscription-nao-exact",
        selector='a, button, [role="button"]',
        text_match="Não",
        exact_match=True,
        priority=90,
        skip_while_modal_visible=True,
    ),
    PopupPattern(
        name="cookie-consent",
        selector="#onetrust-accept-btn-handler",
        priority=80,
        description="Cookie consent banner",
    ),
    PopupPattern(
        name="modal-close-aria",
        selector='[aria-label="Close"], [aria-label="Fechar"]',
        priority=70,
        skip_while_modal_visible=True,
    ),
]

# Buttons that must never be clicked by the auto-dismisser
DANGEROUS_TEXT = ["Remover todos", "Eliminar tudo", "Confirmar", "Finalizar compra", "Pagar", "Checkout"]
DANGEROUS_CLASSES = ["auc-cart__remove-all", "checkout"]
DANGEROUS_DATA_TARGETS = ["remove-all", "checkout"]


def sort_patterns(patterns: Iterable[PopupPattern]) -> List[PopupPattern]:
    return sorted(patterns, key=lambda p: p.priority, reverse=True)


def is_dangerous_text(text: str) -> bool:
    normalized = (text or "").strip()
    return any(pattern in normalized for pattern in DANGEROUS_TEXT)


def select_popup_to_dismiss(
    patterns: Sequence[PopupPattern],
    visible_names: Set[str],
    competing_modal_visible: bool,
) -> Optional[PopupPattern]:
    """
    Pick the pattern to click for one observation.

    Args:
        patterns: Pattern table (any order)
        visible_names: Names of patterns with a visible match right now
        competing_modal_visible: Whether the reorder modal marker is on screen

    Returns:
        The highest-priority eligible pattern, or None
    """
    for pattern in sort_patterns(patterns):
        if pattern.name not in visible_names:
            continue
        if pattern.skip_while_modal_visible and competing_modal_visible:
            continue
        if pattern.text_match and is_dangerous_text(pattern.text_match):
            continue
        return pattern
    return None


OBSERVER_SCRIPT = """
(config) => {
    const existing = window.__cartCopilotPopupObserver;
    if (existing) {
        return { attached: false, count: existing.count };
    }

    const isVisible = (el) => {
        if (!el) return false;
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        return rect.width > 0 && rect.height > 0 &&
            style.visibility !== 'hidden' && style.display !== 'none';
    };

    const modalVisible = () => config.modalSelectors.some((sel) => {
        try { return isVisible(document.querySelector(sel)); } catch (e) { return false; }
    });

    const textMatches = (el, p) => {
        if (!p.text_match) return true;
        const text = (el.textContent || '').trim();
        return p.exact_match ? text === p.text_match : text.includes(p.text_match);
    };

    const isDangerous = (el) => {
        const text = (el.textContent || '').trim();
        const cls = typeof el.className === 'string' ? el.className : '';
        const target = el.getAttribute('data-target') || '';
        return config.dangerousText.some((t) => text.includes(t)) ||
            config.dangerousClasses.some((c) => cls.includes(c)) ||
            config.dangerousTargets.some((d) => target.includes(d));
    };

    const state = { count: 0, observer: null };

    const sweep = () => {
        const competing = modalVisible();
        for (const p of config.patterns) {
            if (p.skip_while_modal_visible && competing) continue;
            let elements;
            try { elements = document.querySelectorAll(p.selector); } catch (e) { continue; }
            for (const el of elements) {
                if (isVisible(el) && textMatches(el, p) && !isDangerous(el)) {
                    el.click();
                    state.count += 1;
                    return p.name;
                }
            }
        }
        return null;
    };

    state.observer = new MutationObserver(() => { sweep(); });
    state.observer.observe(document.documentElement, { childList: true, subtree: true, attributes: true });
    state.disconnect = () => state.observer.disconnect();
    window.__cartCopilotPopupObserver = state;
    sweep();
    return { attached: true, count: state.count };
}
"""

DETACH_SCRIPT = """
() => {
    const state = window.__cartCopilotPopupObserver;
    if (!state) return 0;
    state.disconnect();
    delete window.__cartCopilotPopupObserver;
    return state.count;
}
"""

COLLECT_SCRIPT = """
() => {
    const state = window.__cartCopilotPopupObserver;
    if (!state) return 0;
    const count = state.count;
    state.count = 0;
    return count;
}
"""


class PopupObserver:
    """
    Owned popup-suppression resource for one page.

    attach() is a no-op when already attached. The observer is re-installed on
    every navigation through an init script while attached.
    """

    def __init__(
        self,
        page: Page,
        patterns: Optional[Sequence[PopupPattern]] = None,
        resolver: Optional[SelectorResolver] = None,
        modal_name: str = "modal.reorder",
    ):
        self.page = page
        self.patterns = sort_patterns(patterns or DEFAULT_POPUP_PATTERNS)
        self.resolver = resolver or SelectorResolver()
        self.modal_name = modal_name
        self.attached = False
        self.dismissal_count = 0
        self._init_script_installed = False

    def _config(self) -> dict:
        return {
            "patterns": [p.model_dump() for p in self.patterns],
            "modalSelectors": self.resolver.registry.candidates(self.modal_name),
            "dangerousText": DANGEROUS_TEXT,
            "dangerousClasses": DANGEROUS_CLASSES,
            "dangerousTargets": DANGEROUS_DATA_TARGETS,
        }

    async def attach(self) -> bool:
        if self.attached:
            return False
        config = self._config()
        if not self._init_script_installed:
            init_script = (
                "(() => { const start = () => (" + OBSERVER_SCRIPT + ")(" + json.dumps(config) + ");"
                " if (document.documentElement) { start(); }"
                " else { document.addEventListener('DOMContentLoaded', start); } })();"
            )
            await self.page.add_init_script(script=init_script)
            self._init_script_installed = True
        result = await self.page.evaluate(OBSERVER_SCRIPT, config)
        self.attached = True
        logger.info(f"POPUPS: Observer attached ({len(self.patterns)} patterns)")
        if result and result.get("count"):
            self.dismissal_count += result["count"]
        return True

    async def collect(self) -> int:
        """Fold the in-page counter into the cumulative total"""
        if not self.attached:
            return self.dismissal_count
        self.dismissal_count += int(await self.page.evaluate(COLLECT_SCRIPT) or 0)
        return self.dismissal_count

    async def detach(self) -> int:
        if not self.attached:
            return self.dismissal_count
        try:
            self.dismissal_count += int(await self.page.evaluate(DETACH_SCRIPT) or 0)
        finally:
            self.attached = False
        logger.info(f"POPUPS: Observer detached after {self.dismissal_count} dismissals")
        return self.dismissal_count

    async def visible_pattern_names(self) -> Set[str]:
        visible = set()
        for pattern in self.patterns:
            if await self.page.locator(pattern.playwright_selector()).first.is_visible():
                visible.add(pattern.name)
        return visible

    async def sweep(self) -> Optional[str]:
        """One synchronous pass from Python using the same selection rules"""
        visible = await self.visible_pattern_names()
        if not visible:
            return None
        modal_visible = await self.resolver.is_visible(self.page, self.modal_name)
        pattern = select_popup_to_dismiss(self.patterns, visible, modal_visible)
        if pattern is None:
            return None
        await self.page.locator(pattern.playwright_selector()).first.click()
        self.dismissal_count += 1
        logger.info(f"POPUPS: Dismissed '{pattern.name}'")
        return pattern.name
