"""
Coordinator

Drives one copilot session through its phases:
1. Log in
2. Cart Builder (fatal on failure)
3. Substitution Finder, Stock Pruner, Slot Scout (skip-and-warn on failure)
4. Merge everything into a single Review Pack

The Coordinator never checks out. apply_modifications() only edits the live
cart after the human approves.
"""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from cart_copilot.agents.cart_builder import CartBuilder, CartBuilderResult, quantity_consistency
from cart_copilot.agents.slot_scout import SlotScout, SlotScoutResult
from cart_copilot.agents.stock_pruner import StockPruner, StockPrunerResult, detect_category
from cart_copilot.agents.substitution import SubstitutionFinder, SubstitutionResult
from cart_copilot.control_panel.confidence import (
    WORKER_RESULT,
    ConfidenceDisplay,
    ConfidenceFactor,
    aggregate_confidences,
)
from cart_copilot.control_panel.preferences import (
    PreferenceDisplay,
    PreferenceRule,
    PreferenceRuleType,
    apply_rule,
    build_preference_display,
)
from cart_copilot.control_panel.progress import DEFAULT_WORKERS, ProgressTracker, SessionPhase
from cart_copilot.control_panel.reasoning import (
    DecisionLog,
    DecisionReasoning,
    DecisionSource,
    added_from_order,
    kept_reasoning,
    pruning_reasoning,
    quantity_change_reasoning,
    substitution_reasoning,
)
from cart_copilot.core.config import CoordinatorConfig
from cart_copilot.core.errors import (
    AuthError,
    InputValidationError,
    SessionCancelledError,
    error_from_tool_error,
    execute_with_timeout,
    raise_if_cancelled,
)
from cart_copilot.core.models import (
    MergedCartItem,
    QuantityModification,
    RemovalDecision,
    ReviewPack,
    ReviewWarning,
    SlotSelection,
    SubstituteDecision,
    UserModification,
)
from cart_copilot.db.history_store import HistoryStore
from cart_copilot.tools.base_tool import ToolContext
from cart_copilot.tools.browser_tools import (
    SITE_PATHS,
    AddToCartTool,
    LoginTool,
    RemoveFromCartTool,
    SelectSlotTool,
    UpdateQuantityTool,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PhaseCallback = Callable[[SessionPhase], None]
DecisionCallback = Callable[[DecisionReasoning], None]

WORKER_DISPLAY_NAMES = dict(DEFAULT_WORKERS)


class SessionRequest(BaseModel):
    """Inputs the Coordinator needs for one run"""
    session_id: str
    username: str
    password: str
    household_id: str = "default"


class CoordinatorResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    review_pack: ReviewPack
    decisions: List[DecisionReasoning] = Field(default_factory=list)
    preferences: PreferenceDisplay = Field(default_factory=PreferenceDisplay)
    cart: Optional[CartBuilderResult] = None
    substitution: Optional[SubstitutionResult] = None
    stock: Optional[StockPrunerResult] = None
    slots: Optional[SlotScoutResult] = None


class ApplyResult(BaseModel):
    applied: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    cart_url: Optional[str] = None


class Coordinator:
    """Runs the workers for one session and merges their output into a Review Pack"""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        store: Optional[HistoryStore] = None,
        tracker: Optional[ProgressTracker] = None,
        on_phase: Optional[PhaseCallback] = None,
        on_decision: Optional[DecisionCallback] = None,
        on_worker: Optional[Callable[[str, Any], None]] = None,
        substitution_finder: Optional[SubstitutionFinder] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.store = store
        self.tracker = tracker or ProgressTracker()
        self.on_phase = on_phase
        self.on_decision = on_decision
        self.on_worker = on_worker
        self.substitution_finder = substitution_finder
        self.decision_log = DecisionLog()
        self.warnings: List[ReviewWarning] = []
        self.worker_confidences: Dict[str, float] = {}
        self._deadline = 0.0

    # ------------------------------------------------------------------
    # Phase plumbing
    # ------------------------------------------------------------------

    def _phase(self, phase: SessionPhase, action: Optional[str] = None):
        logger.info(f"ORCHESTRATOR: Phase -> {phase.value}")
        self.tracker.set_phase(phase, action)
        if self.on_phase:
            self.on_phase(phase)

    def _worker_event(self, name: str):
        if self.on_worker:
            self.on_worker(name, self.tracker.worker_status(name))

    def _worker_progress(self, name: str) -> Callable[[float, str], None]:
        def update(percent: float, action: str):
            self.tracker.set_worker_progress(name, percent, action)
        return update

    async def _within_deadline(self, awaitable: Awaitable[T], operation: str) -> T:
        remaining_ms = int((self._deadline - time.monotonic()) * 1000)
        return await execute_with_timeout(awaitable, max(1, remaining_ms), operation)

    def _skip(self, name: str, message: str):
        self.tracker.skip_worker(name)
        self.warnings.append(ReviewWarning(worker=name, status="skipped", message=message))
        self._worker_event(name)
        logger.info(f"ORCHESTRATOR: {name} skipped: {message}")

    def _succeed(self, name: str, confidence: float):
        self.tracker.complete_worker(name)
        self.worker_confidences[name] = round(confidence, 4)
        self._worker_event(name)

    async def _optional_worker(self, name: str, work: Awaitable[T]) -> Optional[T]:
        """Run a non-essential worker; any failure becomes one warning"""
        self.tracker.start_worker(name)
        self._worker_event(name)
        try:
            result = await work
        except SessionCancelledError:
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(f"ORCHESTRATOR: {name} failed, continuing without it: {message}")
            self.tracker.fail_worker(name, message)
            self.warnings.append(ReviewWarning(worker=name, status="failed", message=message))
            self._worker_event(name)
            return None
        self._succeed(name, result.confidence)
        return result

    def _emit(self, decision: DecisionReasoning):
        self.decision_log.append(decision)
        if self.on_decision:
            self.on_decision(decision)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        context: ToolContext,
        request: SessionRequest,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> CoordinatorResult:
        """
        Produce exactly one Review Pack for the session.

        Raises:
            AuthError: login failed
            CopilotError: the Cart Builder failed
            ActionTimeoutError: the session deadline passed
            SessionCancelledError: cancellation was observed between steps
        """
        self._deadline = time.monotonic() + self.config.session_timeout_ms / 1000
        self._phase(SessionPhase.INITIALIZING)
        logger.info(f"ORCHESTRATOR: Session {request.session_id} started for household {request.household_id}")

        raise_if_cancelled(is_cancelled, "login")
        self._phase(SessionPhase.AUTHENTICATING)
        await self._within_deadline(self._login(context, request), "login")

        raise_if_cancelled(is_cancelled, "cart building")
        cart = await self._within_deadline(self._build_cart(context, is_cancelled), "cart building")
        items = cart.merged_items

        substitution = None
        if not self.config.enable_substitution:
            self._skip("substitution", "Substitute search is disabled")
        else:
            raise_if_cancelled(is_cancelled, "availability check")
            self._phase(SessionPhase.CHECKING_AVAILABILITY)
            substitution = await self._within_deadline(
                self._optional_worker("substitution", self._find_substitutes(context, items, is_cancelled)),
                "substitution",
            )

        stock = None
        if not self.config.enable_stock_pruning:
            self._skip("stock_pruner", "Stock pruning is disabled")
        elif self.store is None:
            self._skip("stock_pruner", "No purchase history available")
        else:
            raise_if_cancelled(is_cancelled, "stock pruning")
            self._phase(SessionPhase.PRUNING_STOCK)
            pruner = StockPruner(self.store, self.config.stock_pruner)
            stock = await self._within_deadline(
                self._optional_worker(
                    "stock_pruner",
                    pruner.run(request.household_id, items, is_cancelled, self._worker_progress("stock_pruner")),
                ),
                "stock pruning",
            )

        slots = None
        if not self.config.enable_slot_scouting:
            self._skip("slot_scout", "Delivery slot scouting is disabled")
        else:
            raise_if_cancelled(is_cancelled, "slot scouting")
            self._phase(SessionPhase.SCOUTING_SLOTS)
            scout = SlotScout(self.config.slot_scout)
            slots = await self._within_deadline(
                self._optional_worker("slot_scout", scout.run(context, is_cancelled)),
                "slot scouting",
            )

        raise_if_cancelled(is_cancelled, "review generation")
        self._phase(SessionPhase.GENERATING_REVIEW)
        preferences = await self._load_preferences(request.household_id, items)
        pack = self._build_review_pack(request.session_id, context, cart, substitution, stock, slots, preferences)
        self._emit_decisions(cart, substitution, stock)

        self._phase(SessionPhase.REVIEW_READY)
        logger.info(
            f"ORCHESTRATOR: Review pack ready: {len(pack.added_items)} added, "
            f"{len(pack.suggested_removals)} removals, {len(pack.unavailable_items)} unavailable, "
            f"{len(pack.warnings)} warnings, confidence {pack.confidence.score:.2f}"
        )
        return CoordinatorResult(
            review_pack=pack,
            decisions=list(self.decision_log.entries()),
            preferences=preferences,
            cart=cart,
            substitution=substitution,
            stock=stock,
            slots=slots,
        )

    async def _login(self, context: ToolContext, request: SessionRequest):
        result = await LoginTool().execute({"email": request.username, "password": request.password}, context)
        if not result.success:
            error = error_from_tool_error(result.error)
            if isinstance(error, InputValidationError):
                raise AuthError(f"Login rejected: {error.message}")
            raise error
        logger.info("ORCHESTRATOR: Logged in")
        return result.data

    async def _build_cart(self, context: ToolContext, is_cancelled) -> CartBuilderResult:
        self._phase(SessionPhase.LOADING_ORDERS)
        self.tracker.start_worker("cart_builder", "Loading order history")
        self._worker_event("cart_builder")
        report = self._worker_progress("cart_builder")

        def on_progress(percent: float, action: str):
            if percent >= 65 and self.tracker.state.phase != SessionPhase.BUILDING_CART:
                self._phase(SessionPhase.BUILDING_CART)
            report(percent, action)

        builder = CartBuilder(self.config.cart_builder_config())
        try:
            cart = await builder.run(context, is_cancelled, on_progress)
        except SessionCancelledError:
            raise
        except Exception as e:
            self.tracker.fail_worker("cart_builder", getattr(e, "message", None) or str(e))
            self._worker_event("cart_builder")
            logger.error(f"ORCHESTRATOR: Cart Builder failed: {e}")
            raise
        if self.tracker.state.phase != SessionPhase.BUILDING_CART:
            self._phase(SessionPhase.BUILDING_CART)
        self._succeed("cart_builder", cart.confidence)
        return cart

    async def _find_substitutes(self, context: ToolContext, items: List[MergedCartItem], is_cancelled):
        finder = self.substitution_finder or SubstitutionFinder(self.config.substitution)
        report = self._worker_progress("substitution")

        def on_progress(percent: float, action: str):
            if self.tracker.state.phase != SessionPhase.FINDING_SUBSTITUTES:
                self._phase(SessionPhase.FINDING_SUBSTITUTES)
            report(percent, action)

        return await finder.run(context, items, is_cancelled, on_progress)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def _load_preferences(self, household_id: str, items: List[MergedCartItem]) -> PreferenceDisplay:
        if self.store is None:
            return PreferenceDisplay()
        rules = [r for r in await self.store.get_preferences(household_id) if r.active]
        applications = []
        for rule in rules:
            for item in items:
                application = _match_rule(rule, item)
                if application is not None:
                    applications.append(application)
        return build_preference_display(rules, applications)

    # ------------------------------------------------------------------
    # Review Pack
    # ------------------------------------------------------------------

    def _build_review_pack(
        self,
        session_id: str,
        context: ToolContext,
        cart: CartBuilderResult,
        substitution: Optional[SubstitutionResult],
        stock: Optional[StockPrunerResult],
        slots: Optional[SlotScoutResult],
        preferences: PreferenceDisplay,
    ) -> ReviewPack:
        removals = stock.suggested_removals if stock else []
        removed_keys = {r.item_id for r in removals}

        proposed: Dict[str, float] = {item.key: item.line_total for item in cart.merged_items}
        for cart_item in cart.cart_before.items:
            proposed.setdefault(cart_item.key, cart_item.unit_price * cart_item.quantity)
        subtotal = round(sum(total for key, total in proposed.items() if key not in removed_keys), 2)

        options = slots.options if slots else []
        delivery = options[0].delivery_cost if options else 0.0

        displays, weights = [], []
        for name, score in self.worker_confidences.items():
            displays.append(ConfidenceDisplay.from_score(score, [
                ConfidenceFactor(
                    name=f"{WORKER_DISPLAY_NAMES.get(name, name)} {WORKER_RESULT.lower()}",
                    contribution=score - 0.5,
                    description=f"{WORKER_DISPLAY_NAMES.get(name, name)} finished",
                ),
            ]))
            weights.append(self.config.worker_weights.get(name, 1.0))

        notices = list(cart.notices)
        if substitution:
            notices.extend(substitution.notices)
        if stock and stock.items_without_history:
            notices.append(f"{len(stock.items_without_history)} items have no purchase history and were kept")
        for application in preferences.applied_preferences:
            notices.append(f"{application.item_name}: {application.influence}")

        cart_after = cart.cart_after or cart.cart_before
        return ReviewPack(
            session_id=session_id,
            added_items=cart.added_items,
            suggested_removals=removals,
            quantity_changes=cart.quantity_changes,
            unavailable_items=substitution.unavailable_items if substitution else [],
            slot_options=options,
            subtotal=subtotal,
            estimated_delivery_cost=delivery,
            estimated_total=round(subtotal + delivery, 2),
            confidence=aggregate_confidences(displays, weights),
            worker_confidences=dict(self.worker_confidences),
            warnings=list(self.warnings),
            notices=notices,
            orders_analyzed=cart.orders_analyzed,
            screenshots=list(context.screenshots),
            cart_url=cart_after.url or context.url(SITE_PATHS["cart"]),
        )

    def _emit_decisions(
        self,
        cart: CartBuilderResult,
        substitution: Optional[SubstitutionResult],
        stock: Optional[StockPrunerResult],
    ):
        order_count = len(cart.orders_analyzed)
        for item in cart.added_items:
            self._emit(added_from_order(
                item.key,
                item.name,
                item.source_orders,
                order_count,
                item.quantity,
                quantity_consistency(item.quantities),
            ))
        for change in cart.quantity_changes:
            self._emit(quantity_change_reasoning(
                change.item_id, change.name, change.previous_quantity, change.new_quantity, change.reason
            ))
        if substitution:
            for entry in substitution.unavailable_items:
                if not entry.substitutes:
                    self._emit(kept_reasoning(
                        entry.item_id,
                        entry.name,
                        "Unavailable and no suitable substitute was found",
                        source=DecisionSource.SUBSTITUTION,
                        base_score=0.3,
                    ))
                    continue
                top = entry.substitutes[0]
                self._emit(substitution_reasoning(
                    entry.item_id,
                    entry.name,
                    top.candidate.name,
                    top.score.overall,
                    top.price_delta,
                    top.score.brand_similarity >= 0.9,
                    top.reason,
                ))
        if stock:
            for removal in stock.suggested_removals:
                self._emit(pruning_reasoning(
                    removal.item_id,
                    removal.name,
                    removal.reason,
                    removal.days_since_last_purchase,
                    removal.cadence_days,
                    removal.estimated_days_until_needed,
                    removal.purchase_count,
                ))


def _match_rule(rule: PreferenceRule, item: MergedCartItem):
    target = (rule.target or "").lower()
    name = item.name.lower()
    category = (item.category or detect_category(item.name).value).lower()

    if rule.type == PreferenceRuleType.BRAND_PREFERENCE:
        if item.brand and item.brand.lower() == target:
            return apply_rule(rule, item.key, item.name, "Preferred brand", 0.6)
    elif rule.type == PreferenceRuleType.CATEGORY_EXCLUSION:
        if target and target in category:
            return apply_rule(rule, item.key, item.name, f"In excluded category {rule.target}, please review", 0.8)
    elif rule.type == PreferenceRuleType.PRICE_LIMIT:
        if rule.value is not None and item.unit_price > rule.value and (not target or target in category):
            return apply_rule(rule, item.key, item.name, f"Above your price limit of {rule.value:.2f}", 0.5)
    elif rule.type == PreferenceRuleType.QUANTITY_DEFAULT:
        if target and target in name and rule.value is not None and int(rule.value) != item.quantity:
            return apply_rule(rule, item.key, item.name, f"You usually buy {int(rule.value)}", 0.4)
    return None


# ----------------------------------------------------------------------
# Applying an approved review
# ----------------------------------------------------------------------

def _find_item(pack: ReviewPack, modification):
    """Look in the section the decision was made on before the others"""
    if isinstance(modification, SubstituteDecision):
        preferred = [pack.unavailable_items]
    elif isinstance(modification, RemovalDecision):
        preferred = [pack.suggested_removals]
    else:
        preferred = [pack.quantity_changes]
    groups = preferred + [pack.added_items, pack.suggested_removals, pack.unavailable_items, pack.quantity_changes]

    for group in groups:
        for item in group:
            if getattr(item, "item_id", None) == modification.item_id or getattr(item, "key", None) == modification.item_id:
                return item
    return None


async def _remove(context: ToolContext, item) -> Optional[str]:
    outcome = await RemoveFromCartTool().execute({"product_id": item.product_id, "name": item.name}, context)
    if not outcome.success:
        return outcome.error.message
    if not outcome.data.get("removed"):
        return outcome.data.get("reason") or "not in cart"
    return None


async def apply_modifications(
    context: ToolContext,
    pack: ReviewPack,
    modifications: List[UserModification],
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> ApplyResult:
    """
    Apply the human's decisions to the live cart. Never checks out.

    Once is_cancelled() turns true no further change is started; the rest are
    reported as failed.
    """
    result = ApplyResult()

    for position, modification in enumerate(modifications):
        if is_cancelled is not None and is_cancelled():
            for skipped in modifications[position:]:
                label = getattr(skipped, "item_id", None) or getattr(skipped, "slot_id", "")
                result.failed.append(f"{label}: not applied, session cancelled")
            logger.info(f"ORCHESTRATOR: Cancelled with {len(modifications) - position} modifications left")
            break

        if isinstance(modification, SlotSelection):
            if not any(o.slot_id == modification.slot_id for o in pack.slot_options):
                result.failed.append(f"Slot {modification.slot_id}: not one of the offered options")
                continue
            outcome = await SelectSlotTool().execute({"slot_id": modification.slot_id}, context)
            if outcome.success:
                result.applied.append(f"Selected delivery slot {modification.slot_id}")
            else:
                result.failed.append(f"Slot {modification.slot_id}: {outcome.error.message}")
            continue

        item = _find_item(pack, modification)
        if item is None:
            result.failed.append(f"{modification.item_id}: not part of this review")
            continue

        if isinstance(modification, RemovalDecision):
            if modification.action == "keep":
                result.applied.append(f"Kept {item.name}")
                continue
            error = await _remove(context, item)
            if error:
                result.failed.append(f"Remove {item.name}: {error}")
            else:
                result.applied.append(f"Removed {item.name}")

        elif isinstance(modification, SubstituteDecision):
            if modification.action == "skip":
                result.applied.append(f"Left {item.name} unchanged")
                continue
            if modification.action == "remove":
                error = await _remove(context, item)
                if error:
                    result.failed.append(f"Remove {item.name}: {error}")
                else:
                    result.applied.append(f"Removed {item.name}")
                continue

            substitutes = getattr(item, "substitutes", [])
            if modification.substitute_index >= len(substitutes):
                result.failed.append(f"{item.name}: no substitute at position {modification.substitute_index}")
                continue
            candidate = substitutes[modification.substitute_index].candidate
            outcome = await AddToCartTool().execute(
                {
                    "product_id": candidate.product_id,
                    "name": candidate.name,
                    "url": candidate.url,
                    "quantity": getattr(item, "quantity", 1),
                },
                context,
            )
            if not outcome.success or not outcome.data.get("added"):
                reason = outcome.error.message if outcome.error else outcome.data.get("reason")
                result.failed.append(f"Substitute {candidate.name}: {reason}")
                continue
            error = await _remove(context, item)
            if error:
                result.applied.append(f"Added {candidate.name}; {item.name} was not in the cart ({error})")
            else:
                result.applied.append(f"Replaced {item.name} with {candidate.name}")

        elif isinstance(modification, QuantityModification):
            if modification.new_quantity == 0:
                error = await _remove(context, item)
                if error:
                    result.failed.append(f"Remove {item.name}: {error}")
                else:
                    result.applied.append(f"Removed {item.name}")
                continue
            outcome = await UpdateQuantityTool().execute(
                {"product_id": item.product_id, "name": item.name, "quantity": modification.new_quantity},
                context,
            )
            if outcome.success and outcome.data.get("updated"):
                result.applied.append(f"Set {item.name} to {modification.new_quantity}")
            else:
                reason = outcome.error.message if outcome.error else outcome.data.get("reason")
                result.failed.append(f"Quantity of {item.name}: {reason}")

    result.cart_url = pack.cart_url or context.url(SITE_PATHS["cart"])
    logger.info(f"ORCHESTRATOR: Applied {len(result.applied)} modifications, {len(result.failed)} failed")
    return result
