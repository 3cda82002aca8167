"""
Session Manager

Owns the table of copilot sessions. Each session runs the Coordinator in its
own asyncio task against its own page, pauses in awaiting_review until the
human approves or rejects the Review Pack, and never checks out.

Lifecycle:
    initializing -> loading_orders -> building_cart -> [checking_availability
    -> finding_substitutes] -> [pruning_stock] -> [scouting_slots]
    -> generating_review -> awaiting_review -> approved | cancelled
    error is reachable from any non-terminal status.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from cart_copilot.agents.coordinator import Coordinator, SessionRequest, apply_modifications
from cart_copilot.control_panel.preferences import PreferenceDisplay
from cart_copilot.control_panel.progress import ProgressState, ProgressTracker, SessionPhase
from cart_copilot.control_panel.reasoning import DecisionReasoning
from cart_copilot.core.config import CoordinatorConfig
from cart_copilot.core.errors import RetryConfig, SessionCancelledError
from cart_copilot.core.models import ApprovalOutcome, ApprovalRequest, ApprovalResult, ReviewPack
from cart_copilot.db.history_store import HistoryStore
from cart_copilot.tools.base_tool import ToolConfig
from cart_copilot.tools.browser import PageFactory, PageSession

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    LOADING_ORDERS = "loading_orders"
    BUILDING_CART = "building_cart"
    CHECKING_AVAILABILITY = "checking_availability"
    FINDING_SUBSTITUTES = "finding_substitutes"
    PRUNING_STOCK = "pruning_stock"
    SCOUTING_SLOTS = "scouting_slots"
    GENERATING_REVIEW = "generating_review"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SessionStatus.APPROVED, SessionStatus.CANCELLED, SessionStatus.ERROR})

PIPELINE_STATUSES: List[SessionStatus] = [
    SessionStatus.INITIALIZING,
    SessionStatus.LOADING_ORDERS,
    SessionStatus.BUILDING_CART,
    SessionStatus.CHECKING_AVAILABILITY,
    SessionStatus.FINDING_SUBSTITUTES,
    SessionStatus.PRUNING_STOCK,
    SessionStatus.SCOUTING_SLOTS,
    SessionStatus.GENERATING_REVIEW,
    SessionStatus.AWAITING_REVIEW,
]


def _build_transitions() -> Dict[SessionStatus, Set[SessionStatus]]:
    # Optional phases may be skipped, so any later pipeline status is a legal next step
    table: Dict[SessionStatus, Set[SessionStatus]] = {}
    for index, status in enumerate(PIPELINE_STATUSES[:-1]):
        table[status] = set(PIPELINE_STATUSES[index + 1:]) | {SessionStatus.CANCELLED, SessionStatus.ERROR}
    table[SessionStatus.AWAITING_REVIEW] = {SessionStatus.APPROVED, SessionStatus.CANCELLED, SessionStatus.ERROR}
    for terminal in TERMINAL_STATUSES:
        table[terminal] = set()
    return table


ALLOWED_TRANSITIONS = _build_transitions()

PHASE_TO_STATUS: Dict[SessionPhase, SessionStatus] = {
    SessionPhase.INITIALIZING: SessionStatus.INITIALIZING,
    SessionPhase.AUTHENTICATING: SessionStatus.INITIALIZING,
    SessionPhase.LOADING_ORDERS: SessionStatus.LOADING_ORDERS,
    SessionPhase.BUILDING_CART: SessionStatus.BUILDING_CART,
    SessionPhase.CHECKING_AVAILABILITY: SessionStatus.CHECKING_AVAILABILITY,
    SessionPhase.FINDING_SUBSTITUTES: SessionStatus.FINDING_SUBSTITUTES,
    SessionPhase.PRUNING_STOCK: SessionStatus.PRUNING_STOCK,
    SessionPhase.SCOUTING_SLOTS: SessionStatus.SCOUTING_SLOTS,
    SessionPhase.GENERATING_REVIEW: SessionStatus.GENERATING_REVIEW,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class InvalidTransitionError(Exception):
    def __init__(self, current: SessionStatus, target: SessionStatus):
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class StartSessionRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    household_id: str = Field(default="default", min_length=1)
    config: Optional[CoordinatorConfig] = None


class SessionRequestInfo(BaseModel):
    """What the session was started with, minus the password"""
    username: str
    household_id: str
    config: Optional[CoordinatorConfig] = None

    @classmethod
    def from_request(cls, request: StartSessionRequest) -> "SessionRequestInfo":
        return cls(username=request.username, household_id=request.household_id, config=request.config)


class Session(BaseModel):
    session_id: str
    household_id: str
    request: Optional[SessionRequestInfo] = None
    status: SessionStatus = SessionStatus.INITIALIZING
    start_time: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    progress: ProgressState = Field(default_factory=ProgressState)
    review_pack: Optional[ReviewPack] = None
    decisions: List[DecisionReasoning] = Field(default_factory=list)
    preferences: PreferenceDisplay = Field(default_factory=PreferenceDisplay)
    approval: Optional[ApprovalResult] = None
    cart_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


SessionListener = Callable[[Session], None]


class SessionManager:
    """Starts, tracks and finishes copilot sessions"""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        store: Optional[HistoryStore] = None,
        page_factory: Optional[PageFactory] = None,
        listener: Optional[SessionListener] = None,
        on_forget: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or CoordinatorConfig.from_env()
        self.store = store
        self.page_factory = page_factory
        self.listener = listener
        self.on_forget = on_forget
        self._sessions: Dict[str, Session] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._pages: Dict[str, PageSession] = {}
        self._applying: Set[str] = set()
        self._cancel_pending: Set[str] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_session(self, request: StartSessionRequest) -> Session:
        """Register a new session and schedule its pipeline; returns immediately"""
        request = StartSessionRequest.model_validate(request)
        session_id = str(uuid.uuid4())
        session = Session(
            session_id=session_id,
            household_id=request.household_id,
            request=SessionRequestInfo.from_request(request),
        )
        self._sessions[session_id] = session
        logger.info(f"SESSION: {session_id} created for household {request.household_id}")
        self._notify(session)

        self._tasks[session_id] = asyncio.create_task(self._run_pipeline(session_id, request))
        return session.model_copy(deep=True)

    def get_session_status(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def list_sessions(self) -> List[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    async def submit_approval(self, session_id: str, approval: ApprovalRequest) -> ApprovalResult:
        session = self._sessions.get(session_id)
        if session is None:
            return ApprovalResult(success=False, session_id=session_id, message="Session not found")
        if session.status != SessionStatus.AWAITING_REVIEW or session_id in self._applying:
            return ApprovalResult(
                success=False,
                session_id=session_id,
                message=f"Session is {session.status.value}, not awaiting review",
            )

        if not approval.approved:
            session.progress.phase = SessionPhase.CANCELLED
            self._transition(session, SessionStatus.CANCELLED)
            result = ApprovalResult(
                success=True,
                session_id=session_id,
                outcome=ApprovalOutcome.CANCELLED,
                cart_url=session.cart_url,
                message=approval.reason or "Review rejected",
            )
            session.approval = result
            self._notify(session)
            await self._close_page(session_id)
            return result

        self._applying.add(session_id)
        page = self._pages.get(session_id)
        try:
            session.progress.phase = SessionPhase.APPLYING_CHANGES
            self._notify(session)
            if approval.modifications and page is None:
                raise RuntimeError("Browser page is no longer open")
            if approval.modifications:
                applied = await apply_modifications(
                    page.context(),
                    session.review_pack,
                    approval.modifications,
                    is_cancelled=lambda: session_id in self._cancel_pending,
                )
            else:
                applied = None
        except Exception as e:
            logger.error(f"SESSION: {session_id} failed applying changes: {e}")
            self._cancel_pending.discard(session_id)
            self._fail(session, str(e))
            await self._close_page(session_id)
            return ApprovalResult(success=False, session_id=session_id, message=f"Could not apply changes: {e}")
        finally:
            self._applying.discard(session_id)

        cart_url = applied.cart_url if applied else session.cart_url
        applied_list = applied.applied if applied else []
        failed_list = applied.failed if applied else []

        if session_id in self._cancel_pending:
            # Changes made before the cancel stay in the cart and are reported
            self._cancel_pending.discard(session_id)
            result = ApprovalResult(
                success=False,
                session_id=session_id,
                outcome=ApprovalOutcome.CANCELLED,
                cart_url=cart_url,
                applied_modifications=applied_list,
                failed_modifications=failed_list,
                message="Session was cancelled while applying changes",
            )
            session.cart_url = cart_url
            session.approval = result
            session.progress.phase = SessionPhase.CANCELLED
            self._transition(session, SessionStatus.CANCELLED)
            await self._close_page(session_id)
            return result

        result = ApprovalResult(
            success=True,
            session_id=session_id,
            outcome=ApprovalOutcome.APPROVED,
            cart_url=cart_url,
            applied_modifications=applied_list,
            failed_modifications=failed_list,
            message="Cart is ready. Complete checkout yourself at the cart URL.",
        )
        session.cart_url = cart_url
        session.approval = result
        session.progress.phase = SessionPhase.APPROVED
        self._transition(session, SessionStatus.APPROVED)
        await self._close_page(session_id)
        return result

    async def cancel_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal or session_id in self._cancel_pending:
            return False
        if session_id in self._applying:
            # The approval stops before its next change, then cancels and closes the page
            self._cancel_pending.add(session_id)
            logger.info(f"SESSION: {session_id} cancel requested while applying changes")
            return True
        session.progress.phase = SessionPhase.CANCELLED
        self._transition(session, SessionStatus.CANCELLED)
        task = self._tasks.get(session_id)
        if task is None or task.done():
            await self._close_page(session_id)
        return True

    def cleanup_completed(self, max_age_seconds: int = 3600) -> int:
        """Forget terminal sessions that ended more than max_age_seconds ago"""
        cutoff = datetime.now() - timedelta(seconds=max_age_seconds)
        stale = [
            sid for sid, s in self._sessions.items()
            if s.is_terminal and s.end_time is not None and s.end_time < cutoff
            and (sid not in self._tasks or self._tasks[sid].done())
        ]
        for sid in stale:
            self._sessions.pop(sid, None)
            self._tasks.pop(sid, None)
            if self.on_forget is not None:
                try:
                    self.on_forget(sid)
                except Exception as e:
                    logger.warning(f"SESSION: Forget hook failed for {sid}: {e}")
        if stale:
            logger.info(f"SESSION: Cleaned up {len(stale)} completed sessions")
        return len(stale)

    async def wait_for_pipeline(self, session_id: str):
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self):
        for session_id, session in list(self._sessions.items()):
            if not session.is_terminal:
                await self.cancel_session(session_id)
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for session_id in list(self._pages):
            # An approval still applying changes closes its own page
            if session_id not in self._applying:
                await self._close_page(session_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(self, session_id: str, request: StartSessionRequest):
        session = self._sessions[session_id]
        config = request.config or self.config
        tool_config = ToolConfig(
            capture_screenshots=config.capture_screenshots,
            retry=RetryConfig(max_retries=config.max_retries) if config.max_retries else None,
        )
        page_session = PageSession(session_id, self.page_factory, tool_config)
        self._pages[session_id] = page_session

        def on_progress(state: ProgressState):
            if not session.is_terminal:
                session.progress = state
                self._notify(session)

        def on_decision(decision: DecisionReasoning):
            if not session.is_terminal:
                session.decisions.append(decision)

        def on_phase(phase: SessionPhase):
            status = PHASE_TO_STATUS.get(phase)
            if status is None or session.is_terminal or status == session.status:
                return
            self._transition(session, status)

        coordinator = Coordinator(
            config=config,
            store=self.store,
            tracker=ProgressTracker(on_update=on_progress),
            on_phase=on_phase,
            on_decision=on_decision,
        )
        try:
            context = await page_session.open()
            result = await coordinator.run(
                context,
                SessionRequest(
                    session_id=session_id,
                    username=request.username,
                    password=request.password,
                    household_id=request.household_id,
                ),
                is_cancelled=lambda: session.status == SessionStatus.CANCELLED,
            )
        except SessionCancelledError as e:
            logger.info(f"SESSION: {session_id} stopped: {e}")
            await self._close_page(session_id)
            return
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(f"SESSION: {session_id} failed: {message}")
            if not session.is_terminal:
                self._fail(session, message)
            await self._close_page(session_id)
            return

        if session.is_terminal:
            await self._close_page(session_id)
            return

        session.review_pack = result.review_pack
        session.preferences = result.preferences
        session.cart_url = result.review_pack.cart_url
        self._transition(session, SessionStatus.AWAITING_REVIEW)
        logger.info(f"SESSION: {session_id} awaiting review")

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _transition(self, session: Session, target: SessionStatus):
        if not can_transition(session.status, target):
            raise InvalidTransitionError(session.status, target)
        logger.info(f"SESSION: {session.session_id} {session.status.value} -> {target.value}")
        session.status = target
        session.updated_at = datetime.now()
        if target in TERMINAL_STATUSES:
            session.end_time = session.updated_at
        self._notify(session)

    def _fail(self, session: Session, message: str):
        session.error = message
        session.progress.phase = SessionPhase.ERROR
        self._transition(session, SessionStatus.ERROR)

    async def _close_page(self, session_id: str):
        page = self._pages.pop(session_id, None)
        if page is None:
            return
        try:
            await page.close()
        except Exception as e:
            logger.warning(f"SESSION: Closing page for {session_id} failed: {e}")

    def _notify(self, session: Session):
        if self.listener is None:
            return
        try:
            self.listener(session.model_copy(deep=True))
        except Exception as e:
            logger.warning(f"SESSION: Listener failed for {session.session_id}: {e}")
