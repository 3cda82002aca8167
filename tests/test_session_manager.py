"""Tests for the Session Manager lifecycle."""

import asyncio
from datetime import date

import pytest

from cart_copilot.control_panel.progress import SessionPhase
from cart_copilot.control_panel.session_manager import (
    InvalidTransitionError,
    SessionManager,
    SessionStatus,
    StartSessionRequest,
    can_transition,
)
from cart_copilot.core.config import CoordinatorConfig, StockPrunerConfig
from cart_copilot.core.models import (
    ApprovalOutcome,
    ApprovalRequest,
    QuantityModification,
    RemovalDecision,
    SlotSelection,
)

from conftest import BASE_URL, line

START = StartSessionRequest(username="ana@example.pt", password="secret", household_id="home")


@pytest.fixture(autouse=True)
def site(monkeypatch):
    monkeypatch.setenv("COPILOT_BASE_URL", BASE_URL)


@pytest.fixture
def updates():
    return []


@pytest.fixture
def manager(page_factory, history_store, updates) -> SessionManager:
    config = CoordinatorConfig(max_retries=0, stock_pruner=StockPrunerConfig(reference_date=date(2026, 10, 19)))
    return SessionManager(config=config, store=history_store, page_factory=page_factory, listener=updates.append)


async def _ready(manager: SessionManager) -> str:
    session = await manager.start_session(START)
    await manager.wait_for_pipeline(session.session_id)
    return session.session_id


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (SessionStatus.INITIALIZING, SessionStatus.LOADING_ORDERS, True),
            (SessionStatus.BUILDING_CART, SessionStatus.SCOUTING_SLOTS, True),
            (SessionStatus.GENERATING_REVIEW, SessionStatus.AWAITING_REVIEW, True),
            (SessionStatus.AWAITING_REVIEW, SessionStatus.APPROVED, True),
            (SessionStatus.SCOUTING_SLOTS, SessionStatus.ERROR, True),
            (SessionStatus.BUILDING_CART, SessionStatus.LOADING_ORDERS, False),
            (SessionStatus.BUILDING_CART, SessionStatus.APPROVED, False),
            (SessionStatus.AWAITING_REVIEW, SessionStatus.INITIALIZING, False),
            (SessionStatus.APPROVED, SessionStatus.CANCELLED, False),
            (SessionStatus.CANCELLED, SessionStatus.ERROR, False),
        ],
    )
    def test_allowed(self, current, target, allowed) -> None:
        assert can_transition(current, target) is allowed

    def test_error_message(self) -> None:
        error = InvalidTransitionError(SessionStatus.APPROVED, SessionStatus.ERROR)

        assert str(error) == "Illegal session transition approved -> error"


class TestPipeline:
    async def test_start_returns_immediately(self, manager) -> None:
        session = await manager.start_session(START)

        assert session.status == SessionStatus.INITIALIZING
        assert session.review_pack is None
        await manager.wait_for_pipeline(session.session_id)

    async def test_reaches_awaiting_review(self, manager, updates, page_factory) -> None:
        session_id = await _ready(manager)
        session = manager.get_session_status(session_id)

        assert session.status == SessionStatus.AWAITING_REVIEW
        assert session.review_pack.session_id == session_id
        assert len(session.decisions) == 5
        assert session.cart_url == f"{BASE_URL}/pt/carrinho-compras"
        assert page_factory.closed == []

        statuses = []
        for update in updates:
            if not statuses or statuses[-1] != update.status:
                statuses.append(update.status)
        assert statuses == [
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

    async def test_request_is_kept_without_password(self, manager) -> None:
        session = await manager.start_session(START)
        await manager.wait_for_pipeline(session.session_id)

        assert session.request.username == "ana@example.pt"
        assert session.request.household_id == "home"
        assert "password" not in session.request.model_dump()
        assert manager.get_session_status(session.session_id).request == session.request

    async def test_end_time_is_set_once_finished(self, manager) -> None:
        session_id = await _ready(manager)
        waiting = manager.get_session_status(session_id)

        await manager.submit_approval(session_id, ApprovalRequest(approved=True))
        finished = manager.get_session_status(session_id)

        assert waiting.end_time is None
        assert finished.start_time == waiting.start_time
        assert finished.end_time == finished.updated_at
        assert finished.end_time >= finished.start_time

    async def test_decisions_stop_once_cancelled(self, manager, history_store, page_factory) -> None:
        reached, release = asyncio.Event(), asyncio.Event()

        async def slow_preferences(household_id):
            reached.set()
            await release.wait()
            return []

        history_store.get_preferences = slow_preferences
        session = await manager.start_session(START)
        await reached.wait()

        assert await manager.cancel_session(session.session_id) is True
        release.set()
        await manager.wait_for_pipeline(session.session_id)

        cancelled = manager.get_session_status(session.session_id)
        assert cancelled.status == SessionStatus.CANCELLED
        assert cancelled.decisions == []
        assert page_factory.closed == [True]

    async def test_snapshots_are_copies(self, manager) -> None:
        session_id = await _ready(manager)

        manager.get_session_status(session_id).decisions.clear()

        assert len(manager.get_session_status(session_id).decisions) == 5

    async def test_login_failure_is_error(self, manager, grocery_page, page_factory) -> None:
        grocery_page.accept_login = False

        session_id = await _ready(manager)
        session = manager.get_session_status(session_id)

        assert session.status == SessionStatus.ERROR
        assert "Login rejected" in session.error
        assert session.review_pack is None
        assert page_factory.closed == [True]

    async def test_sessions_are_independent(self, manager) -> None:
        first = await _ready(manager)
        second = await _ready(manager)

        await manager.cancel_session(first)

        assert manager.get_session_status(second).status == SessionStatus.AWAITING_REVIEW
        assert len(manager.list_sessions()) == 2


class TestApproval:
    async def test_approve_leaves_checkout_to_the_user(self, manager, page_factory) -> None:
        session_id = await _ready(manager)

        result = await manager.submit_approval(session_id, ApprovalRequest(approved=True))

        assert result.success is True
        assert result.outcome == ApprovalOutcome.APPROVED
        assert result.cart_url == f"{BASE_URL}/pt/carrinho-compras"
        assert "checkout yourself" in result.message
        assert manager.get_session_status(session_id).status == SessionStatus.APPROVED
        assert page_factory.closed == [True]

    async def test_approve_with_modifications(self, manager) -> None:
        session_id = await _ready(manager)

        result = await manager.submit_approval(
            session_id,
            ApprovalRequest(approved=True, modifications=[RemovalDecision(item_id="200", action="keep")]),
        )

        assert result.applied_modifications == ["Kept Pão de Forma"]
        assert manager.get_session_status(session_id).approval == result

    async def test_reject_cancels(self, manager, page_factory) -> None:
        session_id = await _ready(manager)

        result = await manager.submit_approval(session_id, ApprovalRequest(approved=False, reason="Not this week"))

        assert result.success is True
        assert result.outcome == ApprovalOutcome.CANCELLED
        assert result.message == "Not this week"
        session = manager.get_session_status(session_id)
        assert session.status == SessionStatus.CANCELLED
        assert session.progress.phase == SessionPhase.CANCELLED
        assert page_factory.closed == [True]

    async def test_only_while_awaiting_review(self, manager) -> None:
        session = await manager.start_session(START)
        before = manager.get_session_status(session.session_id)

        early = await manager.submit_approval(session.session_id, ApprovalRequest(approved=True))
        after = manager.get_session_status(session.session_id)
        assert (after.status, after.approval, after.updated_at) == (before.status, None, before.updated_at)
        await manager.wait_for_pipeline(session.session_id)
        await manager.submit_approval(session.session_id, ApprovalRequest(approved=True))
        twice = await manager.submit_approval(session.session_id, ApprovalRequest(approved=True))

        assert early.success is False
        assert twice.success is False
        assert "approved" in twice.message

    async def test_unknown_session(self, manager) -> None:
        result = await manager.submit_approval("missing", ApprovalRequest(approved=True))

        assert result.success is False
        assert result.message == "Session not found"


class TestCancellation:
    async def test_cancel_before_pipeline_runs(self, manager, page_factory, grocery_page) -> None:
        session = await manager.start_session(START)

        assert await manager.cancel_session(session.session_id) is True
        await manager.wait_for_pipeline(session.session_id)

        assert manager.get_session_status(session.session_id).status == SessionStatus.CANCELLED
        assert page_factory.closed == [True]
        assert not any("/pt/login" in url for url in grocery_page.visits)

    async def test_cancel_is_idempotent(self, manager) -> None:
        session_id = await _ready(manager)

        assert await manager.cancel_session(session_id) is True
        assert await manager.cancel_session(session_id) is False
        assert await manager.cancel_session("missing") is False

    async def test_cleanup_completed(self, manager) -> None:
        finished = await _ready(manager)
        waiting = await _ready(manager)
        await manager.cancel_session(finished)
        await asyncio.sleep(0.01)

        assert manager.cleanup_completed(max_age_seconds=0) == 1
        assert manager.get_session_status(finished) is None
        assert manager.get_session_status(waiting) is not None

    async def test_cleanup_forgets_evicted_ids(self, page_factory, history_store) -> None:
        forgotten = []
        manager = SessionManager(config=CoordinatorConfig(max_retries=0), store=history_store,
                                 page_factory=page_factory, on_forget=forgotten.append)
        recent = await _ready(manager)
        await manager.cancel_session(recent)

        assert manager.cleanup_completed(max_age_seconds=3600) == 0
        await asyncio.sleep(0.01)
        assert manager.cleanup_completed(max_age_seconds=0) == 1
        assert forgotten == [recent]

    async def test_cancel_while_applying_waits_for_the_approval(self, manager, grocery_page, page_factory) -> None:
        session_id = await _ready(manager)
        grocery_page.cart = [line("100", "Leite Meio Gordo 1L", 6, 0.89)]
        grocery_page.visible.add('input[data-testid="quantity"]')
        grocery_page.goto_delay = 0.05

        approval = asyncio.create_task(manager.submit_approval(session_id, ApprovalRequest(
            approved=True,
            modifications=[
                RemovalDecision(item_id="200", action="keep"),
                QuantityModification(item_id="100", new_quantity=9),
                SlotSelection(slot_id="s-free"),
            ],
        )))
        await asyncio.sleep(0.01)

        assert await manager.cancel_session(session_id) is True
        assert manager.get_session_status(session_id).status == SessionStatus.AWAITING_REVIEW
        assert page_factory.closed == []
        assert await manager.cancel_session(session_id) is False

        result = await approval

        assert result.success is False
        assert result.outcome == ApprovalOutcome.CANCELLED
        assert result.applied_modifications == ["Kept Pão de Forma", "Set Leite Meio Gordo 1L to 9"]
        assert result.failed_modifications == ["s-free: not applied, session cancelled"]
        session = manager.get_session_status(session_id)
        assert session.status == SessionStatus.CANCELLED
        assert session.approval == result
        assert page_factory.closed == [True]

    async def test_shutdown_cancels_running_sessions(self, manager, page_factory) -> None:
        session = await manager.start_session(START)

        await manager.shutdown()

        assert manager.get_session_status(session.session_id).status == SessionStatus.CANCELLED
        assert page_factory.closed == [True]

    async def test_listener_failure_does_not_break_session(self, page_factory, history_store) -> None:
        def broken(session):
            raise RuntimeError("socket gone")

        manager = SessionManager(config=CoordinatorConfig(max_retries=0), store=history_store,
                                 page_factory=page_factory, listener=broken)
        session_id = await _ready(manager)

        assert manager.get_session_status(session_id).status == SessionStatus.AWAITING_REVIEW
