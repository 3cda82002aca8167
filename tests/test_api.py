"""Tests for the FastAPI session endpoints."""

import asyncio
import time
from datetime import date

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.main import app, cleanup_sessions_periodically, get_session_manager
from backend.services.progress_broadcaster import progress_broadcaster
from cart_copilot.control_panel.session_manager import SessionManager, StartSessionRequest
from cart_copilot.core.config import CoordinatorConfig, StockPrunerConfig

from conftest import BASE_URL

CREDENTIALS = {"username": "ana@example.pt", "password": "secret", "household_id": "home"}


@pytest.fixture
def manager(page_factory, history_store) -> SessionManager:
    config = CoordinatorConfig(max_retries=0, stock_pruner=StockPrunerConfig(reference_date=date(2026, 10, 19)))
    return SessionManager(
        config=config,
        store=history_store,
        page_factory=page_factory,
        listener=progress_broadcaster.publish,
        on_forget=progress_broadcaster.forget,
    )


@pytest.fixture
def client(manager, monkeypatch, tmp_path):
    monkeypatch.setenv("COPILOT_BASE_URL", BASE_URL)
    monkeypatch.setenv("COPILOT_HISTORY_DB", str(tmp_path / "history.db"))
    app.dependency_overrides[get_session_manager] = lambda: manager
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def wait_for_status(client: TestClient, session_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/sessions/{session_id}").json()
        if body["status"] == status or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def create_ready_session(client: TestClient) -> str:
    response = client.post("/api/sessions", json=CREDENTIALS)
    session_id = response.json()["session_id"]
    wait_for_status(client, session_id, "awaiting_review")
    return session_id


class TestSessions:
    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_create_returns_accepted(self, client) -> None:
        response = client.post("/api/sessions", json=CREDENTIALS)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "initializing"
        assert body["household_id"] == "home"
        assert "password" not in body
        assert body["request"] == {"username": "ana@example.pt", "household_id": "home", "config": None}
        assert body["start_time"]
        assert body["end_time"] is None

    def test_review_pack_is_served(self, client) -> None:
        response = client.post("/api/sessions", json=CREDENTIALS)
        body = wait_for_status(client, response.json()["session_id"], "awaiting_review")

        assert body["status"] == "awaiting_review"
        pack = body["review_pack"]
        assert [item["product_id"] for item in pack["added_items"]] == ["100", "200", "300"]
        assert pack["slot_options"][0]["slot_id"] == "s-free"
        assert pack["confidence"]["level"] in ("high", "medium", "low")
        assert len(body["decisions"]) == 5

    def test_overrides_reach_the_pipeline(self, client) -> None:
        response = client.post("/api/sessions", json={**CREDENTIALS, "enable_slot_scouting": False})
        body = wait_for_status(client, response.json()["session_id"], "awaiting_review")

        assert body["review_pack"]["slot_options"] == []
        assert body["review_pack"]["warnings"][0]["worker"] == "slot_scout"

    def test_list(self, client) -> None:
        session_id = create_ready_session(client)

        summaries = client.get("/api/sessions").json()

        assert [s["session_id"] for s in summaries] == [session_id]
        assert summaries[0]["status"] == "awaiting_review"

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "ana@example.pt"},
            {"username": "", "password": "secret"},
            {**CREDENTIALS, "max_orders": 50},
            {**CREDENTIALS, "merge_strategy": "average"},
        ],
    )
    def test_invalid_request(self, client, payload) -> None:
        assert client.post("/api/sessions", json=payload).status_code == 422

    def test_unknown_session(self, client) -> None:
        assert client.get("/api/sessions/missing").status_code == 404
        assert client.post("/api/sessions/missing/cancel").status_code == 404
        assert client.post("/api/sessions/missing/approval", json={"approved": True}).status_code == 404


class TestApproval:
    def test_approve_with_modifications(self, client) -> None:
        session_id = create_ready_session(client)

        response = client.post(
            f"/api/sessions/{session_id}/approval",
            json={"approved": True, "modifications": [{"type": "removal_decision", "item_id": "200", "action": "keep"}]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "approved"
        assert body["applied_modifications"] == ["Kept Pão de Forma"]
        assert body["cart_url"] == f"{BASE_URL}/pt/carrinho-compras"
        assert client.get(f"/api/sessions/{session_id}").json()["status"] == "approved"

    def test_second_approval_conflicts(self, client) -> None:
        session_id = create_ready_session(client)
        client.post(f"/api/sessions/{session_id}/approval", json={"approved": False})

        response = client.post(f"/api/sessions/{session_id}/approval", json={"approved": True})

        assert response.status_code == 409

    def test_unknown_modification_type(self, client) -> None:
        session_id = create_ready_session(client)

        response = client.post(
            f"/api/sessions/{session_id}/approval",
            json={"approved": True, "modifications": [{"type": "checkout", "item_id": "1"}]},
        )

        assert response.status_code == 422

    def test_cancel(self, client) -> None:
        session_id = create_ready_session(client)

        first = client.post(f"/api/sessions/{session_id}/cancel").json()
        second = client.post(f"/api/sessions/{session_id}/cancel").json()

        assert first == {"session_id": session_id, "cancelled": True}
        assert second["cancelled"] is False
        assert client.get(f"/api/sessions/{session_id}").json()["end_time"] is not None


class TestWebSocket:
    def test_snapshot_on_connect(self, client) -> None:
        session_id = create_ready_session(client)

        with client.websocket_connect(f"/ws/sessions/{session_id}") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "session"
        assert message["session"]["session_id"] == session_id
        assert message["session"]["status"] == "awaiting_review"

    def test_unknown_session_is_closed(self, client) -> None:
        with pytest.raises(WebSocketDisconnect) as info:
            with client.websocket_connect("/ws/sessions/missing") as websocket:
                websocket.receive_json()

        assert info.value.code == 4404


class TestCleanup:
    def test_startup_schedules_cleanup(self, client) -> None:
        assert not app.state.cleanup_task.done()

    async def test_finished_sessions_and_snapshots_are_forgotten(self, manager, monkeypatch) -> None:
        monkeypatch.setenv("COPILOT_BASE_URL", BASE_URL)
        session = await manager.start_session(StartSessionRequest(**CREDENTIALS))
        await manager.wait_for_pipeline(session.session_id)
        await manager.cancel_session(session.session_id)
        assert progress_broadcaster.snapshot(session.session_id) is not None

        cleanup = asyncio.create_task(cleanup_sessions_periodically(manager, 0.01, 0))
        await asyncio.sleep(0.05)
        cleanup.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cleanup

        assert manager.get_session_status(session.session_id) is None
        assert progress_broadcaster.snapshot(session.session_id) is None
