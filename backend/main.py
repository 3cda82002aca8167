"""
FastAPI Backend for Cart Copilot
REST endpoints to start, inspect, approve and cancel sessions, plus a
WebSocket stream of session progress
"""
import asyncio
import contextlib
import logging
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend.models.session import CancelResponse, CreateSessionRequest, SessionResponse, SessionSummary
from backend.services.progress_broadcaster import progress_broadcaster
from cart_copilot.control_panel.session_manager import SessionManager
from cart_copilot.core.config import CoordinatorConfig, CopilotConfig
from cart_copilot.core.models import ApprovalRequest, ApprovalResult
from cart_copilot.db.history_store import SQLiteHistoryStore
from cart_copilot.utils.logger_config import setup_logger

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Cart Copilot API", version="1.0.0")

# CORS middleware for the review UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    global session_manager
    if session_manager is None:
        session_manager = SessionManager(
            config=CoordinatorConfig.from_env(),
            listener=progress_broadcaster.publish,
            on_forget=progress_broadcaster.forget,
        )
    return session_manager


# Routes
@app.get("/health")
async def health(manager: SessionManager = Depends(get_session_manager)):
    return {"status": "ok", "sessions": len(manager.list_sessions())}


# ============================================
# SESSION ENDPOINTS
# ============================================

@app.post("/api/sessions", response_model=SessionResponse, status_code=202)
async def create_session(body: CreateSessionRequest, manager: SessionManager = Depends(get_session_manager)):
    """Start a session; progress continues in the background"""
    session = await manager.start_session(body.to_start_request(manager.config))
    return SessionResponse.from_session(session)


@app.get("/api/sessions", response_model=List[SessionSummary])
async def list_sessions(manager: SessionManager = Depends(get_session_manager)):
    return [SessionSummary.from_session(s) for s in manager.list_sessions()]


@app.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    session = manager.get_session_status(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionResponse.from_session(session)


@app.post("/api/sessions/{session_id}/approval", response_model=ApprovalResult)
async def submit_approval(
    session_id: str,
    approval: ApprovalRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Approve (optionally with modifications) or reject the Review Pack"""
    if manager.get_session_status(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    result = await manager.submit_approval(session_id, approval)
    if not result.success:
        raise HTTPException(status_code=409, detail=result.message)
    return result


@app.post("/api/sessions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    if manager.get_session_status(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    cancelled = await manager.cancel_session(session_id)
    return CancelResponse(session_id=session_id, cancelled=cancelled)


# ============================================
# WEBSOCKET ENDPOINTS
# ============================================

@app.websocket("/ws/sessions/{session_id}")
async def websocket_session(
    websocket: WebSocket,
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Real-time session snapshots for one session"""
    session = manager.get_session_status(session_id)
    if session is None:
        await websocket.close(code=4404)
        return

    if progress_broadcaster.snapshot(session_id) is None:
        progress_broadcaster.publish(session)
    await progress_broadcaster.connect(session_id, websocket)
    try:
        while True:
            # Keep connection alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        progress_broadcaster.disconnect(session_id, websocket)


async def cleanup_sessions_periodically(manager: SessionManager, interval_seconds: float, retention_seconds: int):
    """Forget finished sessions, and their broadcast snapshots, once they are older than the retention"""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            manager.cleanup_completed(retention_seconds)
        except Exception as e:
            logger.error(f"API: Session cleanup failed: {e}")


@app.on_event("startup")
async def startup_event():
    """Open the purchase history store and create the session manager"""
    global session_manager
    setup_logger()
    store = SQLiteHistoryStore(CopilotConfig.get_history_db_path())
    await store.initialize()
    session_manager = SessionManager(
        config=CoordinatorConfig.from_env(),
        store=store,
        listener=progress_broadcaster.publish,
        on_forget=progress_broadcaster.forget,
    )
    app.state.cleanup_task = asyncio.create_task(
        cleanup_sessions_periodically(
            session_manager,
            CopilotConfig.get_cleanup_interval_seconds(),
            CopilotConfig.get_session_retention_seconds(),
        )
    )
    logger.info("API: Cart Copilot API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel running sessions and close their pages"""
    cleanup_task = getattr(app.state, "cleanup_task", None)
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    if session_manager is not None:
        await session_manager.shutdown()
    logger.info("API: Cart Copilot API stopped")
