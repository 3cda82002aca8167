"""Request and response schemas for the session endpoints"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from cart_copilot.control_panel.preferences import PreferenceDisplay
from cart_copilot.control_panel.progress import ProgressState
from cart_copilot.control_panel.reasoning import DecisionReasoning
from cart_copilot.control_panel.session_manager import (
    Session,
    SessionRequestInfo,
    SessionStatus,
    StartSessionRequest,
)
from cart_copilot.core.config import CoordinatorConfig, MergeStrategy
from cart_copilot.core.models import ApprovalResult, ReviewPack


class CreateSessionRequest(BaseModel):
    """Start a copilot run; optional fields override the server defaults"""
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    household_id: str = Field(default="default", min_length=1)
    max_orders: Optional[int] = Field(default=None, ge=1, le=10)
    merge_strategy: Optional[MergeStrategy] = None
    enable_substitution: Optional[bool] = None
    enable_stock_pruning: Optional[bool] = None
    enable_slot_scouting: Optional[bool] = None

    def to_start_request(self, defaults: CoordinatorConfig) -> StartSessionRequest:
        overrides = {}
        if self.max_orders is not None:
            overrides["max_orders_to_load"] = self.max_orders
        if self.merge_strategy is not None:
            overrides["merge_strategy"] = self.merge_strategy
        for flag in ("enable_substitution", "enable_stock_pruning", "enable_slot_scouting"):
            value = getattr(self, flag)
            if value is not None:
                overrides[flag] = value
        return StartSessionRequest(
            username=self.username,
            password=self.password,
            household_id=self.household_id,
            config=defaults.model_copy(update=overrides) if overrides else None,
        )


class SessionResponse(BaseModel):
    session_id: str
    household_id: str
    status: SessionStatus
    start_time: datetime
    updated_at: datetime
    end_time: Optional[datetime] = None
    request: Optional[SessionRequestInfo] = None
    progress: ProgressState
    review_pack: Optional[ReviewPack] = None
    decisions: List[DecisionReasoning] = Field(default_factory=list)
    preferences: PreferenceDisplay = Field(default_factory=PreferenceDisplay)
    approval: Optional[ApprovalResult] = None
    cart_url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            household_id=session.household_id,
            status=session.status,
            start_time=session.start_time,
            updated_at=session.updated_at,
            end_time=session.end_time,
            request=session.request,
            progress=session.progress,
            review_pack=session.review_pack,
            decisions=session.decisions,
            preferences=session.preferences,
            approval=session.approval,
            cart_url=session.cart_url,
            error=session.error,
        )


class SessionSummary(BaseModel):
    session_id: str
    household_id: str
    status: SessionStatus
    start_time: datetime
    updated_at: datetime
    progress: float = 0

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            household_id=session.household_id,
            status=session.status,
            start_time=session.start_time,
            updated_at=session.updated_at,
            progress=session.progress.progress,
        )


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool
