"""
Progress Tracking
Per-session phase and worker progress, plus phase sequencing helpers
"""
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field


class SessionPhase(str, Enum):
    INITIALIZING = "initializing"
    AUTHENTICATING = "authenticating"
    LOADING_ORDERS = "loading_orders"
    BUILDING_CART = "building_cart"
    CHECKING_AVAILABILITY = "checking_availability"
    FINDING_SUBSTITUTES = "finding_substitutes"
    PRUNING_STOCK = "pruning_stock"
    SCOUTING_SLOTS = "scouting_slots"
    GENERATING_REVIEW = "generating_review"
    REVIEW_READY = "review_ready"
    APPLYING_CHANGES = "applying_changes"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    ERROR = "error"


class WorkerStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


PHASE_DESCRIPTIONS: Dict[SessionPhase, str] = {
    SessionPhase.INITIALIZING: "Starting session",
    SessionPhase.AUTHENTICATING: "Logging in",
    SessionPhase.LOADING_ORDERS: "Loading order history",
    SessionPhase.BUILDING_CART: "Building cart from previous orders",
    SessionPhase.CHECKING_AVAILABILITY: "Checking item availability",
    SessionPhase.FINDING_SUBSTITUTES: "Finding substitutes for unavailable items",
    SessionPhase.PRUNING_STOCK: "Checking what you may still have at home",
    SessionPhase.SCOUTING_SLOTS: "Collecting delivery slots",
    SessionPhase.GENERATING_REVIEW: "Preparing review pack",
    SessionPhase.REVIEW_READY: "Review pack ready",
    SessionPhase.APPLYING_CHANGES: "Applying your changes to the cart",
    SessionPhase.APPROVED: "Cart ready for checkout",
    SessionPhase.CANCELLED: "Session cancelled",
    SessionPhase.ERROR: "Session failed",
}

PHASE_SEQUENCE: List[SessionPhase] = [
    SessionPhase.INITIALIZING,
    SessionPhase.AUTHENTICATING,
    SessionPhase.LOADING_ORDERS,
    SessionPhase.BUILDING_CART,
    SessionPhase.CHECKING_AVAILABILITY,
    SessionPhase.FINDING_SUBSTITUTES,
    SessionPhase.PRUNING_STOCK,
    SessionPhase.SCOUTING_SLOTS,
    SessionPhase.GENERATING_REVIEW,
    SessionPhase.REVIEW_READY,
]

TERMINAL_PHASES = frozenset({SessionPhase.APPROVED, SessionPhase.CANCELLED, SessionPhase.ERROR})

DEFAULT_WORKERS = [
    ("cart_builder", "Cart Builder"),
    ("substitution", "Substitution Finder"),
    ("stock_pruner", "Stock Pruner"),
    ("slot_scout", "Slot Scout"),
]


class WorkerProgress(BaseModel):
    name: str
    display_name: str
    status: WorkerStatus = WorkerStatus.PENDING
    progress: float = Field(default=0, ge=0, le=100)
    current_action: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    items_processed: Optional[int] = None
    total_items: Optional[int] = None


class ProgressState(BaseModel):
    phase: SessionPhase = SessionPhase.INITIALIZING
    phase_description: str = PHASE_DESCRIPTIONS[SessionPhase.INITIALIZING]
    progress: float = 0
    workers: List[WorkerProgress] = Field(default_factory=list)
    current_action: Optional[str] = None
    start_time: datetime = Field(default_factory=datetime.now)
    last_update: datetime = Field(default_factory=datetime.now)
    estimated_remaining_seconds: Optional[int] = None


def create_initial_progress_state() -> ProgressState:
    return ProgressState(workers=[WorkerProgress(name=n, display_name=d) for n, d in DEFAULT_WORKERS])


def calculate_overall_progress(workers: List[WorkerProgress]) -> float:
    """Complete and skipped workers count as 100%"""
    if not workers:
        return 0
    total = 0.0
    for worker in workers:
        if worker.status in (WorkerStatus.COMPLETE, WorkerStatus.SKIPPED):
            total += 100
        else:
            total += worker.progress
    return round(total / len(workers), 1)


class ProgressTracker:
    """Mutable progress state for one session with an optional update listener"""

    def __init__(self, on_update: Optional[Callable[[ProgressState], None]] = None):
        self.state = create_initial_progress_state()
        self.on_update = on_update

    def get_state(self) -> ProgressState:
        return self.state.model_copy(deep=True)

    def set_phase(self, phase: SessionPhase, action: Optional[str] = None):
        self.state.phase = phase
        self.state.phase_description = PHASE_DESCRIPTIONS[phase]
        if action:
            self.state.current_action = action
        self._touch()

    def set_current_action(self, action: str):
        self.state.current_action = action
        self._touch()

    def update_worker(self, worker_name: str, **updates):
        worker = self._find(worker_name)
        if worker is None:
            return
        for key, value in updates.items():
            setattr(worker, key, value)
        self.state.progress = calculate_overall_progress(self.state.workers)
        self._touch()

    def start_worker(self, worker_name: str, action: Optional[str] = None):
        self.update_worker(
            worker_name,
            status=WorkerStatus.RUNNING,
            started_at=datetime.now(),
            current_action=action,
            progress=0,
        )

    def set_worker_progress(
        self,
        worker_name: str,
        progress: float,
        action: Optional[str] = None,
        items_processed: Optional[int] = None,
        total_items: Optional[int] = None,
    ):
        updates = {"progress": max(0, min(100, progress))}
        if action is not None:
            updates["current_action"] = action
        if items_processed is not None:
            updates["items_processed"] = items_processed
        if total_items is not None:
            updates["total_items"] = total_items
        self.update_worker(worker_name, **updates)

    def complete_worker(self, worker_name: str, duration_ms: Optional[int] = None):
        worker = self._find(worker_name)
        if duration_ms is None and worker and worker.started_at:
            duration_ms = int((datetime.now() - worker.started_at).total_seconds() * 1000)
        self.update_worker(
            worker_name,
            status=WorkerStatus.COMPLETE,
            progress=100,
            completed_at=datetime.now(),
            duration_ms=duration_ms or 0,
            current_action=None,
        )

    def fail_worker(self, worker_name: str, error_message: str):
        self.update_worker(
            worker_name,
            status=WorkerStatus.FAILED,
            completed_at=datetime.now(),
            error_message=error_message,
            current_action=None,
        )

    def skip_worker(self, worker_name: str):
        self.update_worker(worker_name, status=WorkerStatus.SKIPPED, progress=100)

    def worker_status(self, worker_name: str) -> Optional[WorkerStatus]:
        worker = self._find(worker_name)
        return worker.status if worker else None

    def update_estimates(self):
        elapsed = (datetime.now() - self.state.start_time).total_seconds()
        progress = self.state.progress
        if progress > 5:
            estimated_total = elapsed / progress * 100
            self.state.estimated_remaining_seconds = round(max(0.0, estimated_total - elapsed))
            self._touch()

    def reset(self):
        self.state = create_initial_progress_state()
        self._notify()

    def _find(self, worker_name: str) -> Optional[WorkerProgress]:
        for worker in self.state.workers:
            if worker.name == worker_name:
                return worker
        return None

    def _touch(self):
        self.state.last_update = datetime.now()
        self._notify()

    def _notify(self):
        if self.on_update:
            self.on_update(self.get_state())


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def get_next_phase(phase: SessionPhase) -> Optional[SessionPhase]:
    if phase not in PHASE_SEQUENCE:
        return None
    index = PHASE_SEQUENCE.index(phase)
    if index == len(PHASE_SEQUENCE) - 1:
        return None
    return PHASE_SEQUENCE[index + 1]


def get_phase_index(phase: SessionPhase) -> int:
    return PHASE_SEQUENCE.index(phase) if phase in PHASE_SEQUENCE else -1


def calculate_phase_progress(phase: SessionPhase) -> int:
    index = get_phase_index(phase)
    if index == -1:
        return 0
    return round(index / (len(PHASE_SEQUENCE) - 1) * 100)


def is_terminal_phase(phase: SessionPhase) -> bool:
    return phase in TERMINAL_PHASES


def are_all_workers_complete(state: ProgressState) -> bool:
    return all(w.status in (WorkerStatus.COMPLETE, WorkerStatus.SKIPPED) for w in state.workers)


def has_failed_worker(state: ProgressState) -> bool:
    return any(w.status == WorkerStatus.FAILED for w in state.workers)


def get_failed_workers(state: ProgressState) -> List[WorkerProgress]:
    return [w for w in state.workers if w.status == WorkerStatus.FAILED]
