"""
Domain models shared by tools, workers, the coordinator and the control surface
"""
import re
import unicodedata
from datetime import date, datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from cart_copilot.control_panel.confidence import ConfidenceDisplay


def normalize_name(name: str) -> str:
    """Lowercase, strip accents and collapse whitespace"""
    text = unicodedata.normalize("NFKD", name or "")
    text = "".join(c for c in text if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", text.lower()).strip()


def item_key(product_id: Optional[str], name: str) -> str:
    return product_id if product_id else normalize_name(name)


# ----------------------------------------------------------------------
# Orders and cart
# ----------------------------------------------------------------------

class OrderSummary(BaseModel):
    order_id: str
    placed_at: Optional[datetime] = None
    total: Optional[float] = None
    item_count: Optional[int] = None
    detail_url: Optional[str] = None


class OrderLineItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(default=0.0, ge=0)
    url: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None

    @property
    def key(self) -> str:
        return item_key(self.product_id, self.name)


class OrderDetail(BaseModel):
    order_id: str
    placed_at: Optional[datetime] = None
    items: List[OrderLineItem] = Field(default_factory=list)


class MergedCartItem(OrderLineItem):
    """A line item merged across several orders"""
    source_orders: List[str] = Field(default_factory=list)
    appearance_count: int = 1
    quantities: List[int] = Field(default_factory=list)

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)


class CartItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    quantity: int = Field(default=1, ge=0)
    unit_price: float = 0.0
    available: bool = True
    url: Optional[str] = None

    @property
    def key(self) -> str:
        return item_key(self.product_id, self.name)


class CartSnapshot(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    url: Optional[str] = None
    captured_at: datetime = Field(default_factory=datetime.now)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def total_price(self) -> float:
        return round(sum(item.unit_price * item.quantity for item in self.items), 2)

    def find(self, key: str) -> Optional[CartItem]:
        for item in self.items:
            if item.key == key:
                return item
        return None


class AvailabilityResult(BaseModel):
    product_id: Optional[str] = None
    name: str
    available: bool
    reason: Optional[str] = None


# ----------------------------------------------------------------------
# Substitution
# ----------------------------------------------------------------------

class SubstituteCandidate(BaseModel):
    product_id: str
    name: str
    url: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    unit_price: float = Field(ge=0)
    price_per_unit: Optional[str] = None
    image_url: Optional[str] = None
    available: bool = True


class SubstituteScore(BaseModel):
    brand_similarity: float
    size_similarity: float
    price_similarity: float
    category_match: float
    overall: float


class RankedSubstitute(BaseModel):
    candidate: SubstituteCandidate
    score: SubstituteScore
    reason: str
    price_delta: float


class UserAction(str, Enum):
    PENDING = "pending"
    SUBSTITUTE = "substitute"
    SKIP = "skip"
    REMOVE = "remove"


class UnavailableItem(BaseModel):
    item_id: str
    product_id: Optional[str] = None
    name: str
    quantity: int = 1
    unit_price: float = 0.0
    substitutes: List[RankedSubstitute] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)
    user_action: UserAction = UserAction.PENDING


class SuggestedRemoval(BaseModel):
    item_id: str
    product_id: Optional[str] = None
    name: str
    quantity: int = 1
    unit_price: float = 0.0
    days_since_last_purchase: int
    cadence_days: int
    estimated_days_until_needed: int
    purchase_count: int = 0
    confidence: float = Field(ge=0, le=1)
    reason: str


class QuantityChange(BaseModel):
    item_id: str
    product_id: Optional[str] = None
    name: str
    previous_quantity: int
    new_quantity: int
    unit_price: float = 0.0
    reason: str = "merged"


# ----------------------------------------------------------------------
# Delivery slots
# ----------------------------------------------------------------------

class DeliverySlot(BaseModel):
    slot_id: str
    date: date
    start_time: str
    end_time: str
    delivery_cost: float = Field(default=0.0, ge=0)
    available: bool = True

    @property
    def day_name(self) -> str:
        return self.date.strftime("%A")

    @property
    def is_free(self) -> bool:
        return self.delivery_cost == 0


class SlotOption(BaseModel):
    slot_id: str
    date: date
    day_name: str
    start_time: str
    end_time: str
    delivery_cost: float
    is_free: bool
    rank: int = Field(ge=1)
    reason: str


# ----------------------------------------------------------------------
# Review pack
# ----------------------------------------------------------------------

class ReviewWarning(BaseModel):
    worker: str
    status: Literal["failed", "skipped"]
    message: str


class ReviewPack(BaseModel):
    """Immutable snapshot of everything the human is asked to review"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    generated_at: datetime = Field(default_factory=datetime.now)
    added_items: List[MergedCartItem] = Field(default_factory=list)
    suggested_removals: List[SuggestedRemoval] = Field(default_factory=list)
    quantity_changes: List[QuantityChange] = Field(default_factory=list)
    unavailable_items: List[UnavailableItem] = Field(default_factory=list)
    slot_options: List[SlotOption] = Field(default_factory=list)
    subtotal: float = 0.0
    estimated_delivery_cost: float = 0.0
    estimated_total: float = 0.0
    confidence: ConfidenceDisplay
    worker_confidences: dict = Field(default_factory=dict)
    warnings: List[ReviewWarning] = Field(default_factory=list)
    notices: List[str] = Field(default_factory=list)
    orders_analyzed: List[str] = Field(default_factory=list)
    screenshots: List[str] = Field(default_factory=list)
    cart_url: Optional[str] = None


# ----------------------------------------------------------------------
# Approval
# ----------------------------------------------------------------------

class RemovalDecision(BaseModel):
    type: Literal["removal_decision"] = "removal_decision"
    item_id: str
    action: Literal["keep", "remove"]


class SubstituteDecision(BaseModel):
    type: Literal["substitute_decision"] = "substitute_decision"
    item_id: str
    action: Literal["skip", "use_substitute", "remove"]
    substitute_index: int = Field(default=0, ge=0)


class QuantityModification(BaseModel):
    type: Literal["quantity_change"] = "quantity_change"
    item_id: str
    new_quantity: int = Field(ge=0)


class SlotSelection(BaseModel):
    type: Literal["slot_selection"] = "slot_selection"
    slot_id: str


UserModification = Annotated[
    Union[RemovalDecision, SubstituteDecision, QuantityModification, SlotSelection],
    Field(discriminator="type"),
]


class ApprovalRequest(BaseModel):
    approved: bool
    modifications: List[UserModification] = Field(default_factory=list)
    reason: Optional[str] = None


class ApprovalOutcome(str, Enum):
    """Terminal outcomes of a review; checkout is always left to the human"""
    APPROVED = "approved"
    CANCELLED = "cancelled"


class ApprovalResult(BaseModel):
    success: bool
    session_id: str
    outcome: Optional[ApprovalOutcome] = None
    cart_url: Optional[str] = None
    applied_modifications: List[str] = Field(default_factory=list)
    failed_modifications: List[str] = Field(default_factory=list)
    message: str = ""
