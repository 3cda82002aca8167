"""
Decision provenance

Every item-affecting decision gets one DecisionReasoning entry. Entries are
appended to a DecisionLog and never edited afterwards.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

from cart_copilot.control_panel.confidence import (
    ORDER_CONSISTENCY,
    QUANTITY_PATTERN,
    ConfidenceDisplay,
    ConfidenceFactor,
    calculate_confidence,
    confidence_from_cart_analysis,
    confidence_from_pruning_analysis,
    confidence_from_substitution_score,
)


class DecisionType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    SUBSTITUTED = "substituted"
    QUANTITY_CHANGED = "quantity_changed"
    KEPT = "kept"


class DecisionSource(str, Enum):
    CART_BUILDER = "cart_builder"
    SUBSTITUTION = "substitution"
    STOCK_PRUNER = "stock_pruner"
    SLOT_SCOUT = "slot_scout"
    COORDINATOR = "coordinator"
    USER = "user"


class DecisionReasoning(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    item_name: str
    decision: DecisionType
    reasoning: str
    factors: List[str] = Field(default_factory=list)
    confidence: ConfidenceDisplay
    source: DecisionSource
    timestamp: datetime = Field(default_factory=datetime.now)


DECISION_LABELS = {
    DecisionType.ADDED: "Added",
    DecisionType.REMOVED: "Suggested for Removal",
    DecisionType.SUBSTITUTED: "Substituted",
    DecisionType.QUANTITY_CHANGED: "Quantity Changed",
    DecisionType.KEPT: "Kept",
}


# ----------------------------------------------------------------------
# Constructors
# ----------------------------------------------------------------------

def added_from_order(
    item_id: str,
    item_name: str,
    source_orders: List[str],
    order_count: int,
    quantity: int,
    quantity_consistency: float = 0.8,
) -> DecisionReasoning:
    appearance_count = len(source_orders)
    frequency = round(appearance_count / order_count * 100) if order_count else 0
    if frequency >= 80:
        reasoning = f"Added because it appears in {frequency}% of your recent orders"
    else:
        label = "orders" if appearance_count > 1 else "order"
        reasoning = f"Added from {label} {', '.join(source_orders)}"

    return DecisionReasoning(
        item_id=item_id,
        item_name=item_name,
        decision=DecisionType.ADDED,
        reasoning=reasoning,
        factors=[
            f"Appears in {appearance_count} of {order_count} recent orders",
            f"Proposed quantity: {quantity}",
            f"Found in orders: {', '.join(source_orders)}",
        ],
        confidence=confidence_from_cart_analysis(order_count, appearance_count, quantity_consistency),
        source=DecisionSource.CART_BUILDER,
    )


def quantity_change_reasoning(
    item_id: str,
    item_name: str,
    previous_quantity: int,
    new_quantity: int,
    reason: str = "merged",
) -> DecisionReasoning:
    texts = {
        "merged": f"Quantity updated from {previous_quantity} to {new_quantity} after merging multiple orders",
        "adjusted": f"Quantity adjusted from {previous_quantity} to {new_quantity} based on typical order patterns",
        "user": f"Quantity set to {new_quantity} by you",
    }
    return DecisionReasoning(
        item_id=item_id,
        item_name=item_name,
        decision=DecisionType.QUANTITY_CHANGED,
        reasoning=texts.get(reason, f"Quantity changed from {previous_quantity} to {new_quantity}"),
        factors=[
            f"Previous quantity: {previous_quantity}",
            f"New quantity: {new_quantity}",
            f"Change reason: {reason.replace('_', ' ')}",
        ],
        confidence=calculate_confidence(0.7, [
            ConfidenceFactor(name=QUANTITY_PATTERN, contribution=0.15, description="Based on order history"),
        ]),
        source=DecisionSource.USER if reason == "user" else DecisionSource.CART_BUILDER,
    )


def pruning_reasoning(
    item_id: str,
    item_name: str,
    reason: str,
    days_since_purchase: int,
    cadence_days: int,
    estimated_days_until_needed: int,
    purchase_count: int,
) -> DecisionReasoning:
    return DecisionReasoning(
        item_id=item_id,
        item_name=item_name,
        decision=DecisionType.REMOVED,
        reasoning=reason,
        factors=[
            f"Purchased {days_since_purchase} days ago",
            f"Typical restock cadence: {cadence_days} days",
            f"Estimated {estimated_days_until_needed} days until needed",
        ],
        confidence=confidence_from_pruning_analysis(days_since_purchase, cadence_days, purchase_count),
        source=DecisionSource.STOCK_PRUNER,
    )


def substitution_reasoning(
    item_id: str,
    original_name: str,
    substitute_name: str,
    similarity: float,
    price_delta: float,
    brand_match: bool,
    selection_reason: str,
) -> DecisionReasoning:
    if price_delta == 0:
        price_text = "Same price"
    elif price_delta > 0:
        price_text = f"+{price_delta:.2f} more expensive"
    else:
        price_text = f"{abs(price_delta):.2f} cheaper"

    return DecisionReasoning(
        item_id=item_id,
        item_name=original_name,
        decision=DecisionType.SUBSTITUTED,
        reasoning=f'"{original_name}" is unavailable. Suggested "{substitute_name}" as a substitute.',
        factors=[f"{round(similarity * 100)}% similarity match", price_text, selection_reason],
        confidence=confidence_from_substitution_score(similarity, price_delta, brand_match),
        source=DecisionSource.SUBSTITUTION,
    )


def kept_reasoning(
    item_id: str,
    item_name: str,
    reasoning: str,
    source: DecisionSource = DecisionSource.COORDINATOR,
    base_score: float = 0.5,
) -> DecisionReasoning:
    return DecisionReasoning(
        item_id=item_id,
        item_name=item_name,
        decision=DecisionType.KEPT,
        reasoning=reasoning,
        factors=[reasoning],
        confidence=calculate_confidence(base_score, [
            ConfidenceFactor(name=ORDER_CONSISTENCY, contribution=0.0, description="Awaiting review"),
        ]),
        source=source,
    )


# ----------------------------------------------------------------------
# Log
# ----------------------------------------------------------------------

class DecisionLog:
    """Append-only, ordered record of decisions for one session"""

    def __init__(self):
        self._entries: List[DecisionReasoning] = []

    def append(self, entry: DecisionReasoning) -> None:
        self._entries.append(entry)

    def entries(self) -> Tuple[DecisionReasoning, ...]:
        return tuple(self._entries)

    def __len__(self):
        return len(self._entries)

    def by_item(self) -> Dict[str, List[DecisionReasoning]]:
        grouped: Dict[str, List[DecisionReasoning]] = {}
        for entry in self._entries:
            grouped.setdefault(entry.item_id, []).append(entry)
        return grouped

    def for_item(self, item_id: str) -> List[DecisionReasoning]:
        return [e for e in self._entries if e.item_id == item_id]

    def needing_review(self) -> List[DecisionReasoning]:
        return [
            e for e in self._entries
            if e.confidence.level.value == "low"
            or e.decision in (DecisionType.SUBSTITUTED, DecisionType.REMOVED)
        ]

    def summary(self) -> Dict[str, object]:
        by_type = {d.value: 0 for d in DecisionType}
        by_source: Dict[str, int] = {}
        total_confidence = 0.0
        for entry in self._entries:
            by_type[entry.decision.value] += 1
            by_source[entry.source.value] = by_source.get(entry.source.value, 0) + 1
            total_confidence += entry.confidence.score
        return {
            "total": len(self._entries),
            "by_type": by_type,
            "by_source": by_source,
            "average_confidence": total_confidence / len(self._entries) if self._entries else 0.0,
        }


def get_decision_label(decision: DecisionType) -> str:
    return DECISION_LABELS[decision]

