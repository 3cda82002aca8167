"""
Confidence display data

A ConfidenceDisplay is always derived from a score and its factors. The
level and tooltip are recomputed on construction, and a built display is
frozen.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Factor names shared across workers
PURCHASE_FREQUENCY = "Purchase frequency"
ORDER_CONSISTENCY = "Order consistency"
QUANTITY_PATTERN = "Quantity pattern"
CATEGORY_MATCH = "Category match"
PRICE_SIMILARITY = "Price similarity"
BRAND_MATCH = "Brand match"
CADENCE_CONFIDENCE = "Cadence confidence"
RECENCY = "Recency"
SLOT_AVAILABILITY = "Slot availability"
WORKER_RESULT = "Worker result"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def get_confidence_level(score: float) -> ConfidenceLevel:
    if score >= 0.8:
        return ConfidenceLevel.HIGH
    if score >= 0.5:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class ConfidenceFactor(BaseModel):
    name: str
    contribution: float
    description: Optional[str] = None

    @field_validator("contribution")
    @classmethod
    def _clamp_contribution(cls, value: float) -> float:
        return clamp(value, -1.0, 1.0)


class ConfidenceDisplay(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    factors: List[ConfidenceFactor] = Field(default_factory=list)
    level: ConfidenceLevel = ConfidenceLevel.LOW
    tooltip: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            score = clamp(float(data.get("score", 0.0)))
            factors = data.get("factors") or []
            data["score"] = score
            data["level"] = get_confidence_level(score)
            data["tooltip"] = _tooltip(factors)
        return data

    @classmethod
    def from_score(cls, score: float, factors: Optional[Sequence[ConfidenceFactor]] = None) -> "ConfidenceDisplay":
        return cls(score=score, factors=list(factors or []))


def _tooltip(factors: Sequence[Any]) -> Optional[str]:
    if not factors:
        return None
    parts = []
    for factor in factors:
        if isinstance(factor, dict):
            name, contribution = factor.get("name"), factor.get("contribution", 0.0)
        else:
            name, contribution = factor.name, factor.contribution
        contribution = clamp(contribution, -1.0, 1.0)
        sign = "+" if contribution > 0 else ""
        parts.append(f"{name}: {sign}{round(contribution * 100)}%")
    return ", ".join(parts)


def calculate_confidence(base_score: float, factors: Sequence[ConfidenceFactor]) -> ConfidenceDisplay:
    """Combine a base score with the mean factor contribution (weighted 0.3)"""
    factors = list(factors)
    if not factors:
        return ConfidenceDisplay.from_score(base_score)
    avg = sum(f.contribution for f in factors) / len(factors)
    return ConfidenceDisplay.from_score(clamp(base_score + avg * 0.3), factors)


def aggregate_confidences(
    confidences: Sequence[ConfidenceDisplay],
    weights: Optional[Sequence[float]] = None,
) -> ConfidenceDisplay:
    """Weighted average of several displays, merging factors by name"""
    if not confidences:
        return ConfidenceDisplay.from_score(0.0)

    weights = list(weights) if weights is not None else [1.0] * len(confidences)
    total_weight = sum(weights) or 1.0

    weighted_sum = 0.0
    merged: Dict[str, ConfidenceFactor] = {}
    for conf, weight in zip(confidences, weights):
        share = weight / total_weight
        weighted_sum += conf.score * share
        for factor in conf.factors:
            if factor.name in merged:
                existing = merged[factor.name]
                merged[factor.name] = existing.model_copy(
                    update={"contribution": clamp(existing.contribution + factor.contribution * share, -1.0, 1.0)}
                )
            else:
                merged[factor.name] = factor.model_copy(update={"contribution": factor.contribution * share})

    return ConfidenceDisplay.from_score(weighted_sum, list(merged.values()))


def confidence_stats(confidences: Sequence[ConfidenceDisplay]) -> Dict[str, Any]:
    if not confidences:
        return {"count": 0, "average": 0.0, "min": 0.0, "max": 0.0, "high": 0, "medium": 0, "low": 0}
    scores = [c.score for c in confidences]
    return {
        "count": len(confidences),
        "average": sum(scores) / len(scores),
        "min": min(scores),
        "max": max(scores),
        "high": sum(1 for c in confidences if c.level == ConfidenceLevel.HIGH),
        "medium": sum(1 for c in confidences if c.level == ConfidenceLevel.MEDIUM),
        "low": sum(1 for c in confidences if c.level == ConfidenceLevel.LOW),
    }


# ----------------------------------------------------------------------
# Worker-specific derivations
# ----------------------------------------------------------------------

def confidence_from_cart_analysis(order_count: int, appearance_count: int, quantity_consistency: float) -> ConfidenceDisplay:
    frequency = appearance_count / order_count if order_count else 0.0
    if frequency >= 0.8:
        base = 0.85
    elif frequency >= 0.5:
        base = 0.7
    else:
        base = 0.5

    return calculate_confidence(base, [
        ConfidenceFactor(
            name=PURCHASE_FREQUENCY,
            contribution=0.2 if frequency >= 0.8 else 0.1 if frequency >= 0.5 else -0.05,
            description=f"Appears in {round(frequency * 100)}% of orders",
        ),
        ConfidenceFactor(
            name=ORDER_CONSISTENCY,
            contribution=0.1 if order_count >= 3 else -0.1,
            description=f"Based on {order_count} orders",
        ),
        ConfidenceFactor(
            name=QUANTITY_PATTERN,
            contribution=0.1 if quantity_consistency > 0.8 else 0.05 if quantity_consistency > 0.5 else -0.05,
            description=f"Quantity consistency: {round(quantity_consistency * 100)}%",
        ),
    ])


def confidence_from_substitution_score(similarity: float, price_delta: float, brand_match: bool) -> ConfidenceDisplay:
    return calculate_confidence(similarity, [
        ConfidenceFactor(
            name=CATEGORY_MATCH,
            contribution=0.2 if similarity > 0.7 else 0.1 if similarity > 0.5 else -0.1,
            description="Category and product type similarity",
        ),
        ConfidenceFactor(
            name=PRICE_SIMILARITY,
            contribution=0.15 if price_delta == 0 else 0.05 if abs(price_delta) < 0.5 else -0.1,
            description=f"Price difference: {'+' if price_delta > 0 else ''}{price_delta:.2f}",
        ),
        ConfidenceFactor(
            name=BRAND_MATCH,
            contribution=0.15 if brand_match else 0.0,
            description="Same brand" if brand_match else "Different brand",
        ),
    ])


def confidence_from_pruning_analysis(days_since_purchase: int, cadence_days: int, purchase_count: int) -> ConfidenceDisplay:
    ratio = days_since_purchase / cadence_days if cadence_days else 1.0
    if purchase_count >= 3:
        base = 0.7
    elif purchase_count >= 2:
        base = 0.5
    else:
        base = 0.3

    if ratio < 0.3:
        recency = 0.2
    elif ratio < 0.5:
        recency = 0.1
    elif ratio > 1:
        recency = -0.15
    else:
        recency = 0.0

    return calculate_confidence(base, [
        ConfidenceFactor(
            name=CADENCE_CONFIDENCE,
            contribution=0.2 if purchase_count >= 5 else 0.1 if purchase_count >= 3 else -0.1,
            description=f"Based on {purchase_count} previous purchases",
        ),
        ConfidenceFactor(
            name=RECENCY,
            contribution=recency,
            description=f"{days_since_purchase} days since last purchase (typical: {cadence_days} days)",
        ),
    ])
