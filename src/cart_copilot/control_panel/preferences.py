"""Preference rules and their applications to cart items"""
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PreferenceRuleType(str, Enum):
    BRAND_PREFERENCE = "brand_preference"
    CATEGORY_EXCLUSION = "category_exclusion"
    PRICE_LIMIT = "price_limit"
    QUANTITY_DEFAULT = "quantity_default"
    SUBSTITUTE_RULE = "substitute_rule"
    TIMING_PREFERENCE = "timing_preference"
    DIETARY_RESTRICTION = "dietary_restriction"
    QUALITY_TIER = "quality_tier"


class PreferenceRule(BaseModel):
    id: str = Field(default_factory=lambda: f"pref-{uuid.uuid4().hex[:8]}")
    type: PreferenceRuleType
    name: str
    description: str = ""
    target: Optional[str] = None
    value: Optional[float] = None
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
    last_applied: Optional[datetime] = None
    application_count: int = Field(default=0, ge=0)
    source: str = Field(default="manual", pattern="^(manual|learned)$")
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class PreferenceApplication(BaseModel):
    rule_id: str
    rule_name: str
    item_id: str
    item_name: str
    influence: str
    impact_strength: float = Field(ge=0, le=1)


class PreferenceSummary(BaseModel):
    total_rules: int = 0
    rules_applied: int = 0
    items_affected: int = 0


class PreferenceDisplay(BaseModel):
    active_rules: List[PreferenceRule] = Field(default_factory=list)
    applied_preferences: List[PreferenceApplication] = Field(default_factory=list)
    summary: PreferenceSummary = Field(default_factory=PreferenceSummary)


# ----------------------------------------------------------------------
# Constructors
# ----------------------------------------------------------------------

def brand_preference(brand: str, category: str, source: str = "manual", confidence: Optional[float] = None) -> PreferenceRule:
    return PreferenceRule(
        type=PreferenceRuleType.BRAND_PREFERENCE,
        name=f"Prefer {brand}",
        description=f"Prefer {brand} for {category}",
        target=brand,
        source=source,
        confidence=confidence,
    )


def category_exclusion(category: str, reason: str = "") -> PreferenceRule:
    return PreferenceRule(
        type=PreferenceRuleType.CATEGORY_EXCLUSION,
        name=f"Exclude {category}",
        description=reason or f"Never add items from {category}",
        target=category,
    )


def price_limit(max_price: float, category: Optional[str] = None) -> PreferenceRule:
    scope = f" for {category}" if category else ""
    return PreferenceRule(
        type=PreferenceRuleType.PRICE_LIMIT,
        name=f"Max {max_price:.2f}{scope}",
        description=f"Skip substitutes priced above {max_price:.2f}{scope}",
        target=category,
        value=max_price,
    )


def quantity_default(item_name: str, quantity: int, source: str = "learned", confidence: Optional[float] = None) -> PreferenceRule:
    return PreferenceRule(
        type=PreferenceRuleType.QUANTITY_DEFAULT,
        name=f"{item_name} x{quantity}",
        description=f"Usually buys {quantity} of {item_name}",
        target=item_name,
        value=quantity,
        source=source,
        confidence=confidence,
    )


def dietary_restriction(restriction: str, description: str = "") -> PreferenceRule:
    return PreferenceRule(
        type=PreferenceRuleType.DIETARY_RESTRICTION,
        name=restriction,
        description=description or f"Dietary restriction: {restriction}",
    )


def apply_rule(rule: PreferenceRule, item_id: str, item_name: str, influence: str, impact_strength: float) -> PreferenceApplication:
    """Bind a rule to an affected item"""
    return PreferenceApplication(
        rule_id=rule.id,
        rule_name=rule.name,
        item_id=item_id,
        item_name=item_name,
        influence=influence,
        impact_strength=impact_strength,
    )


def build_preference_display(rules: List[PreferenceRule], applications: List[PreferenceApplication]) -> PreferenceDisplay:
    active = [r for r in rules if r.active]
    return PreferenceDisplay(
        active_rules=active,
        applied_preferences=list(applications),
        summary=PreferenceSummary(
            total_rules=len(rules),
            rules_applied=len({a.rule_id for a in applications}),
            items_affected=len({a.item_id for a in applications}),
        ),
    )


# ----------------------------------------------------------------------
# Filters
# ----------------------------------------------------------------------

def filter_by_type(rules: List[PreferenceRule], rule_type: PreferenceRuleType) -> List[PreferenceRule]:
    return [r for r in rules if r.type == rule_type]


def filter_by_source(rules: List[PreferenceRule], source: str) -> List[PreferenceRule]:
    return [r for r in rules if r.source == source]


def high_confidence_rules(rules: List[PreferenceRule], threshold: float = 0.8) -> List[PreferenceRule]:
    return [r for r in rules if r.source == "manual" or (r.confidence or 0) >= threshold]


def recently_applied_rules(rules: List[PreferenceRule], within_days: int = 7) -> List[PreferenceRule]:
    cutoff = datetime.now() - timedelta(days=within_days)
    return [r for r in rules if r.last_applied and r.last_applied >= cutoff]


def applications_for_item(applications: List[PreferenceApplication], item_id: str) -> List[PreferenceApplication]:
    return [a for a in applications if a.item_id == item_id]
