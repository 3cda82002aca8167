"""
Substitution Finder

Checks availability of the proposed items and, for each unavailable one,
searches the catalogue and ranks replacement candidates. Substitutes are only
proposed; nothing is added to the cart here.
"""
import logging
import re
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from cart_copilot.agents.query_generator import LLMQueryGenerator, extract_simple_queries
from cart_copilot.core.config import SubstitutionConfig
from cart_copilot.core.errors import raise_if_cancelled
from cart_copilot.core.models import (
    AvailabilityResult,
    MergedCartItem,
    RankedSubstitute,
    SubstituteCandidate,
    SubstituteScore,
    UnavailableItem,
    UserAction,
)
from cart_copilot.tools.base_tool import ToolContext, raise_for_result
from cart_copilot.tools.browser_tools import CheckAvailabilityTool, SearchProductsTool

logger = logging.getLogger(__name__)


class SubstitutionResult(BaseModel):
    availability: List[AvailabilityResult] = Field(default_factory=list)
    unavailable_items: List[UnavailableItem] = Field(default_factory=list)
    items_with_substitutes: int = 0
    items_without_substitutes: int = 0
    notices: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)


# ----------------------------------------------------------------------
# Similarity scores
# ----------------------------------------------------------------------

def brand_similarity(candidate_brand: Optional[str], original_brand: Optional[str]) -> float:
    if not candidate_brand or not original_brand:
        return 0.5
    candidate_brand, original_brand = candidate_brand.lower(), original_brand.lower()
    if candidate_brand == original_brand:
        return 1.0
    if candidate_brand in original_brand or original_brand in candidate_brand:
        return 0.7
    return 0.3


_SIZE_RE = re.compile(r"(\d+(?:,\d+)?)\s*(g|kg|ml|l|cl)\b", re.IGNORECASE)
_UNIT_FACTORS = {"g": 1, "ml": 1, "kg": 1000, "l": 1000, "cl": 10}


def numeric_size(size: str) -> Optional[float]:
    """Parse "1,5 L" into 1500.0 (grams or millilitres)"""
    match = _SIZE_RE.search(size)
    if not match:
        return None
    value = float(match.group(1).replace(",", "."))
    return value * _UNIT_FACTORS[match.group(2).lower()]


def size_similarity(candidate_size: Optional[str], original_size: Optional[str]) -> float:
    if not candidate_size or not original_size:
        return 0.5
    candidate_size, original_size = candidate_size.lower(), original_size.lower()
    if candidate_size == original_size:
        return 1.0

    candidate_value, original_value = numeric_size(candidate_size), numeric_size(original_size)
    if candidate_value is not None and original_value:
        ratio = candidate_value / original_value
        if 0.9 <= ratio <= 1.1:
            return 0.9
        if 0.7 <= ratio <= 1.3:
            return 0.7
        if 0.5 <= ratio <= 1.5:
            return 0.5
        return 0.3

    if candidate_size in original_size or original_size in candidate_size:
        return 0.6
    return 0.3


def price_similarity(candidate_price: float, original_price: float) -> float:
    if original_price == 0:
        return 0.5
    if candidate_price == original_price:
        return 1.0
    ratio = candidate_price / original_price
    if ratio <= 1.0:
        return max(0.7, 1 - (1 - ratio) * 0.5)
    if ratio <= 1.1:
        return 0.8
    if ratio <= 1.2:
        return 0.6
    if ratio <= 1.3:
        return 0.4
    return 0.2


def category_match(candidate_name: str, original_name: str) -> float:
    """Token overlap of the two product names"""
    candidate_tokens = {t for t in candidate_name.lower().split() if len(t) > 2}
    original_tokens = {t for t in original_name.lower().split() if len(t) > 2}
    if not original_tokens:
        return 0.5

    overlap = len(original_tokens & candidate_tokens) / len(original_tokens)
    if overlap >= 0.7:
        return 1.0
    if overlap >= 0.5:
        return 0.8
    if overlap >= 0.3:
        return 0.6
    if overlap > 0:
        return 0.4
    return 0.2


def substitute_reason(candidate: SubstituteCandidate, score: SubstituteScore, original_price: float) -> str:
    reasons = []

    if score.overall >= 0.8:
        reasons.append("Excellent match")
    elif score.overall >= 0.6:
        reasons.append("Good match")
    else:
        reasons.append("Possible alternative")

    if score.brand_similarity >= 0.9:
        reasons.append("Same brand")
    elif score.brand_similarity >= 0.7:
        reasons.append("Similar brand")

    if score.size_similarity >= 0.9:
        reasons.append("Same size")
    elif score.size_similarity >= 0.7:
        reasons.append("Similar size")

    if original_price:
        price_diff = candidate.unit_price - original_price
        if price_diff <= 0:
            reasons.append("Same or lower price")
        elif price_diff <= original_price * 0.1:
            reasons.append("Slightly more expensive")

    if score.category_match >= 0.8:
        reasons.append("Very similar product")
    elif score.category_match >= 0.6:
        reasons.append("Similar product type")

    return ". ".join(reasons)


def rank_substitutes(
    candidates: List[SubstituteCandidate],
    original: MergedCartItem,
    config: SubstitutionConfig,
) -> List[RankedSubstitute]:
    """Score candidates against the original item, best first"""
    ranked = []
    for candidate in candidates:
        brand = brand_similarity(candidate.brand, original.brand)
        size = size_similarity(candidate.size, original.size)
        price = price_similarity(candidate.unit_price, original.unit_price)
        category = category_match(candidate.name, original.name)
        overall = (
            brand * config.brand_weight
            + size * config.size_weight
            + price * config.price_weight
            + category * config.category_weight
        )
        score = SubstituteScore(
            brand_similarity=brand,
            size_similarity=size,
            price_similarity=price,
            category_match=category,
            overall=round(overall, 4),
        )
        ranked.append(RankedSubstitute(
            candidate=candidate,
            score=score,
            reason=substitute_reason(candidate, score, original.unit_price),
            price_delta=round(candidate.unit_price - original.unit_price, 2),
        ))
    ranked.sort(key=lambda r: r.score.overall, reverse=True)
    return ranked


def filter_candidates(
    candidates: List[SubstituteCandidate],
    original: MergedCartItem,
    max_price_increase: float,
) -> List[SubstituteCandidate]:
    """Drop the original itself, unavailable products and anything above the price ceiling"""
    ceiling = original.unit_price * (1 + max_price_increase) if original.unit_price else None
    kept = []
    for candidate in candidates:
        if original.product_id and candidate.product_id == original.product_id:
            continue
        if not candidate.available:
            continue
        if ceiling is not None and candidate.unit_price > ceiling:
            continue
        kept.append(candidate)
    return kept


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------

class SubstitutionFinder:

    def __init__(self, config: Optional[SubstitutionConfig] = None, query_generator: Optional[LLMQueryGenerator] = None):
        self.config = config or SubstitutionConfig()
        if query_generator is None and self.config.use_llm_queries:
            query_generator = LLMQueryGenerator()
        self.query_generator = query_generator

    async def run(
        self,
        context: ToolContext,
        items: List[MergedCartItem],
        is_cancelled: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[float, str], None]] = None,
    ) -> SubstitutionResult:
        result = SubstitutionResult(confidence=1.0)
        if not items:
            return result

        raise_if_cancelled(is_cancelled, "availability check")
        check = await CheckAvailabilityTool().execute(
            {"items": [{"product_id": i.product_id, "name": i.name, "url": i.url} for i in items]},
            context,
        )
        result.availability = raise_for_result(check)

        unavailable = [
            item
            for item, availability in zip(items, result.availability)
            if not availability.available
        ]
        logger.info(f"SUBSTITUTION: {len(unavailable)} of {len(items)} items unavailable")

        scores = []
        for index, original in enumerate(unavailable):
            raise_if_cancelled(is_cancelled, "substitute search")
            if on_progress:
                on_progress(100 * index / len(unavailable), f"Finding substitutes for {original.name}")
            entry = await self.find_substitutes(context, original, result)
            result.unavailable_items.append(entry)
            if entry.substitutes:
                result.items_with_substitutes += 1
                scores.append(entry.substitutes[0].score.overall)
            else:
                result.items_without_substitutes += 1
                scores.append(0.3)

        if scores:
            result.confidence = min(1.0, sum(scores) / len(scores))
        return result

    async def _search(self, context: ToolContext, query: str, result: SubstitutionResult) -> List[SubstituteCandidate]:
        search = await SearchProductsTool().execute(
            {"query": query, "max_results": self.config.max_search_results}, context
        )
        if not search.success:
            result.notices.append(f'Search for "{query}" failed: {search.error.message}')
            return []
        return search.data

    async def find_substitutes(
        self,
        context: ToolContext,
        original: MergedCartItem,
        result: SubstitutionResult,
    ) -> UnavailableItem:
        """Every unavailable item yields an entry, with or without substitutes"""
        queries = extract_simple_queries(original.name, original.brand)
        tried: List[str] = []
        candidates: List[SubstituteCandidate] = []

        for query in queries:
            tried.append(query)
            candidates = filter_candidates(
                await self._search(context, query, result), original, self.config.max_price_increase
            )
            if candidates:
                break

        if not candidates and self.query_generator is not None and self.query_generator.available:
            generated = await self.query_generator.generate(
                original.name,
                brand=original.brand,
                category=original.category,
                previous_query=tried[-1] if tried else None,
                previous_result_count=0,
            )
            for query in generated.queries:
                if query in tried:
                    continue
                tried.append(query)
                candidates = filter_candidates(
                    await self._search(context, query, result), original, self.config.max_price_increase
                )
                if candidates:
                    break

        ranked = rank_substitutes(candidates, original, self.config)[:self.config.max_substitutes]
        logger.info(f"SUBSTITUTION: {original.name} -> {len(ranked)} substitutes (queries: {tried})")
        return UnavailableItem(
            item_id=original.key,
            product_id=original.product_id,
            name=original.name,
            quantity=original.quantity,
            unit_price=original.unit_price,
            substitutes=ranked,
            search_queries=tried,
            user_action=UserAction.PENDING,
        )
