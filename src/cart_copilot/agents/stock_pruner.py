"""
Stock Pruner

Suggests removing items the household probably still has at home. For each
proposed item the restock cadence is taken from a user override, else learned
from purchase history, else a category default. An item bought more recently
than its cadence is flagged; an item with no history is always kept.
"""
import logging
import statistics
from datetime import date
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from cart_copilot.control_panel.confidence import confidence_from_pruning_analysis
from cart_copilot.core.config import StockPrunerConfig
from cart_copilot.core.errors import raise_if_cancelled
from cart_copilot.core.models import MergedCartItem, SuggestedRemoval, normalize_name
from cart_copilot.db.history_store import HistoryStore, PurchaseRecord

logger = logging.getLogger(__name__)

MIN_CADENCE_DAYS = 1
MAX_CADENCE_DAYS = 180


class ProductCategory(str, Enum):
    FRESH_PRODUCE = "fresh_produce"
    DAIRY = "dairy"
    MEAT_FISH = "meat_fish"
    BREAD_BAKERY = "bread_bakery"
    PANTRY_STAPLES = "pantry_staples"
    BEVERAGES = "beverages"
    SNACKS = "snacks"
    LAUNDRY = "laundry"
    CLEANING = "cleaning"
    PAPER_PRODUCTS = "paper_products"
    PERSONAL_HYGIENE = "personal_hygiene"
    BABY_CARE = "baby_care"
    PET_SUPPLIES = "pet_supplies"
    UNKNOWN = "unknown"


CATEGORY_CADENCE_DEFAULTS: Dict[ProductCategory, int] = {
    ProductCategory.FRESH_PRODUCE: 5,
    ProductCategory.DAIRY: 8,
    ProductCategory.MEAT_FISH: 8,
    ProductCategory.BREAD_BAKERY: 4,
    ProductCategory.PANTRY_STAPLES: 37,
    ProductCategory.BEVERAGES: 17,
    ProductCategory.SNACKS: 17,
    ProductCategory.LAUNDRY: 45,
    ProductCategory.CLEANING: 45,
    ProductCategory.PAPER_PRODUCTS: 37,
    ProductCategory.PERSONAL_HYGIENE: 45,
    ProductCategory.BABY_CARE: 22,
    ProductCategory.PET_SUPPLIES: 25,
    ProductCategory.UNKNOWN: 21,
}

# Ordered most specific first; ties go to the earlier category
CATEGORY_KEYWORDS: List[Tuple[ProductCategory, List[str]]] = [
    (ProductCategory.BABY_CARE, ['bebé', 'fralda', 'toalhita', 'biberão', 'baby', 'diaper', 'wipes', 'pampers', 'dodot']),
    (ProductCategory.PET_SUPPLIES, ['ração', 'comida para', 'areia de gato', 'pet', 'animal', 'cão', 'gato', 'dog', 'cat', 'litter']),
    (ProductCategory.BREAD_BAKERY, ['pão', 'bolo', 'croissant', 'pastel', 'bread', 'cake', 'pastry']),
    (ProductCategory.DAIRY, ['leite', 'iogurte', 'queijo', 'manteiga', 'nata', 'requeijão', 'milk', 'yogurt', 'cheese', 'butter', 'cream']),
    (ProductCategory.MEAT_FISH, ['carne', 'peixe', 'frango', 'porco', 'vaca', 'bife', 'costeleta', 'salmão', 'bacalhau', 'atum', 'meat', 'fish', 'chicken', 'beef', 'pork']),
    (ProductCategory.FRESH_PRODUCE, ['fruta', 'legume', 'vegetal', 'hortaliça', 'banana', 'maçã', 'tomate', 'alface', 'cenoura', 'batata', 'cebola', 'laranja', 'pêra', 'fresh']),
    (ProductCategory.LAUNDRY, ['detergente', 'roupa', 'lavar', 'amaciador', 'lixívia', 'skip', 'persil', 'tide', 'ariel', 'laundry', 'softener', 'bleach']),
    (ProductCategory.PAPER_PRODUCTS, ['papel', 'guardanapo', 'toalha', 'lenço', 'papel higiénico', 'papel cozinha', 'tissue', 'toilet paper', 'kitchen roll', 'napkin']),
    (ProductCategory.PERSONAL_HYGIENE, ['champô', 'gel de banho', 'sabonete', 'pasta de dentes', 'desodorizante', 'shampoo', 'conditioner', 'soap', 'toothpaste', 'deodorant', 'colgate', 'dove', 'nivea']),
    (ProductCategory.CLEANING, ['limpeza', 'limpa', 'desinfetante', 'esfregona', 'pano', 'lava tudo', 'fairy', 'cleaning', 'disinfectant', 'cleaner', 'mop']),
    (ProductCategory.BEVERAGES, ['café', 'chá', 'sumo', 'água', 'refrigerante', 'bebida', 'coffee', 'tea', 'juice', 'water', 'soda', 'drink']),
    (ProductCategory.SNACKS, ['bolachas', 'snack', 'chocolate', 'batatas fritas', 'chips', 'cookies', 'biscuits', 'candy']),
    (ProductCategory.PANTRY_STAPLES, ['arroz', 'massa', 'azeite', 'óleo', 'farinha', 'açúcar', 'sal', 'conserva', 'enlatado', 'rice', 'pasta', 'oil', 'flour', 'sugar', 'canned', 'preserves']),
]


class CadenceSource(str, Enum):
    USER_OVERRIDE = "user_override"
    LEARNED = "learned"
    CATEGORY_DEFAULT = "category_default"


class Cadence(BaseModel):
    days: int
    source: CadenceSource
    category: ProductCategory = ProductCategory.UNKNOWN


class StockPrunerResult(BaseModel):
    suggested_removals: List[SuggestedRemoval] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)
    items_without_history: List[str] = Field(default_factory=list)
    cadences: Dict[str, Cadence] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0, le=1)


# ----------------------------------------------------------------------
# Heuristics
# ----------------------------------------------------------------------

def detect_category(product_name: str) -> ProductCategory:
    """Category with the most keyword hits in the name"""
    name = normalize_name(product_name)
    best, best_count = ProductCategory.UNKNOWN, 0
    for category, keywords in CATEGORY_KEYWORDS:
        count = sum(1 for keyword in keywords if normalize_name(keyword) in name)
        if count > best_count:
            best, best_count = category, count
    return best


def learned_cadence(purchase_dates: List[date], min_purchases: int) -> Optional[int]:
    """Median interval between purchases, clamped to 1..180 days"""
    if len(purchase_dates) < min_purchases:
        return None
    ordered = sorted(purchase_dates)
    intervals = [(b - a).days for a, b in zip(ordered, ordered[1:]) if (b - a).days > 0]
    if not intervals:
        return None
    median = statistics.median(intervals)
    return max(MIN_CADENCE_DAYS, min(MAX_CADENCE_DAYS, round(median)))


def resolve_cadence(
    item: MergedCartItem,
    history: List[PurchaseRecord],
    overrides: Dict[str, int],
    config: StockPrunerConfig,
) -> Cadence:
    category = detect_category(item.name)
    override = overrides.get(item.key)
    if override:
        return Cadence(days=override, source=CadenceSource.USER_OVERRIDE, category=category)

    if config.use_learned_cadences:
        learned = learned_cadence([r.purchased_at for r in history], config.min_purchases_for_learning)
        if learned is not None:
            return Cadence(days=learned, source=CadenceSource.LEARNED, category=category)

    return Cadence(days=CATEGORY_CADENCE_DEFAULTS[category], source=CadenceSource.CATEGORY_DEFAULT, category=category)


def removal_reason(days_since: int, cadence: Cadence, days_until: int) -> str:
    origin = {
        CadenceSource.USER_OVERRIDE: "your restock setting",
        CadenceSource.LEARNED: "your purchase history",
        CadenceSource.CATEGORY_DEFAULT: f"typical {cadence.category.value.replace('_', ' ')} restock",
    }[cadence.source]
    return (
        f"Bought {days_since} days ago; usually lasts about {cadence.days} days "
        f"(from {origin}), so likely still in stock for {days_until} more days"
    )


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------

class StockPruner:

    def __init__(self, store: HistoryStore, config: Optional[StockPrunerConfig] = None):
        self.store = store
        self.config = config or StockPrunerConfig()

    async def run(
        self,
        household_id: str,
        items: List[MergedCartItem],
        is_cancelled: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[float, str], None]] = None,
    ) -> StockPrunerResult:
        today = self.config.reference_date or date.today()
        overrides = await self.store.get_cadence_overrides(household_id)
        result = StockPrunerResult()
        scores: List[float] = []

        for index, item in enumerate(items):
            raise_if_cancelled(is_cancelled, "stock pruning")
            if on_progress:
                on_progress(100 * index / max(1, len(items)), f"Checking {item.name}")

            history = await self.store.get_purchase_history(household_id, item.key)
            if not history:
                result.items_without_history.append(item.key)
                result.kept.append(item.key)
                continue

            cadence = resolve_cadence(item, history, overrides, self.config)
            result.cadences[item.key] = cadence
            days_since = (today - history[-1].purchased_at).days
            days_until = cadence.days - days_since

            confidence = confidence_from_pruning_analysis(days_since, cadence.days, len(history))
            scores.append(confidence.score)

            if days_until <= 0:
                result.kept.append(item.key)
                continue

            result.suggested_removals.append(SuggestedRemoval(
                item_id=item.key,
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                days_since_last_purchase=days_since,
                cadence_days=cadence.days,
                estimated_days_until_needed=days_until,
                purchase_count=len(history),
                confidence=confidence.score,
                reason=removal_reason(days_since, cadence, days_until),
            ))

        if scores:
            result.confidence = sum(scores) / len(scores)
        logger.info(
            f"STOCK_PRUNER: {len(result.suggested_removals)} suggested removals, "
            f"{len(result.items_without_history)} items without history"
        )
        return result
