"""
Slot Scout

Reads delivery slots for the next few days and ranks the available ones:
free before paid, then cheaper, then closer to the household's preferred
days and hours, then earlier.
"""
import logging
from datetime import date, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from cart_copilot.core.config import SlotPreferences, SlotScoutConfig
from cart_copilot.core.errors import raise_if_cancelled
from cart_copilot.core.models import DeliverySlot, SlotOption
from cart_copilot.tools.base_tool import ToolContext, raise_for_result
from cart_copilot.tools.browser_tools import ExtractSlotsTool

logger = logging.getLogger(__name__)


class SlotScoutResult(BaseModel):
    slots_found: int = 0
    available_slots: int = 0
    options: List[SlotOption] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)


def time_minutes(value: str) -> int:
    hours, _, minutes = value.partition(":")
    return int(hours or 0) * 60 + int(minutes or 0)


def in_preferred_window(slot: DeliverySlot, preferences: SlotPreferences) -> bool:
    start, end = preferences.preferred_time_start, preferences.preferred_time_end
    if start is None and end is None:
        return False
    if start is not None and time_minutes(slot.start_time) < time_minutes(start):
        return False
    if end is not None and time_minutes(slot.end_time) > time_minutes(end):
        return False
    return True


def preference_score(slot: DeliverySlot, preferences: SlotPreferences) -> int:
    """One point for a preferred day, one for falling inside the preferred hours"""
    score = 0
    if slot.day_name.lower() in {d.lower() for d in preferences.preferred_days}:
        score += 1
    if in_preferred_window(slot, preferences):
        score += 1
    return score


def slot_sort_key(slot: DeliverySlot, preferences: Optional[SlotPreferences] = None):
    score = preference_score(slot, preferences) if preferences is not None else 0
    return (not slot.is_free, slot.delivery_cost, -score, slot.date, time_minutes(slot.start_time))


def filter_slots(slots: List[DeliverySlot], config: SlotScoutConfig, today: date) -> List[DeliverySlot]:
    last_day = today + timedelta(days=config.days_ahead)
    avoid = {d.lower() for d in config.preferences.avoid_days}
    max_cost = config.preferences.max_delivery_cost

    kept = []
    for slot in slots:
        if not slot.available:
            continue
        if slot.date < today or slot.date > last_day:
            continue
        if slot.day_name.lower() in avoid:
            continue
        if max_cost is not None and slot.delivery_cost > max_cost:
            continue
        kept.append(slot)
    return kept


def _window_label(preferences: SlotPreferences) -> str:
    start, end = preferences.preferred_time_start, preferences.preferred_time_end
    if start and end:
        return f"{start}-{end}"
    return f"from {start}" if start else f"until {end}"


def _top_reason(top: DeliverySlot, earliest: DeliverySlot, preferences: SlotPreferences) -> str:
    is_earliest = top.slot_id == earliest.slot_id
    if top.is_free and is_earliest:
        reason = "Earliest slot with free delivery"
    elif top.is_free:
        reason = "Free delivery"
    elif is_earliest:
        reason = "Earliest available slot"
    else:
        reason = f"Lowest delivery cost ({top.delivery_cost:.2f})"
    if top.day_name.lower() in {d.lower() for d in preferences.preferred_days}:
        reason += f", on your preferred day ({top.day_name})"
    if in_preferred_window(top, preferences):
        reason += f", within your preferred hours ({_window_label(preferences)})"
    return reason


def _comparative_reason(slot: DeliverySlot, top: DeliverySlot) -> str:
    if slot.is_free:
        return f"Also free, {slot.day_name} {slot.start_time}-{slot.end_time}"
    extra = slot.delivery_cost - top.delivery_cost
    if extra > 0:
        return f"{slot.delivery_cost:.2f} delivery, {extra:.2f} more than the top option"
    return f"Same cost as the top option, {slot.day_name} {slot.start_time}-{slot.end_time}"


def rank_slots(slots: List[DeliverySlot], config: SlotScoutConfig, today: Optional[date] = None) -> List[SlotOption]:
    """Rank usable slots; rank 1 is the recommendation"""
    today = today or date.today()
    usable = sorted(filter_slots(slots, config, today), key=lambda s: slot_sort_key(s, config.preferences))
    if not usable:
        return []

    top = usable[0]
    earliest = min(usable, key=lambda s: (s.date, time_minutes(s.start_time)))
    options = []
    for rank, slot in enumerate(usable[:config.max_options], start=1):
        reason = _top_reason(top, earliest, config.preferences) if rank == 1 else _comparative_reason(slot, top)
        options.append(SlotOption(
            slot_id=slot.slot_id,
            date=slot.date,
            day_name=slot.day_name,
            start_time=slot.start_time,
            end_time=slot.end_time,
            delivery_cost=slot.delivery_cost,
            is_free=slot.is_free,
            rank=rank,
            reason=reason,
        ))
    return options


class SlotScout:

    def __init__(self, config: Optional[SlotScoutConfig] = None):
        self.config = config or SlotScoutConfig()

    async def run(
        self,
        context: ToolContext,
        is_cancelled: Optional[Callable[[], bool]] = None,
        today: Optional[date] = None,
    ) -> SlotScoutResult:
        raise_if_cancelled(is_cancelled, "slot scouting")
        slots: List[DeliverySlot] = raise_for_result(
            await ExtractSlotsTool().execute({"days_ahead": self.config.days_ahead}, context)
        )
        options = rank_slots(slots, self.config, today)
        available = sum(1 for s in slots if s.available)

        if not options:
            confidence = 0.2
        elif options[0].is_free:
            confidence = 0.9
        else:
            confidence = 0.75
        logger.info(f"SLOT_SCOUT: {len(slots)} slots found, {available} available, {len(options)} ranked")
        return SlotScoutResult(slots_found=len(slots), available_slots=available, options=options, confidence=confidence)
