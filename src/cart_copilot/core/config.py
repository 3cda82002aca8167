import os
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class CopilotConfig:
    """
    Central configuration management for Cart Copilot.
    Handles environment variables, paths, and API keys.
    """

    @staticmethod
    def get_base_url():
        return os.getenv("COPILOT_BASE_URL", "https://www.auchan.pt")

    @staticmethod
    def get_headless():
        return _env_bool("COPILOT_HEADLESS", True)

    @staticmethod
    def get_screenshot_dir():
        return os.getenv("COPILOT_SCREENSHOT_DIR", str(CopilotConfig.get_project_root() / "screenshots"))

    @staticmethod
    def get_capture_screenshots():
        return _env_bool("COPILOT_CAPTURE_SCREENSHOTS", False)

    @staticmethod
    def get_history_db_path():
        return os.getenv("COPILOT_HISTORY_DB", str(CopilotConfig.get_project_root() / "data" / "history.db"))

    @staticmethod
    def get_llm_provider():
        return os.getenv("COPILOT_LLM_PROVIDER")

    @staticmethod
    def get_llm_model():
        return os.getenv("COPILOT_LLM_MODEL")

    @staticmethod
    def get_openai_api_key():
        return os.getenv("OPENAI_API_KEY")

    @staticmethod
    def get_groq_api_key():
        return os.getenv("GROQ_API_KEY")

    @staticmethod
    def get_log_level():
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def get_api_host():
        return os.getenv("COPILOT_API_HOST", "0.0.0.0")

    @staticmethod
    def get_api_port():
        return int(os.getenv("COPILOT_API_PORT", "8000"))

    @staticmethod
    def get_session_retention_seconds():
        return int(os.getenv("COPILOT_SESSION_RETENTION_SECONDS", "3600"))

    @staticmethod
    def get_cleanup_interval_seconds():
        return int(os.getenv("COPILOT_CLEANUP_INTERVAL_SECONDS", "300"))

    @staticmethod
    def get_project_root():
        # src/cart_copilot/core/ -> src/cart_copilot/ -> src/ -> root
        return Path(__file__).parent.parent.parent.parent


# ----------------------------------------------------------------------
# Worker and coordinator configuration
# ----------------------------------------------------------------------

class MergeStrategy(str, Enum):
    COMBINED = "combined"
    LATEST = "latest"
    MOST_FREQUENT = "most_frequent"


class CartBuilderConfig(BaseModel):
    max_orders: int = Field(default=3, ge=1, le=10)
    merge_strategy: MergeStrategy = MergeStrategy.COMBINED
    apply_to_cart: bool = True


class SubstitutionConfig(BaseModel):
    max_substitutes: int = Field(default=3, ge=1)
    max_search_results: int = Field(default=10, ge=1)
    max_price_increase: float = Field(default=0.3, ge=0, le=1)
    brand_weight: float = 0.3
    size_weight: float = 0.2
    price_weight: float = 0.3
    category_weight: float = 0.2
    use_llm_queries: bool = False


class StockPrunerConfig(BaseModel):
    use_learned_cadences: bool = True
    min_purchases_for_learning: int = Field(default=3, ge=2)
    reference_date: Optional[date] = None


class SlotPreferences(BaseModel):
    preferred_days: List[str] = Field(default_factory=list)
    avoid_days: List[str] = Field(default_factory=list)
    max_delivery_cost: Optional[float] = None
    # "HH:MM"; a slot matches when it starts no earlier and ends no later than these
    preferred_time_start: Optional[str] = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    preferred_time_end: Optional[str] = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")


class SlotScoutConfig(BaseModel):
    days_ahead: int = Field(default=7, ge=1, le=21)
    max_options: int = Field(default=5, ge=1)
    preferences: SlotPreferences = Field(default_factory=SlotPreferences)


class CoordinatorConfig(BaseModel):
    """Session-level orchestration settings"""
    max_orders_to_load: int = Field(default=3, ge=1, le=10)
    merge_strategy: MergeStrategy = MergeStrategy.COMBINED
    capture_screenshots: bool = False
    session_timeout_ms: int = Field(default=300000, gt=0)
    max_retries: int = Field(default=2, ge=0)
    enable_substitution: bool = True
    enable_stock_pruning: bool = True
    enable_slot_scouting: bool = True
    worker_weights: Dict[str, float] = Field(default_factory=lambda: {
        "cart_builder": 1.0,
        "substitution": 1.0,
        "stock_pruner": 1.0,
        "slot_scout": 1.0,
    })
    substitution: SubstitutionConfig = Field(default_factory=SubstitutionConfig)
    stock_pruner: StockPrunerConfig = Field(default_factory=StockPrunerConfig)
    slot_scout: SlotScoutConfig = Field(default_factory=SlotScoutConfig)

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        return cls(capture_screenshots=CopilotConfig.get_capture_screenshots())

    def cart_builder_config(self) -> CartBuilderConfig:
        return CartBuilderConfig(max_orders=self.max_orders_to_load, merge_strategy=self.merge_strategy)
