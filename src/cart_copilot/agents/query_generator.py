"""
Search query generation for substitutes

Deterministic trimming of product names is tried first. The LLM generator is
a fallback for names the trimming cannot simplify, and degrades to the
deterministic queries whenever no model is configured or the call fails.
"""
import logging
import re
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_ai import Agent

from cart_copilot.core.config import CopilotConfig

logger = logging.getLogger(__name__)

MAX_QUERIES = 4

REMOVE_PATTERNS = [
    # Pack indicators ("6x330ml") before plain sizes so the pair goes together
    re.compile(r"\d+\s*x\s*\d+(?:[,.]?\d+)?\s*(?:g|gr|kg|ml|cl|l)\b", re.IGNORECASE),
    re.compile(r"\d+(?:[,.]?\d+)?\s*(?:g|gr|kg|ml|cl|l|lt|un|unidades?)\b", re.IGNORECASE),
    re.compile(r"\d+(?:[,.]?\d+)?%\s*(?:gordura|matéria gorda|m\.g\.?|mg)", re.IGNORECASE),
    re.compile(r"\b(?:uht|pasteurizado|ultrapasteurizado)\s*$", re.IGNORECASE),
]

COMMON_BRANDS = [
    'auchan',
    'polegar',
    'mimosa',
    'terra nostra',
    'continente',
    'pingo doce',
    'agros',
    'vigor',
    'danone',
    'nestlé',
    'unilever',
]


def extract_simple_query(product_name: str) -> str:
    """Strip sizes, pack counts and common brands from a product name"""
    query = product_name.lower()
    for pattern in REMOVE_PATTERNS:
        query = pattern.sub('', query)
    for brand in COMMON_BRANDS:
        query = re.sub(rf"\b{re.escape(brand)}\b", '', query, flags=re.IGNORECASE)
    query = re.sub(r"\s+", ' ', query).strip()

    if len(query) < 4:
        query = ' '.join(product_name.lower().split()[:3])
    return query


def extract_simple_queries(product_name: str, brand: Optional[str] = None) -> List[str]:
    """
    Up to four query variations, broadest-useful first.

    1. the trimmed name
    2. the first two significant words
    3. brand plus first word, when a brand is known
    """
    queries: List[str] = []

    cleaned = extract_simple_query(product_name)
    if len(cleaned) >= 3:
        queries.append(cleaned)

    words = [w for w in re.sub(r"[^\w\s]", '', product_name.lower()).split() if len(w) > 2]

    if len(words) >= 2:
        two_words = ' '.join(words[:2])
        if two_words not in queries:
            queries.append(two_words)

    if brand and words:
        brand_query = f"{brand.lower()} {words[0]}"
        if brand_query not in queries:
            queries.append(brand_query)

    return queries[:MAX_QUERIES]


# ----------------------------------------------------------------------
# LLM fallback
# ----------------------------------------------------------------------

QG_SYS_PROMPT = """
You are a Portuguese grocery search expert generating search queries for an online supermarket.

Rules:
1. Remove size and weight units (g, kg, ml, L, cl, un)
2. Extract the core product type, for example "leite meio gordo" from "Leite Mimosa UHT Meio Gordo 1L"
3. Use Portuguese terms only
4. Keep queries between 2 and 4 words
5. Include alternative names for the same product
6. If a brand is known, offer one brand-specific and one generic query

Return your queries best first.
"""


class SearchQueries(BaseModel):
    queries: List[str] = Field(default_factory=list)
    reasoning: Optional[str] = None


class QueryGenerationResult(BaseModel):
    queries: List[str]
    was_llm_generated: bool = False
    reasoning: Optional[str] = None
    error: Optional[str] = None


def get_query_model() -> Optional[str]:
    """pydantic-ai model identifier from the environment, or None"""
    provider = (CopilotConfig.get_llm_provider() or '').lower()
    model_name = CopilotConfig.get_llm_model()
    if provider == 'openai' and CopilotConfig.get_openai_api_key():
        return f"openai:{model_name or 'gpt-4o-mini'}"
    if provider == 'groq' and CopilotConfig.get_groq_api_key():
        return f"groq:{model_name or 'llama-3.3-70b-versatile'}"
    return None


def build_query_prompt(
    product_name: str,
    brand: Optional[str] = None,
    category: Optional[str] = None,
    previous_query: Optional[str] = None,
    previous_result_count: Optional[int] = None,
) -> str:
    lines = [f"Product: {product_name}"]
    if brand:
        lines.append(f"Brand: {brand}")
    if category:
        lines.append(f"Category: {category}")
    if previous_query is not None:
        lines.append(f'Previous query "{previous_query}" returned {previous_result_count or 0} results.')
    lines.append("Generate search queries.")
    return "\n".join(lines)


class LLMQueryGenerator:
    """Query generation through a pydantic-ai Agent with a typed output"""

    def __init__(self, agent: Optional[Agent] = None, model: Optional[str] = None):
        if agent is None:
            model = model or get_query_model()
            if model:
                agent = Agent(
                    model=model,
                    name="Query Generator",
                    system_prompt=QG_SYS_PROMPT,
                    retries=2,
                    model_settings={'temperature': 0.3},
                    output_type=SearchQueries,
                )
        self.agent = agent

    @property
    def available(self) -> bool:
        return self.agent is not None

    async def generate(
        self,
        product_name: str,
        brand: Optional[str] = None,
        category: Optional[str] = None,
        previous_query: Optional[str] = None,
        previous_result_count: Optional[int] = None,
    ) -> QueryGenerationResult:
        fallback = extract_simple_queries(product_name, brand)
        if self.agent is None:
            return QueryGenerationResult(queries=fallback, error="No LLM configured")

        prompt = build_query_prompt(product_name, brand, category, previous_query, previous_result_count)
        try:
            result = await self.agent.run(prompt)
        except Exception as e:
            logger.warning(f"QUERY_GENERATOR: LLM call failed, using simple queries: {e}")
            return QueryGenerationResult(queries=fallback, error=str(e))

        queries = []
        for query in result.output.queries:
            query = query.strip().lower()
            if query and query not in queries:
                queries.append(query)
        if not queries:
            return QueryGenerationResult(queries=fallback, error="LLM returned no queries")

        logger.info(f"QUERY_GENERATOR: {product_name} -> {queries[:MAX_QUERIES]}")
        return QueryGenerationResult(
            queries=queries[:MAX_QUERIES],
            was_llm_generated=True,
            reasoning=result.output.reasoning,
        )
