"""
Analysis prompts for the AI step.

Two templates describe the same required output:

    1. Standard - terse instructions for capable hosted models
    2. Small model - chain-of-thought walk-through with a few-shot example,
       used for local/low-capability models that drift off-format

Both branches embed the JSON schema from ``PromptBuilder.output_schema`` as
the last block of the prompt, so the structure the model is asked for never
depends on which branch was taken. Optional modules (pricing, catalog,
marketing) append an instruction paragraph and a top-level schema field.
"""

import json
from typing import Any, Iterable


# =============================================================================
# Configuration
# =============================================================================

SMALL_MODEL_PATTERNS = (
    "gemma",
    "glm-4",
    "llama2-7b",
    "llama-7b",
    "phi",
    "mistral-7b",
    "qwen-7b",
)

# Order in which optional modules are rendered, regardless of input order
MODULE_ORDER = ("pricing", "catalog", "marketing")


# =============================================================================
# Output Schema
# =============================================================================

BASE_SCHEMA: dict[str, Any] = {
    "competitors": [
        {
            "name": "Competitor Name",
            "url": "https://example.com",
            "price": "99.99",
            "currency": "USD",
            "stock_status": "in_stock|out_of_stock|unknown",
            "comparison_notes": "Brief comparison notes",
        }
    ],
    "content_analysis": {
        "my_tone": "Tone description",
        "competitor_tone": "Tone description",
        "missing_keywords": ["keyword1", "keyword2"],
        "improvement_suggestion": "Suggested improvement text",
    },
    "sentiment_analysis": {
        "competitor_weaknesses": ["weakness1", "weakness2"],
        "market_gaps": ["gap1", "gap2"],
    },
    "strategy": {
        "pricing_advice": "Pricing recommendation",
        "action_items": ["action1", "action2"],
    },
}

MODULE_SCHEMAS: dict[str, tuple[str, dict[str, Any]]] = {
    "pricing": (
        "pricing_intelligence",
        {
            "price_distribution": {"min": "0.00", "max": "0.00", "average": "0.00"},
            "discount_patterns": ["pattern1", "pattern2"],
            "positioning": "premium|mid-range|budget",
        },
    ),
    "catalog": (
        "catalog_intelligence",
        {
            "variants": ["variant1", "variant2"],
            "unique_features": ["feature1", "feature2"],
            "product_line_breadth": "narrow|moderate|extensive",
        },
    ),
    "marketing": (
        "marketing_intelligence",
        {
            "messaging": "Key messaging themes",
            "target_audience": "Audience description",
            "brand_positioning": "Positioning description",
            "promotional_tactics": ["tactic1", "tactic2"],
        },
    ),
}


# =============================================================================
# Module Instructions
# =============================================================================

MODULE_INSTRUCTIONS: dict[str, str] = {
    "pricing": """
## Pricing Intelligence
Analyze competitor pricing strategies:
- Price distribution (min, max, average)
- Discount patterns
- Bundle offerings
- Price positioning (premium, mid-range, budget)
""",
    "catalog": """
## Product Catalog Intelligence
Analyze competitor product offerings:
- Product variants and options
- Feature comparisons
- Unique selling propositions
- Product line breadth
""",
    "marketing": """
## Marketing & Positioning Intelligence
Analyze competitor marketing strategies:
- Messaging and value propositions
- Target audience indicators
- Brand positioning
- Promotional tactics
""",
}


# =============================================================================
# Templates
# =============================================================================

STANDARD_PROMPT = """Analyze the search results to find competitors selling the same product.
Compare prices, specifications, and availability.

Also perform:
1. Content Gap Analysis: Compare the tone and identify keywords present in competitor descriptions but missing in mine.
2. Sentiment Analysis: Identify common competitor weaknesses or complaints based on reviews/snippets.
3. Strategic Advice: Provide pricing and positioning advice based on the comparison.
{module_prompts}
Return a strictly valid JSON (no markdown) with this structure:
{schema}"""

SMALL_MODEL_PROMPT = """# Task: Competitor Analysis

Let's analyze competitors step by step:

## Step 1: Identify Competitors
Look through the search results and find products matching our product.
For each competitor, extract:
- Name
- URL
- Price (number only)
- Currency (USD, EUR, etc.)
- Stock status (in_stock, out_of_stock, or unknown)

Example:
If you see "Buy Widget Pro for $99.99 at TechStore", extract:
{example}

## Step 2: Content Analysis
Compare my product description with competitor descriptions.
Find keywords they use that I don't.

## Step 3: Sentiment Analysis
Look for competitor weaknesses or complaints in reviews.

## Step 4: Strategic Advice
Based on the comparison, suggest pricing and positioning.
{module_prompts}
## Output Format
Return ONLY valid JSON (no markdown, no code blocks):
{schema}"""

FEW_SHOT_COMPETITOR = {
    "name": "TechStore",
    "url": "https://techstore.com/widget-pro",
    "price": "99.99",
    "currency": "USD",
    "stock_status": "in_stock",
}


class PromptBuilder:
    """
    Builds the instruction text sent to the AI provider.

    Example:
        >>> builder = PromptBuilder()
        >>> prompt = builder.build("gemma-2b", {"pricing"})
        >>> "step by step" in prompt
        True
    """

    def is_small_model(self, model_name: str) -> bool:
        """Case-insensitive substring match against known small model names."""
        model_lower = (model_name or "").lower()
        return any(pattern in model_lower for pattern in SMALL_MODEL_PATTERNS)

    def output_schema(self, enabled_modules: Iterable[str] = ()) -> dict[str, Any]:
        """Required output structure for the given optional modules."""
        enabled = set(enabled_modules)
        schema = json.loads(json.dumps(BASE_SCHEMA))
        for module in MODULE_ORDER:
            if module in enabled:
                field_name, field_schema = MODULE_SCHEMAS[module]
                schema[field_name] = json.loads(json.dumps(field_schema))
        return schema

    def build(self, model_name: str, enabled_modules: Iterable[str] = ()) -> str:
        """Build the prompt for ``model_name`` with the given optional modules."""
        enabled = set(enabled_modules)
        schema = json.dumps(self.output_schema(enabled), indent=2)
        module_prompts = self._module_prompts(enabled)

        if self.is_small_model(model_name):
            return SMALL_MODEL_PROMPT.format(
                example=json.dumps(FEW_SHOT_COMPETITOR, indent=2),
                module_prompts=module_prompts,
                schema=schema,
            )

        return STANDARD_PROMPT.format(module_prompts=module_prompts, schema=schema)

    def _module_prompts(self, enabled: set[str]) -> str:
        return "".join(
            MODULE_INSTRUCTIONS[module] for module in MODULE_ORDER if module in enabled
        )
