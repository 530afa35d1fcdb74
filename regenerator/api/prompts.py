from __future__ import annotations

import json
from typing import Any, Dict, Sequence

from .models import PAAData, ReferenceData

STRATEGY_TEXT_LIMIT = 2000
INVENTORY_LIMIT = 30
COMPETITOR_LIMIT = 8
PAA_LIMIT = 6
MIN_INTERNAL_LINKS = 6
MAX_INTERNAL_LINKS = 10

STRATEGY_SYSTEM_PROMPT = """ROLE: Elite SEO strategist.
TASK: Analyze the content snapshot and return a strategy object.

CRITICAL RULES:
1. Product detection: identify the MAIN product discussed (old) and its current successor ({year}).
2. Multi-product: if the page is a roundup (e.g. "Best 5 X"), list EVERY product in "products", in the order they should appear.
   For a single-product page, "products" holds exactly one entry.
3. Linking: select EXACTLY {min_links}-{max_links} internal link IDs, chosen only from LINK INVENTORY.
4. Verdict: concise and authoritative.

OUTPUT SCHEMA (JSON only, no markdown):
{{
  "oldProduct": "string",
  "newProduct": "string (main successor)",
  "primaryKeyword": "string",
  "secondaryKeywords": ["string"],
  "targetAudience": "string",
  "verdict": {{"score": 90, "pros": ["a", "b"], "cons": ["c", "d"], "summary": "string", "targetAudience": "string"}},
  "specs": {{"price": "$99", "rating": 9.5, "reviewCount": 1000}},
  "internalLinkIds": [123, 456],
  "outline": ["H2: ..."],
  "bluf": "string",
  "commercialIntent": true,
  "products": [{{"name": "Product Name", "context": "Best for Beginners", "recommended": true}}]
}}"""

CONTENT_SYSTEM_PROMPT = """ROLE: Expert SEO writer.
TASK: Write HTML content blocks for the strategy below.

INSTRUCTIONS:
1. Direct answer: "sgeSummary" is under 200 words, answers the query directly, bolds key entities with <b>.
2. Body: HTML only (h2, h3, p, ul, ol). No markdown.
3. Linking: for each internal link ID in the strategy write [[LINK:ID]] exactly where the link belongs. Never write raw internal URLs.
4. Product placeholders: write [[PRODUCT_BOX:INDEX]] where each product card belongs. INDEX is the position in the strategy "products" array, starting at 0.
   Example: <h2>Nike Pegasus</h2>\\n[[PRODUCT_BOX:0]]\\n<p>Review text...</p>
5. FAQ: 4-6 questions with short answers.
6. Comparison table: an HTML <table> when two or more products are compared, otherwise "".

OUTPUT SCHEMA (JSON only, no markdown):
{
  "sgeSummary": "HTML",
  "bodyHtml": "HTML with placeholders",
  "faqs": [{"q": "...", "a": "..."}],
  "comparisonTableHtml": "HTML table or ''"
}"""


def build_strategy_system_prompt(year: int) -> str:
    return STRATEGY_SYSTEM_PROMPT.format(
        year=year,
        min_links=MIN_INTERNAL_LINKS,
        max_links=MAX_INTERNAL_LINKS,
    )


def build_strategy_user_prompt(
    *,
    title: str,
    raw_text: str,
    inventory: str,
    references: Sequence[ReferenceData],
    questions: Sequence[PAAData] = (),
) -> str:
    competitors = "\n".join(f"- {ref.title}: {ref.snippet}" for ref in references[:COMPETITOR_LIMIT])
    paa = "\n".join(f"- {item.question}" for item in questions[:PAA_LIMIT])
    snapshot = raw_text[:STRATEGY_TEXT_LIMIT]
    return (
        f"CONTENT SNAPSHOT: {snapshot}...\n"
        f"TITLE: {title}\n"
        f"LINK INVENTORY:\n{inventory or '(none)'}\n"
        f"COMPETITORS:\n{competitors or '(none)'}\n"
        f"PEOPLE ALSO ASK:\n{paa or '(none)'}"
    )


def build_content_user_prompt(strategy_payload: Dict[str, Any]) -> str:
    return f"STRATEGY: {json.dumps(strategy_payload, ensure_ascii=False)}\nWRITE NOW."
