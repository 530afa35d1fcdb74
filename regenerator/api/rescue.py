"""Structured extraction from unreliable model output.

Stage 1 cleans the text (code fences, surrounding chatter, raw control
characters) and attempts a strict JSON parse. Stage 2 runs when that fails:
every field is pulled out individually with a targeted regex, and fields
that cannot be recovered take the defaults declared below. A content body
that is still missing or implausibly short after both stages is fatal for
the page run and raises ``RescueError``.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from .models import AIStrategy, ContentBlocks, FAQItem, ProductSpecs, StrategyProduct, Verdict

logger = logging.getLogger("regenerator.rescue")

MIN_BODY_LENGTH = 50

# Stage 2 defaults. Changing these changes what gets published when the
# model output is malformed.
DEFAULT_VERDICT_SCORE = 85.0
DEFAULT_PROS: List[str] = []
DEFAULT_CONS: List[str] = []
DEFAULT_COMMERCIAL_INTENT = True
DEFAULT_PRODUCT_CONTEXT = "Top Pick"

_STRING_VALUE = r'"((?:[^"\\]|\\.)*)"'


class RescueError(RuntimeError):
    pass


def clean_json_output(text: str) -> str:
    cleaned = text or ""
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", cleaned, flags=re.IGNORECASE)
    if fenced:
        cleaned = fenced.group(1)
    cleaned = cleaned.strip()
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first >= 0 and last > first:
        cleaned = cleaned[first:last + 1]
    return re.sub(r"[\x00-\x1F]+", " ", cleaned)


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(clean_json_output(text))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _decode_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw.replace('\\"', '"').replace("\\n", "\n").replace("\\/", "/")


def extract_string_field(text: str, *names: str) -> str:
    for name in names:
        match = re.search(rf'"{re.escape(name)}"\s*:\s*{_STRING_VALUE}', text, flags=re.DOTALL)
        if match:
            return _decode_string(match.group(1))
    return ""


def extract_number_field(text: str, *names: str) -> Optional[float]:
    for name in names:
        match = re.search(rf'"{re.escape(name)}"\s*:\s*"?(-?\d+(?:\.\d+)?)', text)
        if match:
            return float(match.group(1))
    return None


def extract_bool_field(text: str, *names: str) -> Optional[bool]:
    for name in names:
        match = re.search(rf'"{re.escape(name)}"\s*:\s*"?(true|false)"?', text, flags=re.IGNORECASE)
        if match:
            return match.group(1).lower() == "true"
    return None


def _extract_array_body(text: str, *names: str) -> Optional[str]:
    for name in names:
        match = re.search(rf'"{re.escape(name)}"\s*:\s*\[(.*?)\]', text, flags=re.DOTALL)
        if match:
            return match.group(1)
    return None


def extract_string_list(text: str, *names: str) -> List[str]:
    body = _extract_array_body(text, *names)
    if body is None:
        return []
    return [_decode_string(item) for item in re.findall(_STRING_VALUE, body)]


def extract_int_list(text: str, *names: str) -> List[int]:
    body = _extract_array_body(text, *names)
    if body is None:
        return []
    return [int(item) for item in re.findall(r"-?\d+", body)]


def _extract_objects(text: str, *names: str) -> List[str]:
    body = _extract_array_body(text, *names)
    if body is None:
        return []
    return re.findall(r"\{[^{}]*\}", body, flags=re.DOTALL)


def _pick(payload: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    digits = re.sub(r"[^\d]", "", str(value or ""))
    return int(digits) if digits else default


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    if value is None:
        return default
    return bool(value)


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [_as_text(item) for item in value if _as_text(item)]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _as_int_list(value: Any) -> List[int]:
    if not isinstance(value, list):
        return []
    ids: List[int] = []
    for item in value:
        try:
            ids.append(int(str(item).strip()))
        except ValueError:
            continue
    return ids


def _strategy_from_payload(payload: Dict[str, Any]) -> AIStrategy:
    verdict_raw = _pick(payload, "verdict", "verdictData", default={})
    if not isinstance(verdict_raw, dict):
        verdict_raw = {}
    specs_raw = _pick(payload, "specs", "newProductSpecs", default={})
    if not isinstance(specs_raw, dict):
        specs_raw = {}

    products_raw = _pick(payload, "products", default=[])
    if isinstance(products_raw, (str, dict)):
        products_raw = [products_raw]
    elif not isinstance(products_raw, list):
        products_raw = []

    products: List[StrategyProduct] = []
    for item in products_raw:
        if isinstance(item, dict) and _as_text(item.get("name")):
            products.append(
                StrategyProduct(
                    name=_as_text(item.get("name")),
                    context=_as_text(item.get("context")),
                    recommended=_as_bool(item.get("recommended")),
                )
            )
        elif isinstance(item, str) and item.strip():
            products.append(StrategyProduct(name=item.strip()))

    return AIStrategy(
        old_product=_as_text(_pick(payload, "oldProduct", "old_product")),
        new_product=_as_text(_pick(payload, "newProduct", "new_product")),
        primary_keyword=_as_text(_pick(payload, "primaryKeyword", "primary_keyword")),
        secondary_keywords=_as_str_list(_pick(payload, "secondaryKeywords", "secondary_keywords")),
        target_audience=_as_text(_pick(payload, "targetAudience", "target_audience")),
        verdict=Verdict(
            score=_as_float(verdict_raw.get("score"), DEFAULT_VERDICT_SCORE),
            pros=_as_str_list(verdict_raw.get("pros")),
            cons=_as_str_list(verdict_raw.get("cons")),
            summary=_as_text(verdict_raw.get("summary")),
            target_audience=_as_text(_pick(verdict_raw, "targetAudience", "target_audience")),
        ),
        specs=ProductSpecs(
            price=_as_text(specs_raw.get("price")),
            rating=_as_float(specs_raw.get("rating")),
            review_count=_as_int(_pick(specs_raw, "reviewCount", "review_count")),
        ),
        internal_link_ids=_as_int_list(_pick(payload, "internalLinkIds", "internal_link_ids", default=[])),
        outline=_as_str_list(_pick(payload, "outline")),
        bluf=_as_text(_pick(payload, "bluf", "blufSentence")),
        commercial_intent=_as_bool(_pick(payload, "commercialIntent", "commercial_intent"), DEFAULT_COMMERCIAL_INTENT),
        products=products,
    )


def _rescue_strategy(text: str) -> AIStrategy:
    products: List[StrategyProduct] = []
    for obj in _extract_objects(text, "products"):
        name = extract_string_field(obj, "name")
        if not name:
            continue
        products.append(
            StrategyProduct(
                name=name,
                context=extract_string_field(obj, "context") or DEFAULT_PRODUCT_CONTEXT,
                recommended=bool(extract_bool_field(obj, "recommended")),
            )
        )

    score = extract_number_field(text, "score")
    commercial_intent = extract_bool_field(text, "commercialIntent", "commercial_intent")
    return AIStrategy(
        old_product=extract_string_field(text, "oldProduct", "old_product"),
        new_product=extract_string_field(text, "newProduct", "new_product"),
        primary_keyword=extract_string_field(text, "primaryKeyword", "primary_keyword"),
        secondary_keywords=extract_string_list(text, "secondaryKeywords", "secondary_keywords"),
        target_audience=extract_string_field(text, "targetAudience", "target_audience"),
        verdict=Verdict(
            score=score if score is not None else DEFAULT_VERDICT_SCORE,
            pros=extract_string_list(text, "pros") or list(DEFAULT_PROS),
            cons=extract_string_list(text, "cons") or list(DEFAULT_CONS),
            summary=extract_string_field(text, "summary"),
            target_audience=extract_string_field(text, "targetAudience", "target_audience"),
        ),
        specs=ProductSpecs(
            price=extract_string_field(text, "price"),
            rating=extract_number_field(text, "rating") or 0.0,
            review_count=int(extract_number_field(text, "reviewCount", "review_count") or 0),
        ),
        internal_link_ids=extract_int_list(text, "internalLinkIds", "internal_link_ids"),
        outline=extract_string_list(text, "outline"),
        bluf=extract_string_field(text, "bluf", "blufSentence"),
        commercial_intent=DEFAULT_COMMERCIAL_INTENT if commercial_intent is None else commercial_intent,
        products=products,
    )


def parse_strategy(raw_text: str) -> AIStrategy:
    payload = parse_json_object(raw_text)
    if payload is not None:
        strategy = _strategy_from_payload(payload)
    else:
        logger.warning("rescue.strategy_fallback length=%s", len(raw_text or ""))
        strategy = _rescue_strategy(clean_json_output(raw_text))

    if not strategy.new_product and not strategy.products:
        raise RescueError("Strategy output did not identify any product.")
    return strategy


def _content_from_payload(payload: Dict[str, Any]) -> ContentBlocks:
    faqs: List[FAQItem] = []
    for item in _pick(payload, "faqs", default=[]) or []:
        if not isinstance(item, dict):
            continue
        question = _as_text(_pick(item, "q", "question"))
        answer = _as_text(_pick(item, "a", "answer"))
        if question and answer:
            faqs.append(FAQItem(q=question, a=answer))
    return ContentBlocks(
        sge_summary=_as_text(_pick(payload, "sgeSummary", "sge_summary")),
        body_html=_as_text(_pick(payload, "bodyHtml", "body_html")),
        faqs=faqs,
        comparison_table_html=_as_text(_pick(payload, "comparisonTableHtml", "comparison_table_html")),
    )


def _rescue_content(text: str) -> ContentBlocks:
    faqs: List[FAQItem] = []
    for obj in _extract_objects(text, "faqs"):
        question = extract_string_field(obj, "q", "question")
        answer = extract_string_field(obj, "a", "answer")
        if question and answer:
            faqs.append(FAQItem(q=question, a=answer))
    return ContentBlocks(
        sge_summary=extract_string_field(text, "sgeSummary", "sge_summary"),
        body_html=extract_string_field(text, "bodyHtml", "body_html").strip(),
        faqs=faqs,
        comparison_table_html=extract_string_field(text, "comparisonTableHtml", "comparison_table_html"),
    )


def parse_content(raw_text: str) -> ContentBlocks:
    payload = parse_json_object(raw_text)
    if payload is not None:
        content = _content_from_payload(payload)
    else:
        logger.warning("rescue.content_fallback length=%s", len(raw_text or ""))
        content = _rescue_content(clean_json_output(raw_text))

    if len(content.body_html) < MIN_BODY_LENGTH:
        raise RescueError(
            f"Content body is missing or too short ({len(content.body_html)} chars); "
            f"raw output was {len(raw_text or '')} chars."
        )
    return content


def strategy_to_payload(strategy: AIStrategy) -> Dict[str, Any]:
    return {
        "oldProduct": strategy.old_product,
        "newProduct": strategy.new_product,
        "primaryKeyword": strategy.primary_keyword,
        "secondaryKeywords": list(strategy.secondary_keywords),
        "targetAudience": strategy.target_audience,
        "verdict": {
            "score": strategy.verdict.score,
            "pros": list(strategy.verdict.pros),
            "cons": list(strategy.verdict.cons),
            "summary": strategy.verdict.summary,
            "targetAudience": strategy.verdict.target_audience,
        },
        "specs": {
            "price": strategy.specs.price,
            "rating": strategy.specs.rating,
            "reviewCount": strategy.specs.review_count,
        },
        "internalLinkIds": list(strategy.internal_link_ids),
        "outline": list(strategy.outline),
        "bluf": strategy.bluf,
        "commercialIntent": strategy.commercial_intent,
        "products": [
            {"name": item.name, "context": item.context, "recommended": item.recommended}
            for item in strategy.products
        ],
    }
