"""Product card templating and final page assembly.

``render_final_html`` is the only way publishable HTML is produced from a
stored content template: preview and publish both call it with the same
``(template, products, overrides, tag)`` and get the same bytes back.
"""
from __future__ import annotations

import html
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote_plus

from .models import FAQItem, MarketplaceProduct, ProductDetection, ProductOverride

DEFAULT_AFFILIATE_TAG = "tag-20"
PLACEHOLDER_IMAGE = "https://placehold.co/600x400/e2e8f0/1e293b?text=Product+Image"
DEFAULT_PRICE = "Check Price"
DEFAULT_RATING = "9.5"
DEFAULT_REVIEW_COUNT = "Hundreds of"
DEFAULT_FEATURES = ("Latest Model Upgrade", "High Performance")
CARD_CLASS = "sota-product-card"
FALLBACK_NAME_WORDS = 3

PRODUCT_BOX_TEMPLATE = "[[PRODUCT_BOX:{index}]]"
PRODUCT_BOX_PATTERN = re.compile(r"\[\[PRODUCT_BOX:\s*(\d+)\s*\]\]")


def is_valid_asin(text: Optional[str]) -> bool:
    return bool(re.match(r"^[B0-9][A-Z0-9]{9}$", (text or "").strip().upper()))


def marketplace_product_url(asin: str, tag: str) -> str:
    clean_asin = asin.strip().upper()
    suffix = f"?tag={quote_plus(tag)}" if tag else ""
    return f"https://www.amazon.com/dp/{clean_asin}{suffix}"


def marketplace_search_url(query: str, tag: str) -> str:
    suffix = f"&tag={quote_plus(tag)}" if tag else ""
    return f"https://www.amazon.com/s?k={quote_plus(query)}{suffix}"


def find_override(
    product: ProductDetection,
    overrides: Optional[Mapping[str, ProductOverride]],
) -> Optional[ProductOverride]:
    if not overrides:
        return None
    if product.name in overrides:
        return overrides[product.name]
    if product.url and product.url in overrides:
        return overrides[product.url]
    return None


def resolve_product_fields(
    product: ProductDetection,
    override: Optional[ProductOverride],
    tag: str,
) -> Dict[str, Any]:
    """Manual override beats live marketplace data, which beats the strategy name."""
    live: Optional[MarketplaceProduct] = product.marketplace_data
    manual = override or ProductOverride()

    name = manual.title or (live.title if live else "") or product.name
    image = manual.image or (live.image_url if live else "") or PLACEHOLDER_IMAGE
    price = manual.price or (live.price if live else "") or DEFAULT_PRICE
    rating = (live.rating if live else None) or DEFAULT_RATING
    review_count = (live.review_count if live else None) or DEFAULT_REVIEW_COUNT
    features = list(live.features[:3]) if live and live.features else list(DEFAULT_FEATURES)

    live_asin = (live.asin if live else None) or product.asin
    if manual.asin and is_valid_asin(manual.asin):
        url = marketplace_product_url(manual.asin, tag)
    elif live_asin and is_valid_asin(live_asin):
        url = marketplace_product_url(live_asin, tag)
    elif live and live.url:
        url = live.url
    else:
        url = marketplace_search_url(name, tag)

    return {
        "name": name,
        "image": image,
        "price": price,
        "rating": rating,
        "review_count": review_count,
        "features": features,
        "url": url,
    }


def product_card_html(fields: Mapping[str, Any]) -> str:
    esc = html.escape
    features = "".join(
        f"<li><span class=\"sota-check\">&#10003;</span>{esc(str(item))}</li>" for item in fields["features"]
    )
    return (
        f"<div class=\"{CARD_CLASS}\">"
        "<div class=\"sota-card-header\">"
        "<span class=\"sota-card-label\">Top Choice</span>"
        f"<span class=\"sota-card-rating\">{esc(str(fields['rating']))}/10</span>"
        "</div>"
        "<div class=\"sota-card-body\">"
        f"<img src=\"{esc(fields['image'])}\" alt=\"{esc(fields['name'])}\" loading=\"lazy\">"
        f"<h3>{esc(fields['name'])}</h3>"
        f"<ul class=\"sota-card-features\">{features}</ul>"
        "<div class=\"sota-card-meta\">"
        f"<span class=\"sota-card-price\">{esc(str(fields['price']))}</span>"
        f"<span class=\"sota-card-reviews\">{esc(str(fields['review_count']))} Verified Reviews</span>"
        "</div>"
        f"<a href=\"{esc(fields['url'])}\" class=\"sota-card-cta\" target=\"_blank\" rel=\"nofollow sponsored\">"
        "Check Price on Amazon &rarr;</a>"
        "</div>"
        "</div>"
    )


def _card_marker(index: int) -> str:
    return f"\x00card:{index}\x00"


def _insert_after_heading(body: str, product_name: str, marker: str) -> Optional[str]:
    short_name = " ".join(product_name.split()[:FALLBACK_NAME_WORDS])
    if not short_name:
        return None
    pattern = re.compile(
        rf"(<h[23][^>]*>(?:(?!</h[23]>).)*?{re.escape(short_name)}.*?</h[23]>)",
        flags=re.IGNORECASE | re.DOTALL,
    )
    if not pattern.search(body):
        return None
    return pattern.sub(lambda match: f"{match.group(1)}\n{marker}", body, count=1)


def render_final_html(
    template: str,
    products: Sequence[ProductDetection],
    overrides: Optional[Mapping[str, ProductOverride]] = None,
    marketplace_tag: Optional[str] = None,
) -> str:
    tag = marketplace_tag or DEFAULT_AFFILIATE_TAG
    body = template or ""
    has_card = CARD_CLASS in body
    cards: Dict[str, str] = {}

    # Cards go in as markers first so heading lookups never see card markup.
    for index, product in enumerate(products):
        marker = _card_marker(index)
        cards[marker] = product_card_html(resolve_product_fields(product, find_override(product, overrides), tag))
        placeholder = PRODUCT_BOX_TEMPLATE.format(index=index)
        if placeholder in body:
            body = body.replace(placeholder, marker, 1)
            has_card = True
            continue

        inserted = _insert_after_heading(body, product.name, marker)
        if inserted is not None:
            body = inserted
            has_card = True
        elif index == 0 and not has_card:
            body = marker + body
            has_card = True

    # Placeholders pointing past the product list, or repeated ones, have nothing to render.
    body = PRODUCT_BOX_PATTERN.sub("", body)
    for marker, card in cards.items():
        body = body.replace(marker, card)
    return body


def build_faq_html_and_schema(faqs: Sequence[FAQItem]) -> Tuple[str, Optional[Dict[str, Any]]]:
    if not faqs:
        return "", None
    items = "".join(
        f"<details><summary><strong>{html.escape(item.q)}</strong></summary><p>{html.escape(item.a)}</p></details>"
        for item in faqs
    )
    faq_html = f"<div class=\"sota-faq-section\"><h2>FAQ</h2>{items}</div>"
    schema = {
        "@type": "FAQPage",
        "mainEntity": [
            {
                "@type": "Question",
                "name": item.q,
                "acceptedAnswer": {"@type": "Answer", "text": item.a},
            }
            for item in faqs
        ],
    }
    return faq_html, schema


def build_schema(
    headline: str,
    products: Sequence[ProductDetection],
    faq_schema: Optional[Dict[str, Any]] = None,
) -> str:
    graph: List[Dict[str, Any]] = [
        {
            "@context": "https://schema.org",
            "@type": "Article",
            "headline": headline,
            "mainEntity": [
                {"@type": "Product", "name": product.name, "url": product.url}
                for product in products
            ],
        }
    ]
    if faq_schema:
        graph.append({"@context": "https://schema.org", **faq_schema})
    return json.dumps(graph, ensure_ascii=False)


def assemble_document(
    *,
    sge_summary_html: str,
    content_html: str,
    comparison_table_html: str = "",
    faq_html: str = "",
    schema_json: str = "",
) -> str:
    parts: List[str] = []
    if sge_summary_html:
        parts.append(f"<div class=\"sota-sge-summary\">{sge_summary_html}</div>")
    parts.append(content_html)
    if comparison_table_html:
        parts.append(f"<div class=\"sota-comparison\">{comparison_table_html}</div>")
    if faq_html:
        parts.append(faq_html)
    if schema_json:
        # "</" inside a script block would end it early.
        safe_json = schema_json.replace("</", "<\\/")
        parts.append(f"<script type=\"application/ld+json\">{safe_json}</script>")
    return "\n".join(parts)
