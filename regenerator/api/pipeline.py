"""Two-phase page regeneration.

One call to :func:`run_page_pipeline` turns a fetched page plus the shared
mesh into an :class:`AnalysisResult`:

1. strategy prompt (page text, link inventory, competitor snippets)
2. content prompt and per-product marketplace lookups, concurrently
3. ``[[LINK:id]]`` resolution and link sanitization of the template
4. product card rendering, FAQ block, JSON-LD, final assembly

Blocking collaborators (LLM, lookups, search) run in worker threads so the
event loop stays free for other jobs. The mesh is only read.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .config import ScoringPolicy
from .health import calculate_scores, extract_metrics, strip_html_preserving_structure
from .links import AFFILIATE_DOMAINS, resolve_link_placeholders, sanitize_links
from .marketplace import MarketplaceClient
from .mesh import DEFAULT_MESH_SIZE, SemanticNode, find_neighbors, format_inventory
from .models import (
    AIStrategy,
    AnalysisResult,
    ContentBlocks,
    JobRecord,
    PageRecord,
    ProductDetection,
    ProductOverride,
    SearchResult,
    StrategyProduct,
)
from .prompts import (
    CONTENT_SYSTEM_PROMPT,
    INVENTORY_LIMIT,
    build_content_user_prompt,
    build_strategy_system_prompt,
    build_strategy_user_prompt,
)
from .render import (
    DEFAULT_AFFILIATE_TAG,
    assemble_document,
    build_faq_html_and_schema,
    build_schema,
    render_final_html,
)
from .rescue import DEFAULT_PRODUCT_CONTEXT, parse_content, parse_strategy, strategy_to_payload
from .search import SearchClient

logger = logging.getLogger("regenerator.pipeline")

META_DESCRIPTION_LIMIT = 160


class PipelineError(RuntimeError):
    pass


@dataclass
class PipelineDeps:
    """Collaborators for one pipeline run. ``llm`` needs ``generate(system, user) -> str``."""

    llm: Any
    marketplace: MarketplaceClient = field(default_factory=MarketplaceClient)
    search: Optional[SearchClient] = None
    affiliate_tag: str = DEFAULT_AFFILIATE_TAG
    site_domain: str = ""
    affiliate_domains: Sequence[str] = AFFILIATE_DOMAINS
    mesh_size: int = DEFAULT_MESH_SIZE


def build_title(strategy: AIStrategy, fallback_title: str, year: int) -> str:
    product = strategy.new_product or (strategy.products[0].name if strategy.products else "")
    if not product:
        return fallback_title
    return f"{product} Review ({year + 1})"


def build_meta_description(strategy: AIStrategy) -> str:
    text = re.sub(r"\s+", " ", strategy.bluf or strategy.verdict.summary).strip()
    if not text:
        return ""
    match = re.match(r"(.+?[.!?])(\s|$)", text)
    sentence = match.group(1) if match else text
    if len(sentence) <= META_DESCRIPTION_LIMIT:
        return sentence
    return sentence[: META_DESCRIPTION_LIMIT - 3].rstrip() + "..."


def with_product_fallback(strategy: AIStrategy) -> AIStrategy:
    """A strategy without a product list renders its successor as the single pick."""
    if any(product.name.strip() for product in strategy.products):
        return strategy
    if not strategy.new_product:
        raise PipelineError("Strategy identified no product to render.")
    pick = StrategyProduct(name=strategy.new_product, context=DEFAULT_PRODUCT_CONTEXT, recommended=True)
    return strategy.model_copy(update={"products": [pick]})


def render_analysis(
    analysis: AnalysisResult,
    overrides: Optional[Mapping[str, ProductOverride]],
    affiliate_tag: str,
) -> str:
    """Final page HTML for ``analysis`` from its stored template."""
    content_html = render_final_html(
        analysis.content_template,
        analysis.detected_products,
        overrides,
        affiliate_tag,
    )
    return assemble_document(
        sge_summary_html=analysis.sge_summary_html,
        content_html=content_html,
        comparison_table_html=analysis.comparison_table_html,
        faq_html=analysis.faq_html,
        schema_json=analysis.schema_ld_json,
    )


async def lookup_products(marketplace: MarketplaceClient, names: Sequence[str]) -> List[ProductDetection]:
    """Look every product up concurrently; a failed lookup yields a bare detection."""
    results = await asyncio.gather(
        *(asyncio.to_thread(marketplace.lookup, name) for name in names),
        return_exceptions=True,
    )
    detections: List[ProductDetection] = []
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            logger.warning("pipeline.lookup_failed product=%s error=%s", name, result)
            result = None
        detections.append(
            ProductDetection(
                name=name,
                url=result.url if result else "",
                asin=result.asin if result else None,
                marketplace_data=result,
            )
        )
    return detections


async def _search_competitors(search: Optional[SearchClient], title: str) -> SearchResult:
    if search is None:
        return SearchResult()
    try:
        return await asyncio.to_thread(search.search, title)
    except Exception as exc:
        logger.warning("pipeline.search_failed title=%s error=%s", title, exc)
        return SearchResult()


async def generate_strategy(
    deps: PipelineDeps,
    page: PageRecord,
    neighbors: Sequence[SemanticNode],
    search_result: SearchResult,
    year: int,
) -> AIStrategy:
    system_prompt = build_strategy_system_prompt(year)
    user_prompt = build_strategy_user_prompt(
        title=page.title,
        raw_text=strip_html_preserving_structure(page.html),
        inventory=format_inventory(neighbors, INVENTORY_LIMIT),
        references=search_result.organic_results,
        questions=search_result.people_also_ask,
    )
    raw = await asyncio.to_thread(deps.llm.generate, system_prompt, user_prompt)
    return parse_strategy(raw)


async def generate_content(deps: PipelineDeps, strategy: AIStrategy) -> ContentBlocks:
    user_prompt = build_content_user_prompt(strategy_to_payload(strategy))
    raw = await asyncio.to_thread(deps.llm.generate, CONTENT_SYSTEM_PROMPT, user_prompt)
    return parse_content(raw)


async def run_page_pipeline(
    page: PageRecord,
    nodes: Sequence[SemanticNode],
    deps: PipelineDeps,
    *,
    overrides: Optional[Mapping[str, ProductOverride]] = None,
    year: Optional[int] = None,
) -> AnalysisResult:
    if not page.html.strip():
        raise PipelineError(f"Page {page.id} has no content to regenerate.")
    current_year = year or datetime.now(timezone.utc).year
    neighbors = find_neighbors(page.id, page.title, nodes, k=deps.mesh_size)

    logger.info("pipeline.strategy.start page_id=%s neighbors=%s", page.id, len(neighbors))
    search_result = await _search_competitors(deps.search, page.title)
    strategy = with_product_fallback(await generate_strategy(deps, page, neighbors, search_result, current_year))
    names = [product.name for product in strategy.products]
    logger.info("pipeline.strategy.done page_id=%s products=%s links=%s", page.id, len(names), len(strategy.internal_link_ids))

    content, detections = await asyncio.gather(
        generate_content(deps, strategy),
        lookup_products(deps.marketplace, names),
    )

    linked_template, used_links = resolve_link_placeholders(content.body_html, strategy.internal_link_ids, neighbors)
    template = sanitize_links(
        linked_template,
        nodes,
        site_domain=deps.site_domain,
        affiliate_domains=deps.affiliate_domains,
    )

    new_title = build_title(strategy, page.title, current_year)
    faq_html, faq_schema = build_faq_html_and_schema(content.faqs)
    analysis = AnalysisResult(
        strategy=strategy,
        new_title=new_title,
        meta_description=build_meta_description(strategy),
        sge_summary_html=content.sge_summary,
        comparison_table_html=content.comparison_table_html,
        faq_html=faq_html,
        schema_ld_json=build_schema(new_title, detections, faq_schema),
        content_template=template,
        content_html="",
        final_html="",
        detected_products=detections,
        used_internal_links=used_links,
    )
    content_html = render_final_html(template, detections, overrides, deps.affiliate_tag)
    final_html = render_analysis(analysis, overrides, deps.affiliate_tag)
    logger.info(
        "pipeline.done page_id=%s products=%s used_links=%s faqs=%s",
        page.id,
        len(detections),
        len(used_links),
        len(content.faqs),
    )
    return analysis.model_copy(update={"content_html": content_html, "final_html": final_html})


class PageProcessor:
    """Job handler: fetch and score the page, then run the pipeline on it."""

    def __init__(
        self,
        store: Any,
        deps: PipelineDeps,
        *,
        site_url: str = "",
        policy: Optional[ScoringPolicy] = None,
        nodes: Sequence[SemanticNode] = (),
    ):
        self.store = store
        self.deps = deps
        self.site_url = site_url
        self.policy = policy or ScoringPolicy()
        self.nodes: List[SemanticNode] = list(nodes)

    async def __call__(self, job: JobRecord, advance: Callable[..., None]) -> AnalysisResult:
        if self.store is None:
            raise PipelineError("No content store connected.")
        page = await asyncio.to_thread(self.store.fetch_full_content, job.page_id)
        metrics = extract_metrics(page.html, page.modified, self.site_url)
        advance("optimizing", metrics=metrics, scores=calculate_scores(metrics, self.policy))
        # The mesh list is replaced wholesale on reconnect, never mutated.
        return await run_page_pipeline(page, self.nodes, self.deps, overrides=job.overrides)
