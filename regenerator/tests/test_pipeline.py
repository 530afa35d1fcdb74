import json
from datetime import datetime, timezone

import pytest
from pydantic import BaseModel

from regenerator.api.marketplace import MarketplaceClient
from regenerator.api.mesh import build_mesh
from regenerator.api.models import AIStrategy, AnalysisResult, JobRecord, PageRecord, ProductOverride, StrategyProduct
from regenerator.api.pipeline import (
    PageProcessor,
    PipelineDeps,
    PipelineError,
    build_meta_description,
    build_title,
    lookup_products,
    render_analysis,
    run_page_pipeline,
    with_product_fallback,
)
from regenerator.api.prompts import CONTENT_SYSTEM_PROMPT

STRATEGY = {
    "oldProduct": "Widget Pro",
    "newProduct": "Widget Pro 2",
    "primaryKeyword": "widget pro 2 review",
    "verdict": {"score": 91, "pros": ["Fast"], "cons": ["Pricey"], "summary": "Worth it."},
    "internalLinkIds": [2, 99],
    "bluf": "The Widget Pro 2 is the upgrade to buy. It is faster.",
    "commercialIntent": True,
    "products": [],
}
BODY = (
    "<h2>Widget Pro 2 at a glance</h2>[[PRODUCT_BOX:0]]"
    "<p>Pair it with the right add-ons: [[LINK:2]] and [[LINK:99]].</p>"
    "<p>Also see <a href=\"/made-up-page/\">our invented guide</a>.</p>"
)
CONTENT = {
    "sgeSummary": "<p>Short answer: buy it.</p>",
    "bodyHtml": BODY,
    "faqs": [{"q": "Is it waterproof?", "a": "Yes."}],
    "comparisonTableHtml": "<table><tr><td>Widget Pro 2</td></tr></table>",
}


class FakeLLM:
    def __init__(self, strategy=STRATEGY, content=CONTENT):
        self.strategy = strategy
        self.content = content
        self.calls = []

    def generate(self, system_prompt, user_prompt):
        phase = "content" if system_prompt == CONTENT_SYSTEM_PROMPT else "strategy"
        self.calls.append((phase, user_prompt))
        return json.dumps(self.content if phase == "content" else self.strategy)


class FlakyMarketplace:
    def lookup(self, query):
        if query == "Broken Gadget":
            raise RuntimeError("lookup exploded")
        return MarketplaceClient(year=2026).lookup(query)


PAGES = [
    PageRecord(id=1, slug="widget-pro-review", title="Widget Pro Review", link="https://blog.example.com/widget-pro-review/",
               html="<h2>Widget Pro</h2><p>Old review text.</p>"),
    PageRecord(id=2, slug="widget-accessories", title="Widget Pro Accessories Guide",
               link="https://blog.example.com/widget-accessories/"),
    PageRecord(id=3, slug="garden-hose-tips", title="Garden hose tips", link="https://blog.example.com/garden-hose-tips/"),
]


def test_title_and_meta_description():
    strategy = AIStrategy(new_product="Widget Pro 2", bluf="First sentence here. Second one.")
    assert build_title(strategy, "Old title", 2026) == "Widget Pro 2 Review (2027)"
    assert build_title(AIStrategy(), "Old title", 2026) == "Old title"
    assert build_meta_description(strategy) == "First sentence here."
    long_text = AIStrategy(bluf="word " * 60)
    description = build_meta_description(long_text)
    assert len(description) <= 160
    assert description.endswith("...")


def test_analysis_fields_do_not_shadow_model_attributes():
    assert not set(AnalysisResult.model_fields) & set(dir(BaseModel))


def test_product_fallback_uses_successor_as_single_pick():
    strategy = with_product_fallback(AIStrategy(new_product="Widget Pro 2"))
    assert [product.name for product in strategy.products] == ["Widget Pro 2"]
    assert strategy.products[0].recommended

    kept = AIStrategy(new_product="X", products=[StrategyProduct(name="Y")])
    assert with_product_fallback(kept) is kept

    with pytest.raises(PipelineError):
        with_product_fallback(AIStrategy())


@pytest.mark.asyncio
async def test_failed_lookup_yields_bare_detection():
    detections = await lookup_products(FlakyMarketplace(), ["Widget Pro 2", "Broken Gadget"])
    assert detections[0].marketplace_data is not None
    assert detections[0].asin == detections[0].marketplace_data.asin
    assert detections[1].name == "Broken Gadget"
    assert detections[1].marketplace_data is None
    assert detections[1].url == ""


@pytest.mark.asyncio
async def test_run_page_pipeline_end_to_end():
    llm = FakeLLM()
    deps = PipelineDeps(llm=llm, marketplace=MarketplaceClient(tag="mysite-20", year=2026), affiliate_tag="mysite-20")
    nodes = build_mesh(PAGES)

    analysis = await run_page_pipeline(PAGES[0], nodes, deps, year=2026)

    assert [phase for phase, _ in llm.calls] == ["strategy", "content"]
    assert "ID: 2 | Title: Widget Pro Accessories Guide" in llm.calls[0][1]
    assert "ID: 1 |" not in llm.calls[0][1]

    assert analysis.new_title == "Widget Pro 2 Review (2027)"
    assert analysis.meta_description == "The Widget Pro 2 is the upgrade to buy."
    assert [product.name for product in analysis.detected_products] == ["Widget Pro 2"]
    assert analysis.used_internal_links == [2]

    template = analysis.content_template
    assert "[[PRODUCT_BOX:0]]" in template
    assert "[[LINK" not in template
    assert "https://blog.example.com/widget-accessories/" in template
    assert "made-up-page" not in template
    assert "our invented guide" in template

    final = analysis.final_html
    assert "[[" not in final
    assert final.count("sota-product-card") == 1
    assert "sota-faq-section" in final
    assert "application/ld+json" in final
    assert final.index("Short answer") < final.index("Widget Pro 2 at a glance")
    assert analysis.content_html in final

    graph = json.loads(analysis.model_dump()["schema_ld_json"])
    assert graph[0]["@type"] == "Article"
    assert "Article" in final.split("application/ld+json")[1]


@pytest.mark.asyncio
async def test_pipeline_applies_overrides_and_rerenders_identically():
    deps = PipelineDeps(llm=FakeLLM(), marketplace=MarketplaceClient(year=2026), affiliate_tag="mysite-20")
    overrides = {"Widget Pro 2": ProductOverride(asin="B000000000")}

    analysis = await run_page_pipeline(PAGES[0], build_mesh(PAGES), deps, overrides=overrides, year=2026)

    assert "https://www.amazon.com/dp/B000000000?tag=mysite-20" in analysis.final_html
    assert render_analysis(analysis, overrides, "mysite-20") == analysis.final_html


@pytest.mark.asyncio
async def test_empty_page_is_rejected():
    deps = PipelineDeps(llm=FakeLLM())
    with pytest.raises(PipelineError):
        await run_page_pipeline(PageRecord(id=5, title="Empty"), [], deps, year=2026)


class FakeStore:
    def fetch_full_content(self, page_id):
        page = PAGES[0].model_copy(update={"modified": datetime(2020, 1, 1, tzinfo=timezone.utc)})
        return page


@pytest.mark.asyncio
async def test_page_processor_scores_before_generating():
    deps = PipelineDeps(llm=FakeLLM(), marketplace=MarketplaceClient(year=2026))
    processor = PageProcessor(FakeStore(), deps, site_url="https://blog.example.com", nodes=build_mesh(PAGES))
    advanced = []

    analysis = await processor(JobRecord(page_id=1), lambda status, **fields: advanced.append((status, fields)))

    assert advanced[0][0] == "optimizing"
    assert advanced[0][1]["metrics"].days_since_modified > 365
    assert advanced[0][1]["scores"].seo < 100
    assert analysis.detected_products[0].name == "Widget Pro 2"


@pytest.mark.asyncio
async def test_page_processor_requires_store():
    processor = PageProcessor(None, PipelineDeps(llm=FakeLLM()))
    with pytest.raises(PipelineError):
        await processor(JobRecord(page_id=1), lambda status, **fields: None)
