from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

JOB_STATUSES = (
    "idle",
    "queued",
    "scanning",
    "optimizing",
    "review_pending",
    "published",
    "error",
)
ACTIVE_STATUSES = frozenset({"scanning", "optimizing"})


class PageRecord(BaseModel):
    id: int
    slug: str = ""
    title: str = ""
    html: str = ""
    modified: Optional[datetime] = None
    link: str = ""


class HealthMetrics(BaseModel):
    word_count: int = 0
    has_schema: bool = False
    has_verdict: bool = False
    has_table: bool = False
    has_list: bool = False
    internal_links: int = 0
    external_links: int = 0
    affiliate_links: int = 0
    entity_density: float = 0.0
    days_since_modified: int = 0
    information_gain_score: float = 0.0


class Scores(BaseModel):
    seo: int = 100
    aeo: int = 100
    opportunity: int = 0


class Verdict(BaseModel):
    score: float = 0
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    summary: str = ""
    target_audience: str = ""


class ProductSpecs(BaseModel):
    price: str = ""
    rating: float = 0
    review_count: int = 0


class StrategyProduct(BaseModel):
    name: str
    context: str = ""
    recommended: bool = False


class AIStrategy(BaseModel):
    old_product: str = ""
    new_product: str = ""
    primary_keyword: str = ""
    secondary_keywords: List[str] = Field(default_factory=list)
    target_audience: str = ""
    verdict: Verdict = Field(default_factory=Verdict)
    specs: ProductSpecs = Field(default_factory=ProductSpecs)
    internal_link_ids: List[int] = Field(default_factory=list)
    outline: List[str] = Field(default_factory=list)
    bluf: str = ""
    commercial_intent: bool = False
    products: List[StrategyProduct] = Field(default_factory=list)


class FAQItem(BaseModel):
    q: str
    a: str


class ContentBlocks(BaseModel):
    sge_summary: str = ""
    body_html: str
    faqs: List[FAQItem] = Field(default_factory=list)
    comparison_table_html: str = ""


class MarketplaceProduct(BaseModel):
    title: str
    image_url: str = ""
    price: str = ""
    url: str = ""
    asin: Optional[str] = None
    rating: Optional[str] = None
    review_count: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    is_prime: bool = False


class ProductDetection(BaseModel):
    name: str
    url: str = ""
    asin: Optional[str] = None
    marketplace_data: Optional[MarketplaceProduct] = None


class ProductOverride(BaseModel):
    asin: Optional[str] = None
    image: Optional[str] = None
    price: Optional[str] = None
    title: Optional[str] = None

    @field_validator("asin", "image", "price", "title")
    @classmethod
    def _trim_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        cleaned = value.strip()
        return cleaned or None


class ReferenceData(BaseModel):
    title: str = ""
    link: str = ""
    snippet: str = ""


class PAAData(BaseModel):
    question: str = ""
    snippet: str = ""
    link: str = ""


class SearchResult(BaseModel):
    organic_results: List[ReferenceData] = Field(default_factory=list)
    people_also_ask: List[PAAData] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    strategy: AIStrategy
    new_title: str
    meta_description: str = ""
    sge_summary_html: str = ""
    comparison_table_html: str = ""
    faq_html: str = ""
    schema_ld_json: str = ""
    content_template: str
    content_html: str
    final_html: str
    detected_products: List[ProductDetection] = Field(default_factory=list)
    used_internal_links: List[int] = Field(default_factory=list)


class JobRecord(BaseModel):
    page_id: int
    title: str = ""
    slug: str = ""
    status: str = "idle"
    metrics: Optional[HealthMetrics] = None
    scores: Optional[Scores] = None
    analysis: Optional[AnalysisResult] = None
    overrides: Dict[str, ProductOverride] = Field(default_factory=dict)
    draft_html: str = ""
    error: Optional[str] = None
    log: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class EnqueueRequest(BaseModel):
    page_ids: List[int] = Field(..., min_length=1)


class ConnectRequest(BaseModel):
    url: Optional[str] = None
    username: Optional[str] = None
    app_password: Optional[str] = None


class OverridesRequest(BaseModel):
    overrides: Dict[str, ProductOverride] = Field(default_factory=dict)


class ImageRequest(BaseModel):
    image_url: str = Field(..., min_length=1)


class MappingRequest(BaseModel):
    csv_text: str

    @field_validator("csv_text")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("csv_text is required.")
        return value


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    details: Optional[Dict[str, Any]] = None
