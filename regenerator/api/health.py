from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from .config import ScoringPolicy, site_domain_from_url
from .models import HealthMetrics, Scores

SCHEMA_MARKER = "application/ld+json"
VERDICT_PATTERN = re.compile(r"verdict|conclusion|summary|pros and cons|bottom line", re.IGNORECASE)
ENTITY_PATTERN = re.compile(r" [A-Z][a-z]+")
AFFILIATE_MARKERS = ("amazon.com", "amzn.to")
DECAY_SLUG_KEYWORDS = ("review", "best", "vs", "top", "guide", "comparison")

DEFAULT_POLICY = ScoringPolicy()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_since(modified: Optional[datetime], now: Optional[datetime] = None) -> int:
    if modified is None:
        return 0
    current = _as_utc(now or datetime.now(timezone.utc))
    delta = abs((current - _as_utc(modified)).total_seconds())
    return int(math.ceil(delta / 86400))


def strip_html_preserving_structure(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for tag in soup.find_all(["p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6"]):
        tag.append("\n")
    text = soup.get_text()
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def extract_metrics(
    html: Optional[str],
    modified: Optional[datetime],
    site_url: str,
    *,
    now: Optional[datetime] = None,
) -> HealthMetrics:
    day_count = days_since(modified, now)
    if html is None:
        return HealthMetrics(days_since_modified=day_count)

    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style"]):
        tag.extract()
    text = soup.get_text(" ")
    word_count = len(re.findall(r"\b\w+\b", text))

    site_domain = site_domain_from_url(site_url)
    internal = external = affiliate = 0
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        lowered = href.lower()
        if any(marker in lowered for marker in AFFILIATE_MARKERS):
            affiliate += 1
        elif href.startswith("/") or (site_domain and site_domain in lowered):
            internal += 1
        elif lowered.startswith("http"):
            external += 1

    # Capitalised mid-sentence words stand in for named entities; this is a rough proxy only.
    entity_hits = len(ENTITY_PATTERN.findall(text))
    entity_density = (entity_hits / word_count) * 100 if word_count else 0.0

    return HealthMetrics(
        word_count=word_count,
        has_schema=SCHEMA_MARKER in html,
        has_verdict=bool(VERDICT_PATTERN.search(text)),
        has_table=soup.find("table") is not None,
        has_list=soup.find(["ul", "ol"]) is not None,
        internal_links=internal,
        external_links=external,
        affiliate_links=affiliate,
        entity_density=entity_density,
        days_since_modified=day_count,
        information_gain_score=entity_density * 2,
    )


def calculate_scores(metrics: HealthMetrics, policy: ScoringPolicy = DEFAULT_POLICY) -> Scores:
    seo = 100
    aeo = 100

    if metrics.days_since_modified > policy.stale_after_days:
        seo -= policy.stale_penalty
    if metrics.word_count < policy.min_word_count:
        seo -= policy.thin_content_penalty
    if metrics.internal_links < policy.min_internal_links:
        seo -= policy.orphan_penalty
    if metrics.external_links < policy.min_external_links:
        seo -= policy.no_citations_penalty
    if not metrics.has_schema:
        seo -= policy.seo_no_schema_penalty

    if not metrics.has_verdict:
        aeo -= policy.no_verdict_penalty
    if not metrics.has_table:
        aeo -= policy.no_table_penalty
    if not metrics.has_list:
        aeo -= policy.no_list_penalty
    if metrics.entity_density < policy.min_entity_density:
        aeo -= policy.low_entity_penalty
    if not metrics.has_schema:
        aeo -= policy.aeo_no_schema_penalty

    seo = max(0, seo)
    aeo = max(0, aeo)
    return Scores(seo=seo, aeo=aeo, opportunity=opportunity_score(metrics.word_count, seo, policy))


def opportunity_score(word_count: int, seo: int, policy: ScoringPolicy = DEFAULT_POLICY) -> int:
    """SEO deficit scaled by length, capped at 100; zero for short pages."""
    if word_count <= policy.opportunity_min_words:
        return 0
    raw = (word_count / policy.opportunity_reference_words) * (100 - seo)
    return int(round(min(100.0, raw)))


def slug_decay_score(
    slug: str,
    modified: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> Tuple[int, List[str]]:
    current = _as_utc(now or datetime.now(timezone.utc))
    score = 0
    reasons: List[str] = []

    year_match = re.search(r"(20\d\d)", slug or "")
    if year_match:
        year = int(year_match.group(1))
        if year < current.year - 1:
            score += 50
            reasons.append(f"Outdated Year in Slug: {year}")

    if modified is not None:
        last_modified = _as_utc(modified)
        if last_modified < current - timedelta(days=730):
            score += 30
            reasons.append(f"Not updated since {last_modified.year}")

    lowered = (slug or "").lower()
    if any(keyword in lowered for keyword in DECAY_SLUG_KEYWORDS):
        score += 20
        reasons.append("High-value comparison keyword detected")

    return min(score, 100), reasons
