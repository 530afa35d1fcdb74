"""Review surface operations.

Every function takes a job record and returns a new one; the caller stores
it back. Preview and publish both render from the stored template, so what
the reviewer sees is what gets published.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .models import AnalysisResult, JobRecord, ProductOverride
from .pipeline import render_analysis

logger = logging.getLogger("regenerator.review")


class ReviewError(RuntimeError):
    pass


@dataclass(frozen=True)
class MappingRow:
    slug: str
    product_name: str
    asin: str


def _require_analysis(job: JobRecord) -> AnalysisResult:
    if job.analysis is None:
        raise ReviewError(f"Page {job.page_id} has no generated content yet.")
    return job.analysis


def _redraft(job: JobRecord, overrides: Dict[str, ProductOverride], tag: str) -> JobRecord:
    update: Dict[str, Any] = {"overrides": overrides}
    if job.analysis is not None:
        update["draft_html"] = render_analysis(job.analysis, overrides, tag)
    return job.model_copy(update=update)


def update_overrides(job: JobRecord, overrides: Mapping[str, ProductOverride], tag: str) -> JobRecord:
    _require_analysis(job)
    cleaned = {key: value for key, value in overrides.items() if key.strip()}
    logger.info("review.overrides page_id=%s products=%s", job.page_id, len(cleaned))
    return _redraft(job, cleaned, tag)


def set_custom_image(job: JobRecord, image_url: str, tag: str) -> JobRecord:
    """Use ``image_url`` for the first product unless it already has its own image."""
    analysis = _require_analysis(job)
    if not analysis.detected_products:
        raise ReviewError(f"Page {job.page_id} has no products to attach an image to.")
    name = analysis.detected_products[0].name
    overrides = dict(job.overrides)
    current = overrides.get(name) or ProductOverride()
    if not current.image:
        overrides[name] = current.model_copy(update={"image": image_url.strip() or None})
    return _redraft(job, overrides, tag)


def _strip_slashes(value: str) -> str:
    return re.sub(r"^/+|/+$", "", value.strip())


def parse_mapping_rows(text: str) -> List[MappingRow]:
    """Parse ``slug-or-url, product name, ASIN`` lines (comma or tab separated)."""
    rows: List[MappingRow] = []
    for line in (text or "").splitlines():
        clean_line = line.strip()
        if not clean_line:
            continue
        delimiter = "\t" if "\t" in clean_line else ","
        parts = [part.strip() for part in clean_line.split(delimiter) if part.strip()]
        if len(parts) < 3:
            continue

        raw_slug = parts[0]
        if raw_slug.lower().startswith("http"):
            raw_slug = urlparse(raw_slug).path
        slug = _strip_slashes(raw_slug)
        if slug:
            rows.append(MappingRow(slug=slug, product_name=parts[1], asin=parts[-1].upper()))
    return rows


def slug_matches(page_slug: str, mapping_slug: str) -> bool:
    page = _strip_slashes(page_slug).lower()
    mapped = _strip_slashes(mapping_slug).lower()
    if not page or not mapped:
        return False
    return page == mapped or page.endswith(mapped) or mapped.endswith(page)


def _mapped_product_key(analysis: Optional[AnalysisResult], product_name: str) -> Optional[str]:
    """Find the detected product a mapping row names: exact, then case-insensitive, then a lone product."""
    if analysis is None or not analysis.detected_products:
        return None
    names = [product.name for product in analysis.detected_products]
    if product_name in names:
        return product_name
    folded = product_name.strip().casefold()
    for name in names:
        if name.strip().casefold() == folded:
            return name
    if len(names) == 1:
        return names[0]
    return None


def apply_mappings(
    jobs: Sequence[JobRecord],
    rows: Sequence[MappingRow],
    tag: str,
) -> Tuple[List[JobRecord], int]:
    """Attach mapped ASINs to matching jobs; returns changed jobs and rows that changed a draft."""
    changed: Dict[int, JobRecord] = {}
    matched = 0
    for row in rows:
        job = next((item for item in jobs if slug_matches(item.slug, row.slug)), None)
        if job is None:
            logger.info("review.mapping_unmatched slug=%s", row.slug)
            continue
        job = changed.get(job.page_id, job)
        key = _mapped_product_key(job.analysis, row.product_name)
        if key is None:
            logger.info("review.mapping_unmatched slug=%s product=%s", row.slug, row.product_name)
            continue
        overrides = dict(job.overrides)
        current = overrides.get(key) or ProductOverride()
        overrides[key] = current.model_copy(update={"asin": row.asin})
        updated = _redraft(job, overrides, tag)
        if updated.draft_html == job.draft_html:
            continue
        changed[job.page_id] = updated
        matched += 1
    logger.info("review.mappings rows=%s matched=%s jobs=%s", len(rows), matched, len(changed))
    return list(changed.values()), matched


def publish_job(job: JobRecord, store: Any, tag: str, *, now: Optional[datetime] = None) -> str:
    """Render from the template with the current overrides and write it to the store."""
    if job.status != "review_pending":
        raise ReviewError(f"Page {job.page_id} is {job.status}, not ready to publish.")
    analysis = _require_analysis(job)
    html = render_analysis(analysis, job.overrides, tag)
    store.publish(
        job.page_id,
        html,
        title=analysis.new_title,
        date=now or datetime.now(timezone.utc),
    )
    logger.info("review.published page_id=%s bytes=%s", job.page_id, len(html))
    return html
