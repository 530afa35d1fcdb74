from __future__ import annotations

import html
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .mesh import SemanticNode

logger = logging.getLogger("regenerator.links")

INTERNAL_LINK_CLASS = "sota-internal-link"
AFFILIATE_LINK_CLASS = "sota-affiliate-link"
AFFILIATE_DOMAINS = ("amazon.com", "amzn.to", "amazon.co.uk", "amazon.de", "amazon.ca")
LINK_PLACEHOLDER = re.compile(r"\[\[LINK:\s*(\d+)\s*\]\]")
NON_PAGE_SCHEMES = ("#", "mailto:", "tel:", "javascript:", "data:")


def _host(value: str) -> str:
    host = (value or "").strip().lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    return host[4:] if host.startswith("www.") else host


def normalize_path(url: str) -> str:
    parsed = urlparse((url or "").strip())
    path = parsed.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    path = path.rstrip("/")
    return (path or "/").lower()


def build_path_index(nodes: Iterable[SemanticNode]) -> Dict[str, SemanticNode]:
    index: Dict[str, SemanticNode] = {}
    for node in nodes:
        if node.url:
            index.setdefault(normalize_path(node.url), node)
    return index


def _matches_domain(host: str, domains: Iterable[str]) -> bool:
    return any(host == domain or host.endswith(f".{domain}") for domain in domains)


def classify_href(href: str, site_domain: str, affiliate_domains: Sequence[str] = AFFILIATE_DOMAINS) -> str:
    """Return ``internal``, ``affiliate``, ``external`` or ``other``."""
    cleaned = (href or "").strip()
    lowered = cleaned.lower()
    if not cleaned or lowered.startswith(NON_PAGE_SCHEMES):
        return "other"
    parsed = urlparse(cleaned)
    host = _host(parsed.netloc)
    if not host:
        if parsed.scheme:
            return "other"
        return "internal"
    if _matches_domain(host, affiliate_domains):
        return "affiliate"
    if site_domain and host == _host(site_domain):
        return "internal"
    return "external"


def _add_class(tag, class_name: str) -> None:
    classes: List[str] = list(tag.get("class") or [])
    if class_name not in classes:
        classes.append(class_name)
    tag["class"] = classes


def internal_anchor_html(node: SemanticNode) -> str:
    title = html.escape(node.title, quote=True)
    return f'<a href="{html.escape(node.url, quote=True)}" class="{INTERNAL_LINK_CLASS}" title="{title}">{html.escape(node.title)}</a>'


def resolve_link_placeholders(
    template: str,
    chosen_ids: Sequence[int],
    nodes: Sequence[SemanticNode],
) -> Tuple[str, List[int]]:
    """Replace ``[[LINK:id]]`` with anchors for ids that exist in the mesh.

    Placeholders for ids the mesh does not know are removed. Returns the
    new template and the ids actually linked, in first-use order.
    """
    by_id = {node.id: node for node in nodes}
    allowed = set(chosen_ids) if chosen_ids else set(by_id)
    used: List[int] = []

    def replacer(match: re.Match[str]) -> str:
        link_id = int(match.group(1))
        node = by_id.get(link_id)
        if node is None or link_id not in allowed:
            return ""
        if link_id not in used:
            used.append(link_id)
        return internal_anchor_html(node)

    return LINK_PLACEHOLDER.sub(replacer, template or ""), used


def sanitize_links(
    body_html: str,
    nodes: Sequence[SemanticNode],
    *,
    site_domain: str = "",
    affiliate_domains: Optional[Sequence[str]] = None,
) -> str:
    """Rewrite every anchor against the mesh inventory.

    Internal-looking links that resolve to a known page get the canonical
    URL; ones that do not resolve are flattened to their text. Affiliate
    links are marked sponsored. Other external links are left alone.
    """
    if not body_html:
        return ""
    domains = tuple(affiliate_domains) if affiliate_domains else AFFILIATE_DOMAINS
    index = build_path_index(nodes)
    if not site_domain:
        site_domain = next((_host(urlparse(node.url).netloc) for node in nodes if node.url), "")
    soup = BeautifulSoup(body_html, "html.parser")

    rewritten = stripped = sponsored = 0
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "")
        kind = classify_href(href, site_domain, domains)
        if kind == "internal":
            node = index.get(normalize_path(href))
            if node is None:
                anchor.replace_with(anchor.get_text())
                stripped += 1
                continue
            anchor["href"] = node.url
            anchor["title"] = node.title
            _add_class(anchor, INTERNAL_LINK_CLASS)
            rewritten += 1
        elif kind == "affiliate":
            anchor["rel"] = "nofollow sponsored"
            _add_class(anchor, AFFILIATE_LINK_CLASS)
            sponsored += 1

    logger.info(
        "links.sanitized rewritten=%s stripped=%s sponsored=%s",
        rewritten,
        stripped,
        sponsored,
    )
    return str(soup)
