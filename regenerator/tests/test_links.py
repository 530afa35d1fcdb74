from bs4 import BeautifulSoup

from regenerator.api.links import (
    AFFILIATE_LINK_CLASS,
    INTERNAL_LINK_CLASS,
    classify_href,
    normalize_path,
    resolve_link_placeholders,
    sanitize_links,
)
from regenerator.api.mesh import SemanticNode

NODES = [
    SemanticNode(id=10, title="Best Running Shoes", url="https://www.example.com/best-running-shoes/"),
    SemanticNode(id=11, title="Trail Shoe Guide", url="https://www.example.com/guides/trail-shoes/"),
]


def _anchors(html):
    return BeautifulSoup(html, "html.parser").find_all("a")


def test_normalize_path():
    assert normalize_path("https://www.example.com/Best-Running-Shoes/") == "/best-running-shoes"
    assert normalize_path("/best-running-shoes") == "/best-running-shoes"
    assert normalize_path("best-running-shoes/") == "/best-running-shoes"
    assert normalize_path("https://example.com") == "/"


def test_classify_href():
    assert classify_href("/foo", "example.com") == "internal"
    assert classify_href("https://example.com/foo", "example.com") == "internal"
    assert classify_href("https://www.example.com/foo", "example.com") == "internal"
    assert classify_href("https://amzn.to/abc", "example.com") == "affiliate"
    assert classify_href("https://smile.amazon.com/dp/B0", "example.com") == "affiliate"
    assert classify_href("https://runnersworld.com/x", "example.com") == "external"
    assert classify_href("#top", "example.com") == "other"
    assert classify_href("mailto:me@example.com", "example.com") == "other"


def test_matching_links_are_rewritten_to_canonical_url():
    html = (
        '<p><a href="http://example.com/best-running-shoes">shoes</a> and '
        '<a href="/guides/trail-shoes">trail</a></p>'
    )
    anchors = _anchors(sanitize_links(html, NODES, site_domain="example.com"))
    assert [a["href"] for a in anchors] == [NODES[0].url, NODES[1].url]
    assert all(INTERNAL_LINK_CLASS in a["class"] for a in anchors)
    assert anchors[0]["title"] == "Best Running Shoes"


def test_hallucinated_internal_links_become_text():
    html = '<p>Read <a href="https://www.example.com/made-up-page/">our guide</a> today.</p>'
    result = sanitize_links(html, NODES, site_domain="example.com")
    assert _anchors(result) == []
    assert "Read our guide today." in BeautifulSoup(result, "html.parser").get_text()


def test_affiliate_and_external_links():
    html = (
        '<a href="https://www.amazon.com/dp/B000000000?tag=x-20">buy</a>'
        '<a href="https://runnersworld.com/review">source</a>'
    )
    affiliate, external = _anchors(sanitize_links(html, NODES, site_domain="example.com"))
    assert affiliate["href"] == "https://www.amazon.com/dp/B000000000?tag=x-20"
    assert affiliate["rel"] == ["nofollow", "sponsored"]
    assert AFFILIATE_LINK_CLASS in affiliate["class"]
    assert external["href"] == "https://runnersworld.com/review"
    assert not external.get("rel")
    assert not external.get("class")


def test_site_domain_defaults_to_mesh_host():
    html = '<a href="https://example.com/best-running-shoes/">x</a><a href="https://example.com/nope">y</a>'
    anchors = _anchors(sanitize_links(html, NODES))
    assert len(anchors) == 1
    assert anchors[0]["href"] == NODES[0].url


def test_sanitize_keeps_product_placeholders():
    html = "<h2>Pick</h2>\n[[PRODUCT_BOX:0]]\n<p>text</p>"
    assert "[[PRODUCT_BOX:0]]" in sanitize_links(html, NODES, site_domain="example.com")


def test_link_placeholders_resolve_known_ids_only():
    template = "<p>See [[LINK:10]] and [[LINK: 99]] or [[LINK:11]] again [[LINK:10]].</p>"
    html, used = resolve_link_placeholders(template, [10, 11, 99], NODES)
    assert used == [10, 11]
    assert "[[LINK" not in html
    hrefs = [a["href"] for a in _anchors(html)]
    assert hrefs == [NODES[0].url, NODES[1].url, NODES[0].url]


def test_link_placeholders_respect_chosen_ids():
    html, used = resolve_link_placeholders("[[LINK:10]] [[LINK:11]]", [11], NODES)
    assert used == [11]
    assert len(_anchors(html)) == 1
