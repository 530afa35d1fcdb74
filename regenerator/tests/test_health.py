from datetime import datetime, timedelta, timezone

from regenerator.api.config import ScoringPolicy
from regenerator.api.health import (
    calculate_scores,
    days_since,
    extract_metrics,
    opportunity_score,
    slug_decay_score,
    strip_html_preserving_structure,
)
from regenerator.api.models import HealthMetrics

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def test_decayed_long_page_scores_low_with_high_opportunity():
    metrics = HealthMetrics(
        word_count=2000,
        days_since_modified=800,
        internal_links=1,
        external_links=0,
        has_schema=False,
        has_verdict=False,
        entity_density=1,
    )
    scores = calculate_scores(metrics)
    assert scores.seo == 45
    assert scores.aeo == 15
    assert scores.opportunity == 73
    assert scores.seo < 50 and scores.aeo < 50 and scores.opportunity > 50


def test_healthy_page_keeps_full_scores():
    metrics = HealthMetrics(
        word_count=1800,
        days_since_modified=10,
        internal_links=5,
        external_links=3,
        has_schema=True,
        has_verdict=True,
        has_table=True,
        has_list=True,
        entity_density=6.0,
    )
    scores = calculate_scores(metrics)
    assert scores.seo == 100
    assert scores.aeo == 100
    assert scores.opportunity == 0


def test_staleness_never_raises_seo():
    base = HealthMetrics(word_count=1200, internal_links=4, external_links=2, has_schema=True)
    previous = None
    for days in (0, 300, 365, 366, 800, 3000):
        seo = calculate_scores(base.model_copy(update={"days_since_modified": days})).seo
        if previous is not None:
            assert seo <= previous
        previous = seo


def test_opportunity_zero_for_short_pages():
    assert opportunity_score(500, 0) == 0
    assert opportunity_score(120, 10) == 0
    assert opportunity_score(3000, 0) == 100


def test_scores_floor_at_zero():
    policy = ScoringPolicy(stale_penalty=90, seo_no_schema_penalty=90, aeo_no_schema_penalty=200)
    scores = calculate_scores(HealthMetrics(days_since_modified=999), policy)
    assert scores.seo == 0
    assert scores.aeo == 0


def test_policy_reads_environment(monkeypatch):
    monkeypatch.setenv("REGEN_SCORE_MIN_WORD_COUNT", "800")
    monkeypatch.setenv("REGEN_SCORE_MIN_ENTITY_DENSITY", "10")
    policy = ScoringPolicy.from_env()
    assert policy.min_word_count == 800
    assert policy.min_entity_density == 10.0
    assert policy.stale_penalty == 20


def test_extract_metrics_counts_structure_and_links():
    html = """
    <h2>Our Verdict</h2>
    <p>The Nike Pegasus beats the Adidas Boost for most runners.</p>
    <ul><li>Light</li></ul>
    <table><tr><td>x</td></tr></table>
    <a href="/running-shoes/">shoes</a>
    <a href="https://www.example.com/socks">socks</a>
    <a href="https://www.amazon.com/dp/B000000000">buy</a>
    <a href="https://runnersworld.com/test">source</a>
    <script type="application/ld+json">{"@type": "Article"}</script>
    """
    metrics = extract_metrics(html, NOW - timedelta(days=3), "https://www.example.com", now=NOW)
    assert metrics.has_verdict
    assert metrics.has_list
    assert metrics.has_table
    assert metrics.has_schema
    assert metrics.internal_links == 2
    assert metrics.affiliate_links == 1
    assert metrics.external_links == 1
    assert metrics.days_since_modified == 3
    assert metrics.entity_density > 0
    assert metrics.information_gain_score == metrics.entity_density * 2


def test_extract_metrics_without_content():
    metrics = extract_metrics(None, NOW - timedelta(days=40), "https://example.com", now=NOW)
    assert metrics.word_count == 0
    assert metrics.days_since_modified == 40


def test_days_since_handles_naive_and_missing():
    assert days_since(None, NOW) == 0
    assert days_since(datetime(2026, 5, 30, 12), NOW) == 2


def test_slug_decay_score():
    score, reasons = slug_decay_score(
        "best-running-shoes-2021",
        datetime(2022, 1, 1, tzinfo=timezone.utc),
        now=NOW,
    )
    assert score == 100
    assert len(reasons) == 3

    score, reasons = slug_decay_score("about-us", NOW - timedelta(days=5), now=NOW)
    assert score == 0
    assert reasons == []


def test_strip_html_preserving_structure():
    html = "<h2>Title</h2><p>First   para</p><script>var x=1;</script><ul><li>One</li><li>Two</li></ul>"
    text = strip_html_preserving_structure(html)
    assert text.splitlines() == ["Title", "First para", "One", "Two"]
    assert "var x" not in text
