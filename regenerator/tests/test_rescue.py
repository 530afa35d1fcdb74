import json

import pytest

from regenerator.api.models import AIStrategy, ProductSpecs, StrategyProduct, Verdict
from regenerator.api.rescue import (
    DEFAULT_PRODUCT_CONTEXT,
    DEFAULT_VERDICT_SCORE,
    RescueError,
    clean_json_output,
    parse_content,
    parse_strategy,
    strategy_to_payload,
)

BODY = "<h2>Nike Pegasus 41</h2>[[PRODUCT_BOX:0]]<p>The new model is lighter and faster than before.</p>"


def _strategy():
    return AIStrategy(
        old_product="Nike Pegasus 40",
        new_product="Nike Pegasus 41",
        primary_keyword="nike pegasus 41 review",
        secondary_keywords=["pegasus 41 vs 40", "best daily trainer"],
        target_audience="Neutral runners",
        verdict=Verdict(score=92.0, pros=["Light", "Responsive"], cons=["Narrow toe box"], summary="A safe pick.", target_audience="Everyday runners"),
        specs=ProductSpecs(price="$140", rating=9.1, review_count=2300),
        internal_link_ids=[12, 15, 19],
        outline=["H2: What changed", "H2: Verdict"],
        bluf="The Pegasus 41 is the best daily trainer under $150.",
        commercial_intent=True,
        products=[
            StrategyProduct(name="Nike Pegasus 41", context="Best overall", recommended=True),
            StrategyProduct(name="Nike Vomero 17", context="Most cushioned", recommended=False),
        ],
    )


def test_strategy_round_trip():
    strategy = _strategy()
    assert parse_strategy(json.dumps(strategy_to_payload(strategy))) == strategy


def test_strategy_round_trip_through_code_fence_and_chatter():
    strategy = _strategy()
    raw = "Here is the strategy you asked for:\n```json\n" + json.dumps(strategy_to_payload(strategy), indent=2) + "\n```\nGood luck!"
    assert parse_strategy(raw) == strategy


def test_control_characters_inside_strings_do_not_break_parsing():
    raw = '{"newProduct": "Pegasus 41", "bluf": "Line one\nLine two\tTabbed", "products": []}'
    strategy = parse_strategy(raw)
    assert strategy.new_product == "Pegasus 41"
    assert strategy.bluf == "Line one Line two Tabbed"


def test_clean_json_output_slices_object():
    assert clean_json_output('noise {"a": 1} trailing') == '{"a": 1}'


def test_strategy_rescue_from_malformed_json():
    raw = (
        'Sure!\n```json\n{"oldProduct": "Pegasus 40", "newProduct": "Pegasus 41", '
        '"verdict": {"pros": ["Light", "Fast"], "cons": ["Pricey"]}, '
        '"internalLinkIds": [12, 15], "bluf": "The \\"new\\" one wins", '
        '"products": [{"name": "Pegasus 41", "context": "Best overall", "recommended": true}, {"name": "Vomero 17"}], }\n```'
    )
    strategy = parse_strategy(raw)
    assert strategy.old_product == "Pegasus 40"
    assert strategy.new_product == "Pegasus 41"
    assert strategy.verdict.pros == ["Light", "Fast"]
    assert strategy.verdict.cons == ["Pricey"]
    assert strategy.verdict.score == DEFAULT_VERDICT_SCORE
    assert strategy.internal_link_ids == [12, 15]
    assert strategy.bluf == 'The "new" one wins'
    assert [product.name for product in strategy.products] == ["Pegasus 41", "Vomero 17"]
    assert strategy.products[0].recommended is True
    assert strategy.products[1].context == DEFAULT_PRODUCT_CONTEXT
    assert strategy.commercial_intent is True


def test_scalar_products_field_becomes_single_product():
    strategy = parse_strategy('{"newProduct": "Sony WH-1000XM5", "products": "Sony WH-1000XM5"}')
    assert [product.name for product in strategy.products] == ["Sony WH-1000XM5"]

    strategy = parse_strategy('{"newProduct": "Sony WH-1000XM5", "products": {"name": "Sony WH-1000XM5", "recommended": true}}')
    assert len(strategy.products) == 1
    assert strategy.products[0].recommended is True

    strategy = parse_strategy('{"newProduct": "Sony WH-1000XM5", "products": 7}')
    assert strategy.products == []


def test_strategy_without_any_product_raises():
    with pytest.raises(RescueError):
        parse_strategy('{"primaryKeyword": "running shoes"}')
    with pytest.raises(RescueError):
        parse_strategy("I could not produce a strategy.")


def test_content_strict_parse():
    raw = json.dumps(
        {
            "sgeSummary": "<p><b>Pegasus 41</b> wins.</p>",
            "bodyHtml": BODY,
            "faqs": [{"q": "Is it wide?", "a": "No."}, {"q": "", "a": "dropped"}],
            "comparisonTableHtml": "<table></table>",
        }
    )
    content = parse_content(raw)
    assert content.body_html == BODY
    assert [faq.q for faq in content.faqs] == ["Is it wide?"]
    assert content.comparison_table_html == "<table></table>"


def test_content_rescue_keeps_body():
    raw = '{"sgeSummary": "Short answer", "bodyHtml": "' + BODY.replace('"', '\\"') + '", "faqs": [{"q": "Why?", "a": "Because."}],,}'
    content = parse_content(raw)
    assert content.body_html == BODY
    assert content.sge_summary == "Short answer"
    assert content.faqs[0].a == "Because."


def test_content_with_short_body_is_fatal():
    with pytest.raises(RescueError):
        parse_content('{"sgeSummary": "x", "bodyHtml": "<p>too short</p>"}')
    with pytest.raises(RescueError):
        parse_content("the model refused")
