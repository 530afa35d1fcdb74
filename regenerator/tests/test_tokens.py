from regenerator.api.tokens import STOPWORDS, relevance, tokenize


def test_tokenize_is_deterministic():
    text = "The Best Running Shoes of 2024: Nike vs. Adidas!"
    assert tokenize(text) == tokenize(text)


def test_tokenize_drops_short_words_and_stopwords():
    tokens = tokenize("The best of the year is in: an Ultra-Boost review")
    assert tokens == {"best", "year", "ultraboost", "review"}
    assert not tokens & STOPWORDS
    assert all(len(token) > 2 for token in tokens)


def test_tokenize_empty():
    assert tokenize("") == set()
    assert tokenize(None) == set()


def test_relevance_bounds():
    a = tokenize("nike pegasus running shoe review")
    b = tokenize("best running shoe deals")
    score = relevance(a, b)
    assert 0.0 <= score <= 1.0
    assert relevance(a, a) == 1.0
    assert relevance(set(), set()) == 0.0
    assert relevance(a, set()) == 0.0


def test_relevance_is_jaccard():
    assert relevance({"running", "shoe"}, {"running", "sock"}) == 1 / 3
