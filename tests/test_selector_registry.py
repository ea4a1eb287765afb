"""Tests for the selector candidate lifecycle."""

import pytest

from marketscan.extract.generator import SelectorCandidate, SelectorGenerator
from marketscan.extract.registry import SelectorRegistry
from marketscan.extract.selectors import parse_selector, select


@pytest.fixture
def registry():
    return SelectorRegistry(
        SelectorGenerator(),
        seed_selectors={"price": [".asking-price", "#price"], "title": ["h1, h2", "h1.title"]},
        min_confidence=30,
        max_failures=3,
        max_candidates=4,
    )


def _candidate(css, confidence, data_type="price"):
    return SelectorCandidate(selector=parse_selector(css), data_type=data_type, confidence=confidence)


def test_seeds_loaded_and_invalid_skipped(registry):
    assert [c.css for c in registry.candidates("price")] == ["#price", ".asking-price"]
    assert [c.css for c in registry.candidates("title")] == ["h1.title"]
    assert all(c.origin == "seed" for c in registry.candidates("price"))
    assert registry.best("price").css == "#price"
    assert registry.best("views") is None


def test_add_rejects_equivalent_selector(registry):
    assert not registry.add(_candidate("#price", 99))
    assert registry.add(_candidate("span.price", 50))
    assert "span.price" in registry


def test_full_pool_evicts_weakest_only_for_stronger(registry):
    registry.add(_candidate(".a", 20))
    registry.add(_candidate(".b", 25))
    assert len(registry.candidates("price")) == 4

    assert not registry.add(_candidate(".c", 10))
    assert registry.add(_candidate(".d", 90))

    rendered = [c.css for c in registry.candidates("price")]
    assert ".a" not in rendered
    assert ".d" in rendered
    assert ".a" in [c.css for c in registry.discarded]


def test_discard_history_is_bounded():
    registry = SelectorRegistry(SelectorGenerator(), max_candidates=1, discard_history=2)
    for i, name in enumerate(["a", "b", "c", "d", "e"]):
        assert registry.add(_candidate(f".{name}", 10 + i))

    assert [c.css for c in registry.discarded] == [".c", ".d"]
    assert [c.css for c in registry.candidates("price")] == [".e"]


def test_repeated_failures_discard_candidate(registry):
    candidate = registry.find("price", ".asking-price")

    assert registry.record_test(candidate, match_count=0, success=False)
    assert candidate.confidence == 40
    assert registry.record_test(candidate, match_count=0, success=False)
    assert candidate.confidence == 30
    assert not registry.record_test(candidate, match_count=0, success=False)

    assert registry.find("price", ".asking-price") is None
    assert candidate in registry.discarded


def test_success_resets_failure_streak(registry):
    candidate = registry.find("price", ".asking-price")
    registry.record_test(candidate, match_count=0, success=False)
    registry.record_test(candidate, match_count=1, success=True)

    assert candidate.consecutive_failures == 0
    assert candidate.successes == 1
    assert candidate.is_unique
    assert candidate.confidence == 80
    assert candidate.last_tested_at is not None


def test_repair_adds_working_selectors(catalog_document):
    registry = SelectorRegistry(
        SelectorGenerator(), seed_selectors={"price": [".old-price"]}, max_candidates=50
    )

    added = registry.repair("price", catalog_document)

    assert added
    assert any(select(catalog_document, c.selector) for c in added)
    assert registry.find("price", ".price") is not None


def test_snapshot_lists_candidates(registry):
    snapshot = registry.snapshot()
    assert set(snapshot) == {"price", "title"}
    assert snapshot["price"][0]["selector"] == "#price"
