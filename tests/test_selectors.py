"""Tests for the selector variants, parser and evaluator."""

import pytest

from marketscan.errors import SelectorSyntaxError
from marketscan.extract.selectors import (
    ByAttribute,
    ByClass,
    ById,
    ByPosition,
    ByRelation,
    flatten,
    chain,
    parse_selector,
    select,
    to_css,
)


def test_parse_relation_with_layers():
    selector = parse_selector('div.card > [data-metric="price"]:first-child')

    assert selector == ByRelation(
        ancestor=ByClass(("card",), tag="div"),
        combinator=">",
        target=ByPosition("first-child", base=ByAttribute("data-metric", "=", "price")),
    )


@pytest.mark.parametrize(
    "css",
    [
        'div.card > [data-metric="price"]:first-child',
        "ul#menu.main li:nth-child(2n+1)",
        'a[href^="/listing"]',
        "h3 + span",
        'span:contains("$45")',
        "[data-testid]",
    ],
)
def test_render_matches_parsed_text(css):
    assert to_css(parse_selector(css)) == css


def test_id_core_keeps_tag_and_classes():
    assert parse_selector("ul#menu.main") == ById("menu", "ul", ("main",))


@pytest.mark.parametrize("css", ["", "   ", "a, b", ":hover", "div[", "#"])
def test_parse_rejects_unsupported_syntax(css):
    with pytest.raises(SelectorSyntaxError):
        parse_selector(css)


def test_invalid_variants_rejected():
    with pytest.raises(SelectorSyntaxError):
        ByAttribute("class", "~=", "x")
    with pytest.raises(SelectorSyntaxError):
        ByPosition("nth-child", "abc")
    with pytest.raises(SelectorSyntaxError):
        ByRelation(ByClass(("a",)), "|", ByClass(("b",)))


def test_select_by_class_and_descendant(catalog_document):
    prices = select(catalog_document, ".card .price")
    assert [node.text for node in prices] == ["$125,000", "$45,000", "$980,000"]


def test_select_nth_child(catalog_document):
    titles = select(catalog_document, "#results > div:nth-child(2) .title")
    assert [node.text for node in titles] == ["Growing Content Website"]


def test_select_text_and_attribute_prefix(catalog_document):
    assert len(select(catalog_document, 'span:contains("$45")')) == 1
    assert len(select(catalog_document, '[data-metric^="pri"]')) == 3
    assert len(select(catalog_document, '[data-metric$="rice"]')) == 3
    assert select(catalog_document, '[data-metric="revenue"]') == []


def test_select_sibling_combinators(catalog_document):
    assert len(select(catalog_document, "h3 + span")) == 3
    assert len(select(catalog_document, "h3 ~ span")) == 6


def test_select_positions(catalog_document):
    assert [n.text for n in select(catalog_document, ".card:last-child .title")] == [
        "Ecommerce Store Empire"
    ]
    assert len(select(catalog_document, "span:last-of-type")) == 3
    assert len(select(catalog_document, ".card:nth-child(odd)")) == 2


def test_select_within_scope(catalog_document):
    card = select(catalog_document, ".card")[1]
    assert [n.text for n in select(catalog_document, ".price", scope=card)] == ["$45,000"]


def test_flatten_and_chain_are_inverse():
    selector = parse_selector("div.results > .card span.price")
    compounds, combinators = flatten(selector)

    assert combinators == [">", " "]
    assert len(compounds) == 3
    assert chain(compounds, combinators) == selector
