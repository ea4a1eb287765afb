"""Selector discovery, mutation, scoring and evolution."""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence, Union

from marketscan.extract.dom import PageDocument, PageNode
from marketscan.extract.selectors import (
    ById,
    ByAttribute,
    ByClass,
    ByPosition,
    ByRelation,
    ByText,
    Selector,
    as_selector,
    chain,
    flatten,
    peel,
    select,
    to_css,
    walk,
    wrap,
)
from marketscan.extract.values import EXPECTED_DATA, ExpectedData, parse_money, parse_multiple

logger = logging.getLogger(__name__)

# Attributes that tend to carry stable, semantic identifiers
DATA_ATTRIBUTES = (
    "data-id",
    "data-type",
    "data-value",
    "data-listing",
    "data-listing-id",
    "data-price",
    "data-revenue",
    "data-metric",
    "data-testid",
    "data-category",
    "itemtype",
    "itemprop",
    "role",
    "aria-label",
)

GENERIC_TAGS = {"div", "span", "p", "a"}
_STATE_CLASS = re.compile(r"active|hover|focus|selected|disabled")
_DYNAMIC_ID = re.compile(r"\d{5,}")
_CURRENCY = re.compile(r"\$[\d,]+")
_MULTIPLE = re.compile(r"[\d.]+x", re.IGNORECASE)
_POSITION_VARIANTS = ("first-child", "last-child", "first-of-type", "last-of-type")
_CONTAINER_ANCESTORS = (
    ByClass((), "div"),
    ByAttribute("class", "*=", "container"),
    ByAttribute("class", "*=", "listing"),
)

MIN_PRICE_MAGNITUDE = 1000
GOOD_QUALITY = 0.8


@dataclass
class SelectorCandidate:
    """A scored extraction rule for one data type."""

    selector: Selector
    data_type: str
    confidence: float = 50.0
    match_count: int = 0
    is_unique: bool = False
    strategy: str = "unknown"
    origin: str = "discovery"  # seed, discovery, evolution
    sample_value: Any = None
    successes: int = 0
    consecutive_failures: int = 0
    last_tested_at: Optional[datetime] = None

    @property
    def css(self) -> str:
        return to_css(self.selector)

    def to_dict(self) -> dict:
        return {
            "selector": self.css,
            "data_type": self.data_type,
            "confidence": self.confidence,
            "match_count": self.match_count,
            "is_unique": self.is_unique,
            "strategy": self.strategy,
            "origin": self.origin,
            "successes": self.successes,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass
class ElementCandidate:
    node: PageNode
    text: str
    value: Any


@dataclass
class CurrentResult:
    """What a selector in use produced on the current page."""

    selector: Selector
    data_type: str
    value: Any


@dataclass
class SelectorEvolution:
    original: Selector
    evolved: Selector
    reason: str  # selector-broken, too-broad, wrong-data, optimization
    data_type: str
    confidence: float
    quality: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "original": to_css(self.original),
            "evolved": to_css(self.evolved),
            "reason": self.reason,
            "data_type": self.data_type,
            "confidence": self.confidence,
            "quality": self.quality,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


class SelectorGenerator:
    """Produces and repairs extraction rules from live page structure."""

    # Mutation strategies

    def simplify(self, selector: Selector) -> Selector:
        """Drop redundant tags, intermediate ancestors and pseudo-classes."""
        compounds, combinators = flatten(selector)
        if len(compounds) >= 3 and all(c in (" ", ">") for c in combinators):
            compounds = [compounds[0], compounds[-1]]
            combinators = [" "]

        simplified = []
        for compound in compounds:
            core, layers = peel(compound)
            layers = [layer for layer in layers if isinstance(layer, ByAttribute)]
            if isinstance(core, ById):
                core = ById(core.id)
            elif isinstance(core, ByClass) and core.classes:
                core = ByClass(core.classes)
            reduced = wrap(core, layers) or ByClass((), core.tag if core else None)
            # a compound held up only by text or position filters keeps them
            simplified.append(compound if _is_bare(reduced) else reduced)
        return chain(simplified, combinators)

    def specialize(self, selector: Selector, document: Optional[PageDocument] = None) -> Selector:
        """
        Add tag or ancestor context to narrow a selector.

        With a document, the parent context of the current matches is used
        and the narrowest variant that still matches something wins.
        Without one, a container ancestor or tag is added.
        """
        selector = as_selector(selector)
        if document is not None:
            narrowed = self._specialize_from_context(selector, document)
            if narrowed is not None:
                return narrowed

        compounds, combinators = flatten(selector)
        if not combinators:
            return ByRelation(ByClass((), "div"), " ", selector)
        core, layers = peel(compounds[0])
        if isinstance(core, ByClass) and core.classes and core.tag is None:
            compounds[0] = wrap(ByClass(core.classes, "div"), layers)
            return chain(compounds, combinators)
        return selector

    def _specialize_from_context(self, selector: Selector, document: PageDocument) -> Optional[Selector]:
        current = select(document, selector)
        if len(current) <= 1:
            return None
        first = current[0]

        options: list[Selector] = []
        core, layers = peel(flatten(selector)[0][-1])
        if isinstance(core, ByClass) and core.tag is None:
            options.append(_replace_target(selector, wrap(ByClass(core.classes, first.tag), layers)))
        if first.parent is not None:
            parent_selector = self.parent_selector(first.parent)
            target = _target(selector)
            options.append(_under_parent(selector, parent_selector, target))
            options.append(
                _under_parent(
                    selector,
                    parent_selector,
                    ByPosition("nth-child", str(first.position), base=target),
                )
            )

        best = None
        best_count = len(current)
        for option in options:
            count = len(select(document, option))
            if 0 < count < best_count:
                best, best_count = option, count
                if count == 1:
                    break
        return best

    def generalize(self, selector: Selector) -> Optional[Selector]:
        """Strip positional and exact-attribute specifics; keep the last two compounds."""
        compounds, combinators = flatten(selector)
        kept: list[tuple[int, object]] = []
        for i, compound in enumerate(compounds):
            core, layers = peel(compound)
            layers = [
                layer for layer in layers
                if not (isinstance(layer, ByPosition) and layer.kind.startswith("nth-"))
                and not (isinstance(layer, ByAttribute) and layer.op == "=")
            ]
            rebuilt = wrap(core, layers)
            if rebuilt is not None:
                kept.append((i, rebuilt))

        if not kept:
            return None
        if len(kept) > 2:
            return ByRelation(kept[-2][1], ">", kept[-1][1])
        if len(kept) == 2:
            (i, first), (j, second) = kept
            # Adjacent compounds keep their combinator; a dropped one in between loosens it
            combinator = combinators[i] if j == i + 1 else " "
            return ByRelation(first, combinator, second)
        return kept[0][1]

    def attribute_variations(self, selector: Selector) -> list[Selector]:
        """Prefix-match and existence-only versions of each exact attribute predicate."""
        variations = []
        for node in walk(selector):
            if isinstance(node, ByAttribute) and node.op == "=":
                prefix = replace(node, op="^=", value=node.value[:5])
                exists = replace(node, op=None, value=None)
                variations.append(_substitute(selector, node, prefix))
                variations.append(_substitute(selector, node, exists))
        return variations

    def positional_variations(self, selector: Selector) -> list[Selector]:
        """Sibling-position predicates on the target element."""
        has_position = any(isinstance(n, (ByPosition, ByText)) for n in walk(selector))
        variations = []
        if not has_position:
            target = _target(selector)
            for kind in _POSITION_VARIANTS:
                variations.append(_replace_target(selector, ByPosition(kind, base=target)))

        for node in walk(selector):
            if isinstance(node, ByPosition) and node.kind == "nth-child":
                for arg in ("n+2", "2n"):
                    variations.append(_substitute(selector, node, replace(node, arg=arg)))
                break
        return variations

    def relational_variations(self, selector: Selector) -> list[Selector]:
        """Swap combinators and add container ancestors."""
        compounds, combinators = flatten(selector)
        variations = []
        if ">" in combinators:
            i = combinators.index(">")
            for swapped in (" ", "~"):
                changed = list(combinators)
                changed[i] = swapped
                variations.append(chain(compounds, changed))
        if " " in combinators:
            i = combinators.index(" ")
            changed = list(combinators)
            changed[i] = ">"
            variations.append(chain(compounds, changed))

        first_core, _ = peel(compounds[0])
        if not (isinstance(first_core, ByClass) and first_core.tag in ("body", "html")):
            for ancestor in _CONTAINER_ANCESTORS:
                variations.append(chain([ancestor, *compounds], [" ", *combinators]))
        return variations

    def generate_variations(
        self, selector: Union[Selector, str], max_variations: int = 10
    ) -> list[Selector]:
        """
        Deterministically derive alternative selectors.

        The original selector always comes first and no two returned
        selectors render to the same CSS.

        Args:
            selector: Selector variant or CSS-subset string
            max_variations: Upper bound on the number returned

        Returns:
            Up to max_variations unique selectors

        Raises:
            ValueError: If max_variations < 1
        """
        if max_variations < 1:
            raise ValueError("max_variations must be at least 1")
        selector = as_selector(selector)

        ordered: dict[str, Selector] = {to_css(selector): selector}
        pools = [
            [self.simplify(selector)],
            [self.specialize(selector)],
            [self.generalize(selector)],
            self.attribute_variations(selector),
            self.positional_variations(selector),
            self.relational_variations(selector),
        ]
        for pool in pools:
            for variation in pool:
                if variation is None or _is_bare(_target(variation)):
                    continue
                ordered.setdefault(to_css(variation), variation)
        return list(ordered.values())[:max_variations]

    # Discovery

    def find_candidate_elements(self, document: PageDocument, data_type: str) -> list[ElementCandidate]:
        """Elements whose text matches the heuristic signature of a data type."""
        if data_type == "listing_card":
            return self._find_listing_cards(document)

        candidates = []
        for node in document.nodes:
            text = node.text
            if not text or len(node.children) > 3:
                continue
            value = None
            if data_type == "price":
                if _CURRENCY.search(text):
                    value = parse_money(text)
                    if value is None or value <= MIN_PRICE_MAGNITUDE:
                        continue
                else:
                    continue
            elif data_type in ("revenue", "profit"):
                if _CURRENCY.search(text) and data_type in text.lower():
                    value = parse_money(text)
                    if not value or value <= 0:
                        continue
                else:
                    continue
            elif data_type == "title":
                if 10 <= len(text) <= 100 and text[0].isupper():
                    value = text
                else:
                    continue
            elif data_type == "multiple":
                if _MULTIPLE.search(text):
                    value = parse_multiple(text)
                    if value is None or not 0 < value < 100:
                        continue
                else:
                    continue
            else:
                continue
            candidates.append(ElementCandidate(node=node, text=text, value=value))
        return candidates

    def _find_listing_cards(self, document: PageDocument) -> list[ElementCandidate]:
        by_signature: dict[tuple, list[PageNode]] = {}
        for node in document.nodes:
            if len(node.children) >= 2 and _CURRENCY.search(node.text):
                by_signature.setdefault(node.signature(), []).append(node)
        candidates = []
        for nodes in by_signature.values():
            if len(nodes) >= 3 and nodes[0].tag not in ("html", "body"):
                candidates.append(ElementCandidate(node=nodes[0], text=nodes[0].text[:80], value=len(nodes)))
        return candidates

    def parent_selector(self, parent: PageNode) -> Selector:
        if parent.id and not _DYNAMIC_ID.search(parent.id):
            return ById(parent.id)
        classes = [c for c in parent.classes if not _STATE_CLASS.search(c)]
        if classes:
            return ByClass((classes[0],))
        return ByClass((), parent.tag or "div")

    def generate_selectors_for_element(self, node: PageNode) -> list[Selector]:
        """
        Candidate selectors that identify one element.

        Covers id, single classes, tag+class, the compound class set, data
        attributes, position under the parent, short text and href.
        """
        selectors: list[Selector] = []
        tag = node.tag

        if node.id and not _DYNAMIC_ID.search(node.id):
            selectors.append(ById(node.id))

        classes = [c for c in node.classes if not _STATE_CLASS.search(c)]
        for cls in classes:
            selectors.append(ByClass((cls,)))
        for cls in classes:
            selectors.append(ByClass((cls,), tag))
        if len(classes) > 1:
            selectors.append(ByClass(tuple(classes)))

        for attr in DATA_ATTRIBUTES:
            value = node.attrs.get(attr)
            if value and '"' not in value:
                selectors.append(ByAttribute(attr, "=", value))
                selectors.append(ByAttribute(attr, "=", value, base=ByClass((), tag)))

        if node.parent is not None:
            parent = self.parent_selector(node.parent)
            position = str(node.position)
            selectors.append(ByRelation(parent, ">", ByPosition("nth-child", position, base=ByClass((), tag))))
            selectors.append(ByRelation(parent, ">", ByPosition("nth-child", position)))

        text = node.text
        if 3 < len(text) < 50 and '"' not in text:
            selectors.append(ByText(text[:20], base=ByClass((), tag)))

        href = node.attrs.get("href")
        if href and '"' not in href:
            selectors.append(ByAttribute("href", "=", href, base=ByClass((), tag)))
            if href.startswith("/"):
                selectors.append(ByAttribute("href", "^=", "/", base=ByClass((), tag)))

        unique: dict[str, Selector] = {}
        for s in selectors:
            unique.setdefault(to_css(s), s)
        return list(unique.values())

    @staticmethod
    def is_repeating_pattern(nodes: Sequence[PageNode]) -> bool:
        """Three or more nodes sharing tag, sorted class set and child count."""
        if len(nodes) < 3:
            return False
        first = nodes[0].signature()
        return all(node.signature() == first for node in nodes)

    def discover_new_patterns(
        self, document: PageDocument, data_type: str, max_elements: int = 50
    ) -> list[SelectorCandidate]:
        """
        Scan a page for elements that look like a data type and propose selectors.

        A selector is kept only if it matches exactly one element or a
        structurally repeating set. Results are ranked unique first, then by
        confidence.

        Args:
            document: Parsed page
            data_type: Data type to look for (price, revenue, profit, title,
                       multiple, listing_card)
            max_elements: Cap on heuristic matches examined

        Returns:
            Ranked SelectorCandidates, deduplicated by rendered CSS
        """
        found: dict[str, SelectorCandidate] = {}
        for element in self.find_candidate_elements(document, data_type)[:max_elements]:
            for selector in self.generate_selectors_for_element(element.node):
                css = to_css(selector)
                if css in found:
                    continue
                matched = select(document, selector)
                if len(matched) == 1 or self.is_repeating_pattern(matched):
                    found[css] = SelectorCandidate(
                        selector=selector,
                        data_type=data_type,
                        confidence=self.score_confidence(selector, len(matched)),
                        match_count=len(matched),
                        is_unique=len(matched) == 1,
                        strategy=self.detect_strategy(selector),
                        origin="discovery",
                        sample_value=element.value,
                    )

        ranked = sorted(found.values(), key=lambda c: (not c.is_unique, -c.confidence))
        logger.debug(f"Discovered {len(ranked)} {data_type} selector candidates")
        return ranked

    # Scoring

    def score_confidence(self, selector: Union[Selector, str], match_count: int) -> float:
        """
        Heuristic 0-100 reliability score.

        Base 50; +30 unique match; +20 id; +15 compound class; +15 data
        attribute; -20 bare generic tag; -10 nth position. Clamped.
        """
        selector = as_selector(selector)
        nodes = list(walk(selector))
        score = 50.0
        if match_count == 1:
            score += 30
        if any(isinstance(n, ById) for n in nodes):
            score += 20
        if any(isinstance(n, (ById, ByClass)) and len(n.classes) >= 2 for n in nodes):
            score += 15
        if any(isinstance(n, ByAttribute) and n.name.startswith("data-") for n in nodes):
            score += 15
        if isinstance(selector, ByClass) and not selector.classes and (
            selector.tag is None or selector.tag in GENERIC_TAGS
        ):
            score -= 20
        if any(isinstance(n, ByPosition) and n.kind.startswith("nth-") for n in nodes):
            score -= 10
        return _clamp(score)

    def detect_strategy(self, selector: Union[Selector, str]) -> str:
        selector = as_selector(selector)
        nodes = list(walk(selector))
        if any(isinstance(n, ById) for n in nodes):
            return "id"
        if isinstance(selector, ByClass) and selector.classes and selector.tag is None:
            return "class"
        if any(isinstance(n, ByAttribute) for n in nodes):
            return "attribute"
        if isinstance(selector, ByClass) and selector.classes:
            return "tag-class"
        if any(isinstance(n, ByPosition) and n.kind.startswith("nth-") for n in nodes):
            return "nth-child"
        if any(isinstance(n, ByText) for n in nodes):
            return "text-content"
        if isinstance(selector, ByRelation):
            return "css-path"
        return "unknown"

    @staticmethod
    def assess_data_quality(value: Any, expected: Optional[ExpectedData]) -> float:
        """
        Score an extracted value against what the data type should look like.

        Returns 0 for missing values, 1.0 for in-range or pattern matches,
        0.5 for out-of-range or mismatched values and 0.7 when nothing is
        known about the type.
        """
        if not value or expected is None:
            return 0.0
        if isinstance(value, (int, float)) and not isinstance(value, bool) and expected.min is not None:
            upper = expected.max if expected.max is not None else float("inf")
            return 1.0 if expected.min <= value <= upper else 0.5
        if isinstance(value, str) and expected.pattern:
            return 1.0 if re.search(expected.pattern, value) else 0.5
        return 0.7

    # Evolution

    def find_similar_elements(self, document: PageDocument, broken: Selector, limit: int = 5) -> list[PageNode]:
        """
        Elements overlapping the fragments of a selector that stopped matching.

        Scoring: class +1, id +2, attribute +1, tag +0.5. An element needs at
        least half the fragment count; the best `limit` are returned.
        """
        fragments: list[tuple[str, Any]] = []
        for node in walk(broken):
            if isinstance(node, ById):
                fragments.append(("id", node.id))
            if isinstance(node, (ById, ByClass)):
                fragments.extend(("class", c) for c in node.classes)
                if node.tag:
                    fragments.append(("tag", node.tag))
            elif isinstance(node, ByAttribute):
                fragments.append(("attr", (node.name, node.value if node.op == "=" else None)))
        if not fragments:
            return []

        threshold = len(fragments) * 0.5
        scored = []
        for element in document.nodes:
            score = 0.0
            element_classes = element.classes
            for kind, value in fragments:
                if kind == "class" and value in element_classes:
                    score += 1
                elif kind == "id" and element.id == value:
                    score += 2
                elif kind == "attr":
                    name, expected = value
                    if name in element.attrs and (expected is None or element.attrs[name] == expected):
                        score += 1
                elif kind == "tag" and element.tag == value:
                    score += 0.5
            if score > 0 and score >= threshold:
                scored.append((score, element))

        scored.sort(key=lambda pair: (-pair[0], pair[1].order))
        return [element for _, element in scored[:limit]]

    def optimize(self, selector: Selector, document: PageDocument) -> Selector:
        """Simplify when the match count survives, else prefer an id for a unique match."""
        current = select(document, selector)
        simplified = self.simplify(selector)
        if len(select(document, simplified)) == len(current):
            return simplified
        if len(current) == 1:
            element_id = current[0].id
            if element_id and not _DYNAMIC_ID.search(element_id):
                return ById(element_id)
        return selector

    def evolve_selectors(
        self,
        current_results: Sequence[CurrentResult],
        expected_data: Optional[Mapping[str, ExpectedData]],
        document: PageDocument,
    ) -> list[SelectorEvolution]:
        """
        Propose replacements for selectors in use on a page.

        Quality below 0.8 with zero matches searches for similar elements and
        regenerates selectors from them; over-matching selectors are
        specialized; a single wrong match falls back to discovery. Good
        selectors are offered a simplification that keeps their match count.
        """
        expected_data = expected_data or EXPECTED_DATA
        evolved: list[SelectorEvolution] = []

        for result in current_results:
            expected = expected_data.get(result.data_type)
            quality = self.assess_data_quality(result.value, expected)
            matched = select(document, result.selector)

            if quality < GOOD_QUALITY:
                if not matched:
                    for element in self.find_similar_elements(document, result.selector):
                        for candidate in self.generate_selectors_for_element(element):
                            evolved.append(
                                SelectorEvolution(
                                    original=result.selector,
                                    evolved=candidate,
                                    reason="selector-broken",
                                    data_type=result.data_type,
                                    confidence=self.score_confidence(candidate, len(select(document, candidate))),
                                    quality=quality,
                                )
                            )
                elif len(matched) > 1:
                    specific = self.specialize(result.selector, document)
                    evolved.append(
                        SelectorEvolution(
                            original=result.selector,
                            evolved=specific,
                            reason="too-broad",
                            data_type=result.data_type,
                            confidence=self.score_confidence(specific, len(select(document, specific))),
                            quality=quality,
                        )
                    )
                else:
                    for candidate in self.discover_new_patterns(document, result.data_type)[:3]:
                        evolved.append(
                            SelectorEvolution(
                                original=result.selector,
                                evolved=candidate.selector,
                                reason="wrong-data",
                                data_type=result.data_type,
                                confidence=candidate.confidence,
                                quality=quality,
                            )
                        )
            else:
                optimized = self.optimize(result.selector, document)
                if to_css(optimized) != to_css(result.selector):
                    evolved.append(
                        SelectorEvolution(
                            original=result.selector,
                            evolved=optimized,
                            reason="optimization",
                            data_type=result.data_type,
                            confidence=self.score_confidence(optimized, len(matched)),
                            quality=quality,
                        )
                    )

        logger.info(f"Selector evolution produced {len(evolved)} proposals from {len(current_results)} results")
        return evolved


def _target(selector: Selector):
    return flatten(selector)[0][-1]


def _is_bare(compound) -> bool:
    """True for the universal compound, which matches every element."""
    return compound is None or (isinstance(compound, ByClass) and not compound.classes and compound.tag is None)


def _under_parent(selector: Selector, parent: Selector, target) -> Selector:
    """Require the target's direct parent to match `parent`, keeping outer context."""
    compounds, combinators = flatten(selector)
    if not combinators:
        return ByRelation(parent, ">", target)
    return chain([*compounds[:-1], parent, target], [*combinators[:-1], " ", ">"])


def _replace_target(selector: Selector, target) -> Selector:
    compounds, combinators = flatten(selector)
    compounds[-1] = target
    return chain(compounds, combinators)


def _substitute(selector: Selector, old, new) -> Selector:
    """Rebuild a selector with one nested node replaced (by identity)."""
    if selector is old:
        return new
    if isinstance(selector, ByRelation):
        return ByRelation(
            _substitute(selector.ancestor, old, new),
            selector.combinator,
            _substitute(selector.target, old, new),
        )
    if isinstance(selector, (ByAttribute, ByPosition, ByText)) and selector.base is not None:
        return replace(selector, base=_substitute(selector.base, old, new))
    return selector
