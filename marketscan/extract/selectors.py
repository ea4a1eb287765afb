"""Extraction rules as a tagged variant, with a CSS-subset parser and renderer.

A selector is a tree of frozen dataclasses. Compound selectors wrap their
filters around a core (ById or ByClass) through the ``base`` field, and
combinators are left-associative ByRelation chains:

    div.card > [data-metric="price"]:first-child

    ByRelation(
        ancestor=ByClass(("card",), tag="div"),
        combinator=">",
        target=ByPosition("first-child", base=ByAttribute("data-metric", "=", "price")),
    )

Only the subset the generator emits is supported: tag, id, class,
attribute predicates (=, ^=, *=, $=, existence), :nth-child, :nth-of-type,
:first/last-child, :first/last-of-type, :only-child, :contains("...") and
the four combinators. Selector groups (a, b) are rejected.
"""

import re
from dataclasses import dataclass, replace
from functools import lru_cache, singledispatch
from typing import Iterator, Optional, Sequence, Union

from marketscan.errors import SelectorSyntaxError
from marketscan.extract.dom import PageDocument, PageNode

ATTRIBUTE_OPS = ("=", "^=", "*=", "$=")
POSITION_KINDS = (
    "nth-child",
    "nth-of-type",
    "first-child",
    "last-child",
    "first-of-type",
    "last-of-type",
    "only-child",
)
COMBINATORS = (" ", ">", "~", "+")


@dataclass(frozen=True)
class ById:
    id: str
    tag: Optional[str] = None
    classes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ByClass:
    """Class set with optional tag. No classes means a bare tag (or * without tag)."""

    classes: tuple[str, ...] = ()
    tag: Optional[str] = None


@dataclass(frozen=True)
class ByAttribute:
    name: str
    op: Optional[str] = None  # None tests existence only
    value: Optional[str] = None
    base: Optional["Selector"] = None

    def __post_init__(self):
        if self.op is not None and self.op not in ATTRIBUTE_OPS:
            raise SelectorSyntaxError(f"Unsupported attribute operator {self.op!r}")
        if self.op is not None and self.value is None:
            raise SelectorSyntaxError(f"Attribute operator {self.op!r} needs a value")


@dataclass(frozen=True)
class ByPosition:
    kind: str
    arg: Optional[str] = None
    base: Optional["Selector"] = None

    def __post_init__(self):
        if self.kind not in POSITION_KINDS:
            raise SelectorSyntaxError(f"Unsupported position {self.kind!r}")
        if self.kind.startswith("nth-"):
            _parse_nth(self.arg or "")


@dataclass(frozen=True)
class ByText:
    text: str
    base: Optional["Selector"] = None


@dataclass(frozen=True)
class ByRelation:
    ancestor: "Selector"
    combinator: str
    target: "Selector"

    def __post_init__(self):
        if self.combinator not in COMBINATORS:
            raise SelectorSyntaxError(f"Unsupported combinator {self.combinator!r}")


Selector = Union[ById, ByClass, ByAttribute, ByPosition, ByText, ByRelation]
Compound = Union[ById, ByClass, ByAttribute, ByPosition, ByText]
_LAYER_TYPES = (ByAttribute, ByPosition, ByText)


# Evaluation

@lru_cache(maxsize=256)
def _parse_nth(arg: str) -> tuple[int, int]:
    expr = arg.replace(" ", "").lower()
    if expr == "odd":
        return 2, 1
    if expr == "even":
        return 2, 0
    if re.fullmatch(r"[+-]?\d+", expr):
        return 0, int(expr)
    m = re.fullmatch(r"([+-]?\d*)n([+-]\d+)?", expr)
    if not m:
        raise SelectorSyntaxError(f"Invalid nth expression {arg!r}")
    a_text = m.group(1)
    if a_text in ("", "+"):
        a = 1
    elif a_text == "-":
        a = -1
    else:
        a = int(a_text)
    return a, int(m.group(2) or 0)


def _nth_matches(arg: str, position: int) -> bool:
    a, b = _parse_nth(arg)
    if a == 0:
        return position == b
    step, rem = divmod(position - b, a)
    return rem == 0 and step >= 0


def _base_matches(base: Optional["Selector"], node: PageNode) -> bool:
    return base is None or matches(base, node)


@singledispatch
def matches(selector, node: PageNode) -> bool:
    """Return True when the selector applies to the node."""
    raise TypeError(f"Not a selector: {selector!r}")


@matches.register
def _(selector: ById, node: PageNode) -> bool:
    if node.id != selector.id:
        return False
    if selector.tag is not None and node.tag != selector.tag:
        return False
    node_classes = node.classes
    return all(c in node_classes for c in selector.classes)


@matches.register
def _(selector: ByClass, node: PageNode) -> bool:
    if selector.tag is not None and node.tag != selector.tag:
        return False
    node_classes = node.classes
    return all(c in node_classes for c in selector.classes)


@matches.register
def _(selector: ByAttribute, node: PageNode) -> bool:
    if selector.name not in node.attrs:
        return False
    actual = node.attrs[selector.name]
    op, expected = selector.op, selector.value
    if op == "=" and actual != expected:
        return False
    if op == "^=" and not (expected and actual.startswith(expected)):
        return False
    if op == "*=" and not (expected and expected in actual):
        return False
    if op == "$=" and not (expected and actual.endswith(expected)):
        return False
    return _base_matches(selector.base, node)


@matches.register
def _(selector: ByPosition, node: PageNode) -> bool:
    kind = selector.kind
    if kind == "nth-child":
        ok = _nth_matches(selector.arg or "", node.position)
    elif kind == "nth-of-type":
        ok = _nth_matches(selector.arg or "", node.type_position)
    elif kind == "first-child":
        ok = node.position == 1
    elif kind == "last-child":
        ok = node.position == node.sibling_count
    elif kind == "first-of-type":
        ok = node.type_position == 1
    elif kind == "last-of-type":
        ok = node.type_position == node.type_sibling_count
    else:
        ok = node.sibling_count == 1
    return ok and _base_matches(selector.base, node)


@matches.register
def _(selector: ByText, node: PageNode) -> bool:
    return selector.text in node.text and _base_matches(selector.base, node)


@matches.register
def _(selector: ByRelation, node: PageNode) -> bool:
    if not matches(selector.target, node):
        return False
    comb = selector.combinator
    if comb == ">":
        return node.parent is not None and matches(selector.ancestor, node.parent)
    if comb == " ":
        return any(matches(selector.ancestor, a) for a in node.ancestors())
    siblings = node.previous_siblings()
    if comb == "+":
        return bool(siblings) and matches(selector.ancestor, siblings[0])
    return any(matches(selector.ancestor, s) for s in siblings)


def select(
    document: PageDocument,
    selector: Union["Selector", str],
    scope: Optional[PageNode] = None,
) -> list[PageNode]:
    """
    Find all nodes matching a selector, in document order.

    Args:
        document: Parsed page
        selector: Selector variant or CSS-subset string
        scope: Restrict results to descendants of this node

    Returns:
        Matching nodes
    """
    if isinstance(selector, str):
        selector = parse_selector(selector)
    nodes = scope.descendants() if scope is not None else iter(document.nodes)
    return [node for node in nodes if matches(selector, node)]


# Rendering

def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _prefix(base: Optional["Selector"]) -> str:
    return to_css(base) if base is not None else ""


@singledispatch
def to_css(selector) -> str:
    """Render a selector as a CSS-subset string."""
    raise TypeError(f"Not a selector: {selector!r}")


@to_css.register
def _(selector: ById) -> str:
    return f"{selector.tag or ''}#{selector.id}" + "".join(f".{c}" for c in selector.classes)


@to_css.register
def _(selector: ByClass) -> str:
    if not selector.tag and not selector.classes:
        return "*"
    return (selector.tag or "") + "".join(f".{c}" for c in selector.classes)


@to_css.register
def _(selector: ByAttribute) -> str:
    if selector.op is None:
        return f"{_prefix(selector.base)}[{selector.name}]"
    return f"{_prefix(selector.base)}[{selector.name}{selector.op}{_quote(selector.value)}]"


@to_css.register
def _(selector: ByPosition) -> str:
    arg = f"({selector.arg})" if selector.arg is not None else ""
    return f"{_prefix(selector.base)}:{selector.kind}{arg}"


@to_css.register
def _(selector: ByText) -> str:
    return f"{_prefix(selector.base)}:contains({_quote(selector.text)})"


@to_css.register
def _(selector: ByRelation) -> str:
    left, right = to_css(selector.ancestor), to_css(selector.target)
    if selector.combinator == " ":
        return f"{left} {right}"
    return f"{left} {selector.combinator} {right}"


# Parsing

_IDENT = re.compile(r"[\w-]+")
_ATTR_NAME = re.compile(r"[\w:.-]+")


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def fail(self, message: str):
        raise SelectorSyntaxError(f"{message} at position {self.pos} in {self.text!r}")

    def eof(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self) -> str:
        return self.text[self.pos] if not self.eof() else ""

    def skip_ws(self) -> bool:
        start = self.pos
        while not self.eof() and self.text[self.pos].isspace():
            self.pos += 1
        return self.pos > start

    def expect(self, char: str):
        if self.peek() != char:
            self.fail(f"Expected {char!r}")
        self.pos += 1

    def ident(self, pattern=_IDENT) -> str:
        m = pattern.match(self.text, self.pos)
        if not m:
            self.fail("Expected identifier")
        self.pos = m.end()
        return m.group(0)

    def string(self) -> str:
        quote = self.peek()
        if quote not in ("'", '"'):
            return self.ident()
        self.pos += 1
        chars = []
        while not self.eof():
            ch = self.text[self.pos]
            if ch == "\\" and self.pos + 1 < len(self.text):
                chars.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return "".join(chars)
            chars.append(ch)
            self.pos += 1
        self.fail("Unterminated string")

    def parse(self) -> Selector:
        self.skip_ws()
        result = self.compound()
        while True:
            had_space = self.skip_ws()
            if self.eof():
                return result
            ch = self.peek()
            if ch in ">+~":
                self.pos += 1
                self.skip_ws()
                combinator = ch
            elif ch == ",":
                self.fail("Selector groups are not supported")
            elif had_space:
                combinator = " "
            else:
                self.fail(f"Unexpected {ch!r}")
            result = ByRelation(result, combinator, self.compound())

    def compound(self) -> Compound:
        start = self.pos
        tag = None
        element_id = None
        classes: list[str] = []
        layers: list[tuple] = []

        if self.peek() == "*":
            self.pos += 1
        elif _IDENT.match(self.text, self.pos):
            tag = self.ident().lower()

        while not self.eof():
            ch = self.peek()
            if ch == "#":
                self.pos += 1
                if element_id is not None:
                    self.fail("Duplicate id")
                element_id = self.ident()
            elif ch == ".":
                self.pos += 1
                classes.append(self.ident())
            elif ch == "[":
                layers.append(self.attribute())
            elif ch == ":":
                layers.append(self.pseudo())
            else:
                break

        if self.pos == start:
            self.fail("Expected selector")

        current: Optional[Selector]
        if element_id is not None:
            current = ById(element_id, tag, tuple(classes))
        elif tag or classes or not layers:
            current = ByClass(tuple(classes), tag)
        else:
            current = None

        for kind, *args in layers:
            if kind == "attr":
                current = ByAttribute(args[0], args[1], args[2], base=current)
            elif kind == "text":
                current = ByText(args[0], base=current)
            else:
                current = ByPosition(args[0], args[1], base=current)
        return current

    def attribute(self) -> tuple:
        self.expect("[")
        self.skip_ws()
        name = self.ident(_ATTR_NAME)
        self.skip_ws()
        if self.peek() == "]":
            self.pos += 1
            return ("attr", name, None, None)
        op = None
        for candidate in ("^=", "*=", "$=", "="):
            if self.text.startswith(candidate, self.pos):
                op = candidate
                self.pos += len(candidate)
                break
        if op is None:
            self.fail("Unsupported attribute operator")
        self.skip_ws()
        value = self.string()
        self.skip_ws()
        self.expect("]")
        return ("attr", name, op, value)

    def pseudo(self) -> tuple:
        self.expect(":")
        name = self.ident().lower()
        if name == "contains":
            self.expect("(")
            self.skip_ws()
            text = self.string()
            self.skip_ws()
            self.expect(")")
            return ("text", text)
        if name not in POSITION_KINDS:
            self.fail(f"Unsupported pseudo-class :{name}")
        arg = None
        if name.startswith("nth-"):
            self.expect("(")
            end = self.text.find(")", self.pos)
            if end < 0:
                self.fail("Unterminated nth expression")
            arg = self.text[self.pos:end].strip()
            self.pos = end + 1
        return ("pos", name, arg)


def parse_selector(text: str) -> Selector:
    """
    Parse a CSS-subset string into a selector variant.

    Raises:
        SelectorSyntaxError: On empty input or unsupported syntax
    """
    if not text or not text.strip():
        raise SelectorSyntaxError("Empty selector")
    return _Parser(text.strip()).parse()


def as_selector(value: Union["Selector", str]) -> Selector:
    return parse_selector(value) if isinstance(value, str) else value


# Structure helpers

def walk(selector: Selector) -> Iterator[Selector]:
    """Yield the selector and every selector nested inside it."""
    yield selector
    if isinstance(selector, ByRelation):
        yield from walk(selector.ancestor)
        yield from walk(selector.target)
    elif isinstance(selector, _LAYER_TYPES) and selector.base is not None:
        yield from walk(selector.base)


def flatten(selector: Selector) -> tuple[list[Compound], list[str]]:
    """Split a relation chain into its compounds and combinators, left to right."""
    compounds: list[Compound] = []
    combinators: list[str] = []
    while isinstance(selector, ByRelation):
        compounds.insert(0, selector.target)
        combinators.insert(0, selector.combinator)
        selector = selector.ancestor
    compounds.insert(0, selector)
    return compounds, combinators


def chain(compounds: Sequence[Compound], combinators: Sequence[str]) -> Selector:
    """Inverse of flatten()."""
    result = compounds[0]
    for combinator, compound in zip(combinators, compounds[1:]):
        result = ByRelation(result, combinator, compound)
    return result


def peel(compound: Optional[Compound]) -> tuple[Optional[Union[ById, ByClass]], list]:
    """
    Separate a compound into its core and its filter layers.

    Returns:
        (core, layers) where layers are innermost first with base=None
    """
    layers = []
    while isinstance(compound, _LAYER_TYPES):
        layers.insert(0, replace(compound, base=None))
        compound = compound.base
    return compound, layers


def wrap(core: Optional[Union[ById, ByClass]], layers: Sequence) -> Optional[Compound]:
    """Inverse of peel()."""
    current = core
    for layer in layers:
        current = replace(layer, base=current)
    return current


def target_of(selector: Selector) -> Compound:
    return flatten(selector)[0][-1]
