"""Backend-neutral element tree built from parsed HTML."""

import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

from selectolax.lexbor import LexborHTMLParser

_WHITESPACE = re.compile(r"\s+")
_SKIPPED_TAGS = ["script", "style", "noscript", "template", "svg"]


def collapse(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(eq=False)
class PageNode:
    """One element of a page.

    Positions are 1-based: position counts all element siblings,
    type_position only siblings with the same tag.
    """

    tag: str
    attrs: dict[str, str]
    text: str = ""
    own_text: str = ""
    parent: Optional["PageNode"] = None
    children: list["PageNode"] = field(default_factory=list)
    position: int = 1
    type_position: int = 1
    order: int = 0

    @property
    def id(self) -> Optional[str]:
        return self.attrs.get("id") or None

    @property
    def classes(self) -> tuple[str, ...]:
        return tuple(self.attrs.get("class", "").split())

    @property
    def sibling_count(self) -> int:
        return len(self.parent.children) if self.parent else 1

    @property
    def type_sibling_count(self) -> int:
        if not self.parent:
            return 1
        return sum(1 for c in self.parent.children if c.tag == self.tag)

    def previous_siblings(self) -> list["PageNode"]:
        """Element siblings before this node, nearest first."""
        if not self.parent:
            return []
        return list(reversed(self.parent.children[: self.position - 1]))

    def ancestors(self) -> Iterator["PageNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def descendants(self) -> Iterator["PageNode"]:
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def signature(self) -> tuple[str, tuple[str, ...], int]:
        """Structural identity used to detect repeating blocks."""
        return (self.tag, tuple(sorted(self.classes)), len(self.children))

    def __repr__(self) -> str:
        classes = "".join(f".{c}" for c in self.classes)
        return f"<PageNode {self.tag}{classes} #{self.order}>"


class PageDocument:
    """Parsed page: element nodes in document order."""

    def __init__(self, root: Optional[PageNode], url: Optional[str] = None):
        self.root = root
        self.url = url
        self.nodes: list[PageNode] = [root, *root.descendants()] if root else []

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[PageNode]:
        return iter(self.nodes)


def _element_children(node) -> list:
    children = []
    for child in node.iter(include_text=False):
        tag = child.tag or ""
        if tag and tag[0] not in "_-!":
            children.append(child)
    return children


def _build(root) -> PageNode:
    """Build the PageNode tree with an explicit stack so nesting depth is unbounded."""
    top: Optional[PageNode] = None
    type_counts: dict[int, dict[str, int]] = {}
    order = 0
    stack = [(root, None)]
    while stack:
        node, parent = stack.pop()
        attrs = {k: (v if v is not None else "") for k, v in (node.attributes or {}).items()}
        page_node = PageNode(
            tag=node.tag.lower(),
            attrs=attrs,
            text=collapse(node.text(deep=True, separator=" ")),
            own_text=collapse(node.text(deep=False, separator=" ")),
            parent=parent,
            order=order,
        )
        order += 1

        if parent is None:
            top = page_node
        else:
            counts = type_counts.setdefault(id(parent), {})
            counts[page_node.tag] = counts.get(page_node.tag, 0) + 1
            page_node.position = len(parent.children) + 1
            page_node.type_position = counts[page_node.tag]
            parent.children.append(page_node)

        # reversed so siblings pop in document order
        stack.extend((child, page_node) for child in reversed(_element_children(node)))
    return top


def parse_html(html: str, url: Optional[str] = None) -> PageDocument:
    """
    Parse HTML into a PageDocument.

    Script, style and similar non-content elements are dropped before the
    tree is built so their text never leaks into element text.

    Args:
        html: Raw page HTML
        url: Page URL, kept for resolving relative links

    Returns:
        PageDocument (empty when the HTML has no root element)
    """
    tree = LexborHTMLParser(html or "")
    tree.strip_tags(_SKIPPED_TAGS)
    if tree.root is None:
        return PageDocument(None, url)
    return PageDocument(_build(tree.root), url)
