"""Structural document model for exported document bodies.

An encoded document body is laid out as:

    <table>frontmatter rows</table>
    <hr>
    ...user content...
    <hr>
    <h3>Linked References</h3>
    ...generated backlinks...

Parsing is done with BeautifulSoup; everything here operates on the tree,
never on raw markup strings.
"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

from bs4 import BeautifulSoup, Comment, Doctype, NavigableString, Tag

from ..config import BACKMATTER_HEADING

log = logging.getLogger(__name__)

BACKMATTER_CLASS = "nexus-backmatter"
FRONTMATTER_CLASS = "nexus-frontmatter"

# Smallest structural blocks a mention's context is taken from
BLOCK_TAGS = ("p", "li", "div", "h1", "h2", "h3", "h4", "h5", "h6")
HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")

_WHITESPACE = re.compile(r"\s+")


class SplitDocument(NamedTuple):
    """Result of splitting an exported body at its structural boundaries."""

    title: str | None
    rows: list[tuple[str, Tag]]  # (label, value cell) in document order
    content: str  # user content HTML
    has_boundary: bool


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def block_text(node: Tag) -> str:
    """Visible text of a node with whitespace collapsed.

    Text nodes are joined as they are, so inline markup never splits a word.
    """
    return collapse_whitespace(node.get_text())


def multiline_text(node: Tag) -> str:
    """Like block_text, but each <br> becomes a newline."""
    parts: list[str] = []
    for element in node.descendants:
        if isinstance(element, Tag):
            if element.name == "br":
                parts.append("\n")
        elif not isinstance(element, (Comment, Doctype)):
            parts.append(_WHITESPACE.sub(" ", str(element)))
    lines = [collapse_whitespace(line) for line in "".join(parts).split("\n")]
    return "\n".join(lines)


def enclosing_block(node: Tag) -> Tag | None:
    """Closest paragraph, list item, div or heading around a node.

    Falls back to the direct parent when no block ancestor exists.
    """
    block = node.find_parent(BLOCK_TAGS)
    if block is not None:
        return block
    parent = node.parent
    return parent if isinstance(parent, Tag) else None


def _body(tree: BeautifulSoup) -> Tag:
    body = tree.find("body") or tree.find("html")
    return body if isinstance(body, Tag) else tree


def _top_level(node: Tag, container: Tag) -> Tag:
    """The ancestor of node that is a direct child of container."""
    current = node
    while current.parent is not None and current.parent is not container:
        current = current.parent
    return current


def _next_tag(node: Tag) -> Tag | None:
    sibling = node.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            return sibling
        if isinstance(sibling, NavigableString) and sibling.strip():
            return None
        sibling = sibling.next_sibling
    return None


def _is_backmatter_heading(node: Tag | None) -> bool:
    if node is None:
        return False
    heading = node if node.name in HEADING_TAGS else node.find(HEADING_TAGS)
    return heading is not None and block_text(heading) == BACKMATTER_HEADING


def is_backmatter_start(node: Tag) -> bool:
    """True for the first node of a generated backlink section.

    Recognizes the marker class written on encode, and the divider plus
    heading shape that survives a provider round trip without classes.
    """
    classes = node.get("class") or []
    if BACKMATTER_CLASS in classes:
        return True
    if node.name in HEADING_TAGS:
        return block_text(node) == BACKMATTER_HEADING
    hr = node if node.name == "hr" else node.find("hr")
    if hr is None:
        return False
    following = _next_tag(hr)
    if following is None and hr is not node and not block_text(node):
        # <p><hr></p> followed by the heading
        following = _next_tag(node)
    return _is_backmatter_heading(following)


def find_frontmatter_boundary(tree: BeautifulSoup) -> Tag | None:
    """Top-level node holding the first divider, unless it opens the backmatter."""
    body = _body(tree)
    hr = body.find("hr")
    if hr is None:
        return None
    boundary = _top_level(hr, body)
    if is_backmatter_start(boundary):
        return None
    return boundary


def _frontmatter_rows(nodes: list[Tag]) -> list[tuple[str, Tag]]:
    rows: list[tuple[str, Tag]] = []
    for node in nodes:
        for tr in node.find_all("tr") if node.name != "tr" else [node]:
            cells = tr.find_all(["td", "th"], recursive=False)
            if len(cells) < 2:
                continue
            label = block_text(cells[0])
            if label:
                rows.append((label, cells[1]))
    return rows


def _strip_backmatter(nodes: list) -> list:
    kept = []
    for node in nodes:
        if isinstance(node, Tag) and is_backmatter_start(node):
            break
        kept.append(node)
    return kept


def _is_skippable(node) -> bool:
    if isinstance(node, (Comment, Doctype)):
        return True
    return isinstance(node, Tag) and node.name in ("head", "title", "style", "script")


def _render(nodes: list) -> str:
    return "".join(str(node) for node in nodes).strip()


def split_document(html: str) -> SplitDocument:
    """Split a body into frontmatter rows, user content and the boundary flag.

    A body without a divider is treated entirely as content. That is a
    degraded decode, logged but never raised.
    """
    tree = parse_html(html)
    title_tag = tree.find("title")
    title = block_text(title_tag) if isinstance(title_tag, Tag) else None

    body = _body(tree)
    children = [child for child in body.children if not _is_skippable(child)]
    boundary = find_frontmatter_boundary(tree)

    if boundary is None:
        log.debug("No frontmatter boundary found; treating whole body as content")
        return SplitDocument(
            title=title or None,
            rows=[],
            content=_render(_strip_backmatter(children)),
            has_boundary=False,
        )

    index = next(i for i, child in enumerate(children) if child is boundary)
    before = [node for node in children[:index] if isinstance(node, Tag)]
    after = _strip_backmatter(children[index + 1 :])
    return SplitDocument(
        title=title or None,
        rows=_frontmatter_rows(before),
        content=_render(after),
        has_boundary=True,
    )
