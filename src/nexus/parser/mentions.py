"""Mention markers in object content.

A mention is an inline element carrying the target object id in an
attribute. Older content used a different attribute name; both are read,
only the current one is written.
"""

from __future__ import annotations

from typing import Iterator, Literal, NamedTuple

from bs4 import BeautifulSoup, Tag

from .document import block_text, parse_html

MENTION_ATTR = "data-object-id"
LEGACY_MENTION_ATTR = "data-id"

MentionKind = Literal["mention", "link"]


class Mention(NamedTuple):
    target_id: str
    kind: MentionKind  # "link" for the legacy attribute
    text: str


def mention_target(tag: Tag) -> tuple[str, MentionKind] | None:
    """Target id and kind of a marker element, or None if it is not one."""
    value = tag.get(MENTION_ATTR)
    if value:
        return str(value), "mention"
    value = tag.get(LEGACY_MENTION_ATTR)
    if value:
        return str(value), "link"
    return None


def _is_marker(tag: Tag) -> bool:
    return bool(tag.get(MENTION_ATTR) or tag.get(LEGACY_MENTION_ATTR))


def iter_mention_tags(tree: BeautifulSoup | Tag) -> Iterator[tuple[Tag, str, MentionKind]]:
    """Yield (element, target id, kind) for every marker, in document order."""
    for tag in tree.find_all(_is_marker):
        target = mention_target(tag)
        if target is not None:
            yield tag, target[0], target[1]


def find_mentions(tree: BeautifulSoup | Tag, target_id: str) -> list[Tag]:
    """All marker elements pointing at target_id, in document order."""
    return [tag for tag, target, _ in iter_mention_tags(tree) if target == target_id]


def extract_mentions(html: str) -> list[Mention]:
    if not html:
        return []
    return [
        Mention(target_id=target, kind=kind, text=block_text(tag))
        for tag, target, kind in iter_mention_tags(parse_html(html))
    ]
