"""Backlink discovery with textual context around each mention."""

from __future__ import annotations

import logging
from typing import Iterable

from .config import CONTEXT_ELLIPSIS, CONTEXT_HALF_WINDOW, CONTEXT_MAX_LENGTH
from .models import BacklinkContext, MentionContext, NexusObject
from .parser import (
    block_text,
    collapse_whitespace,
    enclosing_block,
    find_mentions,
    iter_mention_tags,
    parse_html,
)

log = logging.getLogger(__name__)


def extract_context(text: str, mention_text: str) -> str:
    """Window a block's text around a mention.

    Short blocks are returned whole. Long blocks keep CONTEXT_HALF_WINDOW
    characters on each side of the mention, with an ellipsis at every
    truncated end, so the mention itself stays visible. If the mention
    text cannot be located the block is truncated from the start.
    """
    text = collapse_whitespace(text)
    if len(text) <= CONTEXT_MAX_LENGTH:
        return text

    needle = collapse_whitespace(mention_text)
    index = text.find(needle) if needle else -1
    if index < 0:
        return text[:CONTEXT_MAX_LENGTH] + CONTEXT_ELLIPSIS

    start = max(0, index - CONTEXT_HALF_WINDOW)
    end = min(len(text), index + len(needle) + CONTEXT_HALF_WINDOW)
    window = text[start:end]
    if start > 0:
        window = CONTEXT_ELLIPSIS + window
    if end < len(text):
        window = window + CONTEXT_ELLIPSIS
    return window


def _mention_contexts(obj: NexusObject, target_id: str) -> list[MentionContext]:
    tree = parse_html(obj.content)
    contexts: list[MentionContext] = []
    for position, tag in enumerate(find_mentions(tree, target_id)):
        block = enclosing_block(tag)
        mention_text = block_text(tag)
        text = block_text(block) if block is not None else mention_text
        block_id = block.get("id") if block is not None else None
        contexts.append(
            MentionContext(
                context_text=extract_context(text, mention_text),
                mention_position=position,
                block_id=str(block_id) if block_id else None,
            )
        )
    return contexts


def get_backlinks_with_context(target_id: str, objects: Iterable[NexusObject]) -> list[BacklinkContext]:
    """Every other object mentioning target_id, most recently modified first.

    Mentions from the same source are grouped in document order. A target
    nobody mentions yields an empty list.
    """
    results: list[BacklinkContext] = []
    for obj in objects:
        if obj.id == target_id or not obj.content:
            continue
        mentions = _mention_contexts(obj, target_id)
        if not mentions:
            continue
        results.append(
            BacklinkContext(
                source_id=obj.id,
                source_title=obj.title,
                source_type=obj.type,
                source_last_modified=obj.last_modified,
                mentions=mentions,
            )
        )

    results.sort(key=lambda ctx: ctx.source_last_modified, reverse=True)
    log.debug("Found %d backlink sources for %s", len(results), target_id)
    return results


def backlink_index(objects: Iterable[NexusObject]) -> dict[str, list[str]]:
    """Map each mentioned object id to the ids of objects mentioning it."""
    index: dict[str, set[str]] = {}
    for obj in objects:
        if not obj.content:
            continue
        for _, target, _ in iter_mention_tags(parse_html(obj.content)):
            if target != obj.id:
                index.setdefault(target, set()).add(obj.id)
    return {target: sorted(sources) for target, sources in sorted(index.items())}
