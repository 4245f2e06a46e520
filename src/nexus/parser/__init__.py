"""Document parsing for nexus."""

from .document import (
    BACKMATTER_CLASS,
    FRONTMATTER_CLASS,
    HEADING_TAGS,
    SplitDocument,
    block_text,
    collapse_whitespace,
    enclosing_block,
    find_frontmatter_boundary,
    is_backmatter_start,
    multiline_text,
    parse_html,
    split_document,
)
from .mentions import (
    LEGACY_MENTION_ATTR,
    MENTION_ATTR,
    Mention,
    extract_mentions,
    find_mentions,
    iter_mention_tags,
    mention_target,
)

__all__ = [
    "BACKMATTER_CLASS",
    "FRONTMATTER_CLASS",
    "HEADING_TAGS",
    "LEGACY_MENTION_ATTR",
    "MENTION_ATTR",
    "Mention",
    "SplitDocument",
    "block_text",
    "collapse_whitespace",
    "enclosing_block",
    "extract_mentions",
    "find_frontmatter_boundary",
    "find_mentions",
    "is_backmatter_start",
    "iter_mention_tags",
    "mention_target",
    "multiline_text",
    "parse_html",
    "split_document",
]
