"""Document codec: objects to and from a single HTML document body.

Encoding emits ``frontmatter ++ content ++ backmatter``. Decoding splits a
fetched body at the first divider, reads the frontmatter rows back into
fields and drops the generated backmatter. A body without a divider is
decoded as pure content.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from jinja2 import BaseLoader, Environment, select_autoescape
from markupsafe import Markup

from .backlinks import get_backlinks_with_context
from .config import (
    APP_PROPERTY_OBJECT_ID,
    APP_PROPERTY_TYPE,
    DEFAULT_OBJECT_TYPE,
    DOCUMENT_URL_TEMPLATE,
)
from .frontmatter import (
    ReferenceResolver,
    ResolvedRef,
    build_backmatter,
    build_frontmatter,
    parse_frontmatter_rows,
    unresolved,
)
from .models import (
    Asset,
    BacklinkContext,
    NexusObject,
    PropertyDefinition,
    RemoteFile,
    RemoteRef,
    new_object_id,
    utcnow,
)
from .parser import LEGACY_MENTION_ATTR, MENTION_ATTR, iter_mention_tags, parse_html, split_document

if TYPE_CHECKING:
    from .store import LocalStore

log = logging.getLogger(__name__)

EMPTY_DOCUMENT = "<p>Empty document</p>"
UNSYNCED_STYLE = "color:#9ca3af"
ASSET_SCHEMES = ("asset://", "asset:")

AssetLookup = Callable[[str], Asset | None]
AssetUploader = Callable[[Asset], Awaitable[str]]

DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
</head>
<body>
{{ frontmatter }}
{{ content }}
{%- if backmatter %}
{{ backmatter }}
{%- endif %}
</body>
</html>
"""


def _get_env() -> Environment:
    return Environment(
        loader=BaseLoader(),
        autoescape=select_autoescape(default=True, default_for_string=True),
    )


def document_url(file_id: str) -> str:
    return DOCUMENT_URL_TEMPLATE.format(file_id=file_id)


# ─────────────────────────────────────────────────────────────────────────────
# Outgoing rewrites
# ─────────────────────────────────────────────────────────────────────────────


def rewrite_mentions(content: str, resolve: ReferenceResolver) -> str:
    """Point mentions at their remote documents, or de-emphasize them.

    Markers are resolved one at a time, in document order. Legacy markers
    are rewritten with the current attribute name.
    """
    if not content:
        return content

    tree = parse_html(content)
    for tag, target, _ in list(iter_mention_tags(tree)):
        if LEGACY_MENTION_ATTR in tag.attrs:
            del tag[LEGACY_MENTION_ATTR]
        tag[MENTION_ATTR] = target

        ref = resolve(target)
        if ref.state == "synced":
            tag.name = "a"
            tag["href"] = ref.url
            if tag.get("style") == UNSYNCED_STYLE:
                del tag["style"]
        else:
            if ref.state == "unresolved":
                log.debug("Unresolved mention target %s", target)
            if "href" in tag.attrs:
                del tag["href"]
            if tag.name == "a":
                tag.name = "span"
            tag["style"] = UNSYNCED_STYLE
    return str(tree)


def _asset_id(src: str) -> str | None:
    for scheme in ASSET_SCHEMES:
        if src.startswith(scheme):
            return src[len(scheme) :] or None
    return None


async def rewrite_assets(content: str, assets: AssetLookup, uploader: AssetUploader) -> str:
    """Upload local-only assets once and point their images at the remote URL.

    Assets that already carry a remote URL are not uploaded again. Unknown
    asset ids are left untouched.
    """
    if not content or "asset:" not in content:
        return content

    tree = parse_html(content)
    uploaded: dict[str, str] = {}
    for img in tree.find_all("img"):
        asset_id = _asset_id(str(img.get("src") or ""))
        if asset_id is None:
            continue

        url = uploaded.get(asset_id)
        if url is None:
            asset = assets(asset_id)
            if asset is None:
                log.debug("Unknown asset %s; leaving placeholder", asset_id)
                continue
            url = asset.remote_url or await uploader(asset)
            uploaded[asset_id] = url
        img["src"] = url
    return str(tree)


def render_document(
    obj: NexusObject,
    resolve: ReferenceResolver,
    backlinks: list[BacklinkContext] | None = None,
) -> str:
    """Encode an object as a complete HTML document.

    The backmatter is omitted entirely when there are no backlinks.
    """
    tmpl = _get_env().from_string(DOCUMENT_TEMPLATE)
    return tmpl.render(
        title=obj.title,
        frontmatter=Markup(build_frontmatter(obj, resolve)),
        content=Markup(obj.content.strip() or EMPTY_DOCUMENT),
        backmatter=Markup(build_backmatter(backlinks or [], resolve)),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────


def _title_from_file(file: RemoteFile | None) -> str | None:
    if file is None or not file.name:
        return None
    name = file.name
    if name.endswith(".gdoc"):
        name = name[: -len(".gdoc")]
    return name or None


def decode_document(
    html: str,
    file: RemoteFile | None = None,
    existing: NexusObject | None = None,
    definitions: list[PropertyDefinition] | None = None,
) -> NexusObject:
    """Rebuild an object from an exported body and its file metadata.

    Identity comes from the file's application properties first, then the
    frontmatter, then the existing local record.
    """
    split = split_document(html)
    if not split.has_boundary:
        log.debug("Decoding %s without frontmatter", file.id if file else "document")
    fm = parse_frontmatter_rows(split.rows, definitions, existing)
    props = file.app_properties if file else {}

    object_id = (
        props.get(APP_PROPERTY_OBJECT_ID)
        or fm.id
        or (existing.id if existing else None)
        or (file.id if file else new_object_id())
    )
    type_name = (
        props.get(APP_PROPERTY_TYPE)
        or fm.type
        or (existing.type if existing else None)
        or DEFAULT_OBJECT_TYPE
    )
    title = _title_from_file(file) or split.title or (existing.title if existing else None) or "Untitled"

    if split.has_boundary:
        tags = fm.tags or []
        metadata = fm.metadata
    else:
        tags = list(existing.tags) if existing else []
        metadata = list(existing.metadata) if existing else []

    last_modified = (
        (file.modified_time if file else None)
        or fm.last_modified
        or (existing.last_modified if existing else None)
        or utcnow()
    )

    if file is not None:
        remote = RemoteRef(file_id=file.id, revision=file.version)
    else:
        remote = existing.remote if existing else None

    content = split.content
    if content == EMPTY_DOCUMENT:
        content = ""

    return NexusObject(
        id=object_id,
        title=title,
        type=type_name,
        content=content,
        metadata=metadata,
        tags=tags,
        last_modified=last_modified,
        remote=remote,
    )


def peek_type(html: str) -> str | None:
    """Type named by the frontmatter, without decoding the rest."""
    return parse_frontmatter_rows(split_document(html).rows).type


class DocumentCodec:
    """Codec bound to the local store for reference resolution and schemas."""

    def __init__(self, store: "LocalStore") -> None:
        self.store = store

    def resolve(self, object_id: str) -> ResolvedRef:
        obj = self.store.get_object_by_id(object_id)
        if obj is None:
            return unresolved(object_id)
        if obj.remote is not None:
            return ResolvedRef(
                id=object_id,
                state="synced",
                title=obj.title,
                url=document_url(obj.remote.file_id),
            )
        return ResolvedRef(id=object_id, state="local", title=obj.title)

    async def encode(
        self,
        obj: NexusObject,
        uploader: Callable[[Asset], Awaitable[tuple[str, str]]] | None = None,
    ) -> str:
        """Render obj for upload, rewriting mentions and assets on the way out.

        The rewrites only touch the outgoing body, never the stored object.
        """
        content = rewrite_mentions(obj.content, self.resolve)
        if uploader is not None:

            async def upload(asset: Asset) -> str:
                remote_id, url = await uploader(asset)
                self.store.mark_asset_uploaded(asset.id, remote_id, url)
                return url

            content = await rewrite_assets(content, self.store.get_asset, upload)

        backlinks = get_backlinks_with_context(obj.id, self.store.get_all_objects())
        return render_document(obj.model_copy(update={"content": content}), self.resolve, backlinks)

    def decode(self, html: str, file: RemoteFile | None = None) -> NexusObject:
        existing = None
        if file is not None:
            existing = self.store.get_object_by_remote_id(file.id)
            object_id = file.app_properties.get(APP_PROPERTY_OBJECT_ID)
            if existing is None and object_id:
                existing = self.store.get_object_by_id(object_id)

        type_name = (file.app_properties.get(APP_PROPERTY_TYPE) if file else None) or (
            existing.type if existing else None
        )
        if type_name is None:
            type_name = peek_type(html)

        schema = self.store.get_type_schema(type_name) if type_name else None
        return decode_document(html, file, existing, schema.properties if schema else None)
