"""Tests for the document codec (encode/decode of whole bodies)."""

from datetime import UTC, datetime

import pytest

from nexus.backlinks import get_backlinks_with_context
from nexus.codec import (
    EMPTY_DOCUMENT,
    DocumentCodec,
    decode_document,
    render_document,
    rewrite_assets,
    rewrite_mentions,
)
from nexus.frontmatter import ResolvedRef, unresolved
from nexus.models import Asset, NexusObject, RemoteFile, RemoteRef, make_property
from nexus.store import DEFAULT_SCHEMAS

PERSON_SCHEMA = next(s for s in DEFAULT_SCHEMAS if s.type == "Person")


def _person(**fields) -> NexusObject:
    defaults = dict(
        id="p1",
        title="Ada Lovelace",
        type="Person",
        tags=["math"],
        content="<p>First programmer.</p>",
        last_modified=datetime(2024, 2, 1, 8, 0, tzinfo=UTC),
        metadata=[
            make_property("fullName", "Full Name", "text", "Augusta Ada King"),
            make_property("email", "Email", "text", "ada@example.com"),
            make_property("phone", "Phone", "text", ""),
            make_property("birthdate", "Birth Date", "date", "1815-12-10"),
        ],
    )
    defaults.update(fields)
    return NexusObject(**defaults)


# ─────────────────────────────────────────────────────────────────────────────
# Round trip
# ─────────────────────────────────────────────────────────────────────────────


class TestRoundTrip:
    def test_fields_survive(self):
        obj = _person()
        html = render_document(obj, unresolved)
        decoded = decode_document(html, definitions=PERSON_SCHEMA.properties)

        assert decoded.id == obj.id
        assert decoded.title == obj.title
        assert decoded.type == obj.type
        assert decoded.tags == obj.tags
        assert decoded.metadata == obj.metadata
        assert decoded.content == obj.content
        assert decoded.last_modified == obj.last_modified

    @pytest.mark.parametrize("label", ["Type", "ID", "Last Modified", "Tags"])
    def test_property_named_like_a_header_row(self, label):
        obj = _person(metadata=[make_property("kind", label, "text", "Workshop")])
        decoded = decode_document(render_document(obj, unresolved))

        assert decoded.type == "Person"
        assert decoded.id == "p1"
        assert decoded.tags == ["math"]
        assert [(p.label, p.value) for p in decoded.metadata] == [(label, "Workshop")]

    def test_property_named_tags_without_object_tags(self):
        obj = _person(tags=[], metadata=[make_property("colour", "Tags", "text", "red")])
        decoded = decode_document(render_document(obj, unresolved), existing=obj)

        assert decoded.tags == []
        assert decoded.metadata == obj.metadata

    def test_multiline_text_property(self):
        obj = _person()
        obj.metadata[1] = make_property("email", "Email", "text", "ada@example.com\nada@work.example")
        decoded = decode_document(render_document(obj, unresolved), definitions=PERSON_SCHEMA.properties)
        assert decoded.get_property("email").value == "ada@example.com\nada@work.example"

    def test_empty_content_placeholder(self):
        html = render_document(_person(content=""), unresolved)
        assert EMPTY_DOCUMENT in html
        assert decode_document(html).content == ""

    def test_backmatter_not_read_back(self, store):
        target = _person()
        source = NexusObject(
            title="Notes",
            content=f'<p>Talked to <span data-object-id="{target.id}">Ada</span>.</p>',
        )
        store.upsert(target)
        store.upsert(source)

        html = render_document(
            target,
            unresolved,
            backlinks=get_backlinks_with_context(target.id, store.get_all_objects()),
        )
        assert "Linked References" in html
        assert decode_document(html).content == target.content


class TestDegradedDecode:
    def test_header_rows_without_divider(self):
        table = (
            "<table><tr><td>Type</td><td>Meeting</td></tr>"
            "<tr><td>ID</td><td>m1</td></tr>"
            "<tr><td>Last Modified</td><td>2024-03-01T09:30:00+00:00</td></tr></table>"
        )
        decoded = decode_document(table + "<p>Agenda</p>", RemoteFile(id="f9", name="Standup"))

        assert decoded.type == "Page"
        assert decoded.metadata == []
        assert decoded.content.startswith("<table>")
        assert "<p>Agenda</p>" in decoded.content


class TestDecodeIdentity:
    def test_app_properties_win(self):
        html = render_document(_person(), unresolved)
        file = RemoteFile(
            id="f1",
            name="Ada Lovelace",
            mime_type="application/vnd.google-apps.document",
            version="3",
            app_properties={"nexus_object_id": "other-id", "nexus_type_id": "Person"},
        )
        decoded = decode_document(html, file)

        assert decoded.id == "other-id"
        assert decoded.remote == RemoteRef(file_id="f1", revision="3")

    def test_file_name_is_title(self):
        html = render_document(_person(), unresolved)
        decoded = decode_document(html, RemoteFile(id="f1", name="Renamed.gdoc"))
        assert decoded.title == "Renamed"

    def test_body_without_frontmatter_keeps_existing_fields(self):
        existing = _person()
        decoded = decode_document("<p>Rewritten by hand</p>", existing=existing)

        assert decoded.id == existing.id
        assert decoded.type == "Person"
        assert decoded.tags == existing.tags
        assert decoded.metadata == existing.metadata
        assert decoded.content == "<p>Rewritten by hand</p>"

    def test_bare_document_defaults(self):
        decoded = decode_document("<p>loose</p>", RemoteFile(id="f7", name="Loose"))
        assert decoded.type == "Page"
        assert decoded.id == "f7"
        assert decoded.title == "Loose"


# ─────────────────────────────────────────────────────────────────────────────
# Outgoing rewrites
# ─────────────────────────────────────────────────────────────────────────────


class TestRewriteMentions:
    def test_synced_target_becomes_link(self):
        resolve = lambda oid: ResolvedRef(id=oid, state="synced", title="Ada", url="https://docs.test/f1")
        html = rewrite_mentions('<p><span data-object-id="p1">Ada</span></p>', resolve)
        assert '<a data-object-id="p1" href="https://docs.test/f1">Ada</a>' in html

    def test_unsynced_target_is_greyed(self):
        resolve = lambda oid: ResolvedRef(id=oid, state="local", title="Ada")
        html = rewrite_mentions('<p><a data-object-id="p1" href="stale">Ada</a></p>', resolve)
        assert "href" not in html
        assert '<span data-object-id="p1" style="color:#9ca3af">Ada</span>' in html

    def test_legacy_marker_upgraded(self):
        html = rewrite_mentions('<p><span data-id="p1">Ada</span></p>', unresolved)
        assert 'data-id="p1"' not in html
        assert 'data-object-id="p1"' in html


class TestRewriteAssets:
    @pytest.mark.asyncio
    async def test_uploads_once_per_asset(self):
        uploads: list[str] = []
        asset = Asset(id="a1", filename="pic.png")

        async def uploader(a: Asset) -> str:
            uploads.append(a.id)
            return "https://cdn.test/a1"

        content = '<p><img src="asset:a1"/><img src="asset://a1"/><img src="asset:missing"/></p>'
        html = await rewrite_assets(content, {"a1": asset}.get, uploader)

        assert uploads == ["a1"]
        assert html.count("https://cdn.test/a1") == 2
        assert 'src="asset:missing"' in html

    @pytest.mark.asyncio
    async def test_already_uploaded_asset_reused(self):
        asset = Asset(id="a1", filename="pic.png", remote_url="https://cdn.test/old")

        async def uploader(a: Asset) -> str:
            raise AssertionError("should not upload")

        html = await rewrite_assets('<img src="asset:a1"/>', {"a1": asset}.get, uploader)
        assert 'src="https://cdn.test/old"' in html


# ─────────────────────────────────────────────────────────────────────────────
# Store-bound codec
# ─────────────────────────────────────────────────────────────────────────────


class TestDocumentCodec:
    def test_resolve_states(self, store):
        synced = NexusObject(id="s", title="Synced", remote=RemoteRef(file_id="f1"))
        local = NexusObject(id="l", title="Local")
        store.upsert(synced)
        store.upsert(local)
        codec = DocumentCodec(store)

        assert codec.resolve("s").state == "synced"
        assert codec.resolve("s").url == "https://docs.google.com/document/d/f1/edit"
        assert codec.resolve("l").state == "local"
        assert codec.resolve("missing").state == "unresolved"

    @pytest.mark.asyncio
    async def test_encode_marks_assets_uploaded(self, store):
        store.save_asset(Asset(id="a1", filename="pic.png", data=b"png"))
        obj = NexusObject(title="With image", content='<p><img src="asset:a1"/></p>')
        codec = DocumentCodec(store)

        async def uploader(asset: Asset) -> tuple[str, str]:
            return "f-asset", "https://cdn.test/f-asset"

        html = await codec.encode(obj, uploader)

        assert 'src="https://cdn.test/f-asset"' in html
        assert store.get_asset("a1").remote_url == "https://cdn.test/f-asset"
        # Stored content is untouched
        assert obj.content == '<p><img src="asset:a1"/></p>'

    def test_decode_uses_schema_of_type(self, store):
        obj = _person()
        html = render_document(obj, unresolved)
        file = RemoteFile(id="f1", name=obj.title, app_properties={"nexus_type_id": "Person"})

        decoded = DocumentCodec(store).decode(html, file)
        assert decoded.get_property("birthdate").type == "date"

    def test_decode_matches_existing_by_remote_id(self, store):
        existing = _person(remote=RemoteRef(file_id="f1"))
        store.upsert(existing)

        decoded = DocumentCodec(store).decode("<p>No table</p>", RemoteFile(id="f1", name="Ada"))
        assert decoded.id == existing.id
        assert decoded.metadata == existing.metadata
