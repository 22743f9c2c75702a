"""End-to-end walkthroughs of the attachment lifecycle."""

import json

import pytest

from attachery.application.attacher import Attacher
from attachery.application.config import AttacherConfig, MirrorSet
from attachery.application.replication import Replicator
from attachery.application.uploader import Uploader
from attachery.domain.entities.variant_tree import Leaf, VariantSchema
from attachery.domain.errors import PromotionConflict
from attachery.infrastructure.settings import Settings
from tests.support import MemoryRecord, upload


def test_assign_uploads_to_cache(make_attacher, cache):
    attacher = make_attacher()

    tree = attacher.assign(upload(b"avatar bytes", filename="photo.jpg"))

    assert isinstance(tree, Leaf)
    assert tree.value.storage_key == "cache"
    assert tree.value.id.endswith(".jpg")
    assert attacher.get() == tree
    assert cache.read(tree.value.id) == b"avatar bytes"


def test_promote_moves_file_to_store(make_attacher, cache, store, record):
    attacher = make_attacher()
    cached = attacher.assign(upload(b"avatar bytes"))
    record.save(attacher)

    stored = attacher.finalize(record.persistence())

    assert stored.value.storage_key == "store"
    assert stored.value.id.endswith(".jpg")
    assert store.read(stored.value.id) == b"avatar bytes"
    assert not cache.exists(cached.value.id)
    assert record.value() == stored


def test_concurrent_promotions_commit_once(make_attacher, store, record):
    first = make_attacher()
    first.assign(upload())
    record.save(first)

    second = make_attacher()
    second.load(record.data)

    winner = first.promote(record.persistence())
    with pytest.raises(PromotionConflict):
        second.promote(record.persistence())

    assert list(store.files) == [winner.value.id]
    assert record.value() == winner


def test_versions_are_stored_and_destroyed_together(make_attacher, store):
    record = MemoryRecord(VariantSchema.versions(["thumb", "large"]))
    attacher = make_attacher(AttacherConfig(variants=VariantSchema.versions(["thumb", "large"])))

    attacher.assign({"thumb": upload(b"A", filename="thumb.jpg"), "large": upload(b"B", filename="large.jpg")})
    record.save(attacher)
    attacher.finalize(record.persistence())

    column = json.loads(attacher.dumps())
    assert set(column) == {"thumb", "large"}
    assert {column[name]["storage"] for name in column} == {"store"}
    assert store.read(column["thumb"]["id"]) == b"A"
    assert store.read(column["large"]["id"]) == b"B"

    attacher.destroy()

    assert store.files == {}
    assert attacher.get() is None


def test_mirrors_follow_store_uploads_and_deletes(storages):
    replicator = Replicator(MirrorSet(mirrors={"store": ["mirror_a", "mirror_b"]}), storages)
    uploader = Uploader("store", storages, replicator=replicator)

    ref = uploader.upload(upload(b"mirrored"))

    for mirror in ("mirror_a", "mirror_b"):
        assert storages[mirror].read(ref.id) == b"mirrored"

    uploader.delete(ref)

    for key in ("store", "mirror_a", "mirror_b"):
        assert not storages[key].exists(ref.id)


def test_settings_drive_mirrors_and_backup(storages, record):
    settings = Settings(_env_file=None, mirrors={"store": ["mirror_a", "mirror_b"]}, backup_storage="backup")
    attacher = Attacher("avatar", settings.attacher_config(), storages, record_key="user:1")

    attacher.assign(upload(b"configured"))
    record.save(attacher)
    stored = attacher.finalize(record.persistence())

    for key in ("store", "mirror_a", "mirror_b", "backup"):
        assert storages[key].read(stored.value.id) == b"configured"

    attacher.destroy()

    for key in ("store", "mirror_a", "mirror_b", "backup"):
        assert storages[key].files == {}
