import pytest

from attachery.application.attacher import Attacher
from attachery.application.config import AttacherConfig, BackupConfig, MirrorSet
from attachery.application.registry import StorageRegistry
from attachery.application.replication import DELETE, UPLOAD, Backup, MirrorReport, Replicator
from attachery.application.stages import BackupStage
from attachery.application.uploader import Uploader
from attachery.domain.entities.variant_tree import VariantSchema, leaves
from attachery.domain.errors import ConfigurationError, MirrorFailure
from attachery.infrastructure.dispatch.thread import InlineDispatcher, ThreadDispatcher
from attachery.infrastructure.storages.memory import MemoryStorage
from tests.support import FailingStorage, upload


def mirrors(**kwargs):
    return MirrorSet(mirrors={"store": ["mirror_a", "mirror_b"]}, **kwargs)


def test_upload_fans_out_with_same_id(storages):
    replicator = Replicator(mirrors(), storages)
    ref = Uploader("store", storages, replicator=replicator).upload(upload(b"copy me"))

    for key in ("mirror_a", "mirror_b"):
        assert storages[key].read(ref.id) == b"copy me"
        assert storages[key].metadata[ref.id]["filename"] == "photo.jpg"


def test_delete_fans_out(storages):
    uploader = Uploader("store", storages, replicator=Replicator(mirrors(), storages))
    ref = uploader.upload(upload())
    uploader.delete(ref)
    assert not any(storages[key].exists(ref.id) for key in ("store", "mirror_a", "mirror_b"))


def test_flags_disable_each_direction(storages):
    uploader = Uploader("store", storages, replicator=Replicator(mirrors(upload=False), storages))
    ref = uploader.upload(upload())
    assert not storages["mirror_a"].exists(ref.id)

    storages["mirror_a"].upload(upload(), ref.id)
    uploader = Uploader("store", storages, replicator=Replicator(mirrors(delete=False), storages))
    uploader.delete(ref)
    assert storages["mirror_a"].exists(ref.id)


def test_cache_uploads_are_not_mirrored(storages):
    ref = Uploader("cache", storages, replicator=Replicator(mirrors(), storages)).upload(upload())
    assert storages["mirror_a"].files == {}
    assert storages["cache"].exists(ref.id)


def test_mirror_failure_is_reported_after_primary_commits(storages):
    registry = StorageRegistry({**storages, "mirror_b": FailingStorage(MemoryStorage(), fail_upload=True)})
    uploader = Uploader("store", registry, replicator=Replicator(mirrors(), registry))

    with pytest.raises(MirrorFailure) as e:
        uploader.upload(upload(b"primary"))

    ref = e.value.result
    assert registry["store"].read(ref.id) == b"primary"
    assert registry["mirror_a"].exists(ref.id)
    [detail] = e.value.details
    assert (detail.storage_key, detail.file_id, detail.action) == ("mirror_b", ref.id, UPLOAD)
    assert isinstance(detail.error, OSError)


def test_failed_mirror_can_be_retried(storages):
    failing = FailingStorage(MemoryStorage(), fail_upload=True)
    registry = StorageRegistry({**storages, "mirror_b": failing})
    replicator = Replicator(mirrors(), registry)

    with pytest.raises(MirrorFailure) as e:
        Uploader("store", registry, replicator=replicator).upload(upload(b"retry"))

    failing.fail_upload = False
    replicator.retry(e.value.details[0], e.value.result)
    assert failing.inner.read(e.value.result.id) == b"retry"


def test_best_effort_only_logs(storages, log_messages):
    registry = StorageRegistry({**storages, "mirror_b": FailingStorage(MemoryStorage(), fail_upload=True)})
    uploader = Uploader("store", registry, replicator=Replicator(mirrors(best_effort=True), registry))

    ref = uploader.upload(upload())

    assert registry["store"].exists(ref.id)
    assert any("best effort" in message for message in log_messages)


def test_attacher_raises_mirror_failure_with_committed_result(storages, record):
    registry = StorageRegistry({**storages, "mirror_b": FailingStorage(MemoryStorage(), fail_upload=True)})
    replicator = Replicator(mirrors(), registry)
    attacher = Attacher("avatar", AttacherConfig(), registry, record_key="user:1", replicator=replicator)
    attacher.assign(upload())
    record.save(attacher)

    with pytest.raises(MirrorFailure) as e:
        attacher.finalize(record.persistence())

    assert attacher.stored()
    assert e.value.result == attacher.get()
    assert record.value() == attacher.get()
    assert all(detail.action == UPLOAD for detail in e.value.details)


def test_background_mirroring_uses_dispatcher(storages):
    dispatcher = InlineDispatcher()
    replicator = Replicator(mirrors(background=True), storages, dispatcher=dispatcher)
    Uploader("store", storages, replicator=replicator).upload(upload())
    assert dispatcher.submitted == 1
    assert len(storages["mirror_a"].files) == 1


def test_background_mirroring_needs_dispatcher(storages):
    with pytest.raises(ConfigurationError):
        Replicator(mirrors(background=True), storages)


def test_background_failures_stay_in_the_dispatcher(storages):
    registry = StorageRegistry({**storages, "mirror_b": FailingStorage(MemoryStorage(), fail_upload=True)})
    with ThreadDispatcher(max_workers=1) as dispatcher:
        replicator = Replicator(mirrors(background=True), registry, dispatcher=dispatcher)
        ref = Uploader("store", registry, replicator=replicator).upload(upload())
        assert dispatcher.wait(timeout=5)

    assert registry["store"].exists(ref.id)
    assert len(dispatcher.errors) == 1
    assert isinstance(dispatcher.errors[0], MirrorFailure)


def test_unknown_mirror_storage(storages):
    with pytest.raises(ConfigurationError):
        Replicator(MirrorSet(mirrors={"store": ["nowhere"]}), storages)


def test_storage_cannot_mirror_itself():
    with pytest.raises(ValueError):
        MirrorSet(mirrors={"store": "store"})


class TestBackup:
    def make(self, storages, record, **backup_kwargs):
        config = AttacherConfig(
            variants=VariantSchema.versions(["thumb", "large"]),
            backup=BackupConfig(storage="backup", **backup_kwargs),
        )
        attacher = Attacher("avatar", config, storages, record_key="user:1")
        attacher.assign({"thumb": upload(b"t"), "large": upload(b"l")})
        record.save(attacher)
        return attacher

    def test_backs_up_only_after_promotion(self, storages, record):
        attacher = self.make(storages, record)
        assert storages["backup"].files == {}

        tree = attacher.finalize(record.persistence())

        for ref in leaves(tree):
            assert storages["backup"].read(ref.id) == storages["store"].read(ref.id)

    def test_destroy_deletes_backups(self, storages, record):
        attacher = self.make(storages, record)
        attacher.finalize(record.persistence())
        attacher.destroy()
        assert storages["backup"].files == {}

    def test_backup_retained_when_delete_disabled(self, storages, record):
        attacher = self.make(storages, record, delete=False)
        tree = attacher.finalize(record.persistence())
        attacher.destroy()
        assert storages["store"].files == {}
        assert set(storages["backup"].files) == {ref.id for ref in leaves(tree)}

    def test_backup_failures_are_reported(self, storages, record):
        registry = StorageRegistry({**storages, "backup": FailingStorage(MemoryStorage(), fail_upload=True)})
        attacher = self.make(registry, record)
        with pytest.raises(MirrorFailure) as e:
            attacher.finalize(record.persistence())
        assert {detail.storage_key for detail in e.value.details} == {"backup"}
        assert attacher.stored()


def test_report_collects_details():
    report = MirrorReport()
    report.raise_for_failures()
    assert report.details == []
    assert DELETE == "delete"


def test_mirroring_from_config_alone(storages, record):
    attacher = Attacher("avatar", AttacherConfig(mirroring=mirrors()), storages, record_key="user:1")
    attacher.assign(upload(b"from config"))
    record.save(attacher)

    stored = attacher.finalize(record.persistence())

    for key in ("mirror_a", "mirror_b"):
        assert storages[key].read(stored.value.id) == b"from config"

    attacher.destroy()
    assert not any(storages[key].exists(stored.value.id) for key in ("store", "mirror_a", "mirror_b"))


def test_background_mirroring_from_config_uses_given_dispatcher(storages, record):
    dispatcher = InlineDispatcher()
    config = AttacherConfig(mirroring=mirrors(background=True))
    attacher = Attacher("avatar", config, storages, record_key="user:1", dispatcher=dispatcher)
    attacher.assign(upload())
    record.save(attacher)

    stored = attacher.finalize(record.persistence())

    assert dispatcher.submitted >= 1
    assert storages["mirror_a"].exists(stored.value.id)


def test_replicator_and_mirroring_config_are_exclusive(storages):
    with pytest.raises(ConfigurationError):
        Attacher("avatar", AttacherConfig(mirroring=mirrors()), storages, replicator=Replicator(mirrors(), storages))


def test_configured_backup_is_not_doubled_by_explicit_stage(storages):
    config = AttacherConfig(backup=BackupConfig(storage="backup"))
    explicit = BackupStage(Backup(config.backup, storages))
    assert Attacher("avatar", config, storages, stages=[explicit]).stages == (explicit,)
    assert [type(stage) for stage in Attacher("avatar", config, storages).stages] == [BackupStage]
