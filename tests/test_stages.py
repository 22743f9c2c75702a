import pytest

from attachery.application.config import AttacherConfig
from attachery.application.replication import Backup
from attachery.application.stages import (
    BackgroundStage,
    BackupStage,
    InstrumentationStage,
    Stage,
    compose,
    default_stages,
)
from attachery.domain.errors import ConfigurationError
from attachery.infrastructure.dispatch.thread import InlineDispatcher, ThreadDispatcher
from tests.support import upload


class Recording(Stage):
    def __init__(self, name, calls):
        self.name = name
        self.calls = calls

    def assign(self, attacher, call_next, raw, context):
        self.calls.append(f"{self.name}:before")
        result = call_next(raw, context)
        self.calls.append(f"{self.name}:after")
        return result


def test_first_stage_is_outermost(make_attacher):
    calls = []
    attacher = make_attacher(stages=[Recording("outer", calls), Recording("inner", calls)])
    attacher.assign(upload())
    assert calls == ["outer:before", "inner:before", "inner:after", "outer:after"]


def test_stage_can_short_circuit(make_attacher, cache):
    class Reject(Stage):
        def assign(self, attacher, call_next, raw, context):
            return attacher.get()

    attacher = make_attacher(stages=[Reject()])
    assert attacher.assign(upload()) is None
    assert cache.files == {}


def test_compose_flattens_and_checks_stages():
    stages = compose(InstrumentationStage(), [Stage(), Stage()])
    assert len(stages) == 3
    with pytest.raises(ConfigurationError):
        compose(object())


def test_default_stage_order(storages):
    backup = Backup(AttacherConfig(backup={"storage": "backup"}).backup, storages)
    stages = default_stages(backup=backup, dispatcher=InlineDispatcher(), instrument=True)
    assert [type(stage) for stage in stages] == [InstrumentationStage, BackgroundStage, BackupStage]


def test_instrumentation_logs_operations(make_attacher, record, log_messages):
    attacher = make_attacher(stages=[InstrumentationStage()])
    attacher.assign(upload())
    record.save(attacher)
    attacher.finalize(record.persistence())
    attacher.destroy()

    logged = [m for m in log_messages if "[avatar] user:1" in m]
    assert [m.split("[")[0] for m in logged] == ["ASSIGN", "PROMOTE", "DESTROY"]
    assert all("1 file(s)" in m for m in logged)


def test_background_promotion(make_attacher, record, store):
    with ThreadDispatcher(max_workers=1) as dispatcher:
        attacher = make_attacher(stages=[BackgroundStage(dispatcher)])
        cached = attacher.assign(upload(b"later"))
        record.save(attacher)

        returned = attacher.finalize(record.persistence())
        assert returned == cached
        assert dispatcher.wait(timeout=5)

    assert dispatcher.errors == []
    assert attacher.stored()
    assert store.read(attacher.get().value.id) == b"later"
    assert record.value() == attacher.get()


def test_background_destroy(make_attacher, record, store):
    dispatcher = InlineDispatcher()
    attacher = make_attacher(stages=[BackgroundStage(dispatcher, promote=False)])
    attacher.assign(upload())
    record.save(attacher)
    tree = attacher.finalize(record.persistence())
    assert dispatcher.submitted == 0

    attacher.destroy()

    assert dispatcher.submitted == 1
    assert not store.exists(tree.value.id)
