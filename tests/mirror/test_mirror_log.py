# tests/mirror/test_mirror_log.py
import json
import threading

import pytest

from harness.core.types import Event
from harness.mirror import MirrorLog
from harness.utils.errors import StorageFailure, ValidationError
from harness.utils.filesystem import FileSystem


def _ev(n: int) -> Event:
    return Event.parse({
        "entityType": "user",
        "entityId": f"u{n}",
        "event": "buy",
        "targetEntityType": "item",
        "targetEntityId": f"i{n}",
    })


@pytest.fixture
def mirror(tmp_path) -> MirrorLog:
    log = MirrorLog(tmp_path / "mirrors")
    log.set_mode("e1", True)
    return log


def test_disabled_writes_nothing(tmp_path):
    log = MirrorLog(tmp_path)
    log.set_mode("e1", False)

    assert log.record("e1", _ev(1)) is None
    assert not log.path_for("e1").exists()


def test_sequence_is_monotonic_and_durable(mirror):
    recs = [mirror.record("e1", _ev(i)) for i in range(1, 4)]

    assert [r.sequence for r in recs] == [1, 2, 3]
    lines = mirror.path_for("e1").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["seq"] for line in lines] == [1, 2, 3]
    assert json.loads(lines[0])["event"]["entityId"] == "u1"


def test_raw_event_mirrored_verbatim(mirror):
    raw = {"entityType": "user", "entityId": "u1", "event": "buy", "custom": {"a": [1, 2]}}

    mirror.record("e1", Event.parse(raw))

    assert mirror.read("e1")[0].event == raw


def test_custom_location(tmp_path):
    log = MirrorLog(tmp_path / "default")
    log.set_mode("e1", True, str(tmp_path / "custom"))

    log.record("e1", _ev(1))

    assert (tmp_path / "custom" / "e1" / "events.jsonl").exists()
    assert not (tmp_path / "default" / "e1").exists()


def test_sequence_continues_after_restart(tmp_path):
    first = MirrorLog(tmp_path)
    first.set_mode("e1", True)
    first.record("e1", _ev(1))
    first.record("e1", _ev(2))

    second = MirrorLog(tmp_path)
    second.set_mode("e1", True)

    assert second.record("e1", _ev(3)).sequence == 3
    assert second.find_gaps("e1") == []


def test_torn_record_burns_a_sequence_number(tmp_path):
    first = MirrorLog(tmp_path)
    first.set_mode("e1", True)
    first.record("e1", _ev(1))
    first.record("e1", _ev(2))
    # crash in the middle of writing seq 3
    with open(first.path_for("e1"), "a", encoding="utf-8") as f:
        f.write('{"seq": 3, "eventTi')

    second = MirrorLog(tmp_path)
    second.set_mode("e1", True)
    rec = second.record("e1", _ev(4))

    assert rec.sequence == 4
    assert [r.sequence for r in second.read("e1")] == [1, 2, 4]
    assert second.find_gaps("e1") == [3]
    assert second.last_sequence("e1") == 4


def test_append_failure_is_storage_failure(mirror, monkeypatch):
    mirror.record("e1", _ev(1))

    def boom(path, line):
        raise OSError("disk full")

    monkeypatch.setattr(FileSystem, "durable_append", staticmethod(boom))
    with pytest.raises(StorageFailure):
        mirror.record("e1", _ev(2))

    monkeypatch.undo()
    # nothing reached disk, the cursor is rebuilt from the file
    assert mirror.record("e1", _ev(3)).sequence == 2


def test_concurrent_appends_are_gapless(mirror):
    threads = [
        threading.Thread(target=lambda n=n: mirror.record("e1", _ev(n)))
        for n in range(50)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    seqs = [r.sequence for r in mirror.read("e1")]
    assert seqs == list(range(1, 51))


def test_disable_keeps_history(mirror):
    mirror.record("e1", _ev(1))

    mirror.set_mode("e1", False)
    assert mirror.record("e1", _ev(2)) is None

    mirror.set_mode("e1", True)
    assert mirror.record("e1", _ev(3)).sequence == 2
    assert len(mirror.read("e1")) == 2


def test_forget_stops_writes_but_keeps_file(mirror):
    mirror.record("e1", _ev(1))

    mirror.forget("e1")

    assert mirror.is_enabled("e1") is False
    assert mirror.record("e1", _ev(2)) is None
    assert len(mirror.read("e1")) == 1


def test_replay_into_reads_records_up_front(mirror):
    for i in range(1, 4):
        mirror.record("e1", _ev(i))

    seen = []

    def sink(raw):
        seen.append(raw["entityId"])
        # a sink that mirrors into the same log must not see its own appends
        mirror.record("e1", Event.parse(raw))

    assert mirror.replay_into("e1", sink) == (3, [])
    assert seen == ["u1", "u2", "u3"]
    assert mirror.last_sequence("e1") == 6


def test_read_missing_log(tmp_path):
    log = MirrorLog(tmp_path)

    assert log.read("nobody") == []
    assert log.find_gaps("nobody") == []
    assert log.last_sequence("nobody") == 0


def test_set_mode_without_location_returns_to_default(tmp_path):
    log = MirrorLog(tmp_path / "default")
    log.set_mode("e1", True, str(tmp_path / "custom"))
    log.record("e1", _ev(1))

    log.set_mode("e1", True)
    log.record("e1", _ev(2))

    assert log.path_for("e1") == tmp_path / "default" / "e1" / "events.jsonl"
    assert [r.event["entityId"] for r in log.read("e1")] == ["u2"]
    assert len(log.read("e1", tmp_path / "custom")) == 1


def test_retract_hides_record_and_keeps_its_sequence(mirror):
    mirror.record("e1", _ev(1))
    rec = mirror.record("e1", _ev(2))

    mirror.retract("e1", rec.sequence)

    assert [r.event["entityId"] for r in mirror.read("e1")] == ["u1"]
    assert mirror.find_gaps("e1") == []
    assert mirror.last_sequence("e1") == 2
    assert mirror.record("e1", _ev(3)).sequence == 3


def test_retracted_sequence_not_reused_after_restart(tmp_path):
    first = MirrorLog(tmp_path)
    first.set_mode("e1", True)
    first.record("e1", _ev(1))
    first.retract("e1", 1)

    second = MirrorLog(tmp_path)
    second.set_mode("e1", True)

    assert second.record("e1", _ev(2)).sequence == 2
    assert [r.sequence for r in second.read("e1")] == [2]


def test_replay_into_skips_rejected_records(mirror):
    for i in range(1, 4):
        mirror.record("e1", _ev(i))

    seen = []

    def sink(raw):
        if raw["entityId"] == "u2":
            raise ValidationError("bad property", field="properties.x")
        seen.append(raw["entityId"])

    assert mirror.replay_into("e1", sink) == (2, [2])
    assert seen == ["u1", "u3"]


def test_replay_into_stops_on_other_errors(mirror):
    mirror.record("e1", _ev(1))
    mirror.record("e1", _ev(2))

    def sink(raw):
        raise StorageFailure("dataset write failed")

    with pytest.raises(StorageFailure):
        mirror.replay_into("e1", sink)


def test_per_engine_locks_are_released(mirror):
    for n in range(5):
        mirror.set_mode(f"e{n}", True)
        mirror.record(f"e{n}", _ev(n))
        mirror.read(f"e{n}")

    assert len(mirror._locks) == 0
