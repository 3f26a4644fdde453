import json

from message_store import RECEIVED, SENT, MessageHistory, make_record


def _record(i):
    return make_record(RECEIVED, f"5730000000{i:02d}@s.whatsapp.net", f"message {i}", message_id=str(i))


def test_make_record_fields():
    record = make_record(SENT, "573001234567@s.whatsapp.net", "hello")

    assert record["type"] == "sent"
    assert record["from"] == "573001234567"
    assert record["contact"] == "573001234567@s.whatsapp.net"
    assert record["text"] == "hello"
    assert record["id"]
    assert record["timestamp"]


def test_newest_first(history):
    history.add(_record(1))
    history.add(_record(2))

    assert [r["id"] for r in history.records()] == ["2", "1"]


def test_memory_bound_evicts_oldest(tmp_path):
    history = MessageHistory(path=str(tmp_path / "m.json"), max_in_memory=3, max_persisted=2)
    for i in range(4):
        history.add(_record(i))

    ids = [r["id"] for r in history.records()]
    assert len(history) == 3
    assert ids == ["3", "2", "1"]


def test_save_persists_only_newest(history, tmp_path):
    for i in range(60):
        history.add(_record(i))

    assert history.save() is True

    with open(history.path) as f:
        saved = json.load(f)
    assert len(saved) == 50
    assert saved[0]["id"] == "59"
    assert len(history) == 60


def test_load_round_trip(history, tmp_path):
    history.add(_record(1))
    history.save()

    reloaded = MessageHistory(path=history.path)
    assert reloaded.load() == 1
    assert reloaded.records()[0]["text"] == "message 1"


def test_load_corrupt_file_starts_empty(history):
    with open(history.path, "w") as f:
        f.write("[oops")

    assert history.load() == 0


def test_save_failure_is_swallowed(tmp_path):
    history = MessageHistory(path=str(tmp_path / "missing" / "dir" / "m.json"))
    history.add(_record(1))

    assert history.save() is False
    assert len(history) == 1


def test_trim(history):
    for i in range(70):
        history.add(_record(i))

    assert history.trim() == 20
    assert len(history) == 50
    assert history.trim() == 0


def test_csv_export(history):
    history.add(_record(1))

    lines = history.to_csv().strip().splitlines()

    assert lines[0] == "id,type,from,contact,text,timestamp"
    assert lines[1].startswith("1,received,573000000001,")
