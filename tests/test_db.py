from dpr import db
from dpr.nodepool import NodePoolMachineStatus


def test_statuses_roundtrip_keeps_order(tmp_db):
    statuses = [
        NodePoolMachineStatus("b", prioritize_delete=True),
        NodePoolMachineStatus("a"),
        NodePoolMachineStatus("c"),
    ]
    db.save_statuses("c1", "dmp", statuses)

    assert db.load_statuses("c1", "dmp") == statuses
    assert db.load_statuses("c1", "other") == []


def test_save_replaces_previous_statuses(tmp_db):
    db.save_statuses("c1", "dmp", [NodePoolMachineStatus("a"), NodePoolMachineStatus("b")])
    db.save_statuses("c1", "dmp", [NodePoolMachineStatus("c")])

    assert [s.name for s in db.load_statuses("c1", "dmp")] == ["c"]


def test_set_prioritize_delete_upserts(tmp_db):
    db.save_statuses("c1", "dmp", [NodePoolMachineStatus("a"), NodePoolMachineStatus("b")])

    db.set_prioritize_delete("c1", "dmp", "b", True)
    db.set_prioritize_delete("c1", "dmp", "new", True)

    assert db.load_statuses("c1", "dmp") == [
        NodePoolMachineStatus("a"),
        NodePoolMachineStatus("b", prioritize_delete=True),
        NodePoolMachineStatus("new", prioritize_delete=True),
    ]

    db.set_prioritize_delete("c1", "dmp", "b", False)
    assert db.load_statuses("c1", "dmp")[1] == NodePoolMachineStatus("b")


def test_delete_statuses(tmp_db):
    db.save_statuses("c1", "p1", [NodePoolMachineStatus("a")])
    db.save_statuses("c1", "p2", [NodePoolMachineStatus("b")])
    db.save_statuses("c2", "p1", [NodePoolMachineStatus("c")])

    db.delete_statuses("c1", "p1")
    assert db.load_statuses("c1", "p1") == []
    assert db.load_statuses("c1", "p2") != []

    db.delete_statuses("c1")
    assert db.load_statuses("c1", "p2") == []
    assert db.load_statuses("c2", "p1") == [NodePoolMachineStatus("c")]


def test_events_newest_first(tmp_db):
    db.log_event("info", "first", cluster="c1")
    db.log_event("ERROR", "second", cluster="c1", pool="dmp")

    events = db.latest_events(10)
    assert [e["message"] for e in events] == ["second", "first"]
    assert events[0]["level"] == "ERROR"
    assert events[0]["pool"] == "dmp"
    assert events[1]["level"] == "INFO"
    assert db.latest_events(1)[0]["message"] == "second"


def test_directory_db_path_gets_a_file(tmp_path, monkeypatch):
    import dataclasses

    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path)))
    db.init_db()

    assert (tmp_path / "dpr.db").exists()
