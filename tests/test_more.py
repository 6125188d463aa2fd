import os
import platform
import subprocess
import sys
import threading

import pytest
from flatfile_db_engine import (
    SENTINEL,
    CorruptEntryError,
    Database,
    DuplicateIdError,
    EntryNotFoundError,
    Field,
    MissingFieldError,
    Schema,
    TableLockedError,
    TooManyFieldsError,
    ValidationError,
)
from flatfile_db_engine.storage import all_ids, next_id


def make_db(tmp_path, fields=("name", "age"), **kwargs):
    db = Database.open(tmp_path / "database", **kwargs)
    db.create_table("users", list(fields))
    return db


def test_next_id_and_all_ids(tmp_path):
    d = tmp_path / "t"
    d.mkdir()
    assert next_id(d) == 1
    for name in ("2", "7", "5", ".schema", ".lock", "notes.txt", "3.tmp"):
        (d / name).write_text("x", encoding="utf-8")
    assert next_id(d) == 8
    assert all_ids(d) == [2, 5, 7]


def test_post_get_round_trip(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    created = users.post({"name": "Alice", "age": "30"})
    assert created == {"name": "Alice", "age": "30"}
    assert users.get(1) == {"name": "Alice", "age": "30"}
    assert users.post_id({"name": "Bob", "age": "41"}) == 2
    raw = (users.directory / "1").read_text(encoding="utf-8")
    assert raw == f"{SENTINEL}Alice{SENTINEL}\n{SENTINEL}30{SENTINEL}"
    assert users.get(99) is None
    assert len(users) == 2 and 2 in users and 3 not in users


def test_post_rejects_bad_entries_without_writing(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    with pytest.raises(MissingFieldError):
        users.post({})
    with pytest.raises(MissingFieldError):
        users.post({"name": "Alice"})
    with pytest.raises(TooManyFieldsError):
        users.post({"name": "Alice", "age": "30", "role": "admin"})
    assert os.listdir(users.directory) == []


def test_ids_continue_after_gaps(tmp_path):
    db = make_db(tmp_path)
    for i in range(3):
        db.post("users", {"name": f"U{i}", "age": str(i)})
    db.delete("users", 2)
    assert db.table("users").post_id({"name": "U3", "age": "3"}) == 4
    db.delete("users", 4)
    assert db.table("users").post_id({"name": "U4", "age": "4"}) == 4


def test_post_does_not_clobber_a_racing_writer(tmp_path, monkeypatch):
    db = make_db(tmp_path)
    users = db.table("users")
    users.post({"name": "Alice", "age": "30"})
    # Simulate another writer that allocated the same id first
    monkeypatch.setattr(users._fs, "next_id", lambda: 1)
    with pytest.raises(DuplicateIdError):
        users.post({"name": "Mallory", "age": "1"})
    assert users.get(1) == {"name": "Alice", "age": "30"}


def test_patch_is_a_shallow_merge(tmp_path):
    db = make_db(tmp_path)
    db.post("users", {"name": "Alice", "age": "30"})
    assert db.patch("users", 1, {"age": "31"}) == {"name": "Alice", "age": "31"}
    assert db.get("users", 1) == {"name": "Alice", "age": "31"}
    with pytest.raises(EntryNotFoundError):
        db.patch("users", 2, {"age": "1"})
    with pytest.raises(TooManyFieldsError):
        db.patch("users", 1, {"role": "admin"})
    with pytest.raises(MissingFieldError):
        db.patch("users", 1, {"name": ""})
    assert db.get("users", 1) == {"name": "Alice", "age": "31"}


def test_patch_of_vanished_entry(tmp_path, monkeypatch):
    db = make_db(tmp_path)
    users = db.table("users")
    users.post({"name": "Alice", "age": "30"})
    real_encode = users._encode

    def encode_then_vanish(entry):
        out = real_encode(entry)
        os.remove(users.directory / "1")
        return out

    monkeypatch.setattr(users, "_encode", encode_then_vanish)
    with pytest.raises(EntryNotFoundError):
        users.patch(1, {"age": "31"})
    assert not (users.directory / "1").exists()


@pytest.mark.parametrize("atomic", [False, True])
def test_patch_shorter_value_leaves_no_tail(tmp_path, atomic):
    db = make_db(tmp_path, options={"atomic_writes": atomic})
    users = db.table("users")
    users.post({"name": "Bartholomew", "age": "30"})
    users.patch(1, {"name": "Bo"})
    assert users.get(1) == {"name": "Bo", "age": "30"}
    assert sorted(os.listdir(users.directory)) == ["1"]


def test_delete_returns_and_removes(tmp_path):
    db = make_db(tmp_path)
    db.set_table_parse_function("users", lambda e: {**e, "age": int(e["age"])})
    db.post("users", {"name": "Alice", "age": "30"})
    assert db.delete("users", 1) == {"name": "Alice", "age": 30}
    assert db.get("users", 1) is None
    with pytest.raises(EntryNotFoundError):
        db.delete("users", 1)


def test_corrupt_entry(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    (users.directory / "1").write_text("name=Alice\nage=30", encoding="utf-8")
    with pytest.raises(CorruptEntryError):
        users.get(1)


def test_delete_where_leaves_others_intact(tmp_path):
    db = Database.open(tmp_path / "database")
    t = db.create_table("t", ["v"])
    for v in ("a", "b", "a"):
        t.post({"v": v})
    assert t.delete_where("v", "a") == 2
    assert t.ids() == [2]
    assert t.get(2) == {"v": "b"}


def test_patch_where_variants(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    for name, age in [("Alice", "30"), ("Bob", "17"), ("Carol", "45")]:
        users.post({"name": name, "age": age})
    assert users.patch_where("name", "Bob", {"age": "18"}) == 1
    assert users.get(2) == {"name": "Bob", "age": "18"}
    assert users.patch_where_starts_with("name", "C", {"age": "46"}) == 1
    assert users.patch_where_gte("age", "30", {"name": "Senior"}) == 2
    assert sorted(e["name"] for e in users.get_all()) == ["Bob", "Senior", "Senior"]
    assert users.patch_all({"age": "1"}) == 3
    assert {e["age"] for e in users.get_all()} == {"1"}
    assert users.update({"name": "Bob"}, {"age": "2"}) == 1
    assert db.patch_where("users", "name", "Sen", {"age": "3"}, op="$startswith") == 2


def test_with_filter_sees_synthetic_id_but_never_stores_it(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    for name in ("a", "b", "c", "d"):
        users.post({"name": name, "age": "1"})
    seen = []

    def odd_ids(entry):
        seen.append(entry["id"])
        return entry["id"] % 2 == 1

    assert users.patch_with_filter(odd_ids, {"age": "2"}) == 2
    assert seen == [1, 2, 3, 4]
    assert [e["age"] for e in users.get_all()] == ["2", "1", "2", "1"]
    assert all("id" not in e for e in users.get_all())
    assert users.delete_with_filter(lambda e: e["id"] > 2) == 2
    assert users.ids() == [1, 2]
    assert users.get_with_filter(lambda e: "id" in e) == []


def test_delete_variants(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    for name in ("anna", "ben", "hannah", "otto"):
        users.post({"name": name, "age": "1"})
    assert users.delete_where_ends_with("name", "o") == 1
    assert users.delete_where_not_contains("name", "nn") == 1
    assert sorted(e["name"] for e in users.get_all()) == ["anna", "hannah"]
    assert db.remove("users", {"name": {"$gt": "b"}}) == 1
    assert db.delete_all("users") == 1
    assert users.get_all() == []


def test_bulk_error_policies(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")
    for name in ("a", "b", "c"):
        users.post({"name": name, "age": "1"})
    (users.directory / "2").write_text("garbage", encoding="utf-8")
    with pytest.raises(CorruptEntryError):
        users.patch_all({"age": "2"})
    # rows before the failure were already written
    assert users.get(1) == {"name": "a", "age": "2"}
    assert users.get(3) == {"name": "c", "age": "1"}

    lenient = Database.open(tmp_path / "database", options={"on_error": "skip"})
    assert lenient.patch_all("users", {"age": "5"}) == 2
    assert lenient.get("users", 3) == {"name": "c", "age": "5"}
    assert lenient.delete_where("users", "age", "5") == 2
    assert lenient.table("users").ids() == [2]


def test_bulk_progress_events(tmp_path):
    events = []
    db = make_db(tmp_path, on_progress=lambda evt: events.append(evt["phase"]))
    for i in range(3):
        db.post("users", {"name": f"U{i}", "age": "1"})
    events.clear()
    assert db.patch_all("users", {"age": "2"}) == 3
    assert events[0] == "patch.start" and events[-1] == "patch.done"
    events.clear()
    assert db.delete_where("users", "name", "U0") == 1
    assert "delete.start" in events and "delete.done" in events


def test_schema_defaults_validation_and_parse(tmp_path):
    db = make_db(tmp_path, fields=("name", "age", "email", "active"))
    users = db.table("users")
    schema = Schema([
        Field("name", "string_20"),
        Field("age", "integer"),
        Field("email", "email", nullable=True),
        Field("active", "boolean", default="true"),
    ])
    users.set_schema(schema)
    users.set_parse_function(schema.parse)

    alice = users.post({"name": "Alice", "age": 30})
    assert alice == {"name": "Alice", "age": 30, "email": None, "active": True}
    assert users.get_where_gt("age", 18) == [alice]

    with pytest.raises(ValidationError):
        users.post({"name": "Bob", "age": "old"})
    with pytest.raises(ValidationError):
        users.post({"name": "x" * 21, "age": 1})
    with pytest.raises(MissingFieldError):
        users.post({"name": "Bob"})
    assert users.patch(1, {"active": False})["active"] is False
    assert users.ids() == [1]

    with pytest.raises(ValueError):
        users.set_schema(Schema([Field("nope")]))


def test_custom_validator_hook(tmp_path):
    db = make_db(tmp_path)
    users = db.table("users")

    def no_admins(entry):
        if entry.get("name") == "admin":
            raise ValidationError("reserved name")

    users.set_validator(no_admins)
    with pytest.raises(ValidationError):
        users.post({"name": "admin", "age": "1"})
    users.set_validator(None)
    users.post({"name": "admin", "age": "1"})


def test_escaped_encoding_option(tmp_path):
    db = make_db(tmp_path, options={"encoding": "escaped"})
    tricky = f"a{SENTINEL}b"
    db.post("users", {"name": tricky, "age": "1"})
    assert db.get("users", 1) == {"name": tricky, "age": "1"}


def test_file_lock_option(tmp_path):
    db = make_db(tmp_path, options={"lock": "file"})
    users = db.table("users")
    users.post({"name": "Alice", "age": "30"})
    assert not (users.directory / ".lock").exists()

    (users.directory / ".lock").write_text('{"pid": -1, "hostname": "elsewhere"}', encoding="utf-8")
    with pytest.raises(TableLockedError):
        users.post({"name": "Bob", "age": "1"})
    with pytest.raises(TableLockedError):
        users.delete_all()
    # reads do not take the lock
    assert users.get(1) == {"name": "Alice", "age": "30"}

    (users.directory / ".lock").unlink()
    assert users.delete_all() == 1


def test_delete_of_vanished_entry(tmp_path, monkeypatch):
    db = make_db(tmp_path)
    users = db.table("users")
    users.post({"name": "Alice", "age": "30"})
    real_read = users._read_raw

    def read_then_vanish(entry_id):
        out = real_read(entry_id)
        os.remove(users.directory / str(entry_id))
        return out

    monkeypatch.setattr(users, "_read_raw", read_then_vanish)
    with pytest.raises(EntryNotFoundError):
        users.delete(1)


def test_atomic_patch_of_vanished_entry(tmp_path, monkeypatch):
    db = make_db(tmp_path, options={"atomic_writes": True})
    users = db.table("users")
    users.post({"name": "Alice", "age": "30"})
    real_encode = users._encode

    def encode_then_vanish(entry):
        out = real_encode(entry)
        os.remove(users.directory / "1")
        return out

    monkeypatch.setattr(users, "_encode", encode_then_vanish)
    with pytest.raises(EntryNotFoundError):
        users.patch(1, {"age": "31"})
    # neither the entry nor the temp file comes back
    assert os.listdir(users.directory) == []


def test_lock_held_by_another_thread_fails_fast(tmp_path):
    db = make_db(tmp_path, options={"lock": "file"})
    users = db.table("users")
    held, release = threading.Event(), threading.Event()

    def holder():
        with users._lock.hold():
            held.set()
            release.wait(5)

    t = threading.Thread(target=holder)
    t.start()
    try:
        assert held.wait(5)
        with pytest.raises(TableLockedError):
            users.post({"name": "Bob", "age": "1"})
    finally:
        release.set()
        t.join()
    assert users.post_id({"name": "Bob", "age": "1"}) == 1


def _dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.mark.skipif(os.name == "nt", reason="pid probing is POSIX only")
def test_stale_lock_from_dead_process_is_broken(tmp_path):
    db = make_db(tmp_path, options={"lock": "file"})
    users = db.table("users")
    lock = users.directory / ".lock"
    lock.write_text(f'{{"pid": {_dead_pid()}, "hostname": "{platform.node()}"}}', encoding="utf-8")
    assert users.post_id({"name": "Alice", "age": "30"}) == 1
    assert not lock.exists()

    lock.write_text(f'{{"pid": {_dead_pid()}, "hostname": "{platform.node()}"}}', encoding="utf-8")
    strict = Database.open(tmp_path / "database", options={"lock": "file", "break_stale_locks": False})
    with pytest.raises(TableLockedError):
        strict.post("users", {"name": "Bob", "age": "1"})


def test_break_lock_clears_a_foreign_lock(tmp_path):
    db = make_db(tmp_path, options={"lock": "file"})
    users = db.table("users")
    (users.directory / ".lock").write_text('{"pid": 4242, "hostname": "elsewhere"}', encoding="utf-8")
    with pytest.raises(TableLockedError):
        users.post({"name": "Alice", "age": "30"})
    assert users.break_lock() == {"pid": 4242, "hostname": "elsewhere"}
    assert users.break_lock() is None
    users.post({"name": "Alice", "age": "30"})


def test_named_dispatchers_on_database(tmp_path):
    db = make_db(tmp_path)
    for name, age in [("anna", "30"), ("ben", "17"), ("otto", "45")]:
        db.post("users", {"name": name, "age": age})
    assert [e["name"] for e in db.get_where_gt("users", "age", "20")] == ["anna", "otto"]
    assert [e["name"] for e in db.get_where_not("users", "name", "ben")] == ["anna", "otto"]
    assert db.patch_where_starts_with("users", "name", "o", {"age": "46"}) == 1
    assert db.get("users", 3) == {"name": "otto", "age": "46"}
    assert db.delete_where_not_contains("users", "name", "n") == 1
    assert db.delete_where_lte("users", "age", "20") == 1
    assert db.table("users").ids() == [1]
