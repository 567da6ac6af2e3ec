import pytest

import protocol as p
from errors import DuplicateStudent, StudentNotFound
from sync_client import BULK, TARGETED, SyncClient


def test_connect_receives_snapshot_and_identifies(loopback, store, ahmed):
    store.add_student(ahmed)
    client = loopback.connect("c1", SyncClient(device={"deviceType": "mobile", "deviceName": "iPhone"}))

    assert [s.id for s in client.dataset.students] == ["2024001"]
    assert client.roster["count"] == 1
    assert client.roster["clients"][0]["deviceName"] == "iPhone"


def test_targeted_add_resolves_its_own_future(loopback, ahmed):
    one = loopback.connect("c1", SyncClient(mode=TARGETED))
    two = loopback.connect("c2", SyncClient(mode=TARGETED))

    future = one.add_student(ahmed)
    assert future.result(timeout=1)["id"] == "2024001"
    assert [s.id for s in two.dataset.students] == ["2024001"]
    assert [s.id for s in one.dataset.students] == ["2024001"]


def test_same_type_requests_are_correlated_by_request_id(loopback, ahmed):
    client = loopback.connect("c1", SyncClient())
    client.add_student(ahmed).result(timeout=1)

    held = []
    deliver = client._send
    client._send = held.append
    duplicate = client.add_student(ahmed)
    fresh = client.add_student({"id": "2024002", "fullName": "Mona Said"})
    client._send = deliver

    # answer the two add-student requests in reverse order
    for message in reversed(held):
        deliver(message)

    assert held[0]["requestId"] != held[1]["requestId"]
    assert fresh.result(timeout=1)["id"] == "2024002"
    with pytest.raises(DuplicateStudent):
        duplicate.result(timeout=1)


def test_server_error_surfaces_as_typed_exception(loopback, ahmed):
    client = loopback.connect("c1", SyncClient())
    client.add_student(ahmed).result(timeout=1)

    future = client.add_student(ahmed)
    with pytest.raises(DuplicateStudent) as info:
        future.result(timeout=1)
    assert info.value.suggested_id == "2024002"


def test_inbound_snapshot_replaces_unsynced_local_edits(loopback, ahmed):
    client = loopback.connect("c1", SyncClient(mode=TARGETED))
    other = loopback.connect("c2", SyncClient(mode=TARGETED))

    client.connected = False
    client.add_student({"id": "LOCAL1", "fullName": "Local Only"}).result(timeout=1)
    client.connected = True
    assert [s.id for s in client.dataset.students] == ["LOCAL1"]

    other.add_student(ahmed).result(timeout=1)
    assert [s.id for s in client.dataset.students] == ["2024001"]


def test_last_writer_wins_overwrites_other_clients_student(loopback, store):
    one = loopback.connect("c1", SyncClient(mode=TARGETED))
    two = loopback.connect("c2", SyncClient(mode=BULK))

    # client 2's whole-dataset push is still in flight when client 1's add lands
    in_flight = []
    deliver = two._send
    two._send = in_flight.append
    two.add_student({"id": "X", "fullName": "Second Device X"}).result(timeout=1)

    one.add_student({"id": "X", "fullName": "First Device X"}).result(timeout=1)
    assert store.snapshot().students[0].full_name == "First Device X"

    two._send = deliver
    for message in in_flight:
        deliver(message)

    assert [s.full_name for s in store.snapshot().students] == ["Second Device X"]
    assert [s.full_name for s in one.dataset.students] == ["Second Device X"]
    assert ("c2", p.UPDATE_CONFIRMED) in loopback.sent


def test_bulk_mode_pushes_after_local_change(loopback, store, ahmed):
    one = loopback.connect("c1", SyncClient(mode=BULK))
    two = loopback.connect("c2", SyncClient(mode=TARGETED))

    one.add_student(ahmed).result(timeout=1)
    one.mark_attendance({"studentId": "2024001", "session": 1, "attendance": "present", "date": "1/15/2024"})

    assert ("c1", p.UPDATE_CONFIRMED) in loopback.sent
    assert len(store.snapshot().attendance_logs) == 1
    assert two.dataset.student_records[0].sessions[1].attendance == "present"


def test_offline_student_is_adopted_on_scan(loopback, store):
    scanner = loopback.connect("c1", SyncClient())
    watcher = loopback.connect("c2", SyncClient())

    scanner.connected = False
    scanner.add_student({"id": "2024077", "fullName": "Added Offline"}).result(timeout=1)
    scanner.connected = True

    student = scanner.scan("2024077").result(timeout=1)
    assert student["syncedFromClient"] is True
    assert [s.id for s in store.snapshot().students] == ["2024077"]
    assert [r.id for r in store.snapshot().student_records] == ["2024077"]
    assert watcher.scanned[-1]["studentId"] == "2024077"
    assert [s.id for s in watcher.dataset.students] == ["2024077"]


def test_scan_unknown_student(loopback):
    client = loopback.connect("c1", SyncClient())
    with pytest.raises(StudentNotFound):
        client.scan("missing").result(timeout=1)


def test_offline_scan_uses_local_cache():
    client = SyncClient()
    client.add_student({"id": "1", "fullName": "Cached Kid"}).result(timeout=1)
    assert client.scan(1).result(timeout=1)["fullName"] == "Cached Kid"
    with pytest.raises(StudentNotFound):
        client.scan("2").result(timeout=1)


def test_disconnect_fails_pending_requests(ahmed):
    client = SyncClient()
    client.connect(lambda message: None)
    future = client.add_student(ahmed)
    client.disconnect()
    with pytest.raises(ConnectionError):
        future.result(timeout=1)


def test_push_requires_connection():
    with pytest.raises(ConnectionError):
        SyncClient().push_dataset().result(timeout=1)


def test_delete_and_restore_through_server(loopback, store, ahmed):
    client = loopback.connect("c1", SyncClient())
    client.add_student(ahmed).result(timeout=1)
    client.delete_student("2024001").result(timeout=1)
    assert len(client.dataset.deleted_students) == 1

    client.restore_student("2024001").result(timeout=1)
    assert [s.id for s in store.snapshot().students] == ["2024001"]
    assert client.dataset.deleted_students == []
