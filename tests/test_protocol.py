import protocol as p


def events(outbounds):
    return [(out.audience, out.event) for out in outbounds]


def test_connect_sends_snapshot_to_sender_and_roster_to_all(protocol, store, ahmed):
    store.add_student(ahmed)
    out = protocol.on_connect("c1")

    assert events(out) == [(p.SENDER, p.INITIAL_SNAPSHOT), (p.ALL, p.CLIENT_ROSTER_UPDATE)]
    assert out[0].data["students"][0]["id"] == "2024001"
    assert out[1].data["count"] == 1


def test_identify_device_rebroadcasts_roster(protocol):
    protocol.on_connect("c1")
    out = protocol.on_message("c1", {"event": p.IDENTIFY_DEVICE, "data": {"deviceType": "tablet", "deviceName": "iPad"}})
    assert events(out) == [(p.ALL, p.CLIENT_ROSTER_UPDATE)]
    assert out[0].data["clients"][0]["deviceName"] == "iPad"


def test_heartbeat_produces_no_traffic(protocol):
    protocol.on_connect("c1")
    assert protocol.on_message("c1", {"event": p.HEARTBEAT}) == []


def test_add_student_broadcasts_and_acknowledges(protocol, ahmed):
    protocol.on_connect("c1")
    out = protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed, "requestId": "r1"})

    assert events(out) == [(p.ALL, p.WHOLE_DATASET_SYNC), (p.SENDER, p.OPERATION_SUCCESS)]
    assert out[1].data["operation"] == p.ADD_STUDENT
    assert out[1].data["requestId"] == "r1"
    assert out[1].data["data"]["fullName"] == "Ahmed Ali"
    assert len(out[0].data["studentRecords"]) == 1


def test_duplicate_add_is_unicast_error_with_suggestion(protocol, ahmed):
    protocol.on_connect("c1")
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    out = protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed, "requestId": "r2"})

    assert events(out) == [(p.SENDER, p.OPERATION_ERROR)]
    payload = out[0].data
    assert payload["kind"] == "DUPLICATE_ID"
    assert payload["error"].startswith("DUPLICATE_ID|")
    assert payload["suggestedId"] == "2024002"
    assert payload["requestId"] == "r2"


def test_mark_attendance_over_the_wire(protocol, store, ahmed):
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    out = protocol.on_message("c1", {"event": p.MARK_ATTENDANCE, "requestId": 7, "data": {
        "studentId": "2024001", "studentName": "Ahmed Ali", "session": "1",
        "attendance": "present", "homework": "complete", "quiz": "8", "date": "1/15/2024",
    }})

    assert events(out) == [(p.ALL, p.WHOLE_DATASET_SYNC), (p.SENDER, p.OPERATION_SUCCESS)]
    assert out[1].data["requestId"] == "7"
    assert out[1].data["data"]["quiz"] == 8
    assert len(store.snapshot().attendance_logs) == 1


def test_out_of_range_session_over_the_wire(protocol, store, ahmed):
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    before = store.snapshot().to_wire()
    out = protocol.on_message("c1", {"event": p.MARK_ATTENDANCE, "data": {
        "studentId": "2024001", "session": 12, "attendance": "present",
    }})
    assert events(out) == [(p.SENDER, p.OPERATION_ERROR)]
    assert out[0].data["kind"] == "VALIDATION"
    assert store.snapshot().to_wire() == before


def test_push_whole_dataset_goes_to_others_with_ack_to_sender(protocol, ahmed):
    out = protocol.on_message("c1", {"event": p.PUSH_WHOLE_DATASET, "requestId": "r3", "data": {
        "students": [ahmed], "studentRecords": [], "attendanceLogs": [], "deletedStudents": [],
    }})
    assert events(out) == [(p.OTHERS, p.WHOLE_DATASET_SYNC), (p.SENDER, p.UPDATE_CONFIRMED)]
    assert out[1].data["success"] is True
    assert out[1].data["requestId"] == "r3"


def test_bad_push_is_rejected_without_broadcast(protocol, store, ahmed):
    store.add_student(ahmed)
    out = protocol.on_message("c1", {"event": p.PUSH_WHOLE_DATASET, "data": {"students": None}})
    assert events(out) == [(p.SENDER, p.OPERATION_ERROR)]
    assert len(store.snapshot().students) == 1


def test_qr_scan_hit_broadcasts_student_scanned(protocol, ahmed):
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    out = protocol.on_message("c1", {"event": p.QR_SCAN, "data": {"studentId": 2024001}, "requestId": "q"})

    assert events(out) == [(p.SENDER, p.QR_SCAN_RESULT), (p.ALL, p.STUDENT_SCANNED)]
    assert out[0].data["success"] is True
    assert out[0].data["adopted"] is False
    assert out[1].data["studentName"] == "Ahmed Ali"


def test_qr_scan_adoption_syncs_everyone(protocol, store):
    copy = {"id": "2024050", "fullName": "Offline Added", "phoneNumber": "0105"}
    out = protocol.on_message("c1", {"event": p.QR_SCAN, "data": {"studentId": "2024050", "student": copy}})

    assert events(out) == [(p.ALL, p.WHOLE_DATASET_SYNC), (p.SENDER, p.QR_SCAN_RESULT), (p.ALL, p.STUDENT_SCANNED)]
    assert out[1].data["student"]["syncedFromClient"] is True
    snapshot = store.snapshot()
    assert [s.id for s in snapshot.students] == ["2024050"]
    assert [r.id for r in snapshot.student_records] == ["2024050"]


def test_qr_scan_miss(protocol):
    out = protocol.on_message("c1", {"event": p.QR_SCAN, "data": {"studentId": "nope"}})
    assert events(out) == [(p.SENDER, p.QR_SCAN_RESULT)]
    assert out[0].data["success"] is False
    assert out[0].data["error"] == "Student not found"


def test_delete_and_restore_over_the_wire(protocol, store, ahmed):
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    out = protocol.on_message("c1", {"event": p.DELETE_STUDENT, "data": {"studentId": "2024001"}})
    assert out[1].data["data"]["student"]["id"] == "2024001"
    assert store.snapshot().students == []

    out = protocol.on_message("c1", {"event": p.RESTORE_STUDENT, "data": {"studentId": "2024001"}})
    assert events(out) == [(p.ALL, p.WHOLE_DATASET_SYNC), (p.SENDER, p.OPERATION_SUCCESS)]
    assert len(store.snapshot().students) == 1

    out = protocol.on_message("c1", {"event": p.DELETE_STUDENT, "data": {"studentId": "2024001", "permanent": True}})
    assert out[1].data["data"]["source"] == "active"

    out = protocol.on_message("c1", {"event": p.CLEAR_DELETED, "data": None})
    assert out[1].data["data"] == {"cleared": 0}


def test_update_student_over_the_wire(protocol, ahmed):
    protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ahmed})
    out = protocol.on_message("c1", {"event": p.UPDATE_STUDENT, "data": {
        "studentId": "2024001", "updates": {"school": "Cairo Prep"},
    }})
    assert out[1].data["data"]["school"] == "Cairo Prep"


def test_malformed_and_unknown_messages_are_answered_to_sender_only(protocol):
    out = protocol.on_message("c1", "not json at all")
    assert events(out) == [(p.SENDER, p.OPERATION_ERROR)]

    out = protocol.on_message("c1", {"event": "drop-tables", "requestId": "x"})
    assert events(out) == [(p.SENDER, p.OPERATION_ERROR)]
    assert out[0].data["requestId"] == "x"

    out = protocol.on_message("c1", {"event": p.ADD_STUDENT, "data": ["not", "a", "student"]})
    assert out[0].data["kind"] == "VALIDATION"


def test_disconnect_updates_roster(protocol):
    protocol.on_connect("c1")
    protocol.on_connect("c2")
    out = protocol.on_disconnect("c1")
    assert events(out) == [(p.ALL, p.CLIENT_ROSTER_UPDATE)]
    assert out[0].data["count"] == 1


def test_recipients():
    conns = ["a", "b", "c"]
    assert p.recipients(p.SENDER, "b", conns) == ["b"]
    assert p.recipients(p.OTHERS, "b", conns) == ["a", "c"]
    assert p.recipients(p.ALL, "b", conns) == conns
    assert p.recipients(p.OTHERS, None, conns) == conns
