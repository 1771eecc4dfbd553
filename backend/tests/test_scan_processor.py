import json
import threading

import pytest

import backend.config as config
import database.db as db
from backend.errors import (
    ChainClosed,
    ChallengeFailed,
    Forbidden,
    NotEnrolled,
    NotHolder,
    SelfScan,
    StoreConflict,
    TokenInvalid,
)
from backend.services.scan_processor import chain_token_wire


TEACHER = {"sub": "teacher-1", "role": "teacher"}


def _student(student_id: str) -> dict:
    return {"sub": student_id, "role": "student"}


def _chain_scan(processor, scanner_id, wire, **extra):
    context = {"token_origin": "CHAIN", "identity": _student(scanner_id), **extra}
    return processor.process_scan(scanner_id, wire, context)


def _wire(chain_id: str) -> dict:
    chain = db.get_chain(chain_id)
    return chain_token_wire(db.get_token(chain["current_token_id"]))


def _other_student(holder_id: str, students: list[str]) -> str:
    return next(s for s in students if s != holder_id)


def test_single_hop_passes_chain_and_credits_previous_holder(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    h0 = chain["current_holder_id"]
    h1 = _other_student(h0, students)

    result = _chain_scan(processor, h1, _wire(chain["id"]))

    assert result["status"] == "SUCCESS"
    assert result["newHolderId"] == h1
    assert result["rotationCount"] == 1
    assert result["holderMarked"] is True
    stored = db.get_chain(chain["id"])
    assert stored["phase"] == "ACTIVE"
    assert stored["current_holder_id"] == h1
    assert stored["rotation_count"] == 1

    logs = db.list_scan_logs(chain_id=chain["id"])
    assert [l["result"] for l in logs] == ["SUCCESS"]

    entry = db.get_attendance("sess-1", h0)
    assert entry["entry_status"] == "PRESENT_ENTRY"
    assert entry["entry_method"] == "CHAIN"
    assert db.get_attendance("sess-1", h1)["entry_status"] is None


def test_wire_token_as_json_text_is_accepted(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)

    result = _chain_scan(processor, scanner, json.dumps(_wire(chain["id"])))

    assert result["status"] == "SUCCESS"


def test_concurrent_scans_of_one_token_allow_exactly_one_transfer(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    holder = chain["current_holder_id"]
    scanners = [s for s in students if s != holder][:2]
    wire = _wire(chain["id"])

    barrier = threading.Barrier(len(scanners))
    results: dict[str, dict] = {}
    errors: list[BaseException] = []

    def scan(scanner_id: str):
        try:
            barrier.wait()
            results[scanner_id] = _chain_scan(processor, scanner_id, wire)
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=scan, args=(s,)) for s in scanners]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    statuses = sorted(r["status"] for r in results.values())
    assert statuses == ["REJECTED_STALE", "SUCCESS"]

    winner = next(s for s, r in results.items() if r["status"] == "SUCCESS")
    stored = db.get_chain(chain["id"])
    assert stored["rotation_count"] == 1
    assert stored["current_holder_id"] == winner

    results_logged = sorted(l["result"] for l in db.list_scan_logs(chain_id=chain["id"]))
    assert results_logged == ["REJECTED_STALE", "SUCCESS"]


def test_store_conflict_is_retried_once(processor, joined, monkeypatch):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    holder = chain["current_holder_id"]
    scanner = _other_student(holder, students)
    real_update = db.update_token_if_version
    calls = []

    def lose_first_write(*args, **kwargs):
        calls.append(args[0])
        if len(calls) == 1:
            return False
        return real_update(*args, **kwargs)

    monkeypatch.setattr(db, "update_token_if_version", lose_first_write)

    result = _chain_scan(processor, scanner, _wire(chain["id"]))

    assert result["status"] == "SUCCESS"
    assert result["rotationCount"] == 1
    assert len(calls) == 2
    assert db.get_chain(chain["id"])["current_holder_id"] == scanner
    assert db.get_attendance("sess-1", holder)["entry_status"] == "PRESENT_ENTRY"
    assert [l["result"] for l in db.list_scan_logs(chain_id=chain["id"])] == ["SUCCESS"]


def test_second_store_conflict_surfaces_and_is_logged(processor, joined, monkeypatch):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    holder = chain["current_holder_id"]
    scanner = _other_student(holder, students)
    monkeypatch.setattr(db, "update_token_if_version", lambda *args, **kwargs: False)

    with pytest.raises(StoreConflict):
        _chain_scan(processor, scanner, _wire(chain["id"]))

    stored = db.get_chain(chain["id"])
    assert stored["current_holder_id"] == holder
    assert stored["rotation_count"] == 0
    assert db.get_attendance("sess-1", holder)["entry_status"] is None
    logs = db.list_scan_logs(chain_id=chain["id"])
    assert [l["result"] for l in logs] == ["REJECTED"]
    assert logs[0]["error_code"] == "STORE_CONFLICT"


def test_replaying_consumed_token_is_stale(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    holder = chain["current_holder_id"]
    first, second = [s for s in students if s != holder][:2]
    wire = _wire(chain["id"])
    _chain_scan(processor, first, wire)

    result = _chain_scan(processor, second, wire)

    assert result["status"] == "REJECTED_STALE"
    assert result["retry"] is True
    assert db.get_chain(chain["id"])["rotation_count"] == 1


def test_expired_token_is_rejected_and_logged(processor, joined, clock):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)
    wire = _wire(chain["id"])
    clock.advance(10)

    result = _chain_scan(processor, scanner, wire)

    assert result["status"] == "REJECTED_EXPIRED"
    assert db.get_chain(chain["id"])["rotation_count"] == 0
    logs = db.list_scan_logs(chain_id=chain["id"])
    assert [(l["result"], l["error_code"]) for l in logs] == [("REJECTED_EXPIRED", "EXPIRED")]


def test_forged_holder_is_rejected(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)
    wire = {**_wire(chain["id"]), "holderId": "someone-else"}

    with pytest.raises(NotHolder):
        _chain_scan(processor, scanner, wire)
    assert db.list_scan_logs(chain_id=chain["id"])[0]["error_code"] == "NOT_HOLDER"


def test_holder_cannot_scan_own_token(processor, joined):
    joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]

    with pytest.raises(SelfScan):
        _chain_scan(processor, chain["current_holder_id"], _wire(chain["id"]))


def test_scanner_must_have_joined(processor, joined):
    joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]

    with pytest.raises(NotEnrolled):
        _chain_scan(processor, "stranger", _wire(chain["id"]))


def test_unknown_token_is_invalid(processor, joined):
    joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    wire = {**_wire(chain["id"]), "tokenId": "missing"}

    with pytest.raises(TokenInvalid):
        _chain_scan(processor, "s1", wire)


def test_scan_without_capability_is_forbidden(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)

    with pytest.raises(Forbidden):
        processor.process_scan(
            scanner,
            _wire(chain["id"]),
            {"token_origin": "CHAIN", "identity": {"sub": scanner, "role": "teacher"}},
        )


def test_closed_chain_rejects_scan(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)
    wire = _wire(chain["id"])
    processor.state.close(chain["id"], "teacher_closed")

    result = _chain_scan(processor, scanner, wire)

    assert result["status"] == "REJECTED_STALE"


def test_terminal_scan_closes_exit_chain_and_marks_once(processor, joined, clock):
    students = joined()
    for s in students:
        db.mark_entry_once("sess-1", s, status="PRESENT_ENTRY", method="DIRECT_QR", at=clock())
    chain = processor.state.seed("sess-1", "EXIT", 1)[0]
    holder = chain["current_holder_id"]
    wire = _wire(chain["id"])
    clock.advance(2)

    result = processor.process_scan(
        TEACHER["sub"],
        wire,
        {"token_origin": "CHAIN", "identity": TEACHER, "terminal": True},
    )

    assert result["status"] == "SUCCESS"
    assert result["chainClosed"] is True
    assert result["holderMarked"] is True
    stored = db.get_chain(chain["id"])
    assert stored["phase"] == "CLOSED"
    assert stored["closed_reason"] == "terminal_scan"
    record = db.get_attendance("sess-1", holder)
    assert record["exit_verified"] is True
    assert record["exit_method"] == "CHAIN"
    exited_at = record["exited_at"]

    clock.advance(3)
    repeat = processor.process_scan(
        TEACHER["sub"],
        wire,
        {"token_origin": "CHAIN", "identity": TEACHER, "terminal": True},
    )

    assert repeat["status"] == "ALREADY_MARKED"
    assert db.get_attendance("sess-1", holder)["exited_at"] == exited_at
    assert [l["result"] for l in db.list_scan_logs(chain_id=chain["id"])] == ["SUCCESS", "ALREADY_MARKED"]


def test_terminal_scan_requires_close_capability(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)

    with pytest.raises(Forbidden):
        _chain_scan(processor, scanner, _wire(chain["id"]), terminal=True)


def test_terminal_scan_on_closed_chain_by_someone_else_is_stale(processor, joined):
    joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    wire = _wire(chain["id"])
    processor.process_scan("teacher-1", wire, {"token_origin": "CHAIN", "identity": TEACHER, "terminal": True})

    other_teacher = {"sub": "teacher-2", "role": "teacher"}
    result = processor.process_scan("teacher-2", wire, {"token_origin": "CHAIN", "identity": other_teacher, "terminal": True})

    assert result["status"] == "REJECTED_STALE"


def test_intermediate_hop_still_passes_when_holder_already_marked(processor, joined, clock):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    holder = chain["current_holder_id"]
    db.mark_entry_once("sess-1", holder, status="PRESENT_ENTRY", method="DIRECT_QR", at=clock())
    scanner = _other_student(holder, students)

    result = _chain_scan(processor, scanner, _wire(chain["id"]))

    assert result["status"] == "SUCCESS"
    assert result["holderMarked"] is False
    assert db.get_attendance("sess-1", holder)["entry_method"] == "DIRECT_QR"


@pytest.mark.parametrize(
    "kind,field,expected",
    [
        ("LATE", "entry_status", "LATE_ENTRY"),
        ("EARLY", "exit_method", "CHAIN"),
    ],
)
def test_chain_kind_decides_what_is_recorded(processor, joined, clock, kind, field, expected):
    students = joined()
    if kind == "EARLY":
        for s in students:
            db.mark_entry_once("sess-1", s, status="PRESENT_ENTRY", method="DIRECT_QR", at=clock())
    chain = processor.state.seed("sess-1", kind, 1)[0]
    holder = chain["current_holder_id"]

    _chain_scan(processor, _other_student(holder, students), _wire(chain["id"]))

    record = db.get_attendance("sess-1", holder)
    assert record[field] == expected
    if kind == "EARLY":
        assert record["early_leave_at"] is not None
        assert record["exit_verified"] is False


def test_snapshot_chain_hop_records_no_attendance(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "SNAPSHOT", 1)[0]
    holder = chain["current_holder_id"]

    result = _chain_scan(processor, _other_student(holder, students), _wire(chain["id"]))

    assert result["status"] == "SUCCESS"
    assert result["holderMarked"] is False
    assert db.get_attendance("sess-1", holder)["entry_status"] is None


class TestLivenessChallenge:
    def _setup(self, processor, joined):
        students = joined()
        chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
        scanner = _other_student(chain["current_holder_id"], students)
        wire = _wire(chain["id"])
        issued = processor.state.request_challenge("sess-1", chain["id"], wire["tokenId"], scanner)
        return chain, scanner, wire, issued

    def test_wrong_code_fails_without_consuming(self, processor, joined):
        chain, scanner, wire, issued = self._setup(processor, joined)
        wrong = "000000" if issued["challengeCode"] != "000000" else "111111"

        with pytest.raises(ChallengeFailed):
            _chain_scan(processor, scanner, wire, challenge_code=wrong)
        assert db.get_token(wire["tokenId"])["status"] == "ACTIVE"

        result = _chain_scan(processor, scanner, wire, challenge_code=issued["challengeCode"])
        assert result["status"] == "SUCCESS"

    def test_missing_code_fails(self, processor, joined):
        _chain, scanner, wire, _issued = self._setup(processor, joined)

        with pytest.raises(ChallengeFailed):
            _chain_scan(processor, scanner, wire)

    def test_only_requester_can_answer(self, processor, joined):
        chain, scanner, wire, issued = self._setup(processor, joined)
        other = next(s for s in ("s1", "s2", "s3", "s4", "s5") if s not in (scanner, chain["current_holder_id"]))

        with pytest.raises(ChallengeFailed):
            _chain_scan(processor, other, wire, challenge_code=issued["challengeCode"])

    def test_challenge_has_its_own_ttl(self, processor, joined, clock, monkeypatch):
        monkeypatch.setitem(config.CHAIN_TOKEN_TTL_SECONDS, "ENTRY", 120)
        chain, scanner, wire, issued = self._setup(processor, joined)
        other = next(s for s in ("s1", "s2", "s3", "s4", "s5") if s not in (scanner, chain["current_holder_id"]))

        clock.advance(config.CHALLENGE_TTL_SECONDS - 1)
        with pytest.raises(ChallengeFailed):
            _chain_scan(processor, other, wire)

        clock.advance(1)
        result = _chain_scan(processor, other, wire)
        assert result["status"] == "SUCCESS"
        assert result["newHolderId"] == other

    def test_lapsed_challenge_does_not_block_terminal_scan(self, processor, joined, clock, monkeypatch):
        monkeypatch.setitem(config.CHAIN_TOKEN_TTL_SECONDS, "ENTRY", 120)
        chain, _scanner, wire, _issued = self._setup(processor, joined)
        clock.advance(config.CHALLENGE_TTL_SECONDS + 1)

        result = processor.process_scan(
            "teacher-1",
            wire,
            {"token_origin": "CHAIN", "identity": TEACHER, "terminal": True},
        )

        assert result["status"] == "SUCCESS"
        assert result["chainClosed"] is True
        assert db.get_chain(chain["id"])["phase"] == "CLOSED"


class TestBroadcastCodes:
    def _scan(self, processor, scanner_id, code):
        return processor.process_scan(scanner_id, code, {"token_origin": "BROADCAST", "identity": _student(scanner_id)})

    def test_entry_code_marks_scanner_directly(self, processor, joined):
        joined("s1")
        code = processor.codec.issue_for("sess-1", "ENTRY")

        result = self._scan(processor, "s1", code)

        assert result["status"] == "SUCCESS"
        record = db.get_attendance("sess-1", "s1")
        assert record["entry_status"] == "PRESENT_ENTRY"
        assert record["entry_method"] == "DIRECT_QR"
        assert db.list_chains("sess-1") == []

    def test_second_scan_is_already_marked(self, processor, joined, clock):
        joined("s1")
        code = processor.codec.issue_for("sess-1", "ENTRY")
        self._scan(processor, "s1", code)
        entry_at = db.get_attendance("sess-1", "s1")["entry_at"]
        clock.advance(1)

        result = self._scan(processor, "s1", code)

        assert result["status"] == "ALREADY_MARKED"
        assert db.get_attendance("sess-1", "s1")["entry_at"] == entry_at

    def test_exit_code_sets_exit_direct(self, processor, joined, clock):
        joined("s1")
        db.mark_entry_once("sess-1", "s1", status="PRESENT_ENTRY", method="CHAIN", at=clock())

        self._scan(processor, "s1", processor.codec.issue_for("sess-1", "EXIT"))

        record = db.get_attendance("sess-1", "s1")
        assert record["exit_verified"] is True
        assert record["exit_method"] == "DIRECT_QR"

    def test_expired_code_is_routine_rejection(self, processor, joined, clock):
        joined("s1")
        code = processor.codec.issue_for("sess-1", "ENTRY")
        clock.advance(20)

        result = self._scan(processor, "s1", code)

        assert result["status"] == "REJECTED_EXPIRED"
        assert db.get_attendance("sess-1", "s1")["entry_status"] is None

    def test_code_for_other_session_is_invalid(self, processor, joined):
        joined("s1")
        code = processor.codec.issue_for("sess-2", "ENTRY")

        with pytest.raises(TokenInvalid):
            processor.process_scan(
                "s1",
                code,
                {"token_origin": "BROADCAST", "identity": _student("s1"), "session_id": "sess-1"},
            )

    def test_unjoined_scanner_is_rejected(self, processor, store):
        code = processor.codec.issue_for("sess-1", "ENTRY")

        with pytest.raises(NotEnrolled):
            self._scan(processor, "s1", code)


def test_notifier_failure_never_undoes_transfer(processor, joined):
    class BrokenNotifier:
        def publish(self, event):
            raise RuntimeError("push relay down")

    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    processor.state.notifier = BrokenNotifier()
    scanner = _other_student(chain["current_holder_id"], students)

    result = _chain_scan(processor, scanner, _wire(chain["id"]))

    assert result["status"] == "SUCCESS"
    assert db.get_chain(chain["id"])["current_holder_id"] == scanner


def test_chain_closed_error_is_distinct_from_stale(processor, joined):
    students = joined()
    chain = processor.state.seed("sess-1", "ENTRY", 1)[0]
    scanner = _other_student(chain["current_holder_id"], students)
    wire = _wire(chain["id"])
    # Close the chain row without touching its token.
    with db.unit_of_work() as conn:
        assert db.update_chain_if_version(chain["id"], 1, {"phase": "CLOSED"}, conn=conn)

    with pytest.raises(ChainClosed):
        _chain_scan(processor, scanner, wire)
