import logging
import time
import uuid
from typing import Callable, TypedDict

from backend.errors import InvalidRequest, SnapshotNotFound
from backend.services.chain_state import HolderStateMachine
from database import db
from database.db import ScanLogRecord, SnapshotRecord


logger = logging.getLogger(__name__)

SNAPSHOT_KINDS = ("ENTRY", "EXIT")


class ChainTrace(TypedDict):
    chainId: str
    snapshotIndex: int | None
    phase: str
    rotationCount: int
    holderPath: list[str]
    scans: list[ScanLogRecord]
    successfulTransfers: int
    failedTransfers: int


class SnapshotTrace(TypedDict):
    snapshot: SnapshotRecord
    chains: list[ChainTrace]
    totalSuccessful: int
    totalFailed: int


class SnapshotComparison(TypedDict):
    snapshotA: str
    snapshotB: str
    added: list[str]
    removed: list[str]
    unchanged: list[str]


def _trace_order(row: ScanLogRecord) -> tuple:
    sequence = row["sequence"] if row["sequence"] is not None else -1
    return (sequence, row["scanned_at"], row["id"])


class SnapshotEngine:
    """
    Spot-check attendance: a snapshot seeds its own SNAPSHOT chains and is
    later read back from the scan audit log only.
    """

    def __init__(self, *, state: HolderStateMachine, clock: Callable[[], float] = time.time):
        self.state = state
        self.clock = clock

    def take_snapshot(
        self,
        session_id: str,
        kind: str,
        chain_count: int,
        notes: str | None = None,
    ) -> SnapshotRecord:
        if kind not in SNAPSHOT_KINDS:
            raise InvalidRequest(f"Snapshot kind must be one of {', '.join(SNAPSHOT_KINDS)}.")

        participants = self.state.eligible_holders(session_id, "SNAPSHOT")
        snapshot_id = str(uuid.uuid4())
        with db.unit_of_work() as conn:
            snapshot: SnapshotRecord = {
                "id": snapshot_id,
                "session_id": session_id,
                "kind": kind,
                "snapshot_index": db.count_snapshots(session_id, conn=conn) + 1,
                "captured_at": self.clock(),
                "chains_created": chain_count,
                "students_captured": len(participants),
                "notes": notes,
            }
            chains = self.state.seed(
                session_id,
                "SNAPSHOT",
                chain_count,
                snapshot_id=snapshot_id,
                snapshot_index=snapshot["snapshot_index"],
                holders=participants,
                conn=conn,
            )
            db.insert_snapshot(snapshot, conn=conn)

        for chain in chains:
            self.state.publish(
                {
                    "sessionId": session_id,
                    "chainId": chain["id"],
                    "newHolderId": chain["current_holder_id"],
                    "rotationCount": 0,
                    "eventType": "SEEDED",
                }
            )
        logger.info("Snapshot #%d (%s) taken for session %s", snapshot["snapshot_index"], snapshot_id, session_id)
        return snapshot

    def list_snapshots(self, session_id: str) -> list[SnapshotRecord]:
        return db.list_snapshots(session_id)

    def _require(self, snapshot_id: str) -> SnapshotRecord:
        snapshot = db.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshotId=snapshot_id)
        return snapshot

    def get_trace(self, snapshot_id: str) -> SnapshotTrace:
        snapshot = self._require(snapshot_id)
        logs = db.list_scan_logs(snapshot_id=snapshot_id, limit=None)

        by_chain: dict[str, list[ScanLogRecord]] = {}
        for row in logs:
            if row["chain_id"]:
                by_chain.setdefault(row["chain_id"], []).append(row)

        traces: list[ChainTrace] = []
        for chain in db.list_chains(snapshot["session_id"], snapshot_id=snapshot_id):
            scans = sorted(by_chain.get(chain["id"], []), key=_trace_order)
            successes = [s for s in scans if s["result"] == "SUCCESS"]

            path: list[str] = []
            for scan in successes:
                if not path and scan["holder_id"]:
                    path.append(scan["holder_id"])
                if scan["message"] != "terminal":
                    path.append(scan["scanner_id"])
            if not path and chain["current_holder_id"]:
                path.append(chain["current_holder_id"])

            traces.append(
                {
                    "chainId": chain["id"],
                    "snapshotIndex": chain["snapshot_index"],
                    "phase": chain["phase"],
                    "rotationCount": chain["rotation_count"],
                    "holderPath": path,
                    "scans": scans,
                    "successfulTransfers": len(successes),
                    "failedTransfers": len(scans) - len(successes),
                }
            )

        return {
            "snapshot": snapshot,
            "chains": traces,
            "totalSuccessful": sum(t["successfulTransfers"] for t in traces),
            "totalFailed": sum(t["failedTransfers"] for t in traces),
        }

    def captured_students(self, snapshot_id: str) -> set[str]:
        """Participants proven present by a successful hop within the snapshot."""
        students: set[str] = set()
        for row in db.list_scan_logs(snapshot_id=snapshot_id, result="SUCCESS", limit=None):
            if row["holder_id"]:
                students.add(row["holder_id"])
            if row["message"] != "terminal":
                students.add(row["scanner_id"])
        return students

    def compare(self, snapshot_a: str, snapshot_b: str) -> SnapshotComparison:
        if snapshot_a == snapshot_b:
            raise InvalidRequest("Cannot compare a snapshot with itself.")
        self._require(snapshot_a)
        self._require(snapshot_b)

        in_a = self.captured_students(snapshot_a)
        in_b = self.captured_students(snapshot_b)
        return {
            "snapshotA": snapshot_a,
            "snapshotB": snapshot_b,
            "added": sorted(in_b - in_a),
            "removed": sorted(in_a - in_b),
            "unchanged": sorted(in_a & in_b),
        }
