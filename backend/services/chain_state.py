import hashlib
import logging
import secrets
import sqlite3
import time
from typing import Callable, Sequence, TypedDict

from backend.config import (
    CHAIN_KINDS,
    CHAIN_MAX_SEED_COUNT,
    CHAIN_TOKEN_TTL_SECONDS,
    CHALLENGE_TTL_SECONDS,
    STALL_IDLE_SECONDS,
)
from backend.errors import (
    ChainClosed,
    ChainNotFound,
    Expired,
    InvalidCount,
    InvalidRequest,
    NotEnrolled,
    NotHolder,
    SelfScan,
    StaleToken,
    StoreConflict,
    TokenInvalid,
)
from backend.services.notifier import ChainEvent, Notifier, notify_safely
from database import db
from database.db import AttendanceRecord, ChainKind, ChainRecord, FinalStatus, TokenRecord


logger = logging.getLogger(__name__)


class TransferResult(TypedDict):
    chain: ChainRecord
    token: TokenRecord
    consumed_token_id: str
    event: ChainEvent


class CloseResult(TypedDict):
    chain: ChainRecord
    event: ChainEvent


class HolderAssignment(TypedDict):
    chain: ChainRecord
    token: TokenRecord
    previous_holder_id: str | None
    event: ChainEvent


class ChallengeIssue(TypedDict):
    tokenId: str
    chainId: str
    challengeCode: str
    expiresAt: float


class SessionSummary(TypedDict):
    sessionId: str
    closedChains: list[str]
    finalStatuses: dict[str, FinalStatus]


def compute_final_status(record: AttendanceRecord) -> FinalStatus:
    if record["early_leave_at"] is not None:
        return "EARLY_LEAVE"
    if record["entry_status"] == "PRESENT_ENTRY" and record["exit_verified"]:
        return "PRESENT"
    if record["entry_status"] == "LATE_ENTRY" and record["exit_verified"]:
        return "LATE"
    if record["entry_status"] is not None:
        return "LEFT_EARLY"
    return "ABSENT"


def hash_challenge_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def _challenge_code(token_id: str, requester_id: str, issued_at: float) -> str:
    digest = hashlib.sha256(f"{token_id}:{requester_id}:{issued_at}:{secrets.token_hex(8)}".encode("utf-8"))
    return str(int(digest.hexdigest()[:8], 16) % 1_000_000).zfill(6)


def check_presented_token(
    chain: ChainRecord,
    token: TokenRecord,
    holder_id: str,
    now: float,
) -> None:
    """
    Validation shared by every path that retires a chain token.

    Order matters: a replayed token is stale even after the chain has closed.
    """
    if token["chain_id"] != chain["id"]:
        raise TokenInvalid("Token does not belong to this chain.")
    if token["status"] != "ACTIVE" or chain["current_token_id"] != token["id"]:
        raise StaleToken(tokenId=token["id"], status=token["status"])
    if chain["phase"] == "CLOSED":
        raise ChainClosed(chainId=chain["id"])
    if token["expires_at"] <= now:
        raise Expired(tokenId=token["id"])
    if token["holder_id"] != holder_id or chain["current_holder_id"] != holder_id:
        raise NotHolder(chainId=chain["id"])


class HolderStateMachine:
    """
    Chain lifecycle: SEEDED -> ACTIVE -> CLOSED.

    Every write is one short SQLite transaction built on version-checked
    conditional updates. Methods accept an open `conn` so a caller can fold a
    transition into a larger unit of work; in that case the caller publishes
    the returned event after its own commit.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        notifier: Notifier | None = None,
        rng: secrets.SystemRandom | None = None,
    ):
        self.clock = clock
        self.notifier = notifier
        self.rng = rng or secrets.SystemRandom()

    def publish(self, event: ChainEvent) -> None:
        notify_safely(self.notifier, event)

    # -----------------------------
    # Reads
    # -----------------------------
    def get_chain(self, chain_id: str, *, session_id: str | None = None) -> ChainRecord:
        chain = db.get_chain(chain_id, session_id=session_id)
        if chain is None:
            raise ChainNotFound(chainId=chain_id)
        return chain

    def list_chains(self, session_id: str, kind: ChainKind | None = None) -> list[ChainRecord]:
        return db.list_chains(session_id, kind=kind)

    def eligible_holders(self, session_id: str, kind: ChainKind) -> list[str]:
        records = db.list_attendance(session_id)
        if kind in ("EXIT", "EARLY"):
            records = [r for r in records if r["entry_status"] is not None and r["early_leave_at"] is None]
        return [r["student_id"] for r in records]

    # -----------------------------
    # Transitions
    # -----------------------------
    def _new_token(
        self,
        chain: ChainRecord,
        holder_id: str,
        sequence: int,
        now: float,
    ) -> TokenRecord:
        return {
            "id": secrets.token_urlsafe(16),
            "session_id": chain["session_id"],
            "chain_id": chain["id"],
            "holder_id": holder_id,
            "sequence": sequence,
            "issued_at": now,
            "expires_at": now + CHAIN_TOKEN_TTL_SECONDS[chain["kind"]],
            "status": "ACTIVE",
            "challenge": None,
            "consumed_at": None,
            "consumed_by": None,
            "version": 1,
        }

    def seed(
        self,
        session_id: str,
        kind: ChainKind,
        count: int,
        *,
        snapshot_id: str | None = None,
        snapshot_index: int | None = None,
        holders: Sequence[str] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[ChainRecord]:
        """
        Create `count` independent chains, each with a distinct random initial
        holder and a sequence-0 token.
        """
        if kind not in CHAIN_KINDS:
            raise InvalidRequest(f"Unknown chain kind: {kind}")
        if not isinstance(count, int) or isinstance(count, bool) or not 1 <= count <= CHAIN_MAX_SEED_COUNT:
            raise InvalidCount(f"Chain count must be between 1 and {CHAIN_MAX_SEED_COUNT}.", count=count)

        pool = list(dict.fromkeys(holders if holders is not None else self.eligible_holders(session_id, kind)))
        if count > len(pool):
            raise InvalidCount(
                f"Only {len(pool)} eligible participant(s) for {count} chain(s).",
                count=count,
                eligible=len(pool),
            )

        self.rng.shuffle(pool)
        chosen = pool[:count]

        if conn is None:
            with db.unit_of_work() as own_conn:
                chains = self._seed(own_conn, session_id, kind, chosen, snapshot_id, snapshot_index)
            for chain in chains:
                self.publish(self._event(chain, "SEEDED"))
            return chains
        return self._seed(conn, session_id, kind, chosen, snapshot_id, snapshot_index)

    def _seed(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        kind: ChainKind,
        chosen: list[str],
        snapshot_id: str | None,
        snapshot_index: int | None,
    ) -> list[ChainRecord]:
        now = self.clock()
        previous_index = db.max_chain_index(session_id, kind, conn=conn)
        chain_index = 0 if previous_index is None else previous_index + 1

        chains: list[ChainRecord] = []
        for holder_id in chosen:
            chain: ChainRecord = {
                "id": secrets.token_urlsafe(12),
                "session_id": session_id,
                "kind": kind,
                "phase": "SEEDED",
                "chain_index": chain_index,
                "current_holder_id": holder_id,
                "current_token_id": None,
                "previous_token_id": None,
                "rotation_count": 0,
                "snapshot_id": snapshot_id,
                "snapshot_index": snapshot_index,
                "closed_reason": None,
                "version": 1,
                "created_at": now,
                "updated_at": now,
                "closed_at": None,
            }
            token = self._new_token(chain, holder_id, 0, now)
            chain["current_token_id"] = token["id"]
            db.insert_chain(chain, conn=conn)
            db.insert_token(token, conn=conn)
            db.insert_chain_history(
                session_id=session_id,
                chain_id=chain["id"],
                event_type="SEEDED",
                holder_id=holder_id,
                rotation_count=0,
                sequence=0,
                token_id=token["id"],
                created_at=now,
                conn=conn,
            )
            chains.append(chain)

        logger.info("Seeded %d %s chain(s) for session %s (index %d)", len(chains), kind, session_id, chain_index)
        return chains

    def transfer(
        self,
        chain_id: str,
        from_holder: str,
        to_holder: str,
        consumed_token_id: str,
        *,
        session_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> TransferResult:
        """
        Retire `consumed_token_id` and hand the chain to `to_holder` with a
        fresh token at sequence + 1.

        Raises StaleToken, Expired, NotHolder, ChainClosed, or StoreConflict
        when a concurrent writer changed the token or chain first.
        """
        if conn is None:
            with db.unit_of_work() as own_conn:
                result = self._transfer(own_conn, chain_id, from_holder, to_holder, consumed_token_id, session_id)
            self.publish(result["event"])
            return result
        return self._transfer(conn, chain_id, from_holder, to_holder, consumed_token_id, session_id)

    def _transfer(
        self,
        conn: sqlite3.Connection,
        chain_id: str,
        from_holder: str,
        to_holder: str,
        consumed_token_id: str,
        session_id: str | None,
    ) -> TransferResult:
        now = self.clock()
        chain = db.get_chain(chain_id, session_id=session_id, conn=conn)
        if chain is None:
            raise ChainNotFound(chainId=chain_id)
        token = db.get_token(consumed_token_id, conn=conn)
        if token is None:
            raise TokenInvalid("Unknown token.")

        check_presented_token(chain, token, from_holder, now)
        if to_holder == from_holder:
            raise SelfScan()

        if not db.update_token_if_version(
            token["id"],
            token["version"],
            {"status": "CONSUMED", "consumed_at": now, "consumed_by": to_holder},
            conn=conn,
        ):
            raise StoreConflict(tokenId=token["id"])

        next_token = self._new_token(chain, to_holder, token["sequence"] + 1, now)
        db.insert_token(next_token, conn=conn)

        rotation_count = chain["rotation_count"] + 1
        changes = {
            "phase": "ACTIVE",
            "current_holder_id": to_holder,
            "current_token_id": next_token["id"],
            "previous_token_id": token["id"],
            "rotation_count": rotation_count,
            "updated_at": now,
        }
        if not db.update_chain_if_version(chain["id"], chain["version"], changes, conn=conn):
            raise StoreConflict(chainId=chain["id"])

        db.insert_chain_history(
            session_id=chain["session_id"],
            chain_id=chain["id"],
            event_type="TRANSFERRED",
            holder_id=to_holder,
            previous_holder_id=from_holder,
            rotation_count=rotation_count,
            sequence=next_token["sequence"],
            token_id=next_token["id"],
            created_at=now,
            conn=conn,
        )
        db.insert_scan_log(
            session_id=chain["session_id"],
            chain_id=chain["id"],
            snapshot_id=chain["snapshot_id"],
            token_id=token["id"],
            token_origin="CHAIN",
            sequence=token["sequence"],
            holder_id=from_holder,
            scanner_id=to_holder,
            result="SUCCESS",
            scanned_at=now,
            conn=conn,
        )

        updated: ChainRecord = {**chain, **changes, "version": chain["version"] + 1}  # type: ignore[typeddict-item]
        logger.info(
            "Chain %s transferred %s -> %s (rotation %d)",
            chain["id"],
            from_holder,
            to_holder,
            rotation_count,
        )
        return {
            "chain": updated,
            "token": next_token,
            "consumed_token_id": token["id"],
            "event": self._event(updated, "TRANSFERRED"),
        }

    def close(
        self,
        chain_id: str,
        reason: str,
        *,
        session_id: str | None = None,
        consumed_token_id: str | None = None,
        closed_by: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> CloseResult:
        """
        Move a chain to CLOSED.

        With `consumed_token_id` this is the terminal scan: the presented token
        is validated and marked CONSUMED by `closed_by`. Otherwise the
        outstanding token is revoked.
        """
        if conn is None:
            with db.unit_of_work() as own_conn:
                result = self._close(own_conn, chain_id, reason, session_id, consumed_token_id, closed_by)
            self.publish(result["event"])
            return result
        return self._close(conn, chain_id, reason, session_id, consumed_token_id, closed_by)

    def _close(
        self,
        conn: sqlite3.Connection,
        chain_id: str,
        reason: str,
        session_id: str | None,
        consumed_token_id: str | None,
        closed_by: str | None,
    ) -> CloseResult:
        now = self.clock()
        chain = db.get_chain(chain_id, session_id=session_id, conn=conn)
        if chain is None:
            raise ChainNotFound(chainId=chain_id)

        if consumed_token_id is not None:
            token = db.get_token(consumed_token_id, conn=conn)
            if token is None:
                raise TokenInvalid("Unknown token.")
            check_presented_token(chain, token, str(chain["current_holder_id"]), now)
            token_changes = {"status": "CONSUMED", "consumed_at": now, "consumed_by": closed_by}
        else:
            if chain["phase"] == "CLOSED":
                raise ChainClosed(chainId=chain_id)
            token = db.get_token(chain["current_token_id"], conn=conn) if chain["current_token_id"] else None
            token_changes = {"status": "REVOKED"}

        if token is not None and token["status"] == "ACTIVE":
            if not db.update_token_if_version(token["id"], token["version"], token_changes, conn=conn):
                raise StoreConflict(tokenId=token["id"])

        changes = {"phase": "CLOSED", "closed_reason": reason, "closed_at": now, "updated_at": now}
        if not db.update_chain_if_version(chain["id"], chain["version"], changes, conn=conn):
            raise StoreConflict(chainId=chain["id"])

        db.insert_chain_history(
            session_id=chain["session_id"],
            chain_id=chain["id"],
            event_type="CLOSED",
            holder_id=chain["current_holder_id"],
            rotation_count=chain["rotation_count"],
            sequence=token["sequence"] if token else None,
            token_id=token["id"] if token else None,
            created_at=now,
            conn=conn,
        )
        if consumed_token_id is not None and token is not None:
            db.insert_scan_log(
                session_id=chain["session_id"],
                chain_id=chain["id"],
                snapshot_id=chain["snapshot_id"],
                token_id=token["id"],
                token_origin="CHAIN",
                sequence=token["sequence"],
                holder_id=token["holder_id"],
                scanner_id=closed_by or "",
                result="SUCCESS",
                message="terminal",
                scanned_at=now,
                conn=conn,
            )

        updated: ChainRecord = {**chain, **changes, "version": chain["version"] + 1}  # type: ignore[typeddict-item]
        logger.info("Chain %s closed (%s)", chain["id"], reason)
        return {"chain": updated, "event": self._event(updated, "CLOSED")}

    def set_holder(
        self,
        chain_id: str,
        student_id: str,
        *,
        session_id: str | None = None,
    ) -> HolderAssignment:
        """
        Hand an open chain to `student_id` without a scan, e.g. when the
        current holder has walked away. The outstanding token is revoked and
        the new holder gets one at sequence + 1.
        """
        with db.unit_of_work() as conn:
            now = self.clock()
            chain = db.get_chain(chain_id, session_id=session_id, conn=conn)
            if chain is None:
                raise ChainNotFound(chainId=chain_id)
            if chain["phase"] == "CLOSED":
                raise ChainClosed(chainId=chain_id)
            if db.get_attendance(chain["session_id"], student_id, conn=conn) is None:
                raise NotEnrolled(studentId=student_id)

            token = db.get_token(chain["current_token_id"], conn=conn) if chain["current_token_id"] else None
            if token is not None and token["status"] == "ACTIVE":
                if not db.update_token_if_version(token["id"], token["version"], {"status": "REVOKED"}, conn=conn):
                    raise StoreConflict(tokenId=token["id"])

            next_token = self._new_token(chain, student_id, token["sequence"] + 1 if token else 0, now)
            db.insert_token(next_token, conn=conn)

            rotation_count = chain["rotation_count"] + 1
            changes = {
                "phase": "ACTIVE",
                "current_holder_id": student_id,
                "current_token_id": next_token["id"],
                "previous_token_id": token["id"] if token else None,
                "rotation_count": rotation_count,
                "updated_at": now,
            }
            if not db.update_chain_if_version(chain["id"], chain["version"], changes, conn=conn):
                raise StoreConflict(chainId=chain["id"])

            db.insert_chain_history(
                session_id=chain["session_id"],
                chain_id=chain["id"],
                event_type="HOLDER_SET",
                holder_id=student_id,
                previous_holder_id=chain["current_holder_id"],
                rotation_count=rotation_count,
                sequence=next_token["sequence"],
                token_id=next_token["id"],
                created_at=now,
                conn=conn,
            )

        updated: ChainRecord = {**chain, **changes, "version": chain["version"] + 1}  # type: ignore[typeddict-item]
        event = self._event(updated, "HOLDER_SET")
        self.publish(event)
        logger.info("Chain %s handed %s -> %s by teacher", chain["id"], chain["current_holder_id"], student_id)
        return {
            "chain": updated,
            "token": next_token,
            "previous_holder_id": chain["current_holder_id"],
            "event": event,
        }

    def detect_stalled(
        self,
        session_id: str,
        kind: ChainKind | None = None,
        idle_seconds: int | None = None,
    ) -> list[ChainRecord]:
        """
        Open chains whose custody has not moved for more than `idle_seconds`.
        Each one is announced with a STALLED event; nothing is written.
        """
        idle = STALL_IDLE_SECONDS if idle_seconds is None else idle_seconds
        if idle <= 0:
            raise InvalidRequest("idle_seconds must be positive.", idle_seconds=idle)

        now = self.clock()
        changed = db.last_custody_changes(session_id)
        stalled = [
            chain
            for chain in db.list_chains(session_id, kind=kind, open_only=True)
            if now - changed.get(chain["id"], chain["updated_at"]) > idle
        ]

        for chain in stalled:
            self.publish(self._event(chain, "STALLED"))
        if stalled:
            logger.warning("%d chain(s) stalled in session %s (idle > %ss)", len(stalled), session_id, idle)
        return stalled

    def request_challenge(
        self,
        session_id: str,
        chain_id: str,
        token_id: str,
        requester_id: str,
    ) -> ChallengeIssue:
        """
        Attach a 6-digit liveness challenge for `requester_id` to the chain's
        current token. Only the hash is stored.
        """
        now = self.clock()
        chain = self.get_chain(chain_id, session_id=session_id)
        token = db.get_token(token_id, session_id=session_id)
        if token is None or token["chain_id"] != chain_id:
            raise TokenInvalid("Token does not belong to this chain.")
        if chain["phase"] == "CLOSED":
            raise ChainClosed(chainId=chain_id)
        if token["status"] != "ACTIVE" or chain["current_token_id"] != token["id"]:
            raise StaleToken(tokenId=token_id)
        if token["expires_at"] <= now:
            raise Expired(tokenId=token_id)
        if token["holder_id"] == requester_id:
            raise SelfScan()

        code = _challenge_code(token_id, requester_id, now)
        expires_at = now + CHALLENGE_TTL_SECONDS
        if not db.update_token_if_version(
            token_id,
            token["version"],
            {
                "challenge_hash": hash_challenge_code(code),
                "challenge_requester_id": requester_id,
                "challenge_expires_at": expires_at,
            },
        ):
            raise StoreConflict(tokenId=token_id)

        logger.info("Challenge issued on token %s for %s", token_id, requester_id)
        return {"tokenId": token_id, "chainId": chain_id, "challengeCode": code, "expiresAt": expires_at}

    def end_session(self, session_id: str) -> SessionSummary:
        """Close every open chain and settle each participant's final status."""
        closed: list[str] = []
        events: list[ChainEvent] = []
        with db.unit_of_work() as conn:
            for chain in db.list_chains(session_id, open_only=True, conn=conn):
                result = self._close(conn, chain["id"], "session_ended", session_id, None, None)
                closed.append(chain["id"])
                events.append(result["event"])

            statuses: dict[str, FinalStatus] = {}
            for record in db.list_attendance(session_id, conn=conn):
                status = compute_final_status(record)
                db.set_final_status(session_id, record["student_id"], status, conn=conn)
                statuses[record["student_id"]] = status

        for event in events:
            self.publish(event)
        logger.info("Session %s ended: %d chain(s) closed, %d record(s) settled", session_id, len(closed), len(statuses))
        return {"sessionId": session_id, "closedChains": closed, "finalStatuses": statuses}

    @staticmethod
    def _event(chain: ChainRecord, event_type) -> ChainEvent:
        return {
            "sessionId": chain["session_id"],
            "chainId": chain["id"],
            "newHolderId": chain["current_holder_id"],
            "rotationCount": chain["rotation_count"],
            "eventType": event_type,
        }
