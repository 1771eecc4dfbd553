import hmac
import json
import logging
import time
from typing import Any, Callable, Literal, TypedDict

from backend.errors import (
    AlreadyMarked,
    ChainError,
    ChallengeFailed,
    Expired,
    Forbidden,
    NotEnrolled,
    NotHolder,
    SelfScan,
    StaleToken,
    StoreConflict,
    TokenInvalid,
)
from backend.security import capabilities_for
from backend.services.chain_state import HolderStateMachine, check_presented_token, hash_challenge_code
from backend.services.notifier import ChainEvent
from backend.services.token_codec import TokenCodec
from database import db
from database.db import MarkMethod, TokenOrigin


logger = logging.getLogger(__name__)

ScanStatus = Literal["SUCCESS", "ALREADY_MARKED", "REJECTED_EXPIRED", "REJECTED_STALE"]
Authorizer = Callable[[dict[str, Any] | None], frozenset[str]]


class ScanContext(TypedDict, total=False):
    token_origin: TokenOrigin
    identity: dict[str, Any]
    session_id: str
    challenge_code: str
    terminal: bool


class ScanResult(TypedDict):
    status: ScanStatus
    tokenOrigin: TokenOrigin
    sessionId: str | None
    chainId: str | None
    kind: str | None
    newHolderId: str | None
    rotationCount: int | None
    holderMarked: bool
    chainClosed: bool
    retry: bool
    message: str


class ChainTokenRef(TypedDict):
    tokenId: str
    chainId: str
    holderId: str
    sequence: int
    expiresAt: float


def parse_chain_token(presented: Any) -> ChainTokenRef:
    """
    Accept the persisted-token wire shape as a dict or its JSON text.
    """
    if isinstance(presented, str):
        try:
            presented = json.loads(presented)
        except ValueError:
            raise TokenInvalid("Chain token is not valid JSON.")
    if not isinstance(presented, dict):
        raise TokenInvalid()

    for key in ("tokenId", "chainId", "holderId"):
        if not isinstance(presented.get(key), str) or not presented[key]:
            raise TokenInvalid(f"Chain token is missing {key}.")
    sequence = presented.get("sequence")
    if not isinstance(sequence, int) or isinstance(sequence, bool):
        raise TokenInvalid("Chain token is missing sequence.")
    expires_at = presented.get("expiresAt")
    if not isinstance(expires_at, (int, float)):
        raise TokenInvalid("Chain token is missing expiresAt.")

    return {
        "tokenId": presented["tokenId"],
        "chainId": presented["chainId"],
        "holderId": presented["holderId"],
        "sequence": sequence,
        "expiresAt": float(expires_at),
    }


def chain_token_wire(token: db.TokenRecord) -> ChainTokenRef:
    return {
        "tokenId": token["id"],
        "chainId": token["chain_id"],
        "holderId": token["holder_id"],
        "sequence": token["sequence"],
        "expiresAt": token["expires_at"],
    }


def credit_participant(
    conn,
    kind: str,
    session_id: str,
    student_id: str,
    *,
    method: MarkMethod,
    at: float,
) -> bool:
    """
    Write the attendance direction that `kind` stands for. False when the
    direction was already set (or the kind records nothing).
    """
    if kind == "ENTRY":
        return db.mark_entry_once(session_id, student_id, status="PRESENT_ENTRY", method=method, at=at, conn=conn)
    if kind == "LATE":
        return db.mark_entry_once(session_id, student_id, status="LATE_ENTRY", method=method, at=at, conn=conn)
    if kind == "EXIT":
        return db.mark_exit_once(session_id, student_id, method=method, at=at, conn=conn)
    if kind == "EARLY":
        return db.mark_exit_once(session_id, student_id, method=method, at=at, early_leave=True, conn=conn)
    return False


class ScanProcessor:
    def __init__(
        self,
        *,
        state: HolderStateMachine,
        codec: TokenCodec,
        authorizer: Authorizer = capabilities_for,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.codec = codec
        self.authorizer = authorizer
        self.clock = clock

    def process_scan(self, scanner_id: str, presented_token: Any, context: ScanContext) -> ScanResult:
        origin = context.get("token_origin", "CHAIN")
        capabilities = self.authorizer(context.get("identity"))
        required = "close_chains" if context.get("terminal") else "scan"
        if required not in capabilities:
            raise Forbidden(f"Missing capability: {required}.")

        if origin == "BROADCAST":
            return self._process_broadcast(scanner_id, presented_token, context)
        if origin == "CHAIN":
            return self._process_chain(scanner_id, presented_token, context)
        raise TokenInvalid(f"Unknown token origin: {origin}")

    # -----------------------------
    # Broadcast codes
    # -----------------------------
    def _process_broadcast(self, scanner_id: str, presented_token: Any, context: ScanContext) -> ScanResult:
        try:
            payload = self.codec.verify(presented_token)
        except Expired as exc:
            self._log_rejection(scanner_id, "BROADCAST", exc, session_id=context.get("session_id"))
            return self._rejected("REJECTED_EXPIRED", "BROADCAST", exc, session_id=context.get("session_id"))
        except TokenInvalid as exc:
            self._log_rejection(scanner_id, "BROADCAST", exc, session_id=context.get("session_id"))
            raise

        session_id = payload["sessionId"]
        kind = payload["kind"]
        try:
            if context.get("session_id") and context["session_id"] != session_id:
                raise TokenInvalid("Code belongs to a different session.")
            if db.get_attendance(session_id, scanner_id) is None:
                raise NotEnrolled(sessionId=session_id)

            now = self.clock()
            with db.unit_of_work() as conn:
                marked = credit_participant(conn, kind, session_id, scanner_id, method="DIRECT_QR", at=now)
                if not marked:
                    raise AlreadyMarked(kind=kind)
                db.insert_scan_log(
                    session_id=session_id,
                    token_origin="BROADCAST",
                    scanner_id=scanner_id,
                    result="SUCCESS",
                    message=kind,
                    scanned_at=now,
                    conn=conn,
                )
        except AlreadyMarked as exc:
            self._log_rejection(scanner_id, "BROADCAST", exc, session_id=session_id, result="ALREADY_MARKED")
            return self._already_marked("BROADCAST", session_id, None, kind, exc)
        except ChainError as exc:
            self._log_rejection(scanner_id, "BROADCAST", exc, session_id=session_id)
            raise

        logger.info("Broadcast %s code accepted for %s in session %s", kind, scanner_id, session_id)
        return {
            "status": "SUCCESS",
            "tokenOrigin": "BROADCAST",
            "sessionId": session_id,
            "chainId": None,
            "kind": kind,
            "newHolderId": None,
            "rotationCount": None,
            "holderMarked": True,
            "chainClosed": False,
            "retry": False,
            "message": f"{kind} recorded.",
        }

    # -----------------------------
    # Chain tokens
    # -----------------------------
    def _process_chain(self, scanner_id: str, presented_token: Any, context: ScanContext) -> ScanResult:
        try:
            ref = parse_chain_token(presented_token)
        except TokenInvalid as exc:
            self._log_rejection(scanner_id, "CHAIN", exc, session_id=context.get("session_id"))
            raise

        log_fields = {
            "chain_id": ref["chainId"],
            "token_id": ref["tokenId"],
            "sequence": ref["sequence"],
            "holder_id": ref["holderId"],
        }
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt_chain_scan(scanner_id, ref, context)
            except StoreConflict as exc:
                if attempt < 2:
                    logger.warning("Store conflict on chain %s, retrying scan by %s", ref["chainId"], scanner_id)
                    continue
                self._log_rejection(scanner_id, "CHAIN", exc, session_id=context.get("session_id"), **log_fields)
                raise
            except Expired as exc:
                self._log_rejection(scanner_id, "CHAIN", exc, session_id=context.get("session_id"), **log_fields)
                return self._rejected("REJECTED_EXPIRED", "CHAIN", exc, session_id=context.get("session_id"), chain_id=ref["chainId"])
            except StaleToken as exc:
                self._log_rejection(scanner_id, "CHAIN", exc, session_id=context.get("session_id"), **log_fields)
                return self._rejected("REJECTED_STALE", "CHAIN", exc, session_id=context.get("session_id"), chain_id=ref["chainId"])
            except AlreadyMarked as exc:
                self._log_rejection(
                    scanner_id,
                    "CHAIN",
                    exc,
                    session_id=context.get("session_id"),
                    result="ALREADY_MARKED",
                    **log_fields,
                )
                return self._already_marked("CHAIN", context.get("session_id"), ref["chainId"], exc.details.get("kind"), exc)
            except ChainError as exc:
                self._log_rejection(scanner_id, "CHAIN", exc, session_id=context.get("session_id"), **log_fields)
                raise

    def _attempt_chain_scan(self, scanner_id: str, ref: ChainTokenRef, context: ScanContext) -> ScanResult:
        terminal = bool(context.get("terminal"))
        token = db.get_token(ref["tokenId"], session_id=context.get("session_id"))
        if token is None or token["chain_id"] != ref["chainId"] or token["sequence"] != ref["sequence"]:
            raise TokenInvalid("Unknown chain token.")
        if ref["holderId"] != token["holder_id"]:
            raise NotHolder(chainId=ref["chainId"])
        chain = self.state.get_chain(token["chain_id"])
        session_id = chain["session_id"]

        if terminal and token["status"] == "CONSUMED" and token["consumed_by"] == scanner_id and chain["phase"] == "CLOSED":
            raise AlreadyMarked(kind=chain["kind"], chainId=chain["id"])

        now = self.clock()
        check_presented_token(chain, token, token["holder_id"], now)
        if scanner_id == token["holder_id"]:
            raise SelfScan()
        if not terminal and db.get_attendance(session_id, scanner_id) is None:
            raise NotEnrolled(sessionId=session_id)
        self._check_challenge(token, scanner_id, context, now)

        event: ChainEvent
        with db.unit_of_work() as conn:
            holder_marked = credit_participant(
                conn,
                chain["kind"],
                session_id,
                token["holder_id"],
                method="CHAIN",
                at=now,
            )
            if terminal:
                closed = self.state.close(
                    chain["id"],
                    "terminal_scan",
                    consumed_token_id=token["id"],
                    closed_by=scanner_id,
                    conn=conn,
                )
                updated = closed["chain"]
                event = closed["event"]
            else:
                moved = self.state.transfer(
                    chain["id"],
                    token["holder_id"],
                    scanner_id,
                    token["id"],
                    conn=conn,
                )
                updated = moved["chain"]
                event = moved["event"]

        self.state.publish(event)
        return {
            "status": "SUCCESS",
            "tokenOrigin": "CHAIN",
            "sessionId": session_id,
            "chainId": updated["id"],
            "kind": updated["kind"],
            "newHolderId": None if terminal else scanner_id,
            "rotationCount": updated["rotation_count"],
            "holderMarked": holder_marked,
            "chainClosed": terminal,
            "retry": False,
            "message": "Chain closed." if terminal else "Token passed.",
        }

    def _check_challenge(self, token: db.TokenRecord, scanner_id: str, context: ScanContext, now: float) -> None:
        challenge = token["challenge"]
        # A lapsed challenge no longer gates the token.
        if challenge is None or challenge["expires_at"] <= now:
            return
        if challenge["requester_id"] != scanner_id:
            raise ChallengeFailed("Another participant holds the pending challenge.")
        supplied = context.get("challenge_code") or ""
        if not hmac.compare_digest(hash_challenge_code(supplied), challenge["code_hash"]):
            raise ChallengeFailed()

    # -----------------------------
    # Results and audit
    # -----------------------------
    def _log_rejection(
        self,
        scanner_id: str,
        origin: TokenOrigin,
        exc: ChainError,
        *,
        session_id: str | None = None,
        result: str | None = None,
        chain_id: str | None = None,
        token_id: str | None = None,
        sequence: int | None = None,
        holder_id: str | None = None,
    ) -> None:
        snapshot_id = None
        if chain_id is not None:
            chain = db.get_chain(chain_id)
            if chain is not None:
                snapshot_id = chain["snapshot_id"]
                session_id = session_id or chain["session_id"]

        outcome = result or _rejection_result(exc)
        db.insert_scan_log(
            session_id=session_id,
            chain_id=chain_id,
            snapshot_id=snapshot_id,
            token_id=token_id,
            token_origin=origin,
            sequence=sequence,
            holder_id=holder_id,
            scanner_id=scanner_id,
            result=outcome,
            error_code=exc.code,
            message=exc.message,
            scanned_at=self.clock(),
        )
        if isinstance(exc, (Expired, StaleToken, AlreadyMarked)):
            logger.info("Scan by %s %s (%s)", scanner_id, outcome, exc.code)
        else:
            logger.warning("Scan by %s rejected: %s", scanner_id, exc.code)

    @staticmethod
    def _rejected(
        status: ScanStatus,
        origin: TokenOrigin,
        exc: ChainError,
        *,
        session_id: str | None = None,
        chain_id: str | None = None,
    ) -> ScanResult:
        return {
            "status": status,
            "tokenOrigin": origin,
            "sessionId": session_id,
            "chainId": chain_id,
            "kind": None,
            "newHolderId": None,
            "rotationCount": None,
            "holderMarked": False,
            "chainClosed": False,
            "retry": True,
            "message": exc.message,
        }

    @staticmethod
    def _already_marked(
        origin: TokenOrigin,
        session_id: str | None,
        chain_id: str | None,
        kind: str | None,
        exc: AlreadyMarked,
    ) -> ScanResult:
        return {
            "status": "ALREADY_MARKED",
            "tokenOrigin": origin,
            "sessionId": session_id,
            "chainId": chain_id,
            "kind": kind,
            "newHolderId": None,
            "rotationCount": None,
            "holderMarked": False,
            "chainClosed": False,
            "retry": False,
            "message": exc.message,
        }


def _rejection_result(exc: ChainError) -> str:
    if isinstance(exc, Expired):
        return "REJECTED_EXPIRED"
    if isinstance(exc, StaleToken):
        return "REJECTED_STALE"
    return "REJECTED"
