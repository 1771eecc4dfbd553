import time
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.config import BROADCAST_KINDS, BROADCAST_TOKEN_TTL_SECONDS
from backend.dependencies import get_codec, get_refresher, get_state_machine
from backend.errors import InvalidRequest
from backend.security import require_capability
from backend.services.chain_state import HolderStateMachine
from backend.services.scan_processor import chain_token_wire
from backend.services.token_codec import TokenCodec
from backend.services.token_refresher import TokenRefresher
from database import db

router = APIRouter()


class SeedRequest(BaseModel):
    kind: Literal["ENTRY", "EXIT", "LATE", "EARLY"]
    count: int


class CloseRequest(BaseModel):
    reason: str = "teacher_closed"


class ChallengeRequest(BaseModel):
    token_id: str


class HolderRequest(BaseModel):
    student_id: str


class StallCheckRequest(BaseModel):
    kind: Literal["ENTRY", "EXIT", "LATE", "EARLY", "SNAPSHOT"] | None = None
    idle_seconds: int | None = None


@router.post("/sessions/{session_id}/join")
def join_session(session_id: str, session: dict = Depends(require_capability("scan"))):
    record = db.join_session(session_id, session["sub"], joined_at=time.time())
    return record


@router.post("/sessions/{session_id}/chains/seed")
def seed_chains(
    session_id: str,
    payload: SeedRequest,
    _session: dict = Depends(require_capability("manage_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    chains = state.seed(session_id, payload.kind, payload.count)
    return {"session_id": session_id, "kind": payload.kind, "chains": chains}


@router.get("/sessions/{session_id}/chains")
def list_chains(
    session_id: str,
    kind: Literal["ENTRY", "EXIT", "LATE", "EARLY", "SNAPSHOT"] | None = None,
    _session: dict = Depends(require_capability("manage_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    return state.list_chains(session_id, kind)


@router.post("/sessions/{session_id}/chains/{chain_id}/close")
def close_chain(
    session_id: str,
    chain_id: str,
    payload: CloseRequest | None = None,
    _session: dict = Depends(require_capability("close_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    reason = (payload.reason if payload else "").strip() or "teacher_closed"
    result = state.close(chain_id, reason, session_id=session_id)
    return result["chain"]


@router.post("/sessions/{session_id}/chains/stalled")
def detect_stalled_chains(
    session_id: str,
    payload: StallCheckRequest | None = None,
    _session: dict = Depends(require_capability("manage_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    payload = payload or StallCheckRequest()
    stalled = state.detect_stalled(session_id, payload.kind, payload.idle_seconds)
    return {"session_id": session_id, "chains": stalled}


@router.post("/sessions/{session_id}/chains/{chain_id}/holder")
def set_chain_holder(
    session_id: str,
    chain_id: str,
    payload: HolderRequest,
    _session: dict = Depends(require_capability("manage_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    student_id = payload.student_id.strip()
    if not student_id:
        raise InvalidRequest("student_id is required.")
    result = state.set_holder(chain_id, student_id, session_id=session_id)
    return {
        "chain": result["chain"],
        "previous_holder_id": result["previous_holder_id"],
        "sequence": result["token"]["sequence"],
    }


@router.post("/sessions/{session_id}/end")
def end_session(
    session_id: str,
    _session: dict = Depends(require_capability("manage_chains")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    return state.end_session(session_id)


@router.get("/sessions/{session_id}/chains/{chain_id}/token")
def holder_token(
    session_id: str,
    chain_id: str,
    session: dict = Depends(require_capability("hold")),
    refresher: TokenRefresher = Depends(get_refresher),
):
    token = refresher.get_or_refresh_token(chain_id, session["sub"], session_id=session_id)
    challenge = token["challenge"]
    return {
        "token": chain_token_wire(token),
        "issued_at": token["issued_at"],
        "challenge_pending": challenge is not None and challenge["expires_at"] > refresher.clock(),
    }


@router.post("/sessions/{session_id}/chains/{chain_id}/challenge")
def request_challenge(
    session_id: str,
    chain_id: str,
    payload: ChallengeRequest,
    session: dict = Depends(require_capability("scan")),
    state: HolderStateMachine = Depends(get_state_machine),
):
    return state.request_challenge(session_id, chain_id, payload.token_id, session["sub"])


@router.get("/sessions/{session_id}/codes/{kind}")
def broadcast_code(
    session_id: str,
    kind: str,
    _session: dict = Depends(require_capability("broadcast")),
    codec: TokenCodec = Depends(get_codec),
):
    normalized = kind.strip().upper()
    if normalized not in BROADCAST_KINDS:
        raise InvalidRequest(f"Unknown broadcast kind: {kind}")
    return {
        "session_id": session_id,
        "kind": normalized,
        "code": codec.issue_for(session_id, normalized),
        "expires_in": BROADCAST_TOKEN_TTL_SECONDS[normalized],
    }
