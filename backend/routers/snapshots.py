from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from backend.dependencies import get_snapshot_engine
from backend.security import require_capability
from backend.services.snapshots import SnapshotEngine

router = APIRouter()


class SnapshotRequest(BaseModel):
    kind: Literal["ENTRY", "EXIT"] = "ENTRY"
    chain_count: int
    notes: str | None = None


@router.post("/sessions/{session_id}/snapshots")
def take_snapshot(
    session_id: str,
    payload: SnapshotRequest,
    _session: dict = Depends(require_capability("manage_chains")),
    engine: SnapshotEngine = Depends(get_snapshot_engine),
):
    return engine.take_snapshot(session_id, payload.kind, payload.chain_count, payload.notes)


@router.get("/sessions/{session_id}/snapshots")
def list_snapshots(
    session_id: str,
    _session: dict = Depends(require_capability("view_audit")),
    engine: SnapshotEngine = Depends(get_snapshot_engine),
):
    return engine.list_snapshots(session_id)


@router.get("/snapshots/compare")
def compare_snapshots(
    a: str = Query(...),
    b: str = Query(...),
    _session: dict = Depends(require_capability("view_audit")),
    engine: SnapshotEngine = Depends(get_snapshot_engine),
):
    return engine.compare(a, b)


@router.get("/snapshots/{snapshot_id}/trace")
def snapshot_trace(
    snapshot_id: str,
    _session: dict = Depends(require_capability("view_audit")),
    engine: SnapshotEngine = Depends(get_snapshot_engine),
):
    return engine.get_trace(snapshot_id)
