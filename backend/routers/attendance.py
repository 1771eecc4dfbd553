from fastapi import APIRouter, Depends, HTTPException, Query

from backend.security import require_capability
from database.db import count_scan_logs, list_attendance, list_chain_history, list_scan_logs

router = APIRouter(dependencies=[Depends(require_capability("view_audit"))])
ALLOWED_SCAN_RESULTS: set[str] = {
    "SUCCESS",
    "ALREADY_MARKED",
    "REJECTED_EXPIRED",
    "REJECTED_STALE",
    "REJECTED",
}


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: str):
    return list_attendance(session_id)


@router.get("/sessions/{session_id}/scan-logs")
def session_scan_logs(
    session_id: str,
    chain_id: str | None = None,
    scanner_id: str | None = None,
    result: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_result = result.strip().upper() if result else None
    if clean_result and clean_result not in ALLOWED_SCAN_RESULTS:
        raise HTTPException(status_code=400, detail="Invalid result filter.")

    rows = list_scan_logs(
        session_id=session_id,
        chain_id=chain_id,
        scanner_id=scanner_id,
        result=clean_result,
        limit=limit,
        offset=offset,
    )
    total = count_scan_logs(
        session_id=session_id,
        chain_id=chain_id,
        scanner_id=scanner_id,
        result=clean_result,
    )
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/sessions/{session_id}/chains/{chain_id}/history")
def chain_history(session_id: str, chain_id: str):
    return [row for row in list_chain_history(chain_id) if row["session_id"] == session_id]
