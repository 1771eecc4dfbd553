from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.config import SCAN_DEVICE_RATE_LIMIT, SCAN_IP_RATE_LIMIT
from backend.dependencies import get_scan_processor
from backend.rate_limit import device_key, limiter
from backend.security import require_session
from backend.services.scan_processor import ScanContext, ScanProcessor

router = APIRouter()

# Routine rejections answer with a retry hint instead of an error body.
SCAN_STATUS_CODES = {
    "SUCCESS": 200,
    "ALREADY_MARKED": 200,
    "REJECTED_EXPIRED": 410,
    "REJECTED_STALE": 409,
}


class ScanRequest(BaseModel):
    token: dict[str, Any] | str
    token_origin: Literal["CHAIN", "BROADCAST"] = "CHAIN"
    session_id: str | None = None
    challenge_code: str | None = None
    terminal: bool = False


@router.post("/scan")
@limiter.limit(SCAN_DEVICE_RATE_LIMIT, key_func=device_key)
@limiter.limit(SCAN_IP_RATE_LIMIT)
def scan(
    request: Request,
    payload: ScanRequest,
    session: dict = Depends(require_session),
    processor: ScanProcessor = Depends(get_scan_processor),
):
    context: ScanContext = {
        "token_origin": payload.token_origin,
        "identity": session,
        "terminal": payload.terminal,
    }
    if payload.session_id:
        context["session_id"] = payload.session_id
    if payload.challenge_code:
        context["challenge_code"] = payload.challenge_code

    result = processor.process_scan(session["sub"], payload.token, context)
    return JSONResponse(status_code=SCAN_STATUS_CODES[result["status"]], content=result)
