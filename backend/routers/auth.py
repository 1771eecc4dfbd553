import time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import capabilities_for, issue_session_token, require_session, verify_device_secret

router = APIRouter()


class TokenRequest(BaseModel):
    subject: str
    role: Literal["teacher", "student"] = "student"
    device_secret: str


@router.post("/auth/token")
def issue_token(payload: TokenRequest):
    """
    Exchange an identity asserted by the trusted gateway for a bearer token.
    """
    subject = payload.subject.strip()
    if not subject:
        raise HTTPException(status_code=400, detail="Subject is required.")
    if not verify_device_secret(payload.device_secret):
        raise HTTPException(status_code=401, detail="Invalid device secret.")

    token, claims = issue_session_token(subject, role=payload.role)
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "subject": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "subject": session.get("sub"),
        "role": session.get("role"),
        "capabilities": sorted(capabilities_for(session)),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
