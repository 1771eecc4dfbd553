import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, DEVICE_SECRET, SIGNING_KEY


# Role -> capability set. Services only ever see the capability set.
ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "teacher": frozenset({"manage_chains", "close_chains", "view_audit", "broadcast"}),
    "student": frozenset({"scan", "hold"}),
}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def capabilities_for(claims: dict[str, Any] | None) -> frozenset[str]:
    """Pure mapping from identity claims to what the caller may do."""
    if not claims:
        return frozenset()
    role = claims.get("role")
    if not isinstance(role, str):
        return frozenset()
    return ROLE_CAPABILITIES.get(role.strip().lower(), frozenset())


def verify_device_secret(device_secret: str) -> bool:
    expected = DEVICE_SECRET.strip()
    candidate = (device_secret or "").strip()
    if not expected:
        return False
    return hmac.compare_digest(candidate, expected)


def issue_session_token(subject: str, role: str = "student") -> tuple[str, dict[str, Any]]:
    normalized_role = role.strip().lower()
    if normalized_role not in ROLE_CAPABILITIES:
        raise ValueError(f"Unknown role: {role}")

    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload = {
        "sub": subject.strip(),
        "role": normalized_role,
        "iat": now,
        "exp": exp,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None
    if payload.get("role") not in ROLE_CAPABILITIES:
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def require_capability(capability: str) -> Callable[..., dict[str, Any]]:
    def dependency(session: dict[str, Any] = Depends(require_session)) -> dict[str, Any]:
        if capability not in capabilities_for(session):
            raise HTTPException(status_code=403, detail=f"Missing capability: {capability}.")
        return session

    return dependency
