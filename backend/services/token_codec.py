"""
Stateless broadcast codes for teacher-displayed ENTRY / EXIT / LATE / EARLY QR.

A code is an AES-256-GCM sealed JSON payload
`{sessionId, kind, issuedAt, expiresAt}` wrapped as URL-safe base64 without
padding: `version || nonce(12) || ciphertext+tag`. Nothing is stored; a code
can be regenerated on every poll.
"""
import base64
import json
import os
import time
from typing import Callable, TypedDict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from backend.config import BROADCAST_KINDS, BROADCAST_TOKEN_TTL_SECONDS, TOKEN_SECRET
from backend.errors import Expired, TokenInvalid


CODEC_VERSION = 1
NONCE_SIZE = 12
ASSOCIATED_DATA = b"chainroll:broadcast:v1"


class BroadcastPayload(TypedDict):
    sessionId: str
    kind: str
    issuedAt: float
    expiresAt: float


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def derive_key(secret: str) -> bytes:
    """Stretch the configured process secret into a 256-bit AES key."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"chainroll broadcast token key",
    )
    return hkdf.derive(secret.encode("utf-8"))


class TokenCodec:
    def __init__(self, secret: str | None = None, *, clock: Callable[[], float] = time.time):
        self._aead = AESGCM(derive_key(secret or TOKEN_SECRET))
        self._clock = clock

    def issue(self, payload: dict, ttl_seconds: int | float) -> str:
        """
        Seal `payload` (must carry sessionId and kind) with a fresh expiry.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        session_id = payload.get("sessionId")
        kind = payload.get("kind")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("payload.sessionId is required")
        if kind not in BROADCAST_KINDS:
            raise ValueError(f"Unsupported broadcast kind: {kind!r}")

        issued_at = float(self._clock())
        body: BroadcastPayload = {
            "sessionId": session_id,
            "kind": str(kind),
            "issuedAt": issued_at,
            "expiresAt": issued_at + float(ttl_seconds),
        }
        plaintext = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, ASSOCIATED_DATA)
        return _b64url_encode(bytes([CODEC_VERSION]) + nonce + sealed)

    def issue_for(self, session_id: str, kind: str) -> str:
        """Issue a code using the configured TTL for `kind`."""
        return self.issue({"sessionId": session_id, "kind": kind}, BROADCAST_TOKEN_TTL_SECONDS[kind])

    def verify(self, token: str) -> BroadcastPayload:
        if not isinstance(token, str) or not token:
            raise TokenInvalid()
        try:
            raw = _b64url_decode(token)
        except (ValueError, UnicodeEncodeError):
            raise TokenInvalid("Token is not valid base64.")

        if len(raw) < 1 + NONCE_SIZE + 16 or raw[0] != CODEC_VERSION:
            raise TokenInvalid()

        nonce = raw[1 : 1 + NONCE_SIZE]
        try:
            plaintext = self._aead.decrypt(nonce, raw[1 + NONCE_SIZE :], ASSOCIATED_DATA)
        except InvalidTag:
            raise TokenInvalid("Token failed integrity check.")

        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except ValueError:
            raise TokenInvalid()

        if not isinstance(payload, dict):
            raise TokenInvalid()
        if not isinstance(payload.get("sessionId"), str) or payload.get("kind") not in BROADCAST_KINDS:
            raise TokenInvalid()
        if not isinstance(payload.get("expiresAt"), (int, float)):
            raise TokenInvalid()

        if float(payload["expiresAt"]) <= float(self._clock()):
            raise Expired("Broadcast code has expired.", kind=payload["kind"])

        return {
            "sessionId": payload["sessionId"],
            "kind": payload["kind"],
            "issuedAt": float(payload.get("issuedAt", 0.0)),
            "expiresAt": float(payload["expiresAt"]),
        }
