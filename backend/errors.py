"""
Error taxonomy for the chain protocol.

Every service-level failure is a `ChainError` carrying a stable `code`, the
HTTP status the API layer answers with, and whether the caller should simply
refresh and retry (`retryable`).
"""


class ChainError(Exception):
    code = "CHAIN_ERROR"
    status_code = 400
    retryable = False
    default_message = "Chain operation failed."

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.retryable:
            body["retry"] = True
        if self.details:
            body["details"] = self.details
        return body


class Expired(ChainError):
    code = "EXPIRED"
    status_code = 410
    retryable = True
    default_message = "Token has expired. Refresh and scan again."


class StaleToken(ChainError):
    code = "STALE_TOKEN"
    status_code = 409
    retryable = True
    default_message = "Token was already used or replaced. Refresh and scan again."


class StoreConflict(ChainError):
    code = "STORE_CONFLICT"
    status_code = 409
    retryable = True
    default_message = "Record changed while it was being updated."


class NotHolder(ChainError):
    code = "NOT_HOLDER"
    status_code = 403
    default_message = "Participant does not hold this chain's token."


class ChallengeFailed(ChainError):
    code = "CHALLENGE_FAILED"
    status_code = 403
    default_message = "Liveness challenge code does not match."


class ChainClosed(ChainError):
    code = "CHAIN_CLOSED"
    status_code = 409
    default_message = "Chain is closed."


class AlreadyMarked(ChainError):
    code = "ALREADY_MARKED"
    status_code = 200
    default_message = "Attendance already recorded."


class InvalidCount(ChainError):
    code = "INVALID_COUNT"
    status_code = 400
    default_message = "Requested chain count is not allowed."


class SnapshotNotFound(ChainError):
    code = "SNAPSHOT_NOT_FOUND"
    status_code = 404
    default_message = "Snapshot not found."


class ChainNotFound(ChainError):
    code = "CHAIN_NOT_FOUND"
    status_code = 404
    default_message = "Chain not found."


class TokenInvalid(ChainError):
    code = "TOKEN_INVALID"
    status_code = 400
    default_message = "Token is invalid or corrupted."


class NotEnrolled(ChainError):
    code = "NOT_ENROLLED"
    status_code = 403
    default_message = "Participant has not joined this session."


class Forbidden(ChainError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Missing capability for this operation."


class InvalidRequest(ChainError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request."


class SelfScan(InvalidRequest):
    code = "SELF_SCAN"
    default_message = "Cannot scan your own code."
