from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    BROADCAST_TOKEN_TTL_SECONDS,
    CHAIN_MAX_SEED_COUNT,
    CHAIN_TOKEN_TTL_SECONDS,
    CHALLENGE_TTL_SECONDS,
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/tokens")
def token_config():
    return {
        "chain_token_ttl_seconds": CHAIN_TOKEN_TTL_SECONDS,
        "broadcast_token_ttl_seconds": BROADCAST_TOKEN_TTL_SECONDS,
        "challenge_ttl_seconds": CHALLENGE_TTL_SECONDS,
        "chain_max_seed_count": CHAIN_MAX_SEED_COUNT,
    }
