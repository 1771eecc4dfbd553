import logging
import secrets
import time
from typing import Callable

from backend.config import CHAIN_TOKEN_TTL_SECONDS
from backend.errors import ChainClosed, ChainNotFound, NotHolder, StoreConflict
from backend.services.notifier import Notifier, notify_safely
from database import db
from database.db import TokenRecord


logger = logging.getLogger(__name__)

MAX_REFRESH_ATTEMPTS = 3


class TokenRefresher:
    """
    Lazy token renewal, driven by the holder's own polling.

    Expiry never advances a chain: the replacement keeps the expired token's
    sequence and the chain's rotation_count is left alone.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, notifier: Notifier | None = None):
        self.clock = clock
        self.notifier = notifier

    def get_or_refresh_token(
        self,
        chain_id: str,
        holder_id: str,
        *,
        session_id: str | None = None,
    ) -> TokenRecord:
        for attempt in range(1, MAX_REFRESH_ATTEMPTS + 1):
            chain = db.get_chain(chain_id, session_id=session_id)
            if chain is None:
                raise ChainNotFound(chainId=chain_id)
            if chain["phase"] == "CLOSED":
                raise ChainClosed(chainId=chain_id)
            if chain["current_holder_id"] != holder_id:
                raise NotHolder(chainId=chain_id)

            now = self.clock()
            current = db.get_token(chain["current_token_id"]) if chain["current_token_id"] else None
            if current is not None and current["status"] == "ACTIVE" and current["expires_at"] > now:
                return current

            try:
                return self._replace(chain, current, holder_id, now)
            except StoreConflict:
                # a concurrent refresh or transfer won; its token is read on the next pass
                logger.info("Refresh race on chain %s (attempt %d)", chain_id, attempt)

        raise StoreConflict(chainId=chain_id)

    def _replace(
        self,
        chain: db.ChainRecord,
        current: TokenRecord | None,
        holder_id: str,
        now: float,
    ) -> TokenRecord:
        replacement: TokenRecord = {
            "id": secrets.token_urlsafe(16),
            "session_id": chain["session_id"],
            "chain_id": chain["id"],
            "holder_id": holder_id,
            "sequence": current["sequence"] if current else 0,
            "issued_at": now,
            "expires_at": now + CHAIN_TOKEN_TTL_SECONDS[chain["kind"]],
            "status": "ACTIVE",
            "challenge": None,
            "consumed_at": None,
            "consumed_by": None,
            "version": 1,
        }

        with db.unit_of_work() as conn:
            if current is not None and current["status"] == "ACTIVE":
                if not db.update_token_if_version(current["id"], current["version"], {"status": "SUPERSEDED"}, conn=conn):
                    raise StoreConflict(tokenId=current["id"])
            db.insert_token(replacement, conn=conn)
            if not db.update_chain_if_version(
                chain["id"],
                chain["version"],
                {"current_token_id": replacement["id"], "updated_at": now},
                conn=conn,
            ):
                raise StoreConflict(chainId=chain["id"])
            db.insert_chain_history(
                session_id=chain["session_id"],
                chain_id=chain["id"],
                event_type="REFRESHED",
                holder_id=holder_id,
                rotation_count=chain["rotation_count"],
                sequence=replacement["sequence"],
                token_id=replacement["id"],
                created_at=now,
                conn=conn,
            )

        logger.info("Refreshed token on chain %s at sequence %d", chain["id"], replacement["sequence"])
        notify_safely(
            self.notifier,
            {
                "sessionId": chain["session_id"],
                "chainId": chain["id"],
                "newHolderId": holder_id,
                "rotationCount": chain["rotation_count"],
                "eventType": "REFRESHED",
            },
        )
        return replacement
