"""
Process-wide service instances, resolved through FastAPI `Depends` so tests
can swap them with `app.dependency_overrides`.
"""
from functools import lru_cache

from backend.services.chain_state import HolderStateMachine
from backend.services.notifier import Notifier, build_notifier
from backend.services.scan_processor import ScanProcessor
from backend.services.snapshots import SnapshotEngine
from backend.services.token_codec import TokenCodec
from backend.services.token_refresher import TokenRefresher


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return build_notifier()


@lru_cache(maxsize=1)
def get_codec() -> TokenCodec:
    return TokenCodec()


@lru_cache(maxsize=1)
def get_state_machine() -> HolderStateMachine:
    return HolderStateMachine(notifier=get_notifier())


@lru_cache(maxsize=1)
def get_scan_processor() -> ScanProcessor:
    return ScanProcessor(state=get_state_machine(), codec=get_codec())


@lru_cache(maxsize=1)
def get_refresher() -> TokenRefresher:
    return TokenRefresher(notifier=get_notifier())


@lru_cache(maxsize=1)
def get_snapshot_engine() -> SnapshotEngine:
    return SnapshotEngine(state=get_state_machine())


def reset_services() -> None:
    for getter in (
        get_notifier,
        get_codec,
        get_state_machine,
        get_scan_processor,
        get_refresher,
        get_snapshot_engine,
    ):
        getter.cache_clear()
