import pytest

import backend.config as config
import database.db as db
from backend.services.chain_state import HolderStateMachine
from backend.services.scan_processor import ScanProcessor
from backend.services.snapshots import SnapshotEngine
from backend.services.token_codec import TokenCodec
from backend.services.token_refresher import TokenRefresher


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(dict(event))


@pytest.fixture(autouse=True)
def pinned_ttls(monkeypatch):
    for kind in config.CHAIN_KINDS:
        monkeypatch.setitem(config.CHAIN_TOKEN_TTL_SECONDS, kind, 10)
    for kind in config.BROADCAST_KINDS:
        monkeypatch.setitem(config.BROADCAST_TOKEN_TTL_SECONDS, kind, 20)


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "chainroll_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def state(store, clock, notifier):
    return HolderStateMachine(clock=clock, notifier=notifier)


@pytest.fixture()
def codec(clock):
    return TokenCodec("test-secret", clock=clock)


@pytest.fixture()
def processor(state, codec, clock):
    return ScanProcessor(state=state, codec=codec, clock=clock)


@pytest.fixture()
def refresher(store, clock, notifier):
    return TokenRefresher(clock=clock, notifier=notifier)


@pytest.fixture()
def engine(state, clock):
    return SnapshotEngine(state=state, clock=clock)


@pytest.fixture()
def joined(store, clock):
    """Join students s1..s5 to session `sess-1`."""
    def _join(*student_ids: str, session_id: str = "sess-1") -> list[str]:
        ids = list(student_ids) or [f"s{i}" for i in range(1, 6)]
        for student_id in ids:
            db.join_session(session_id, student_id, joined_at=clock())
        return ids

    return _join
