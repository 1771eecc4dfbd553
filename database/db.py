import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Literal, TypedDict, cast

from backend.config import DB_PATH


CHAIN_PROTOCOL_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_chain_protocol.sql"

ChainKind = Literal["ENTRY", "EXIT", "LATE", "EARLY", "SNAPSHOT"]
ChainPhase = Literal["SEEDED", "ACTIVE", "CLOSED"]
TokenStatus = Literal["ACTIVE", "CONSUMED", "SUPERSEDED", "REVOKED"]
TokenOrigin = Literal["CHAIN", "BROADCAST"]
HistoryEvent = Literal["SEEDED", "TRANSFERRED", "REFRESHED", "HOLDER_SET", "CLOSED"]
EntryStatus = Literal["PRESENT_ENTRY", "LATE_ENTRY"]
MarkMethod = Literal["DIRECT_QR", "CHAIN"]
FinalStatus = Literal["PRESENT", "LATE", "LEFT_EARLY", "EARLY_LEAVE", "ABSENT"]


class ChainRecord(TypedDict):
    id: str
    session_id: str
    kind: ChainKind
    phase: ChainPhase
    chain_index: int
    current_holder_id: str | None
    current_token_id: str | None
    previous_token_id: str | None
    rotation_count: int
    snapshot_id: str | None
    snapshot_index: int | None
    closed_reason: str | None
    version: int
    created_at: float
    updated_at: float
    closed_at: float | None


class LivenessChallenge(TypedDict):
    code_hash: str
    requester_id: str
    expires_at: float


class TokenRecord(TypedDict):
    id: str
    session_id: str
    chain_id: str
    holder_id: str
    sequence: int
    issued_at: float
    expires_at: float
    status: TokenStatus
    challenge: LivenessChallenge | None
    consumed_at: float | None
    consumed_by: str | None
    version: int


class ScanLogRecord(TypedDict):
    id: int
    session_id: str | None
    chain_id: str | None
    snapshot_id: str | None
    token_id: str | None
    token_origin: TokenOrigin
    sequence: int | None
    holder_id: str | None
    scanner_id: str
    result: str
    error_code: str | None
    message: str | None
    scanned_at: float


class ChainHistoryRecord(TypedDict):
    id: int
    session_id: str
    chain_id: str
    event_type: HistoryEvent
    holder_id: str | None
    previous_holder_id: str | None
    rotation_count: int
    sequence: int | None
    token_id: str | None
    created_at: float


class SnapshotRecord(TypedDict):
    id: str
    session_id: str
    kind: str
    snapshot_index: int
    captured_at: float
    chains_created: int
    students_captured: int
    notes: str | None


class AttendanceRecord(TypedDict):
    session_id: str
    student_id: str
    entry_status: EntryStatus | None
    entry_method: MarkMethod | None
    entry_at: float | None
    exit_verified: bool
    exit_method: MarkMethod | None
    exited_at: float | None
    early_leave_at: float | None
    final_status: FinalStatus | None
    joined_at: float


CHAIN_COLUMNS = (
    "id",
    "session_id",
    "kind",
    "phase",
    "chain_index",
    "current_holder_id",
    "current_token_id",
    "previous_token_id",
    "rotation_count",
    "snapshot_id",
    "snapshot_index",
    "closed_reason",
    "version",
    "created_at",
    "updated_at",
    "closed_at",
)
TOKEN_COLUMNS = (
    "id",
    "session_id",
    "chain_id",
    "holder_id",
    "sequence",
    "issued_at",
    "expires_at",
    "status",
    "challenge_hash",
    "challenge_requester_id",
    "challenge_expires_at",
    "consumed_at",
    "consumed_by",
    "version",
)
ATTENDANCE_COLUMNS = (
    "session_id",
    "student_id",
    "entry_status",
    "entry_method",
    "entry_at",
    "exit_verified",
    "exit_method",
    "exited_at",
    "early_leave_at",
    "final_status",
    "joined_at",
)

# Columns a conditional update may touch; `version` is always bumped by the store.
CHAIN_MUTABLE_COLUMNS = {
    "phase",
    "current_holder_id",
    "current_token_id",
    "previous_token_id",
    "rotation_count",
    "closed_reason",
    "updated_at",
    "closed_at",
}
TOKEN_MUTABLE_COLUMNS = {
    "status",
    "challenge_hash",
    "challenge_requester_id",
    "challenge_expires_at",
    "consumed_at",
    "consumed_by",
}


def connect_db():
    # timeout doubles as the busy wait for a competing writer's commit
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def unit_of_work() -> Iterator[sqlite3.Connection]:
    """
    One short transaction: commit on success, roll back on any error.
    """
    conn = connect_db()
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables():
    conn = connect_db()
    ensure_chain_schema(conn)
    conn.commit()
    conn.close()


def ensure_chain_schema(conn: sqlite3.Connection) -> None:
    """
    Apply `database/migrations/001_chain_protocol.sql` when any table is missing.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
          AND name IN ('attendance', 'chains', 'tokens', 'scan_logs', 'chain_history', 'snapshots')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if len(existing) < 6:
        sql = CHAIN_PROTOCOL_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


def _run_write(sql: str, params: tuple | list, conn: sqlite3.Connection | None) -> sqlite3.Cursor:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.execute(sql, params)
        if owns_conn:
            active_conn.commit()
        return cur
    finally:
        if owns_conn:
            active_conn.close()


def _fetch(sql: str, params: tuple | list, conn: sqlite3.Connection | None, *, one: bool = False):
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        rows = active_conn.execute(sql, params).fetchall()
        if one:
            return rows[0] if rows else None
        return rows
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Row mapping
# -----------------------------
def _row_to_chain(row: tuple) -> ChainRecord:
    data = dict(zip(CHAIN_COLUMNS, row))
    data["rotation_count"] = int(data["rotation_count"])
    data["version"] = int(data["version"])
    return cast(ChainRecord, data)


def _row_to_token(row: tuple) -> TokenRecord:
    data = dict(zip(TOKEN_COLUMNS, row))
    challenge: LivenessChallenge | None = None
    if data["challenge_hash"]:
        challenge = {
            "code_hash": str(data["challenge_hash"]),
            "requester_id": str(data["challenge_requester_id"]),
            "expires_at": float(data["challenge_expires_at"]),
        }
    return {
        "id": data["id"],
        "session_id": data["session_id"],
        "chain_id": data["chain_id"],
        "holder_id": data["holder_id"],
        "sequence": int(data["sequence"]),
        "issued_at": float(data["issued_at"]),
        "expires_at": float(data["expires_at"]),
        "status": cast(TokenStatus, data["status"]),
        "challenge": challenge,
        "consumed_at": data["consumed_at"],
        "consumed_by": data["consumed_by"],
        "version": int(data["version"]),
    }


def _row_to_attendance(row: tuple) -> AttendanceRecord:
    data = dict(zip(ATTENDANCE_COLUMNS, row))
    data["exit_verified"] = bool(data["exit_verified"])
    return cast(AttendanceRecord, data)


# -----------------------------
# Attendance records
# -----------------------------
def join_session(
    session_id: str,
    student_id: str,
    *,
    joined_at: float,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord:
    """
    Return the (session, student) record, creating it on first join.
    """
    _run_write(
        """
        INSERT OR IGNORE INTO attendance (session_id, student_id, joined_at)
        VALUES (?, ?, ?)
        """,
        (session_id, student_id, joined_at),
        conn,
    )
    row = _fetch(
        f"""
        SELECT {", ".join(ATTENDANCE_COLUMNS)}
        FROM attendance
        WHERE session_id = ? AND student_id = ?
        """,
        (session_id, student_id),
        conn,
        one=True,
    )
    return _row_to_attendance(row)


def get_attendance(
    session_id: str,
    student_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord | None:
    row = _fetch(
        f"""
        SELECT {", ".join(ATTENDANCE_COLUMNS)}
        FROM attendance
        WHERE session_id = ? AND student_id = ?
        """,
        (session_id, student_id),
        conn,
        one=True,
    )
    return _row_to_attendance(row) if row else None


def list_attendance(
    session_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[AttendanceRecord]:
    rows = _fetch(
        f"""
        SELECT {", ".join(ATTENDANCE_COLUMNS)}
        FROM attendance
        WHERE session_id = ?
        ORDER BY joined_at, student_id
        """,
        (session_id,),
        conn,
    )
    return [_row_to_attendance(r) for r in rows]


def mark_entry_once(
    session_id: str,
    student_id: str,
    *,
    status: EntryStatus,
    method: MarkMethod,
    at: float,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    Set the entry direction if it was never set. Returns False when it already was.
    """
    cur = _run_write(
        """
        UPDATE attendance
        SET entry_status = ?, entry_method = ?, entry_at = ?
        WHERE session_id = ? AND student_id = ? AND entry_status IS NULL
        """,
        (status, method, at, session_id, student_id),
        conn,
    )
    return cur.rowcount == 1


def mark_exit_once(
    session_id: str,
    student_id: str,
    *,
    method: MarkMethod,
    at: float,
    early_leave: bool = False,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    Set the exit direction (verified exit or early leave) if neither was set.
    """
    if early_leave:
        sql = """
            UPDATE attendance
            SET early_leave_at = ?, exit_method = ?
            WHERE session_id = ? AND student_id = ?
              AND exit_verified = 0 AND early_leave_at IS NULL
        """
    else:
        sql = """
            UPDATE attendance
            SET exited_at = ?, exit_method = ?, exit_verified = 1
            WHERE session_id = ? AND student_id = ?
              AND exit_verified = 0 AND early_leave_at IS NULL
        """
    cur = _run_write(sql, (at, method, session_id, student_id), conn)
    return cur.rowcount == 1


def set_final_status(
    session_id: str,
    student_id: str,
    final_status: FinalStatus,
    *,
    conn: sqlite3.Connection | None = None,
) -> None:
    _run_write(
        """
        UPDATE attendance
        SET final_status = ?
        WHERE session_id = ? AND student_id = ?
        """,
        (final_status, session_id, student_id),
        conn,
    )


# -----------------------------
# Chains
# -----------------------------
def insert_chain(chain: ChainRecord, *, conn: sqlite3.Connection | None = None) -> None:
    _run_write(
        f"""
        INSERT INTO chains ({", ".join(CHAIN_COLUMNS)})
        VALUES ({", ".join("?" for _ in CHAIN_COLUMNS)})
        """,
        [chain[c] for c in CHAIN_COLUMNS],  # type: ignore[literal-required]
        conn,
    )


def get_chain(
    chain_id: str,
    *,
    session_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> ChainRecord | None:
    sql = f"SELECT {', '.join(CHAIN_COLUMNS)} FROM chains WHERE id = ?"
    params: list[Any] = [chain_id]
    if session_id is not None:
        sql += " AND session_id = ?"
        params.append(session_id)
    row = _fetch(sql, params, conn, one=True)
    return _row_to_chain(row) if row else None


def list_chains(
    session_id: str,
    *,
    kind: ChainKind | None = None,
    snapshot_id: str | None = None,
    holder_id: str | None = None,
    open_only: bool = False,
    conn: sqlite3.Connection | None = None,
) -> list[ChainRecord]:
    where = ["session_id = ?"]
    params: list[Any] = [session_id]
    if kind is not None:
        where.append("kind = ?")
        params.append(kind)
    if snapshot_id is not None:
        where.append("snapshot_id = ?")
        params.append(snapshot_id)
    if holder_id is not None:
        where.append("current_holder_id = ?")
        params.append(holder_id)
    if open_only:
        where.append("phase != 'CLOSED'")

    rows = _fetch(
        f"""
        SELECT {", ".join(CHAIN_COLUMNS)}
        FROM chains
        WHERE {" AND ".join(where)}
        ORDER BY created_at, snapshot_index, id
        """,
        params,
        conn,
    )
    return [_row_to_chain(r) for r in rows]


def max_chain_index(
    session_id: str,
    kind: ChainKind,
    *,
    conn: sqlite3.Connection | None = None,
) -> int | None:
    row = _fetch(
        """
        SELECT MAX(chain_index)
        FROM chains
        WHERE session_id = ? AND kind = ?
        """,
        (session_id, kind),
        conn,
        one=True,
    )
    return int(row[0]) if row and row[0] is not None else None


def update_chain_if_version(
    chain_id: str,
    expected_version: int,
    changes: dict[str, Any],
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    Conditional update keyed on the chain's version. False means a competing
    writer got there first and nothing was changed.
    """
    unknown = set(changes) - CHAIN_MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Not updatable on chains: {sorted(unknown)}")
    assignments = ", ".join(f"{col} = ?" for col in changes)
    cur = _run_write(
        f"""
        UPDATE chains
        SET {assignments}, version = version + 1
        WHERE id = ? AND version = ?
        """,
        [*changes.values(), chain_id, expected_version],
        conn,
    )
    return cur.rowcount == 1


# -----------------------------
# Tokens
# -----------------------------
def insert_token(token: TokenRecord, *, conn: sqlite3.Connection | None = None) -> None:
    challenge = token["challenge"]
    _run_write(
        f"""
        INSERT INTO tokens ({", ".join(TOKEN_COLUMNS)})
        VALUES ({", ".join("?" for _ in TOKEN_COLUMNS)})
        """,
        (
            token["id"],
            token["session_id"],
            token["chain_id"],
            token["holder_id"],
            token["sequence"],
            token["issued_at"],
            token["expires_at"],
            token["status"],
            challenge["code_hash"] if challenge else None,
            challenge["requester_id"] if challenge else None,
            challenge["expires_at"] if challenge else None,
            token["consumed_at"],
            token["consumed_by"],
            token["version"],
        ),
        conn,
    )


def get_token(
    token_id: str,
    *,
    session_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> TokenRecord | None:
    sql = f"SELECT {', '.join(TOKEN_COLUMNS)} FROM tokens WHERE id = ?"
    params: list[Any] = [token_id]
    if session_id is not None:
        sql += " AND session_id = ?"
        params.append(session_id)
    row = _fetch(sql, params, conn, one=True)
    return _row_to_token(row) if row else None


def list_chain_tokens(
    chain_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[TokenRecord]:
    rows = _fetch(
        f"""
        SELECT {", ".join(TOKEN_COLUMNS)}
        FROM tokens
        WHERE chain_id = ?
        ORDER BY sequence, issued_at
        """,
        (chain_id,),
        conn,
    )
    return [_row_to_token(r) for r in rows]


def update_token_if_version(
    token_id: str,
    expected_version: int,
    changes: dict[str, Any],
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    unknown = set(changes) - TOKEN_MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Not updatable on tokens: {sorted(unknown)}")
    assignments = ", ".join(f"{col} = ?" for col in changes)
    cur = _run_write(
        f"""
        UPDATE tokens
        SET {assignments}, version = version + 1
        WHERE id = ? AND version = ?
        """,
        [*changes.values(), token_id, expected_version],
        conn,
    )
    return cur.rowcount == 1


# -----------------------------
# Scan logs (append-only)
# -----------------------------
def insert_scan_log(
    *,
    scanner_id: str,
    token_origin: TokenOrigin,
    result: str,
    scanned_at: float,
    session_id: str | None = None,
    chain_id: str | None = None,
    snapshot_id: str | None = None,
    token_id: str | None = None,
    sequence: int | None = None,
    holder_id: str | None = None,
    error_code: str | None = None,
    message: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    cur = _run_write(
        """
        INSERT INTO scan_logs (
            session_id,
            chain_id,
            snapshot_id,
            token_id,
            token_origin,
            sequence,
            holder_id,
            scanner_id,
            result,
            error_code,
            message,
            scanned_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            chain_id,
            snapshot_id,
            token_id,
            token_origin,
            sequence,
            holder_id,
            scanner_id,
            result,
            error_code,
            message,
            scanned_at,
        ),
        conn,
    )
    return int(cur.lastrowid)


SCAN_LOG_COLUMNS = (
    "id",
    "session_id",
    "chain_id",
    "snapshot_id",
    "token_id",
    "token_origin",
    "sequence",
    "holder_id",
    "scanner_id",
    "result",
    "error_code",
    "message",
    "scanned_at",
)


def list_scan_logs(
    *,
    session_id: str | None = None,
    chain_id: str | None = None,
    snapshot_id: str | None = None,
    scanner_id: str | None = None,
    result: str | None = None,
    limit: int | None = 100,
    offset: int = 0,
    conn: sqlite3.Connection | None = None,
) -> list[ScanLogRecord]:
    """
    Scan logs oldest first. `limit=None` returns every matching row; a page
    is clamped to 5000 rows.
    """
    where, params = _build_scan_logs_where_clause(
        session_id=session_id,
        chain_id=chain_id,
        snapshot_id=snapshot_id,
        scanner_id=scanner_id,
        result=result,
    )
    sql = f"""
        SELECT {", ".join(SCAN_LOG_COLUMNS)}
        FROM scan_logs
        WHERE {where}
        ORDER BY scanned_at, id
    """
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params = [*params, max(1, min(int(limit), 5000)), max(0, int(offset))]
    rows = _fetch(sql, params, conn)
    return [cast(ScanLogRecord, dict(zip(SCAN_LOG_COLUMNS, r))) for r in rows]


def count_scan_logs(
    *,
    session_id: str | None = None,
    chain_id: str | None = None,
    snapshot_id: str | None = None,
    scanner_id: str | None = None,
    result: str | None = None,
) -> int:
    where, params = _build_scan_logs_where_clause(
        session_id=session_id,
        chain_id=chain_id,
        snapshot_id=snapshot_id,
        scanner_id=scanner_id,
        result=result,
    )
    row = _fetch(f"SELECT COUNT(1) FROM scan_logs WHERE {where}", params, None, one=True)
    return int(row[0] or 0) if row else 0


def _build_scan_logs_where_clause(
    *,
    session_id: str | None = None,
    chain_id: str | None = None,
    snapshot_id: str | None = None,
    scanner_id: str | None = None,
    result: str | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if session_id is not None:
        where.append("session_id = ?")
        params.append(session_id)
    if chain_id is not None:
        where.append("chain_id = ?")
        params.append(chain_id)
    if snapshot_id is not None:
        where.append("snapshot_id = ?")
        params.append(snapshot_id)
    if scanner_id is not None:
        where.append("scanner_id = ?")
        params.append(scanner_id)
    if result is not None:
        where.append("result = ?")
        params.append(result)

    return " AND ".join(where), params


# -----------------------------
# Chain history (append-only)
# -----------------------------
CHAIN_HISTORY_COLUMNS = (
    "id",
    "session_id",
    "chain_id",
    "event_type",
    "holder_id",
    "previous_holder_id",
    "rotation_count",
    "sequence",
    "token_id",
    "created_at",
)


def insert_chain_history(
    *,
    session_id: str,
    chain_id: str,
    event_type: HistoryEvent,
    rotation_count: int,
    created_at: float,
    holder_id: str | None = None,
    previous_holder_id: str | None = None,
    sequence: int | None = None,
    token_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    cur = _run_write(
        """
        INSERT INTO chain_history (
            session_id,
            chain_id,
            event_type,
            holder_id,
            previous_holder_id,
            rotation_count,
            sequence,
            token_id,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            chain_id,
            event_type,
            holder_id,
            previous_holder_id,
            rotation_count,
            sequence,
            token_id,
            created_at,
        ),
        conn,
    )
    return int(cur.lastrowid)


def list_chain_history(
    chain_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[ChainHistoryRecord]:
    rows = _fetch(
        f"""
        SELECT {", ".join(CHAIN_HISTORY_COLUMNS)}
        FROM chain_history
        WHERE chain_id = ?
        ORDER BY id
        """,
        (chain_id,),
        conn,
    )
    return [cast(ChainHistoryRecord, dict(zip(CHAIN_HISTORY_COLUMNS, r))) for r in rows]


def last_custody_changes(
    session_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[str, float]:
    """
    Latest time each chain in the session changed hands. Token refreshes do
    not count: a holder polling alone keeps the chain where it is.
    """
    rows = _fetch(
        """
        SELECT chain_id, MAX(created_at)
        FROM chain_history
        WHERE session_id = ?
          AND event_type IN ('SEEDED', 'TRANSFERRED', 'HOLDER_SET')
        GROUP BY chain_id
        """,
        (session_id,),
        conn,
    )
    return {chain_id: float(changed_at) for chain_id, changed_at in rows}


# -----------------------------
# Snapshots
# -----------------------------
SNAPSHOT_COLUMNS = (
    "id",
    "session_id",
    "kind",
    "snapshot_index",
    "captured_at",
    "chains_created",
    "students_captured",
    "notes",
)


def insert_snapshot(snapshot: SnapshotRecord, *, conn: sqlite3.Connection | None = None) -> None:
    _run_write(
        f"""
        INSERT INTO snapshots ({", ".join(SNAPSHOT_COLUMNS)})
        VALUES ({", ".join("?" for _ in SNAPSHOT_COLUMNS)})
        """,
        [snapshot[c] for c in SNAPSHOT_COLUMNS],  # type: ignore[literal-required]
        conn,
    )


def get_snapshot(
    snapshot_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> SnapshotRecord | None:
    row = _fetch(
        f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM snapshots WHERE id = ?",
        (snapshot_id,),
        conn,
        one=True,
    )
    return cast(SnapshotRecord, dict(zip(SNAPSHOT_COLUMNS, row))) if row else None


def list_snapshots(
    session_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[SnapshotRecord]:
    rows = _fetch(
        f"""
        SELECT {", ".join(SNAPSHOT_COLUMNS)}
        FROM snapshots
        WHERE session_id = ?
        ORDER BY snapshot_index DESC
        """,
        (session_id,),
        conn,
    )
    return [cast(SnapshotRecord, dict(zip(SNAPSHOT_COLUMNS, r))) for r in rows]


def count_snapshots(session_id: str, *, conn: sqlite3.Connection | None = None) -> int:
    row = _fetch(
        "SELECT COUNT(1) FROM snapshots WHERE session_id = ?",
        (session_id,),
        conn,
        one=True,
    )
    return int(row[0] or 0) if row else 0
