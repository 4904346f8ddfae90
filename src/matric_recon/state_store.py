import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from matric_recon.errors import PersistenceError, SessionError
from matric_recon.models import InternalRecord

SCOPE_ALL = "all"
SCOPE_NON_NULL = "non_null"
SCOPES = (SCOPE_ALL, SCOPE_NON_NULL)


def _get_db_path() -> str:
    """Read the DB path from the environment on every call so tests can monkeypatch it."""
    return os.getenv("RECON_STATE_DB", "recon_state.db")


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path(), timeout=5)
    con.execute("PRAGMA journal_mode=WAL;")
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS students (
              id INTEGER PRIMARY KEY,
              matric_no TEXT NOT NULL,
              name TEXT,
              class_of_degree TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS review_sessions (
              session_id TEXT PRIMARY KEY,
              source TEXT,
              payload_json TEXT,
              created_at TEXT,
              expire_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              level TEXT,
              actor TEXT,
              action TEXT,
              target_ids TEXT,
              result TEXT,
              error TEXT
            );
            """
        )


def seed_students(rows: Iterable[Dict]) -> int:
    n = 0
    with _conn() as con:
        for row in rows:
            con.execute(
                "INSERT OR REPLACE INTO students(id, matric_no, name, class_of_degree) VALUES (?,?,?,?)",
                (int(row["id"]), row["matric_no"], row.get("name"), row.get("class_of_degree")),
            )
            n += 1
    return n


def load_internal_scope(scope: str = SCOPE_ALL) -> List[InternalRecord]:
    if scope not in SCOPES:
        raise ValueError(f"scope must be one of {SCOPES}, got {scope!r}")
    sql = "SELECT id, matric_no, class_of_degree, name FROM students"
    if scope == SCOPE_NON_NULL:
        sql += " WHERE class_of_degree IS NOT NULL AND TRIM(class_of_degree) != ''"
    sql += " ORDER BY matric_no, id"
    with _conn() as con:
        return [InternalRecord(id=r[0], key=r[1], current_value=r[2], name=r[3]) for r in con.execute(sql)]


def get_value(student_id: int) -> Optional[str]:
    with _conn() as con:
        row = con.execute("SELECT class_of_degree FROM students WHERE id=?", (student_id,)).fetchone()
        return row[0] if row else None


def persist(student_id: int, new_value: Optional[str]):
    """Single-record write. Writing the same value twice leaves the same state."""
    try:
        with _conn() as con:
            cur = con.execute("UPDATE students SET class_of_degree=? WHERE id=?", (new_value, student_id))
            if cur.rowcount == 0:
                raise PersistenceError(student_id, "no such student")
    except sqlite3.OperationalError as e:
        raise PersistenceError(student_id, str(e), retryable="locked" in str(e).lower()) from e


def write_audit(level: str, actor: str, action: str, target_ids: list, result: str, error: str | None = None):
    with _conn() as con:
        con.execute(
            "INSERT INTO audit_log(ts, level, actor, action, target_ids, result, error) VALUES (?,?,?,?,?,?,?)",
            (datetime.utcnow().isoformat(), level, actor, action, json.dumps(target_ids), result, error),
        )


def read_audit(limit: int = 50) -> List[Dict]:
    with _conn() as con:
        cur = con.execute(
            "SELECT ts, level, actor, action, target_ids, result, error FROM audit_log ORDER BY rowid DESC LIMIT ?",
            (limit,),
        )
        return [
            {
                "ts": ts,
                "level": level,
                "actor": actor,
                "action": action,
                "target_ids": json.loads(target_ids or "[]"),
                "result": result,
                "error": error,
            }
            for ts, level, actor, action, target_ids, result, error in cur.fetchall()
        ]


def save_session(session_id: str, source: str, payload: Dict, ttl_hours: int = 6):
    now = datetime.utcnow()
    with _conn() as con:
        con.execute(
            "INSERT OR REPLACE INTO review_sessions(session_id, source, payload_json, created_at, expire_at) VALUES (?,?,?,?,?)",
            (
                session_id,
                source,
                json.dumps(payload, ensure_ascii=False),
                now.isoformat(),
                (now + timedelta(hours=ttl_hours)).isoformat(),
            ),
        )


def load_session(session_id: str) -> Dict:
    with _conn() as con:
        row = con.execute(
            "SELECT source, payload_json, created_at, expire_at FROM review_sessions WHERE session_id=?", (session_id,)
        ).fetchone()
    if not row:
        raise SessionError(f"review session {session_id} not found")
    source, payload_json, created_at, expire_at = row
    if datetime.fromisoformat(expire_at) < datetime.utcnow():
        raise SessionError(f"review session {session_id} expired at {expire_at}")
    return {
        "session_id": session_id,
        "source": source,
        "payload": json.loads(payload_json or "{}"),
        "created_at": created_at,
        "expire_at": expire_at,
    }


def delete_session(session_id: str):
    with _conn() as con:
        con.execute("DELETE FROM review_sessions WHERE session_id=?", (session_id,))


class SqliteRecordStore:
    """Storage collaborator backed by the local sqlite database."""

    def load_internal_scope(self, scope: str = SCOPE_ALL) -> List[InternalRecord]:
        return load_internal_scope(scope)

    def persist(self, student_id: int, new_value: Optional[str]):
        persist(student_id, new_value)
