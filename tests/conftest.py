import os
import sys
from dataclasses import replace

import pytest

# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from matric_recon import state_store
from matric_recon.errors import PersistenceError
from matric_recon.models import ExternalRecord, InternalRecord
from matric_recon.normalizer import normalize_key


def ext(raw, value=None, row=None, sheet=None):
    return ExternalRecord(raw_key=raw, normalized_key=normalize_key(raw, "/"), value=value, sheet=sheet, row=row)


class FakeStore:
    """In-memory storage collaborator."""

    def __init__(self, records, failures=None):
        self.records = {r.id: r for r in records}
        self.writes = []
        self.attempts = {}
        # id -> list of exceptions raised on successive persist calls
        self.failures = failures or {}

    def load_internal_scope(self, scope="all"):
        rows = list(self.records.values())
        if scope == "non_null":
            rows = [r for r in rows if r.current_value is not None]
        return rows

    def persist(self, student_id, new_value):
        self.attempts[student_id] = self.attempts.get(student_id, 0) + 1
        pending = self.failures.get(student_id)
        if pending:
            raise pending.pop(0)
        if student_id not in self.records:
            raise PersistenceError(student_id, "no such student")
        self.records[student_id] = replace(self.records[student_id], current_value=new_value)
        self.writes.append((student_id, new_value))

    def value(self, student_id):
        return self.records[student_id].current_value


@pytest.fixture
def internal_records():
    return [
        InternalRecord(1, "CS/19/001", "First Class"),
        InternalRecord(2, "CS/19/002", None),
        InternalRecord(3, "EE/19/001", "Second Class Upper"),
    ]


@pytest.fixture
def external_records():
    return [
        ext("cs/19/001", "First Class"),
        ext("cs/19/002", "Second Class Lower"),
    ]


@pytest.fixture
def store(internal_records):
    return FakeStore(internal_records)


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = tmp_path / "state.db"
    monkeypatch.setenv("RECON_STATE_DB", str(path))
    state_store.init_db()
    return path
