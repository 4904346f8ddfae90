"""
Error taxonomy for the reconciliation engine.

Per-row and per-item errors (malformed keys, ambiguous matches, stale
selections, persistence failures) are collected on result objects. Only
ExtractionFailure, SessionError and InvalidTransition are raised to callers.
"""

from typing import Iterable, Optional


class ReconError(Exception):
    """Base class for reconciliation errors"""


class MalformedKeyError(ReconError):
    def __init__(self, raw_key: str, reason: str, sheet: Optional[str] = None, row: Optional[int] = None):
        self.raw_key = raw_key
        self.reason = reason
        self.sheet = sheet
        self.row = row
        where = ""
        if sheet is not None or row is not None:
            where = f" ({sheet or '-'}:{row if row is not None else '-'})"
        super().__init__(f"malformed matric number {raw_key!r}{where}: {reason}")

    def as_dict(self) -> dict:
        return {"sheet": self.sheet, "row": self.row, "matric": self.raw_key, "reason": self.reason}


class AmbiguousMatchError(ReconError):
    def __init__(self, key: str, candidate_ids: Iterable):
        self.key = key
        self.candidate_ids = tuple(candidate_ids)
        super().__init__(f"{key} shares its numeric suffix with {len(self.candidate_ids)} records: {list(self.candidate_ids)}")


class StaleProposalError(ReconError):
    def __init__(self, target_id, reason: str):
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"record {target_id}: {reason}")


class PersistenceError(ReconError):
    def __init__(self, target_id, message: str, retryable: bool = False):
        self.target_id = target_id
        self.message = message
        self.retryable = retryable
        super().__init__(f"record {target_id}: {message}")


class ExtractionFailure(ReconError):
    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class SessionError(ReconError):
    pass


class InvalidTransition(ReconError):
    def __init__(self, state, event: str):
        self.state = state
        self.event = event
        super().__init__(f"cannot {event} while {type(state).__name__}")
