"""
Review session: Idle -> Previewing -> PreviewReady -> Selecting -> Applying -> Applied,
or PreviewReady -> Idle on cancel.

States are immutable values; ReconciliationSession only swaps one for the
next and refuses transitions the workflow does not allow.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from matric_recon import state_store
from matric_recon.errors import InvalidTransition
from matric_recon.executor import RemediationExecutor
from matric_recon.matcher import MatchPolicy
from matric_recon.models import (
    ActionProposal,
    ApplyReport,
    Classification,
    ExternalRecord,
    InternalRecord,
    NormalizedKey,
    PreviewResult,
    ReconStats,
    RemediationBatch,
)
from matric_recon.service import preview


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Previewing:
    source: str


@dataclass(frozen=True)
class PreviewReady:
    source: str
    result: PreviewResult
    external: Tuple[ExternalRecord, ...]


@dataclass(frozen=True)
class Selecting:
    source: str
    result: PreviewResult
    external: Tuple[ExternalRecord, ...]
    batch: RemediationBatch


@dataclass(frozen=True)
class Applying:
    source: str
    batch: RemediationBatch
    external: Tuple[ExternalRecord, ...]
    dry_run: bool


@dataclass(frozen=True)
class Applied:
    source: str
    report: ApplyReport


class ReconciliationSession:
    def __init__(self, policy: Optional[MatchPolicy] = None, session_id: Optional[str] = None):
        self.policy = policy or MatchPolicy()
        self.session_id = session_id or uuid.uuid4().hex
        self.state = Idle()

    def _expect(self, event: str, *allowed):
        if not isinstance(self.state, allowed):
            raise InvalidTransition(self.state, event)

    def start_preview(self, source: str):
        self._expect("start preview", Idle, Applied)
        self.state = Previewing(source)

    def preview_ready(self, result: PreviewResult, external: Sequence[ExternalRecord]):
        self._expect("finish preview", Previewing)
        self.state = PreviewReady(self.state.source, result, tuple(external))

    def preview_failed(self):
        self._expect("fail preview", Previewing)
        self.state = Idle()

    def cancel(self):
        self._expect("cancel", PreviewReady, Selecting)
        self.state = Idle()

    def select(self, batch: RemediationBatch):
        self._expect("select", PreviewReady, Selecting)
        self.state = Selecting(self.state.source, self.state.result, self.state.external, batch)

    def start_apply(self, dry_run: bool = False):
        self._expect("apply", Selecting)
        s = self.state
        self.state = Applying(s.source, s.batch, s.external, dry_run)

    def finish(self, report: ApplyReport):
        self._expect("finish apply", Applying)
        self.state = Applied(self.state.source, report)

    def run_preview(self, source: str, external: Sequence[ExternalRecord], internal: Sequence[InternalRecord],
                    errors: Optional[List] = None, duplicate_rows: int = 0) -> PreviewResult:
        self.start_preview(source)
        result = preview(external, internal, self.policy, errors=errors, duplicate_rows=duplicate_rows)
        self.preview_ready(result, external)
        return result

    def run_apply(self, store, dry_run: bool = False, cancel_event=None, **executor_kwargs) -> ApplyReport:
        self.start_apply(dry_run)
        s = self.state
        try:
            executor = RemediationExecutor(store, policy=self.policy, **executor_kwargs)
            report = executor.apply(s.batch, s.external, dry_run=dry_run, cancel_event=cancel_event)
        except Exception as e:
            # the executor only raises before any write, so every item is reported failed
            msg = f"apply aborted: {type(e).__name__}: {e}"
            print(f"❌ {msg}")
            report = ApplyReport(dry_run=dry_run, failed=[(t, msg) for t in s.batch.target_ids()])
        self.finish(report)
        return report


def _external_to_dict(ext: ExternalRecord) -> Dict:
    return {
        "raw_key": ext.raw_key,
        "normalized_key": asdict(ext.normalized_key),
        "value": ext.value,
        "sheet": ext.sheet,
        "row": ext.row,
    }


def _external_from_dict(d: Dict) -> ExternalRecord:
    return ExternalRecord(
        raw_key=d["raw_key"],
        normalized_key=NormalizedKey(**d["normalized_key"]),
        value=d.get("value"),
        sheet=d.get("sheet"),
        row=d.get("row"),
    )


def save_review(session: ReconciliationSession, ttl_hours: int = 6):
    """Persist a PreviewReady session so the apply step can run later."""
    if not isinstance(session.state, PreviewReady):
        raise InvalidTransition(session.state, "save review")
    s = session.state
    payload = {
        "external": [_external_to_dict(e) for e in s.external],
        "proposals": [asdict(p) for p in s.result.proposals],
        "stats": s.result.stats.as_dict(),
    }
    state_store.save_session(session.session_id, s.source, payload, ttl_hours)


def load_review(session_id: str) -> Tuple[str, List[ExternalRecord], List[ActionProposal], Dict]:
    data = state_store.load_session(session_id)
    payload = data["payload"]
    external = [_external_from_dict(d) for d in payload.get("external", [])]
    proposals = [ActionProposal(**p) for p in payload.get("proposals", [])]
    return data["source"], external, proposals, payload.get("stats", {})


def resume_review(session_id: str, policy: Optional[MatchPolicy] = None) -> ReconciliationSession:
    """Rebuild a PreviewReady session from a saved review.

    Only the proposal rows and counters are restored; the executor
    recomputes the classification from the saved source rows anyway.
    """
    source, external, proposals, stats = load_review(session_id)
    session = ReconciliationSession(policy, session_id=session_id)
    session.start_preview(source)
    result = PreviewResult(classification=Classification(), proposals=proposals, stats=ReconStats(**stats))
    session.preview_ready(result, external)
    return session
