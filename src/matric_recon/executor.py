"""
Remediation executor.

Applies only the operator-selected line items of a preview. Every item is
re-checked against a freshly computed proposal before it is written, and
each write is its own unit of work: apply is a set of small atomic steps,
not one transaction. Cancelling stops further writes but does not roll
back the ones already committed.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from matric_recon import state_store
from matric_recon.errors import PersistenceError, StaleProposalError
from matric_recon.matcher import MatchPolicy
from matric_recon.models import (
    NULLIFY,
    UPDATE_TO_SOURCE,
    ActionProposal,
    ApplyReport,
    BatchItem,
    ExternalRecord,
    RemediationBatch,
)
from matric_recon.service import preview
from matric_recon.stats import aggregate
from matric_recon.values import canonical_value, is_known_value

_CANCELLED = object()


def stale_reason(item: BatchItem, fresh: Optional[ActionProposal]) -> Optional[str]:
    if fresh is None:
        return "record can no longer be reconciled (ambiguous, malformed key or removed)"
    if fresh.kind != item.kind:
        return f"proposal changed from {item.kind} to {fresh.kind}"
    if fresh.current_value != item.expected_current:
        return f"current value changed from {item.expected_current!r} to {fresh.current_value!r}"
    if item.kind == UPDATE_TO_SOURCE and item.override_value is None and fresh.proposed_value != item.expected_value:
        return f"source value changed from {item.expected_value!r} to {fresh.proposed_value!r}"
    return None


class RemediationExecutor:
    """Applies a RemediationBatch through a storage collaborator.

    The store needs two methods: load_internal_scope(scope) and
    persist(id, new_value).
    """

    def __init__(
        self,
        store,
        policy: Optional[MatchPolicy] = None,
        max_workers: Optional[int] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        actor: str = "operator",
        audit: Optional[Callable] = state_store.write_audit,
        sleep: Callable = time.sleep,
    ):
        self.store = store
        self.policy = policy or MatchPolicy()
        self.max_workers = max(1, max_workers or self.policy.max_workers)
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.actor = actor
        self.audit = audit
        self.sleep = sleep

    def _audit(self, report: ApplyReport, level: str, action: str, target_ids: list, result: str, error: str = None):
        """Audit failures are noted on the report; committed writes are never hidden by them."""
        if self.audit is None:
            return
        try:
            self.audit(level, self.actor, action, target_ids, result, error)
        except Exception as e:
            msg = f"audit {action} {result} for {target_ids} failed: {type(e).__name__}: {e}"
            report.warnings.append(msg)
            print(f"  ⚠️ {msg}")

    def _check(self, batch: RemediationBatch, fresh: Dict[int, ActionProposal], report: ApplyReport):
        accepted: List[Tuple[BatchItem, ActionProposal, Optional[str]]] = []
        seen = set()
        for item in batch.items:
            if item.target in seen:
                reason = "selected more than once in this batch"
            else:
                reason = stale_reason(item, fresh.get(item.target))
            seen.add(item.target)
            if reason is not None:
                err = StaleProposalError(item.target, reason)
                report.rejected_stale.append(item.target)
                report.stale_reasons[item.target] = reason
                print(f"  ⚠️ stale: {err}")
                continue

            proposal = fresh[item.target]
            if item.kind == NULLIFY:
                new_value = None
            elif item.override_value is not None:
                new_value = canonical_value(item.override_value, self.policy.allowed_values, self.policy.case_insensitive)
                if not is_known_value(new_value, self.policy.allowed_values):
                    msg = f"unknown class of degree {new_value!r}"
                    report.failed.append((item.target, msg))
                    self._audit(report, "ERROR", f"remediate:{item.kind}", [item.target], "failed", msg)
                    continue
            else:
                new_value = proposal.proposed_value
            accepted.append((item, proposal, new_value))
        return accepted

    def _persist_one(self, target: int, new_value: Optional[str], cancel_event) -> Optional[object]:
        """None on success, _CANCELLED if never written, else the error message."""
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED
        delay = self.backoff_seconds
        for attempt in range(1, self.max_retries + 1):
            try:
                self.store.persist(target, new_value)
                return None
            except PersistenceError as e:
                if not e.retryable or attempt == self.max_retries:
                    return e.message
                self.sleep(delay)
                delay = min(delay * 2, 16)
            except Exception as e:
                return f"{type(e).__name__}: {e}"
        return "retries exhausted"

    def apply(
        self,
        batch: RemediationBatch,
        external: Sequence[ExternalRecord],
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyReport:
        report = ApplyReport(dry_run=dry_run)
        mode = "DRY RUN" if dry_run else "APPLY"
        print(f"🎯 {mode}: {len(batch)} selected item(s)")

        # always recompute against the current store state
        internal = self.store.load_internal_scope(state_store.SCOPE_ALL)
        fresh_preview = preview(external, internal, self.policy)
        fresh = {p.target: p for p in fresh_preview.proposals}

        accepted = self._check(batch, fresh, report)
        if report.rejected_stale:
            self._audit(report, "WARNING", "remediate:stale", report.rejected_stale, "rejected_stale")

        applied_proposals: List[ActionProposal] = []
        if dry_run:
            for item, proposal, new_value in accepted:
                report.applied.append(item.target)
                applied_proposals.append(proposal)
            if accepted:
                self._audit(report, "INFO", "remediate:dry_run", report.applied, "dry_run")
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [
                    (item, proposal, pool.submit(self._persist_one, item.target, new_value, cancel_event))
                    for item, proposal, new_value in accepted
                ]
                outcomes = [(item, proposal, f.result()) for item, proposal, f in futures]

            for item, proposal, outcome in outcomes:
                if outcome is None:
                    report.applied.append(item.target)
                    applied_proposals.append(proposal)
                    self._audit(report, "INFO", f"remediate:{item.kind}", [item.target], "applied")
                elif outcome is _CANCELLED:
                    report.cancelled.append(item.target)
                    self._audit(report, "INFO", f"remediate:{item.kind}", [item.target], "cancelled")
                else:
                    report.failed.append((item.target, outcome))
                    print(f"  ❌ record {item.target}: {outcome}")
                    self._audit(report, "ERROR", f"remediate:{item.kind}", [item.target], "failed", outcome)

        report.stats = aggregate(applied_proposals, thresholds=self.policy.coverage_thresholds)
        if not dry_run:
            try:
                after_internal = self.store.load_internal_scope(state_store.SCOPE_ALL)
                report.after = preview(external, after_internal, self.policy).stats
            except Exception as e:
                msg = f"could not recompute statistics after apply: {type(e).__name__}: {e}"
                report.warnings.append(msg)
                print(f"  ⚠️ {msg}")

        print(f"🎉 {report.summary_line()}")
        return report
