from typing import List, Optional, Sequence

from matric_recon.classifier import classify
from matric_recon.matcher import MatchPolicy
from matric_recon.models import ExternalRecord, InternalRecord, PreviewResult
from matric_recon.proposer import propose_actions
from matric_recon.stats import aggregate


def preview(
    external: Sequence[ExternalRecord],
    internal: Sequence[InternalRecord],
    policy: Optional[MatchPolicy] = None,
    errors: Optional[List] = None,
    duplicate_rows: int = 0,
) -> PreviewResult:
    """Classify, propose and count. Never touches storage."""
    policy = policy or MatchPolicy()
    errors = list(errors or [])
    classification = classify(external, internal, policy)
    proposals = propose_actions(classification, policy)
    stats = aggregate(
        proposals,
        classification,
        malformed_keys=len(errors),
        duplicate_rows=duplicate_rows,
        thresholds=policy.coverage_thresholds,
    )
    return PreviewResult(classification=classification, proposals=proposals, stats=stats, errors=errors)


def apply(batch, external, store, policy: Optional[MatchPolicy] = None, dry_run: bool = False, cancel_event=None, **executor_kwargs):
    from matric_recon.executor import RemediationExecutor

    executor = RemediationExecutor(store, policy=policy, **executor_kwargs)
    return executor.apply(batch, external, dry_run=dry_run, cancel_event=cancel_event)
