from typing import List, Optional

from matric_recon.classifier import internal_sort_key
from matric_recon.matcher import MatchPolicy
from matric_recon.models import (
    EXACT,
    KEEP,
    NONE,
    NULLIFY,
    SIMILAR,
    UPDATE_TO_SOURCE,
    ActionProposal,
    Classification,
    ExternalRecord,
    InternalRecord,
)
from matric_recon.values import canonical_value


def decide_action(current_value: Optional[str], matched: bool, source_value: Optional[str]) -> str:
    """Rule table for one record. Values must already be canonical.

    | current  | match | equal | action           |
    | null     | no    |   -   | keep             |
    | null     | yes   |   -   | update_to_source |
    | non-null | no    |   -   | nullify          |
    | non-null | yes   |  yes  | keep             |
    | non-null | yes   |  no   | update_to_source |

    A matched row whose source value is empty and whose current value is
    also null counts as equal (keep).
    """
    if current_value is None:
        if not matched:
            return KEEP
        if source_value is None:
            return KEEP
        return UPDATE_TO_SOURCE
    if not matched:
        return NULLIFY
    if current_value == source_value:
        return KEEP
    return UPDATE_TO_SOURCE


def propose_one(rec: InternalRecord, ext: Optional[ExternalRecord], match_kind: str, policy: MatchPolicy) -> ActionProposal:
    current = canonical_value(rec.current_value, policy.allowed_values, policy.case_insensitive)
    source = None
    if ext is not None:
        source = canonical_value(ext.value, policy.allowed_values, policy.case_insensitive)
    kind = decide_action(current, ext is not None, source)
    return ActionProposal(
        target=rec.id,
        key=str(rec.key),
        kind=kind,
        current_value=rec.current_value,
        proposed_value=source if kind == UPDATE_TO_SOURCE else None,
        match_kind=match_kind,
        source_key=ext.raw_key if ext is not None else None,
    )


def propose_actions(c: Classification, policy: MatchPolicy = None) -> List[ActionProposal]:
    """One proposal per classified internal record, ordered by key.

    Ambiguous and malformed internal records get no proposal: they are
    surfaced for manual review and cannot be selected for remediation.
    """
    policy = policy or MatchPolicy()
    rows = []
    for rec, ext in c.matched_exact:
        rows.append(propose_one(rec, ext, EXACT, policy))
    for rec, ext in c.matched_similar:
        rows.append(propose_one(rec, ext, SIMILAR, policy))
    for rec in c.not_in_external:
        rows.append(propose_one(rec, None, NONE, policy))
    for rec in c.untouched:
        rows.append(propose_one(rec, None, NONE, policy))

    order = {
        rec.id: internal_sort_key(rec, policy.delimiters)
        for rec in [r for r, _ in c.matched_exact] + [r for r, _ in c.matched_similar] + c.not_in_external + c.untouched
    }
    rows.sort(key=lambda p: order[p.target])
    return rows
