from typing import Iterable, Optional, Sequence

from matric_recon.models import EXACT, KEEP, NULLIFY, SIMILAR, UPDATE_TO_SOURCE, ActionProposal, Classification, ReconStats

DEFAULT_THRESHOLDS = (("excellent", 95), ("good", 80), ("moderate", 50))

STATUS_MESSAGES = {
    "excellent": "Source file covers almost every student record",
    "good": "Most student records are covered by the source file",
    "moderate": "A large share of student records is missing from the source file",
    "critical": "Most student records are missing from the source file",
}


def coverage_status(percentage: float, thresholds: Sequence = DEFAULT_THRESHOLDS) -> str:
    for name, floor in sorted(thresholds, key=lambda kv: kv[1], reverse=True):
        if percentage >= floor:
            return name
    return "critical"


def aggregate(
    proposals: Iterable[ActionProposal],
    classification: Optional[Classification] = None,
    malformed_keys: int = 0,
    duplicate_rows: int = 0,
    thresholds: Sequence = DEFAULT_THRESHOLDS,
) -> ReconStats:
    """Summary counters over a set of proposals.

    Called with the full preview it describes the whole run; called with the
    proposals of applied items only it describes the apply, so the two can be
    compared directly.
    """
    s = ReconStats(malformed_keys=malformed_keys, duplicate_rows=duplicate_rows)
    for p in proposals:
        s.scanned += 1
        if p.match_kind == EXACT:
            s.exact_matches += 1
        elif p.match_kind == SIMILAR:
            s.similar_matches += 1

        if p.kind == KEEP:
            if p.current_value is None or not str(p.current_value).strip():
                s.already_null += 1
            else:
                s.kept_ok += 1
        elif p.kind == NULLIFY:
            s.nullified_not_in_source += 1
        elif p.kind == UPDATE_TO_SOURCE:
            s.updated_to_source += 1

    if classification is not None:
        s.unmatched = len(classification.unmatched_external)
        s.ambiguous = len(classification.ambiguous)
        s.scanned += len(classification.ambiguous) + len(classification.malformed_internal)

    if s.scanned:
        s.coverage_percentage = round(100.0 * (s.exact_matches + s.similar_matches) / s.scanned, 2)
    s.coverage_status = coverage_status(s.coverage_percentage, thresholds)
    s.status_message = STATUS_MESSAGES[s.coverage_status]
    return s
