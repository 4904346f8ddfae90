from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Sequence, Tuple

from matric_recon.errors import AmbiguousMatchError
from matric_recon.matcher import MatchIndex, MatchPolicy
from matric_recon.models import EXACT, SIMILAR, Classification, ExternalRecord, InternalRecord, MatchResult
from matric_recon.normalizer import try_normalize
from matric_recon.values import canonical_value

# below this many rows the thread pool costs more than it saves
PARALLEL_MIN_ROWS = 2000


def _external_sort_key(ext: ExternalRecord):
    return (ext.normalized_key.text, ext.raw_key, str(ext.sheet or ""), ext.row or 0, ext.value or "")


def internal_sort_key(rec: InternalRecord, delimiters: str = "/"):
    key, _ = try_normalize(rec.key, delimiters)
    return (key.text if key else str(rec.key), str(rec.id))


def _chunks(items: List, n: int) -> List[List]:
    size = max(1, -(-len(items) // n))
    return [items[i:i + size] for i in range(0, len(items), size)]


def match_all(external: List[ExternalRecord], index: MatchIndex, policy: MatchPolicy) -> List[MatchResult]:
    """Look every external record up in the index, keeping input order."""
    workers = max(1, policy.max_workers)
    if workers == 1 or len(external) < PARALLEL_MIN_ROWS:
        return [index.lookup(ext, policy) for ext in external]

    def run(part):
        return [index.lookup(ext, policy) for ext in part]

    results: List[MatchResult] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for part in pool.map(run, _chunks(external, workers)):
            results.extend(part)
    return results


def classify(external: Sequence[ExternalRecord], internal: Sequence[InternalRecord], policy: MatchPolicy = None) -> Classification:
    """Partition both datasets into the reconciliation buckets.

    Pure function of its inputs: buckets are ordered by normalized key so
    two calls over the same data produce identical output.
    """
    policy = policy or MatchPolicy()
    index = MatchIndex.build(internal, policy)
    ext_sorted = sorted(external, key=_external_sort_key)
    results = match_all(ext_sorted, index, policy)

    exact_claims: Dict[int, List[ExternalRecord]] = defaultdict(list)
    similar_claims: Dict[int, List[ExternalRecord]] = defaultdict(list)
    suffix_collisions: Dict[int, List[ExternalRecord]] = defaultdict(list)
    out = Classification()

    for ext, res in zip(ext_sorted, results):
        if res.kind == EXACT:
            exact_claims[res.candidate_ids[0]].append(ext)
        elif res.kind == SIMILAR:
            similar_claims[res.candidate_ids[0]].append(ext)
        elif res.ambiguous:
            out.ambiguity.append(AmbiguousMatchError(ext.normalized_key.text, res.candidate_ids))
            for rid in res.candidate_ids:
                suffix_collisions[rid].append(ext)
        else:
            out.unmatched_external.append(ext)

    malformed_ids = {r.id for r in index.malformed}
    for rec in sorted(internal, key=lambda r: internal_sort_key(r, policy.delimiters)):
        if rec.id in malformed_ids:
            out.malformed_internal.append(rec)
            continue

        exact = exact_claims.get(rec.id, [])
        similar = similar_claims.get(rec.id, [])
        if exact:
            distinct = {canonical_value(e.value, policy.allowed_values, policy.case_insensitive) for e in exact}
            if len(distinct) > 1:
                # the source disagrees with itself about this record
                out.ambiguous.append(rec)
                out.ambiguity.append(AmbiguousMatchError(exact[0].normalized_key.text, (rec.id,)))
                continue
            out.matched_exact.append((rec, exact[0]))
            # similar claims are superseded by the exact row
            out.unmatched_external.extend(similar)
        elif rec.id in suffix_collisions:
            out.ambiguous.append(rec)
            out.unmatched_external.extend(similar)
        elif len(similar) > 1:
            out.ambiguous.append(rec)
            out.ambiguity.append(AmbiguousMatchError(str(rec.key), (rec.id,)))
        elif similar:
            out.matched_similar.append((rec, similar[0]))
        elif canonical_value(rec.current_value) is not None:
            out.not_in_external.append(rec)
        else:
            out.untouched.append(rec)

    out.unmatched_external.sort(key=_external_sort_key)
    return out


def bucket_counts(c: Classification) -> Dict[str, int]:
    return {
        "matched_exact": len(c.matched_exact),
        "matched_similar": len(c.matched_similar),
        "unmatched_external": len(c.unmatched_external),
        "not_in_external": len(c.not_in_external),
        "ambiguous": len(c.ambiguous),
        "untouched": len(c.untouched),
        "malformed_internal": len(c.malformed_internal),
    }


def matched_pairs(c: Classification) -> List[Tuple[InternalRecord, ExternalRecord, str]]:
    pairs = [(rec, ext, EXACT) for rec, ext in c.matched_exact]
    pairs += [(rec, ext, SIMILAR) for rec, ext in c.matched_similar]
    return pairs
