from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from rapidfuzz.distance import JaroWinkler

from matric_recon.models import EXACT, NONE, SIMILAR, ExternalRecord, InternalRecord, MatchResult
from matric_recon.normalizer import try_normalize
from matric_recon.values import CLASSES_OF_DEGREE


@dataclass(frozen=True)
class MatchPolicy:
    delimiters: str = "/"
    enable_similar: bool = True
    # 0.0 accepts any differing prefix that shares the numeric suffix
    prefix_min_similarity: float = 0.0
    allowed_values: tuple = tuple(CLASSES_OF_DEGREE)
    case_insensitive: bool = True
    coverage_thresholds: tuple = (("excellent", 95), ("good", 80), ("moderate", 50))
    max_workers: int = 1

    @classmethod
    def from_config(cls, cfg: Dict) -> "MatchPolicy":
        norm = cfg.get("normalizer", {})
        matching = cfg.get("matching", {})
        values = cfg.get("values", {})
        thresholds = cfg.get("coverage", {}).get("thresholds", {"excellent": 95, "good": 80, "moderate": 50})
        min_sim = float(matching.get("prefix_min_similarity", 0.0))
        if not 0.0 <= min_sim <= 1.0:
            raise ValueError(f"prefix_min_similarity must be within [0, 1], got {min_sim}")
        return cls(
            delimiters=norm.get("delimiters", "/") or "/",
            enable_similar=bool(matching.get("enable_similar", True)),
            prefix_min_similarity=min_sim,
            allowed_values=tuple(values.get("allowed") or ()),
            case_insensitive=bool(values.get("case_insensitive", True)),
            coverage_thresholds=tuple(sorted(thresholds.items(), key=lambda kv: kv[1], reverse=True)),
            max_workers=int(cfg.get("executor", {}).get("max_workers", 1) or 1),
        )


def prefix_similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return JaroWinkler.normalized_similarity(a, b)


@dataclass
class MatchIndex:
    exact_index: Dict[str, InternalRecord] = field(default_factory=dict)
    suffix_index: Dict[str, List[InternalRecord]] = field(default_factory=lambda: defaultdict(list))
    prefixes: Dict[int, str] = field(default_factory=dict)
    # internal records sharing one normalized key with another record
    duplicate_keys: Dict[str, List[InternalRecord]] = field(default_factory=dict)
    malformed: List[InternalRecord] = field(default_factory=list)

    @classmethod
    def build(cls, internal: Sequence[InternalRecord], policy: MatchPolicy) -> "MatchIndex":
        index = cls()
        for rec in sorted(internal, key=lambda r: (str(r.key), str(r.id))):
            key, err = try_normalize(rec.key, policy.delimiters)
            if err is not None:
                index.malformed.append(rec)
                continue
            text = key.text
            index.suffix_index[key.suffix_digits].append(rec)
            index.prefixes[rec.id] = key.prefix
            if text in index.exact_index:
                index.duplicate_keys.setdefault(text, [index.exact_index[text]]).append(rec)
                continue
            index.exact_index[text] = rec
        return index

    def lookup(self, ext: ExternalRecord, policy: MatchPolicy) -> MatchResult:
        nk = ext.normalized_key
        text = nk.text
        if text in self.duplicate_keys:
            ids = tuple(r.id for r in self.duplicate_keys[text])
            return MatchResult(NONE, None, True, ids)
        rec = self.exact_index.get(text)
        if rec is not None:
            return MatchResult(EXACT, ext, False, (rec.id,))
        if not policy.enable_similar:
            return MatchResult(NONE)

        candidates = [
            r for r in self.suffix_index.get(nk.suffix_digits, [])
            if prefix_similarity(nk.prefix, self.prefixes[r.id]) >= policy.prefix_min_similarity
        ]
        if len(candidates) == 1:
            return MatchResult(SIMILAR, ext, False, (candidates[0].id,))
        if len(candidates) > 1:
            # never pick between several records sharing the suffix
            return MatchResult(NONE, None, True, tuple(r.id for r in candidates))
        return MatchResult(NONE)

