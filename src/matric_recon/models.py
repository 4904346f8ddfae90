from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# match kinds
EXACT = "exact"
SIMILAR = "similar"
NONE = "none"

# action kinds
KEEP = "keep"
NULLIFY = "nullify"
UPDATE_TO_SOURCE = "update_to_source"


@dataclass(frozen=True)
class NormalizedKey:
    prefix: str
    tail: str
    suffix_digits: str

    @property
    def text(self) -> str:
        return f"{self.prefix}/{self.tail}"

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class ExternalRecord:
    raw_key: str
    normalized_key: NormalizedKey
    value: Optional[str] = None
    sheet: Optional[str] = None
    row: Optional[int] = None


@dataclass(frozen=True)
class InternalRecord:
    id: int
    key: str
    current_value: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    kind: str  # exact|similar|none
    matched_external: Optional[ExternalRecord] = None
    ambiguous: bool = False
    candidate_ids: Tuple = ()


@dataclass(frozen=True)
class ActionProposal:
    target: int
    key: str
    kind: str  # keep|nullify|update_to_source
    current_value: Optional[str]
    proposed_value: Optional[str] = None
    match_kind: str = NONE
    source_key: Optional[str] = None


@dataclass
class Classification:
    matched_exact: List[Tuple[InternalRecord, ExternalRecord]] = field(default_factory=list)
    matched_similar: List[Tuple[InternalRecord, ExternalRecord]] = field(default_factory=list)
    unmatched_external: List[ExternalRecord] = field(default_factory=list)
    not_in_external: List[InternalRecord] = field(default_factory=list)
    ambiguous: List[InternalRecord] = field(default_factory=list)
    # null current_value and no match: nothing to reconcile
    untouched: List[InternalRecord] = field(default_factory=list)
    # internal records whose own key cannot be normalized
    malformed_internal: List[InternalRecord] = field(default_factory=list)
    ambiguity: List = field(default_factory=list)

    def memberships(self) -> Dict[int, str]:
        """Bucket name for every internal record that was classified."""
        out: Dict[int, str] = {}
        for rec, _ in self.matched_exact:
            out[rec.id] = "matched_exact"
        for rec, _ in self.matched_similar:
            out[rec.id] = "matched_similar"
        for rec in self.not_in_external:
            out[rec.id] = "not_in_external"
        for rec in self.ambiguous:
            out[rec.id] = "ambiguous"
        for rec in self.untouched:
            out[rec.id] = "untouched"
        for rec in self.malformed_internal:
            out[rec.id] = "malformed_internal"
        return out


@dataclass
class ReconStats:
    scanned: int = 0
    kept_ok: int = 0
    already_null: int = 0
    nullified_not_in_source: int = 0
    updated_to_source: int = 0
    exact_matches: int = 0
    similar_matches: int = 0
    unmatched: int = 0
    ambiguous: int = 0
    malformed_keys: int = 0
    duplicate_rows: int = 0
    coverage_percentage: float = 0.0
    coverage_status: str = "critical"
    status_message: str = ""

    def as_dict(self) -> Dict:
        return dict(self.__dict__)


@dataclass
class PreviewResult:
    classification: Classification
    proposals: List[ActionProposal]
    stats: ReconStats
    errors: List = field(default_factory=list)

    def actionable(self) -> List[ActionProposal]:
        return [p for p in self.proposals if p.kind != KEEP]


@dataclass(frozen=True)
class BatchItem:
    target: int
    kind: str
    override_value: Optional[str] = None
    # snapshot of the preview row the operator selected
    expected_current: Optional[str] = None
    expected_value: Optional[str] = None

    @classmethod
    def from_proposal(cls, proposal: ActionProposal, override_value: Optional[str] = None) -> "BatchItem":
        return cls(
            target=proposal.target,
            kind=proposal.kind,
            override_value=override_value,
            expected_current=proposal.current_value,
            expected_value=proposal.proposed_value,
        )


@dataclass
class RemediationBatch:
    items: List[BatchItem] = field(default_factory=list)

    def __post_init__(self):
        for item in self.items:
            if item.kind not in (NULLIFY, UPDATE_TO_SOURCE):
                raise ValueError(f"batch item {item.target}: action must be nullify or update_to_source, got {item.kind!r}")
            if item.kind == NULLIFY and item.override_value is not None:
                raise ValueError(f"batch item {item.target}: nullify does not take an override value")

    @classmethod
    def from_proposals(cls, proposals: List[ActionProposal], selected_ids=None, overrides: Optional[Dict] = None) -> "RemediationBatch":
        """Operator selection over preview rows. keep rows are never selectable."""
        overrides = overrides or {}
        wanted = None if selected_ids is None else set(selected_ids)
        items = []
        for p in proposals:
            if p.kind == KEEP:
                continue
            if wanted is not None and p.target not in wanted:
                continue
            items.append(BatchItem.from_proposal(p, overrides.get(p.target)))
        return cls(items)

    def target_ids(self) -> List[int]:
        return [item.target for item in self.items]

    def __len__(self):
        return len(self.items)


@dataclass
class ApplyReport:
    applied: List[int] = field(default_factory=list)
    rejected_stale: List[int] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)
    cancelled: List[int] = field(default_factory=list)
    stats: ReconStats = field(default_factory=ReconStats)
    dry_run: bool = False
    stale_reasons: Dict[int, str] = field(default_factory=dict)
    after: Optional[ReconStats] = None
    # bookkeeping problems after writes were committed (audit, after stats)
    warnings: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed or self.rejected_stale or self.cancelled)

    def summary_line(self) -> str:
        mode = "dry-run" if self.dry_run else "apply"
        return (
            f"{mode}: applied={len(self.applied)} rejected_stale={len(self.rejected_stale)} "
            f"failed={len(self.failed)} cancelled={len(self.cancelled)} warnings={len(self.warnings)}"
        )
