import argparse
import csv
import sys
from typing import List, Optional

from matric_recon import state_store
from matric_recon.config_loader import load_reconcile_config
from matric_recon.errors import ExtractionFailure, SessionError
from matric_recon.http_store import HttpRecordStore
from matric_recon.matcher import MatchPolicy
from matric_recon.models import RemediationBatch
from matric_recon.service import preview
from matric_recon.session import ReconciliationSession, resume_review, save_review
from matric_recon.sources import extract


def _store(cfg: dict, use_api: bool):
    api = cfg.get("api", {})
    if use_api or api.get("base_url"):
        if not api.get("base_url"):
            raise SystemExit("❌ RECON_API_BASE_URL is not set")
        return HttpRecordStore(api["base_url"], api.get("token"), timeout=int(api.get("timeout", 60)))
    return state_store.SqliteRecordStore()


def _print_stats(stats: dict):
    for k in ("scanned", "exact_matches", "similar_matches", "unmatched", "ambiguous",
              "kept_ok", "already_null", "updated_to_source", "nullified_not_in_source",
              "malformed_keys", "duplicate_rows"):
        print(f"   {k:<24} {stats.get(k, 0)}")
    print(f"   coverage                 {stats.get('coverage_percentage', 0)}% ({stats.get('coverage_status')})")


def cmd_seed(args, cfg) -> int:
    with open(args.csv, "r", encoding="utf-8") as f:
        rows = [
            {**row, "class_of_degree": (row.get("class_of_degree") or None)}
            for row in csv.DictReader(f)
        ]
    n = state_store.seed_students(rows)
    print(f"✅ {n} students seeded")
    return 0


def cmd_preview(args, cfg) -> int:
    policy = MatchPolicy.from_config(cfg)
    session = ReconciliationSession(policy)
    session.start_preview(args.source)
    try:
        extraction = extract(
            args.source,
            key_column=args.key_column,
            value_column=args.value_column,
            delimiters=policy.delimiters,
            allowed_values=policy.allowed_values,
            case_insensitive=policy.case_insensitive,
        )
    except ExtractionFailure as e:
        session.preview_failed()
        print(f"❌ Extraction failed: {e}")
        return 1

    print(f"📄 {args.source}: {extraction.summary()}")
    for sheet, reason in extraction.skipped_sheets.items():
        print(f"   ⏭️ sheet {sheet} skipped: {reason}")
    for err in extraction.errors[:10]:
        print(f"   ⚠️ {err}")

    internal = _store(cfg, args.api).load_internal_scope(args.scope)
    result = preview(extraction.records, internal, policy, errors=extraction.errors,
                     duplicate_rows=len(extraction.duplicates))
    session.preview_ready(result, extraction.records)
    save_review(session, ttl_hours=int(cfg.get("session", {}).get("ttl_hours", 6)))

    print("📊 Preview")
    _print_stats(result.stats.as_dict())
    for p in result.actionable()[: args.show]:
        print(f"   [{p.target}] {p.key:<18} {p.kind:<17} {p.current_value!r} -> {p.proposed_value!r} ({p.match_kind})")
    print(f"🆔 review session: {session.session_id}")
    return 0


def cmd_apply(args, cfg) -> int:
    policy = MatchPolicy.from_config(cfg)
    try:
        session = resume_review(args.session, policy)
    except SessionError as e:
        print(f"❌ {e}")
        return 1

    proposals = session.state.result.proposals
    selected = None
    if not args.all:
        if not args.select:
            print("❌ choose --all or --select ID,ID,...")
            return 1
        selected = [int(x) for x in args.select.split(",") if x.strip()]
    batch = RemediationBatch.from_proposals(proposals, selected)
    session.select(batch)

    ex = cfg.get("executor", {})
    dry_run = args.dry_run or bool(ex.get("dry_run"))
    report = session.run_apply(
        _store(cfg, args.api),
        dry_run=dry_run,
        max_workers=int(ex.get("max_workers", 4)),
        max_retries=int(ex.get("max_retries", 3)),
        backoff_seconds=float(ex.get("backoff_seconds", 0.5)),
        actor=args.actor,
    )
    print(f"   applied:        {report.applied}")
    print(f"   rejected_stale: {report.rejected_stale}")
    for target, reason in report.stale_reasons.items():
        print(f"     - {target}: {reason}")
    print(f"   failed:         {[t for t, _ in report.failed]}")
    for target, error in report.failed:
        print(f"     - {target}: {error}")
    if report.cancelled:
        print(f"   cancelled:      {report.cancelled}")
    for warning in report.warnings:
        print(f"   ⚠️ {warning}")
    _print_stats(report.stats.as_dict())
    if not report.applied and not dry_run:
        print("⚠️ nothing was written")
    elif report.partial:
        print("⚠️ partially applied")
    return 0


def cmd_audit(args, cfg) -> int:
    for entry in state_store.read_audit(args.limit):
        err = f" error={entry['error']}" if entry["error"] else ""
        print(f"{entry['ts']} {entry['level']:<7} {entry['actor']} {entry['action']} {entry['target_ids']} {entry['result']}{err}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="matric-recon", description="Reconcile class of degree records against a source file")
    parser.add_argument("--config", help="path to reconcile.yml")
    parser.add_argument("--api", action="store_true", help="use the admin API instead of the local database")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("seed", help="load students from a CSV into the local database")
    p.add_argument("--csv", required=True)
    p.set_defaults(func=cmd_seed)

    p = sub.add_parser("preview", help="classify a source file and save a review session")
    p.add_argument("--source", required=True)
    p.add_argument("--scope", choices=state_store.SCOPES, default=state_store.SCOPE_ALL)
    p.add_argument("--key-column")
    p.add_argument("--value-column")
    p.add_argument("--show", type=int, default=20, help="number of actionable rows to print")
    p.set_defaults(func=cmd_preview)

    p = sub.add_parser("apply", help="apply selected rows of a review session")
    p.add_argument("--session", required=True)
    p.add_argument("--select", help="comma separated student ids")
    p.add_argument("--all", action="store_true", help="select every non-keep row")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--actor", default="cli")
    p.set_defaults(func=cmd_apply)

    p = sub.add_parser("audit", help="show the latest audit log entries")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_audit)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_reconcile_config(args.config)
    state_store.init_db()
    return args.func(args, cfg)


if __name__ == "__main__":
    sys.exit(main())
