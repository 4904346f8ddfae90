import threading
import unittest
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeStore, ext
from matric_recon.errors import PersistenceError
from matric_recon.executor import RemediationExecutor, stale_reason
from matric_recon.models import NULLIFY, UPDATE_TO_SOURCE, BatchItem, InternalRecord, RemediationBatch
from matric_recon.service import apply, preview
from matric_recon.stats import aggregate


def _executor(store, **kwargs):
    kwargs.setdefault("audit", None)
    kwargs.setdefault("sleep", lambda s: None)
    return RemediationExecutor(store, **kwargs)


class TestRemediationExecutor(unittest.TestCase):

    def setUp(self):
        self.internal = [
            InternalRecord(1, "CS/19/001", "First Class"),
            InternalRecord(2, "CS/19/002", None),
            InternalRecord(3, "EE/19/001", "Second Class Upper"),
        ]
        self.external = [ext("cs/19/001", "First Class"), ext("cs/19/002", "Second Class Lower")]
        self.store = FakeStore(self.internal)
        self.preview = preview(self.external, self.store.load_internal_scope())
        self.batch = RemediationBatch.from_proposals(self.preview.proposals)

    def test_batch_from_preview_skips_keep_rows(self):
        self.assertEqual(self.batch.target_ids(), [2, 3])

    def test_apply_writes_only_selected_items(self):
        batch = RemediationBatch.from_proposals(self.preview.proposals, selected_ids=[3])
        report = _executor(self.store).apply(batch, self.external)

        self.assertEqual(report.applied, [3])
        self.assertEqual(self.store.writes, [(3, None)])
        self.assertIsNone(self.store.value(2))

    def test_apply_stats_equal_preview_stats_restricted_to_applied(self):
        report = _executor(self.store).apply(self.batch, self.external)

        self.assertEqual(sorted(report.applied), [2, 3])
        self.assertEqual(report.rejected_stale, [])
        self.assertEqual(report.failed, [])
        expected = aggregate([p for p in self.preview.proposals if p.target in report.applied])
        self.assertEqual(report.stats, expected)
        self.assertEqual(report.stats.updated_to_source, 1)
        self.assertEqual(report.stats.nullified_not_in_source, 1)

        self.assertEqual(self.store.value(2), "Second Class Lower")
        self.assertIsNone(self.store.value(3))
        self.assertEqual(report.after.kept_ok, 2)
        self.assertEqual(report.after.already_null, 1)
        self.assertEqual(report.after.updated_to_source, 0)
        self.assertEqual(report.after.nullified_not_in_source, 0)

    def test_dry_run_reports_the_same_without_writing(self):
        dry = _executor(self.store).apply(self.batch, self.external, dry_run=True)
        self.assertTrue(dry.dry_run)
        self.assertEqual(self.store.writes, [])
        self.assertEqual(dry.applied, [2, 3])
        self.assertIsNone(dry.after)

        real = _executor(self.store).apply(self.batch, self.external)
        self.assertEqual(dry.stats, real.stats)

    def test_changed_current_value_is_rejected_as_stale(self):
        # someone fills record 2 after the preview was rendered
        self.store.records[2] = replace(self.store.records[2], current_value="Third Class")
        report = _executor(self.store).apply(self.batch, self.external)

        self.assertEqual(report.rejected_stale, [2])
        self.assertIn("current value changed", report.stale_reasons[2])
        self.assertEqual(report.applied, [3])
        self.assertEqual(self.store.value(2), "Third Class")

    def test_changed_action_kind_is_rejected_as_stale(self):
        self.store.records[3] = replace(self.store.records[3], current_value=None)
        report = _executor(self.store).apply(self.batch, self.external)

        self.assertEqual(report.rejected_stale, [3])
        self.assertIn("proposal changed from nullify to keep", report.stale_reasons[3])
        self.assertEqual(report.applied, [2])

    def test_changed_source_value_is_rejected_as_stale(self):
        external = [ext("cs/19/001", "First Class"), ext("cs/19/002", "Pass")]
        report = _executor(self.store).apply(self.batch, external)
        self.assertEqual(report.rejected_stale, [2])
        self.assertIn("source value changed", report.stale_reasons[2])

    def test_record_turned_ambiguous_is_rejected(self):
        self.store.records[4] = InternalRecord(4, "ME/19/001", None)
        report = _executor(self.store).apply(self.batch, self.external)
        # EE/19/001 still has no source row, ME/19/001 does not change that
        self.assertEqual(sorted(report.applied), [2, 3])

        external = self.external + [ext("PH/19/001", "Pass")]
        store = FakeStore(self.internal + [InternalRecord(4, "ME/19/001", None)])
        batch = RemediationBatch([BatchItem(3, NULLIFY, expected_current="Second Class Upper")])
        report = _executor(store).apply(batch, external)
        self.assertEqual(report.rejected_stale, [3])
        self.assertIn("can no longer be reconciled", report.stale_reasons[3])

    def test_item_selected_twice_is_applied_once(self):
        item = self.batch.items[0]
        batch = RemediationBatch([item, item])
        report = _executor(self.store).apply(batch, self.external)
        self.assertEqual(report.applied, [2])
        self.assertEqual(report.rejected_stale, [2])
        self.assertEqual(len(self.store.writes), 1)

    def test_persistence_failure_is_reported_per_item(self):
        self.store.failures = {3: [PersistenceError(3, "disk full")]}
        report = _executor(self.store).apply(self.batch, self.external)

        self.assertEqual(report.applied, [2])
        self.assertEqual(report.failed, [(3, "disk full")])
        self.assertTrue(report.partial)
        self.assertEqual(self.store.attempts[3], 1)
        self.assertEqual(report.stats.nullified_not_in_source, 0)
        self.assertEqual(report.stats.updated_to_source, 1)

    def test_retryable_failures_are_retried_with_backoff(self):
        self.store.failures = {
            2: [PersistenceError(2, "locked", retryable=True), PersistenceError(2, "locked", retryable=True)]
        }
        sleep = MagicMock()
        report = _executor(self.store, sleep=sleep, max_retries=3, backoff_seconds=0.5).apply(self.batch, self.external)

        self.assertEqual(sorted(report.applied), [2, 3])
        self.assertEqual(self.store.attempts[2], 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.5, 1.0])

    def test_retries_exhausted_reports_failure(self):
        self.store.failures = {2: [PersistenceError(2, "locked", retryable=True)] * 5}
        report = _executor(self.store, max_retries=2).apply(self.batch, self.external)
        self.assertEqual(report.failed, [(2, "locked")])
        self.assertEqual(self.store.attempts[2], 2)

    def test_unexpected_store_errors_do_not_abort_the_batch(self):
        self.store.failures = {2: [RuntimeError("connection reset")]}
        report = _executor(self.store).apply(self.batch, self.external)
        self.assertEqual(report.failed, [(2, "RuntimeError: connection reset")])
        self.assertEqual(report.applied, [3])

    def test_cancelled_apply_writes_nothing_further(self):
        cancel = threading.Event()
        cancel.set()
        report = _executor(self.store).apply(self.batch, self.external, cancel_event=cancel)
        self.assertEqual(report.applied, [])
        self.assertEqual(sorted(report.cancelled), [2, 3])
        self.assertEqual(self.store.writes, [])
        self.assertTrue(report.partial)

    def test_override_value_is_written_instead_of_source_value(self):
        batch = RemediationBatch.from_proposals(self.preview.proposals, selected_ids=[2], overrides={2: "second class upper"})
        report = _executor(self.store).apply(batch, self.external)
        self.assertEqual(report.applied, [2])
        self.assertEqual(self.store.value(2), "Second Class Upper")

    def test_unknown_override_value_fails_the_item(self):
        batch = RemediationBatch.from_proposals(self.preview.proposals, selected_ids=[2], overrides={2: "Distinction"})
        report = _executor(self.store).apply(batch, self.external)
        self.assertEqual(report.applied, [])
        self.assertEqual(report.failed, [(2, "unknown class of degree 'Distinction'")])

    def test_every_outcome_is_audited(self):
        audit = MagicMock()
        self.store.records[2] = replace(self.store.records[2], current_value="Pass")
        _executor(self.store, audit=audit).apply(self.batch, self.external)
        actions = [(c.args[2], c.args[4]) for c in audit.call_args_list]
        self.assertIn(("remediate:stale", "rejected_stale"), actions)
        self.assertIn(("remediate:nullify", "applied"), actions)

    def test_audit_failure_still_returns_report(self):
        audit = MagicMock(side_effect=RuntimeError("audit db locked"))
        report = _executor(self.store, audit=audit).apply(self.batch, self.external)

        self.assertEqual(report.applied, [2, 3])
        self.assertIsNone(self.store.value(3))
        self.assertEqual(len(report.warnings), 2)
        self.assertIn("audit db locked", report.warnings[0])
        self.assertIsNotNone(report.after)

    def test_after_stats_failure_still_returns_report(self):
        before = self.store.load_internal_scope()
        with patch.object(self.store, "load_internal_scope", side_effect=[before, ConnectionError("store went away")]):
            report = _executor(self.store).apply(self.batch, self.external)

        self.assertEqual(report.applied, [2, 3])
        self.assertEqual(self.store.writes, [(2, "Second Class Lower"), (3, None)])
        self.assertIsNone(report.after)
        self.assertIn("store went away", report.warnings[0])
        self.assertEqual(report.stats.updated_to_source, 1)

    def test_service_apply_facade(self):
        report = apply(self.batch, self.external, self.store, dry_run=True, audit=None)
        self.assertEqual(report.applied, [2, 3])


def test_stale_reason_accepts_matching_snapshot():
    fresh = MagicMock(kind=UPDATE_TO_SOURCE, current_value=None, proposed_value="Pass")
    item = BatchItem(2, UPDATE_TO_SOURCE, expected_current=None, expected_value="Pass")
    assert stale_reason(item, fresh) is None
    assert stale_reason(item, None) is not None


def test_batch_rejects_keep_and_nullify_overrides():
    with pytest.raises(ValueError):
        RemediationBatch([BatchItem(1, "keep")])
    with pytest.raises(ValueError):
        RemediationBatch([BatchItem(1, NULLIFY, override_value="Pass")])
