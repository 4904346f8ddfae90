import pytest

from conftest import FakeStore, ext
from matric_recon.errors import InvalidTransition, SessionError
from matric_recon.models import RemediationBatch
from matric_recon.session import (
    Applied,
    Idle,
    PreviewReady,
    Previewing,
    ReconciliationSession,
    Selecting,
    resume_review,
    save_review,
)


def test_full_workflow(store, internal_records, external_records):
    session = ReconciliationSession()
    assert isinstance(session.state, Idle)

    result = session.run_preview("upload.csv", external_records, internal_records)
    assert isinstance(session.state, PreviewReady)
    assert session.state.source == "upload.csv"

    session.select(RemediationBatch.from_proposals(result.proposals, selected_ids=[2]))
    assert isinstance(session.state, Selecting)

    report = session.run_apply(store, audit=None)
    assert isinstance(session.state, Applied)
    assert report.applied == [2]
    assert store.value(2) == "Second Class Lower"

    # a new run can start from Applied
    session.start_preview("second.csv")
    assert isinstance(session.state, Previewing)


def test_cancel_returns_to_idle(internal_records, external_records):
    session = ReconciliationSession()
    session.run_preview("upload.csv", external_records, internal_records)
    session.cancel()
    assert isinstance(session.state, Idle)


def test_failed_extraction_returns_to_idle():
    session = ReconciliationSession()
    session.start_preview("broken.xlsx")
    session.preview_failed()
    assert isinstance(session.state, Idle)


def test_invalid_transitions(store, internal_records, external_records):
    session = ReconciliationSession()
    with pytest.raises(InvalidTransition):
        session.select(RemediationBatch([]))
    with pytest.raises(InvalidTransition):
        session.cancel()

    session.run_preview("upload.csv", external_records, internal_records)
    with pytest.raises(InvalidTransition, match="cannot apply while PreviewReady"):
        session.run_apply(store)
    with pytest.raises(InvalidTransition):
        session.start_preview("other.csv")


def test_save_and_resume_review(db, store, internal_records, external_records):
    session = ReconciliationSession(session_id="review-1")
    with pytest.raises(InvalidTransition):
        save_review(session)

    result = session.run_preview("upload.csv", external_records, internal_records)
    save_review(session)

    resumed = resume_review("review-1")
    assert isinstance(resumed.state, PreviewReady)
    assert resumed.state.source == "upload.csv"
    assert resumed.state.result.proposals == result.proposals
    assert resumed.state.result.stats == result.stats
    assert list(resumed.state.external) == list(external_records)

    resumed.select(RemediationBatch.from_proposals(resumed.state.result.proposals))
    report = resumed.run_apply(store, audit=None)
    assert sorted(report.applied) == [2, 3]


def test_resume_unknown_review(db):
    with pytest.raises(SessionError):
        resume_review("missing")


def test_failed_apply_does_not_leave_session_applying(internal_records, external_records):
    class BrokenStore(FakeStore):
        def load_internal_scope(self, scope="all"):
            raise ConnectionError("store went away")

    store = BrokenStore(internal_records)
    session = ReconciliationSession()
    result = session.run_preview("upload.csv", external_records, internal_records)
    session.select(RemediationBatch.from_proposals(result.proposals))

    report = session.run_apply(store, audit=None)

    assert isinstance(session.state, Applied)
    assert session.state.report is report
    assert report.applied == []
    assert [t for t, _ in report.failed] == [2, 3]
    assert "store went away" in report.failed[0][1]
    assert store.writes == []

    session.start_preview("upload.csv")
    assert isinstance(session.state, Previewing)
