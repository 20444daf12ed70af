import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import seed_submission, statement_callback, webhook_headers
from db.models import Account, File, FileStatus, Statement, Submission, SubmissionMetrics, Transaction
from files.file_repo import FileRepo
from files.state_machine import ALLOWED_TRANSITIONS, TERMINAL_STATES, FileStateMachine, can_transition
from settings.errors import ConflictError


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert ALLOWED_TRANSITIONS[state] == frozenset()


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (FileStatus.UPLOADED, FileStatus.CLASSIFYING, True),
        (FileStatus.UPLOADED, FileStatus.PROCESSING, True),
        (FileStatus.CLASSIFYING, FileStatus.CLASSIFIED, True),
        (FileStatus.CLASSIFIED, FileStatus.PROCESSING, True),
        (FileStatus.PROCESSING, FileStatus.PROCESSED, True),
        (FileStatus.PROCESSING, FileStatus.FAILED, True),
        (FileStatus.UPLOADED, FileStatus.PROCESSED, False),
        (FileStatus.CLASSIFYING, FileStatus.PROCESSING, False),
        (FileStatus.PROCESSED, FileStatus.FAILED, False),
        (FileStatus.FAILED, FileStatus.PROCESSING, False),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.asyncio
async def test_every_non_terminal_state_can_fail():
    for state in FileStatus:
        if state not in TERMINAL_STATES:
            assert can_transition(state, FileStatus.FAILED)


@pytest.mark.asyncio
async def test_transition_runs_handlers_and_stamps_times(session_factory, org):
    seen = []

    async def handler(session, file):
        seen.append(file.status)

    machine = FileStateMachine(handlers=[handler])
    _, (file,) = await seed_submission(session_factory, org.id)

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        await machine.transition(s, f, FileStatus.PROCESSING)
        assert f.processing_started_at is not None
        await machine.transition(s, f, FileStatus.PROCESSED)
        assert f.processing_completed_at is not None
        await s.commit()

    assert seen == ["processing", "processed"]


@pytest.mark.asyncio
async def test_illegal_transition_raises_and_writes_nothing(session_factory, org):
    machine = FileStateMachine()
    _, (file,) = await seed_submission(session_factory, org.id, status="processed")

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        with pytest.raises(ConflictError):
            await machine.transition(s, f, FileStatus.PROCESSING)
        await s.rollback()

    async with session_factory() as s:
        assert (await s.get(File, file.id)).status == "processed"


@pytest.mark.asyncio
async def test_classified_records_label_and_confidence(session_factory, org):
    machine = FileStateMachine()
    _, (file,) = await seed_submission(session_factory, org.id, status="classifying")

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        await machine.transition(s, f, FileStatus.CLASSIFIED, classification="application", confidence=0.876)
        await s.commit()

    async with session_factory() as s:
        f = await s.get(File, file.id)
        assert f.classification_type == "application"
        assert float(f.classification_confidence) == pytest.approx(0.88)


@pytest.mark.asyncio
async def test_fail_sets_error_text_and_updates_submission(session_factory, state_machine, org):
    submission, files = await seed_submission(session_factory, org.id, count=2)

    async with session_factory() as s:
        f = await FileRepo(s).get(files[0].id)
        await state_machine.fail(s, f, "boom")
        await s.commit()

    async with session_factory() as s:
        f = await s.get(File, files[0].id)
        assert f.status == "failed"
        assert f.error_text == "boom"
        sub = await s.get(Submission, submission.id)
        assert sub.files_processed == 1
        assert sub.status == "processing"


@pytest.mark.asyncio
async def test_reset_for_reprocessing_clears_derived_rows(client, session_factory, org):
    submission = (await client.post("/submissions", json={"files": [{"name": "s.pdf", "size": 9, "mime_type": "application/pdf"}]})).json()
    file_id = submission["file_maps"][0]["file_id"]
    assert (await client.post("/files/enqueue", json={"file_id": file_id})).status_code == 202

    callback = statement_callback(file_id, submission["submission_id"], org.id, job_id="job-1")
    assert (await client.post("/webhooks/extraction", json=callback, headers=webhook_headers())).status_code == 202

    response = await client.post(f"/files/{file_id}/reprocess")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "classified"
    assert body["extraction_job_id"] is None

    async with session_factory() as s:
        assert (await s.execute(select(Statement))).first() is None
        assert (await s.execute(select(Transaction))).first() is None
        sub = await s.get(Submission, uuid.UUID(submission["submission_id"]))
        assert sub.files_processed == 0
        assert sub.status == "processing"
        assert (await s.execute(select(Account))).first() is None
        metrics = await s.get(SubmissionMetrics, sub.id)
        assert metrics.account_count == 0
        assert metrics.statement_count == 0


@pytest.mark.asyncio
async def test_reprocess_rederives_shared_account(client, session_factory, org):
    submission, (jan_file, feb_file) = await seed_submission(session_factory, org.id, count=2)
    for f in (jan_file, feb_file):
        assert (await client.post("/files/enqueue", json={"file_id": str(f.id)})).status_code == 202
    jan = statement_callback(jan_file.id, submission.id, org.id, job_id="job-1")
    feb = statement_callback(
        feb_file.id,
        submission.id,
        org.id,
        job_id="job-2",
        opening="150.00",
        closing="120.00",
        transactions=[{"date": "2024-02-10", "amount": -30, "description": "ADP PAYROLL", "balance": 120}],
    )
    for payload in (jan, feb):
        await client.post("/webhooks/extraction", json=payload, headers=webhook_headers())

    assert (await client.post(f"/files/{feb_file.id}/reprocess")).status_code == 200

    async with session_factory() as s:
        (account,) = (await s.execute(select(Account))).scalars().all()
        assert account.latest_balance == Decimal("150.00")
        assert account.last_transaction_date.isoformat() == "2024-01-15"
        metrics = await s.get(SubmissionMetrics, submission.id)
        assert metrics.account_count == 1
        assert metrics.statement_count == 1
        assert metrics.total_transactions == 1


@pytest.mark.asyncio
async def test_reprocess_rejects_in_flight_file(client, session_factory, org):
    _, (file,) = await seed_submission(session_factory, org.id, status="processing")
    response = await client.post(f"/files/{file.id}/reprocess")
    assert response.status_code == 409
