import uuid

import httpx
import pytest
from sqlalchemy import select

from conftest import seed_submission
from db.models import DispatchOutbox, DocumentType, File, Submission
from dispatch.clients import extract_job_id
from dispatch.dispatcher import extraction_target, resolve_document_type
from files.file_repo import FileRepo
from settings.config import settings
from settings.errors import ValidationError


async def _outbox(session_factory, file_id):
    async with session_factory() as s:
        return (await s.execute(select(DispatchOutbox).where(DispatchOutbox.file_id == file_id))).scalars().all()


async def _file(session_factory, file_id):
    async with session_factory() as s:
        return await s.get(File, file_id)


@pytest.mark.asyncio
async def test_enqueue_dispatches_to_extraction(client, session_factory, fake_services, org):
    submission, (file,) = await seed_submission(session_factory, org.id)

    response = await client.post("/files/enqueue", json={"file_id": str(file.id)})
    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "file_id": str(file.id)}

    assert fake_services.urls == [settings.EXTRACTION_STATEMENT_URL]
    sent = fake_services.requests[0]
    assert sent["file_id"] == str(file.id)
    assert sent["submission_id"] == str(submission.id)
    assert sent["tenant_id"] == str(org.id)
    assert sent["document_type"] == "bank_statement"
    assert sent["callback_url"].endswith("/webhooks/extraction")

    stored = await _file(session_factory, file.id)
    assert stored.status == "processing"
    assert stored.extraction_job_id == "job-1"
    assert stored.classification_type == "bank_statement"

    (row,) = await _outbox(session_factory, file.id)
    assert row.kind == "extraction"
    assert row.outcome == "reached"
    assert row.attempts == 1
    assert row.job_id == "job-1"

    async with session_factory() as s:
        assert (await s.get(Submission, submission.id)).status == "processing"


@pytest.mark.asyncio
async def test_document_type_hint_selects_application_service(client, session_factory, fake_services, org):
    _, (file,) = await seed_submission(session_factory, org.id)
    response = await client.post("/files/enqueue", json={"file_id": str(file.id), "document_type": "application"})
    assert response.status_code == 202
    assert fake_services.urls == [settings.EXTRACTION_APPLICATION_URL]
    assert (await _file(session_factory, file.id)).classification_type == "application"


@pytest.mark.asyncio
async def test_client_error_rejects_and_fails_file(client, session_factory, fake_services, org):
    fake_services.queue.append(httpx.Response(422, json={"error": "bad file_url"}))
    submission, (file,) = await seed_submission(session_factory, org.id)

    assert (await client.post("/files/enqueue", json={"file_id": str(file.id)})).status_code == 202

    stored = await _file(session_factory, file.id)
    assert stored.status == "failed"
    assert "rejected" in stored.error_text
    (row,) = await _outbox(session_factory, file.id)
    assert row.outcome == "rejected"
    assert row.attempts == 1
    async with session_factory() as s:
        sub = await s.get(Submission, submission.id)
    assert sub.status == "failed"
    assert sub.files_processed == 1


@pytest.mark.asyncio
async def test_unreachable_service_exhausts_budget(client, session_factory, fake_services, org):
    fake_services.fail_connect(settings.DISPATCH_MAX_ATTEMPTS)
    _, (file,) = await seed_submission(session_factory, org.id)

    assert (await client.post("/files/enqueue", json={"file_id": str(file.id)})).status_code == 202

    assert len(fake_services.requests) == settings.DISPATCH_MAX_ATTEMPTS
    stored = await _file(session_factory, file.id)
    assert stored.status == "failed"
    assert "unreachable" in stored.error_text
    (row,) = await _outbox(session_factory, file.id)
    assert row.outcome == "not_reached"
    assert row.attempts == settings.DISPATCH_MAX_ATTEMPTS
    assert "ConnectError" in row.last_error


@pytest.mark.asyncio
async def test_server_error_is_retried(client, session_factory, fake_services, org):
    fake_services.queue.append(httpx.Response(503, text="busy"))
    _, (file,) = await seed_submission(session_factory, org.id)

    assert (await client.post("/files/enqueue", json={"file_id": str(file.id)})).status_code == 202

    (row,) = await _outbox(session_factory, file.id)
    assert row.outcome == "reached"
    assert row.attempts == 2
    assert row.job_id == "job-2"
    assert (await _file(session_factory, file.id)).status == "processing"


@pytest.mark.asyncio
async def test_acknowledgement_does_not_overwrite_callback_job_id(session_factory, extraction_dispatcher, org):
    _, (file,) = await seed_submission(session_factory, org.id)

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        outbox_id = await extraction_dispatcher.prepare(s, f, DocumentType.BANK_STATEMENT)

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        f.extraction_job_id = "job-from-callback"
        await s.commit()

    async with session_factory() as s:
        await extraction_dispatcher.deliver(s, outbox_id)

    assert (await _file(session_factory, file.id)).extraction_job_id == "job-from-callback"


@pytest.mark.asyncio
async def test_deliver_is_idempotent_once_settled(session_factory, extraction_dispatcher, fake_services, org):
    _, (file,) = await seed_submission(session_factory, org.id)

    async with session_factory() as s:
        f = await FileRepo(s).get(file.id)
        outcome = await extraction_dispatcher.dispatch(s, f, DocumentType.BANK_STATEMENT)
    assert outcome.value == "reached"

    (row,) = await _outbox(session_factory, file.id)
    async with session_factory() as s:
        again = await extraction_dispatcher.deliver(s, row.id)
    assert again.value == "reached"
    assert len(fake_services.requests) == 1


@pytest.mark.asyncio
async def test_classifier_route_when_configured(client, session_factory, fake_services, org, monkeypatch):
    monkeypatch.setattr(settings, "CLASSIFIER_URL", "http://classifier.test/classify")
    _, (file,) = await seed_submission(session_factory, org.id)

    assert (await client.post("/files/enqueue", json={"file_id": str(file.id)})).status_code == 202

    assert fake_services.urls == ["http://classifier.test/classify"]
    assert "document_type" not in fake_services.requests[0]
    assert fake_services.requests[0]["callback_url"].endswith("/webhooks/classification")
    stored = await _file(session_factory, file.id)
    assert stored.status == "classifying"
    # the classifier's job id is not the extraction job id
    assert stored.extraction_job_id is None


@pytest.mark.asyncio
async def test_enqueue_errors(client, session_factory, org, other_org):
    assert (await client.post("/files/enqueue", json={})).status_code == 400
    assert (await client.post("/files/enqueue", json={"file_id": str(uuid.uuid4())})).status_code == 404

    _, (foreign,) = await seed_submission(session_factory, other_org.id)
    assert (await client.post("/files/enqueue", json={"file_id": str(foreign.id)})).status_code == 404

    _, (done,) = await seed_submission(session_factory, org.id, status="processed")
    response = await client.post("/files/enqueue", json={"file_id": str(done.id)})
    assert response.status_code == 409

    assert await _outbox(session_factory, done.id) == []


def test_extraction_target_rejects_other():
    assert extraction_target(DocumentType.MONTH_TO_DATE) == settings.EXTRACTION_STATEMENT_URL
    with pytest.raises(ValidationError):
        extraction_target(DocumentType.OTHER)


def test_resolve_document_type_order():
    file = File(classification_type="application")
    assert resolve_document_type(file, DocumentType.BANK_STATEMENT) is DocumentType.BANK_STATEMENT
    assert resolve_document_type(file, None) is DocumentType.APPLICATION
    assert resolve_document_type(File(), None) is DocumentType(settings.DEFAULT_DOCUMENT_TYPE)


@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(202, json={"job_id": "abc"}), "abc"),
        (httpx.Response(202, json={"id": 42}), "42"),
        (httpx.Response(202, json=["abc"]), None),
        (httpx.Response(202, text="accepted"), None),
    ],
)
def test_extract_job_id(response, expected):
    assert extract_job_id(response) == expected
