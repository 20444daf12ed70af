import uuid

import pytest
from sqlalchemy import select

from conftest import pdf
from db.models import AuditLog, File, Submission
from intake_service.intake_repo import build_storage_path
from intake_service.intake_service import IntakeService
from intake_service.models import IntakeRequest
from settings.errors import ValidationError


@pytest.mark.asyncio
async def test_create_submission_registers_files(client, session_factory, tenant):
    response = await client.post(
        "/submissions",
        json={"files": [pdf("jan.pdf"), pdf("feb.pdf"), pdf("application.pdf", size=10)]},
    )
    assert response.status_code == 201
    body = response.json()
    submission_id = uuid.UUID(body["submission_id"])
    assert len(body["file_maps"]) == 3
    assert [m["filename"] for m in body["file_maps"]] == ["jan.pdf", "feb.pdf", "application.pdf"]

    for file_map in body["file_maps"]:
        file_id = uuid.UUID(file_map["file_id"])
        assert file_map["storage_path"] == build_storage_path(tenant.tenant_id, submission_id, file_id)
        # no bucket configured in tests
        assert file_map["upload_url"] is None

    async with session_factory() as s:
        submission = await s.get(Submission, submission_id)
        assert submission.status == "pending"
        assert submission.files_total == 3
        assert submission.files_processed == 0
        assert submission.org_id == tenant.tenant_id
        assert submission.ingestion_method == "dashboard"

        files = (await s.execute(select(File).where(File.submission_id == submission_id))).scalars().all()
        assert {f.status for f in files} == {"uploaded"}
        assert all(f.org_id == tenant.tenant_id for f in files)

        audit = (await s.execute(select(AuditLog).where(AuditLog.resource_id == str(submission_id)))).scalar_one()
        assert audit.action == "submission.created"
        assert audit.details["file_count"] == 3


@pytest.mark.asyncio
async def test_explicit_ingestion_method_is_kept(client, session_factory):
    response = await client.post("/submissions", json={"files": [pdf()], "ingestion_method": "email"})
    assert response.status_code == 201
    async with session_factory() as s:
        submission = await s.get(Submission, uuid.UUID(response.json()["submission_id"]))
    assert submission.ingestion_method == "email"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "files",
    [
        [],
        [{"name": "scan.png", "size": 100, "mime_type": "image/png"}],
        [{"name": "empty.pdf", "size": 0, "mime_type": "application/pdf"}],
        [{"name": "", "size": 10, "mime_type": "application/pdf"}],
        [pdf("ok.pdf"), {"name": "huge.pdf", "size": 10**12, "mime_type": "application/pdf"}],
    ],
)
async def test_invalid_batches_are_rejected_whole(client, session_factory, files):
    response = await client.post("/submissions", json={"files": files})
    assert response.status_code == 400
    async with session_factory() as s:
        assert (await s.execute(select(Submission))).first() is None
        assert (await s.execute(select(File))).first() is None


@pytest.mark.asyncio
async def test_malformed_body_is_400(client):
    response = await client.post("/submissions", json={"files": [{"name": "a.pdf"}]})
    assert response.status_code == 400


def test_mime_type_parameters_are_ignored():
    request = IntakeRequest.model_validate(
        {"files": [{"name": " a.pdf ", "size": 5, "mime_type": "Application/PDF; charset=binary"}]}
    )
    IntakeService().validate(request)
    assert request.files[0].name == "a.pdf"
    assert request.files[0].mime_type == "application/pdf"


def test_too_many_files(monkeypatch):
    from settings.config import settings

    monkeypatch.setattr(settings, "INTAKE_MAX_FILES", 2)
    request = IntakeRequest(files=[pdf(f"{i}.pdf") for i in range(3)])
    with pytest.raises(ValidationError):
        IntakeService().validate(request)


@pytest.mark.asyncio
async def test_submission_of_other_tenant_is_not_found(client, session_factory, other_org):
    async with session_factory() as s:
        foreign = Submission(org_id=other_org.id, files_total=0)
        s.add(foreign)
        await s.commit()

    response = await client.get(f"/submissions/{foreign.id}")
    assert response.status_code == 404
    assert response.json()["detail"] == "Submission not found"
