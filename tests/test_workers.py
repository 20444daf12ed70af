from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import seed_submission
from db.models import DispatchOutbox, DocumentType, File, Submission, utcnow
from dispatch.dispatcher import EXTRACTION
from files.file_repo import FileRepo
from workers.outbox_worker import redeliver_pending_dispatches
from workers.sweep_worker import TIMEOUT_ERROR, sweep_stuck_files
from workers.worker_config import WorkerSettings


@pytest.mark.asyncio
async def test_sweep_fails_only_stale_in_flight_files(session_factory, org):
    long_ago = utcnow() - timedelta(hours=3)
    stale_sub, (stale,) = await seed_submission(session_factory, org.id, status="processing", status_changed_at=long_ago)
    _, (fresh,) = await seed_submission(session_factory, org.id, status="processing")
    _, (waiting,) = await seed_submission(session_factory, org.id, status="uploaded", status_changed_at=long_ago)

    result = await sweep_stuck_files({})

    assert result == {"failed": 1}
    async with session_factory() as s:
        swept = await s.get(File, stale.id)
        assert swept.status == "failed"
        assert swept.error_text == TIMEOUT_ERROR
        assert (await s.get(File, fresh.id)).status == "processing"
        assert (await s.get(File, waiting.id)).status == "uploaded"
        sub = await s.get(Submission, stale_sub.id)
        assert sub.status == "failed"
        assert sub.files_processed == 1


@pytest.mark.asyncio
async def test_redelivery_sends_abandoned_rows(session_factory, extraction_dispatcher, fake_services, org):
    _, (abandoned, recent) = await seed_submission(session_factory, org.id, count=2)

    outbox_ids = []
    for f in (abandoned, recent):
        async with session_factory() as s:
            file = await FileRepo(s).get(f.id)
            outbox_ids.append(await extraction_dispatcher.prepare(s, file, DocumentType.BANK_STATEMENT))

    async with session_factory() as s:
        row = await s.get(DispatchOutbox, outbox_ids[0])
        row.created_at = utcnow() - timedelta(hours=1)
        await s.commit()

    result = await redeliver_pending_dispatches({}, dispatchers={EXTRACTION: extraction_dispatcher})

    assert result == {"redelivered": 1, "outcomes": {"reached": 1}, "reached": 1}
    assert [r["file_id"] for r in fake_services.requests] == [str(abandoned.id)]
    async with session_factory() as s:
        rows = (await s.execute(select(DispatchOutbox).order_by(DispatchOutbox.id))).scalars().all()
        assert [r.outcome for r in rows] == ["reached", "pending"]
        assert (await s.get(File, abandoned.id)).extraction_job_id == "job-1"


@pytest.mark.asyncio
async def test_redelivery_skips_unknown_kinds(session_factory, extraction_dispatcher, org):
    _, (f,) = await seed_submission(session_factory, org.id)
    async with session_factory() as s:
        file = await FileRepo(s).get(f.id)
        outbox_id = await extraction_dispatcher.prepare(s, file, DocumentType.BANK_STATEMENT)
    async with session_factory() as s:
        row = await s.get(DispatchOutbox, outbox_id)
        row.created_at = utcnow() - timedelta(hours=1)
        await s.commit()

    result = await redeliver_pending_dispatches({}, dispatchers={})

    assert result["redelivered"] == 1
    assert result["outcomes"] == {}


def test_worker_settings_register_jobs():
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {"redeliver_pending_dispatches", "sweep_stuck_files"}
    assert len(WorkerSettings.cron_jobs) == 2
