import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from db.models import Organization, Submission
from db.postgres import get_async_session, is_transient_db_error, store_errors_as_transient
from settings.errors import TransientError


@pytest.mark.asyncio
async def test_session_dependency_uses_configured_factory(session_factory, org):
    sessions = get_async_session()
    session = await sessions.__anext__()
    try:
        assert (await session.get(Organization, org.id)).name == "Acme Lending"
    finally:
        await sessions.aclose()


@pytest.mark.asyncio
async def test_processed_count_cannot_exceed_total(session_factory, org):
    async with session_factory() as s:
        s.add(Submission(org_id=org.id, files_total=1, files_processed=2))
        with pytest.raises(IntegrityError):
            await s.commit()


def test_transient_classification():
    operational = OperationalError("SELECT 1", {}, Exception("connection reset"))
    integrity = IntegrityError("INSERT", {}, Exception("duplicate key"))
    assert is_transient_db_error(operational)
    assert not is_transient_db_error(integrity)


@pytest.mark.asyncio
async def test_store_errors_become_transient():
    with pytest.raises(TransientError) as exc:
        async with store_errors_as_transient():
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))
    assert exc.value.retryable

    with pytest.raises(IntegrityError):
        async with store_errors_as_transient():
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))


@pytest.mark.asyncio
async def test_savepoints_roll_back_independently(session_factory, org):
    async with session_factory() as s:
        try:
            async with s.begin_nested():
                s.add(Submission(org_id=org.id, files_total=0, files_processed=5))
                await s.flush()
        except IntegrityError:
            pass
        s.add(Submission(org_id=org.id, files_total=1))
        await s.commit()

    async with session_factory() as s:
        count = (await s.execute(text("SELECT count(*) FROM submissions"))).scalar_one()
    assert count == 1
