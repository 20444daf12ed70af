import uuid

import pytest
from sqlalchemy import select

from auth.api_keys import KEY_PREFIX_LENGTH, ApiKeyRepo
from auth.tables import UserTable
from auth.tenant import resolve_tenant
from conftest import pdf
from db.models import ApiKey, IngestionMethod, Submission
from settings.deps import get_tenant_context
from settings.errors import AuthorizationError


@pytest.mark.asyncio
async def test_api_key_resolves_to_its_organization(session_factory, org):
    async with session_factory() as s:
        key, raw = await ApiKeyRepo(s).issue(org.id, "scanner")
        await s.commit()

    assert raw.startswith("dpk_")
    assert key.key_prefix == raw[:KEY_PREFIX_LENGTH]
    assert key.key_hash != raw

    async with session_factory() as s:
        tenant = await resolve_tenant(s, api_key=raw)
    assert tenant.tenant_id == org.id
    assert tenant.api_key_id == key.id
    assert tenant.ingestion_method is IngestionMethod.API
    assert tenant.actor == f"api_key:{key.id}"

    async with session_factory() as s:
        assert (await s.get(ApiKey, key.id)).last_used_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("mangle", [lambda raw: raw + "x", lambda raw: raw[:-1], lambda raw: "dpk_short"])
async def test_wrong_api_key_is_401(session_factory, org, mangle):
    async with session_factory() as s:
        _, raw = await ApiKeyRepo(s).issue(org.id, "scanner")
        await s.commit()

    async with session_factory() as s:
        with pytest.raises(AuthorizationError) as exc:
            await resolve_tenant(s, api_key=mangle(raw))
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_revoked_api_key_is_401(session_factory, org):
    async with session_factory() as s:
        key, raw = await ApiKeyRepo(s).issue(org.id, "scanner")
        await ApiKeyRepo(s).revoke(org.id, key.id)
        await s.commit()

    async with session_factory() as s:
        with pytest.raises(AuthorizationError):
            await resolve_tenant(s, api_key=raw)


@pytest.mark.asyncio
async def test_api_key_wins_over_user(session_factory, org, other_org):
    async with session_factory() as s:
        _, raw = await ApiKeyRepo(s).issue(org.id, "scanner")
        await s.commit()

    user = UserTable(id=uuid.uuid4(), email="u@example.com", hashed_password="x", org_id=other_org.id)
    async with session_factory() as s:
        tenant = await resolve_tenant(s, user=user, api_key=raw)
    assert tenant.tenant_id == org.id


@pytest.mark.asyncio
async def test_user_credentials(session_factory, org):
    user = UserTable(id=uuid.uuid4(), email="u@example.com", hashed_password="x", org_id=org.id)
    async with session_factory() as s:
        tenant = await resolve_tenant(s, user=user)
        assert tenant.tenant_id == org.id
        assert tenant.ingestion_method is IngestionMethod.DASHBOARD

        with pytest.raises(AuthorizationError) as missing:
            await resolve_tenant(s)
        assert missing.value.status_code == 401

        orphan = UserTable(id=uuid.uuid4(), email="o@example.com", hashed_password="x", org_id=None)
        with pytest.raises(AuthorizationError) as no_org:
            await resolve_tenant(s, user=orphan)
        assert no_org.value.status_code == 403


@pytest.mark.asyncio
async def test_api_key_lifecycle_over_http(app, client, session_factory, org):
    issued = await client.post("/auth/api-keys", json={"name": "email gateway"})
    assert issued.status_code == 201
    raw = issued.json()["api_key"]
    key_id = issued.json()["id"]
    assert "api_key" not in (await client.get("/auth/api-keys")).json()[0]

    # from here on the tenant comes from the header
    app.dependency_overrides.pop(get_tenant_context)

    assert (await client.post("/submissions", json={"files": [pdf()]})).status_code == 401

    response = await client.post("/submissions", json={"files": [pdf()]}, headers={"X-API-Key": raw})
    assert response.status_code == 201
    async with session_factory() as s:
        submission = await s.get(Submission, uuid.UUID(response.json()["submission_id"]))
    assert submission.ingestion_method == "api"
    assert submission.org_id == org.id
    assert submission.created_by == f"api_key:{key_id}"

    revoked = await client.delete(f"/auth/api-keys/{key_id}", headers={"X-API-Key": raw})
    assert revoked.status_code == 200
    assert revoked.json()["revoked_at"] is not None

    after = await client.post("/submissions", json={"files": [pdf()]}, headers={"X-API-Key": raw})
    assert after.status_code == 401


@pytest.mark.asyncio
async def test_registered_user_gets_an_organization(app, client, session_factory):
    app.dependency_overrides.pop(get_tenant_context)

    registered = await client.post(
        "/auth/register",
        json={"email": "owner@example.com", "password": "correct horse", "organization_name": "Northwind Funding"},
    )
    assert registered.status_code == 201
    org_id = registered.json()["org_id"]
    assert org_id is not None

    login = await client.post("/auth/jwt/login", data={"username": "owner@example.com", "password": "correct horse"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    response = await client.post(
        "/submissions", json={"files": [pdf()]}, headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 201
    async with session_factory() as s:
        submission = await s.get(Submission, uuid.UUID(response.json()["submission_id"]))
        user = (await s.execute(select(UserTable).where(UserTable.email == "owner@example.com"))).scalar_one()
    assert str(submission.org_id) == org_id
    assert submission.created_by == f"user:{user.id}"
