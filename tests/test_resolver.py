import pytest
from sqlalchemy import func, select

from db.models import Company, CompanyAlias
from entities.normalize import normalize_identifier, normalize_name
from entities.resolver import DeterministicEntityResolver, EntityResolver, MatchType
from settings.errors import ValidationError


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Acme LLC", "ACME LLC"),
        ("  acme   llc. ", "ACME LLC"),
        ("A.C.M.E. Holdings, Inc.", "ACME HOLDINGS INC"),
        ("Smith-Jones & Co", "SMITH JONES CO"),
        ("O'Brien's Bakery", "OBRIENS BAKERY"),
        ("", ""),
    ],
)
def test_normalize_name(raw, expected):
    assert normalize_name(raw) == expected


def test_normalize_name_can_strip_suffixes():
    assert normalize_name("Acme, L.L.C.", strip_legal_suffixes=True) == "ACME"
    assert normalize_name("Acme Corporation", strip_legal_suffixes=True) == "ACME"
    # suffix words inside the name are kept
    assert normalize_name("Coastal Inc", strip_legal_suffixes=True) == "COASTAL"


def test_normalize_identifier():
    assert normalize_identifier("12-3456789") == "123456789"
    assert normalize_identifier(" 12 345 6789 ") == "123456789"
    assert normalize_identifier("--") is None
    assert normalize_identifier(None) is None


def test_deterministic_resolver_satisfies_protocol():
    assert isinstance(DeterministicEntityResolver(), EntityResolver)


@pytest.mark.asyncio
async def test_same_name_resolves_to_same_entity(session_factory, org):
    resolver = DeterministicEntityResolver()
    async with session_factory() as s:
        first = await resolver.resolve(s, org.id, "Acme LLC")
        second = await resolver.resolve(s, org.id, "ACME, llc")
        await s.commit()

    assert first.match is MatchType.CREATED
    assert second.match is MatchType.NORMALIZED_NAME
    assert first.entity_id == second.entity_id
    async with session_factory() as s:
        assert (await s.execute(select(func.count()).select_from(Company))).scalar_one() == 1
        alias = (await s.execute(select(CompanyAlias))).scalar_one()
        assert alias.normalized_alias == "ACME LLC"


@pytest.mark.asyncio
async def test_identifier_wins_over_name(session_factory, org):
    resolver = DeterministicEntityResolver()
    async with session_factory() as s:
        first = await resolver.resolve(s, org.id, "Acme LLC", "12-3456789")
        renamed = await resolver.resolve(s, org.id, "Acme Holdings Group", "123456789")
        await s.commit()

    assert renamed.match is MatchType.IDENTIFIER
    assert renamed.entity_id == first.entity_id


@pytest.mark.asyncio
async def test_identifier_is_backfilled_on_name_match(session_factory, org):
    resolver = DeterministicEntityResolver()
    async with session_factory() as s:
        created = await resolver.resolve(s, org.id, "Acme LLC")
        matched = await resolver.resolve(s, org.id, "Acme LLC", "12-3456789")
        await s.commit()

    assert matched.entity_id == created.entity_id
    async with session_factory() as s:
        company = await s.get(Company, created.entity_id)
    assert company.identifier == "123456789"


@pytest.mark.asyncio
async def test_alias_match(session_factory, org):
    resolver = DeterministicEntityResolver()
    async with session_factory() as s:
        created = await resolver.resolve(s, org.id, "Acme LLC")
        s.add(CompanyAlias(company_id=created.entity_id, org_id=org.id, alias_name="Acme Bakery", normalized_alias="ACME BAKERY"))
        await s.flush()
        matched = await resolver.resolve(s, org.id, "acme bakery")
        await s.commit()

    assert matched.match is MatchType.ALIAS
    assert matched.entity_id == created.entity_id


@pytest.mark.asyncio
async def test_entities_are_tenant_scoped(session_factory, org, other_org):
    resolver = DeterministicEntityResolver()
    async with session_factory() as s:
        ours = await resolver.resolve(s, org.id, "Acme LLC", "12-3456789")
        theirs = await resolver.resolve(s, other_org.id, "Acme LLC", "12-3456789")
        await s.commit()

    assert theirs.match is MatchType.CREATED
    assert ours.entity_id != theirs.entity_id


@pytest.mark.asyncio
async def test_blank_name_is_rejected(session_factory, org):
    async with session_factory() as s:
        with pytest.raises(ValidationError):
            await DeterministicEntityResolver().resolve(s, org.id, " ... ")


@pytest.mark.asyncio
async def test_company_routes(client, session_factory, org):
    async with session_factory() as s:
        created = await DeterministicEntityResolver().resolve(s, org.id, "Acme LLC")
        await s.commit()

    listing = (await client.get("/companies")).json()
    assert [c["normalized_legal_name"] for c in listing] == ["ACME LLC"]

    response = await client.post(f"/companies/{created.entity_id}/aliases", json={"alias_name": "Acme Bakery"})
    assert response.status_code == 201
    assert response.json()["normalized_alias"] == "ACME BAKERY"

    detail = (await client.get(f"/companies/{created.entity_id}")).json()
    assert {a["normalized_alias"] for a in detail["aliases"]} == {"ACME LLC", "ACME BAKERY"}

    assert (await client.post(f"/companies/{created.entity_id}/aliases", json={"alias_name": "!!"})).status_code == 400
