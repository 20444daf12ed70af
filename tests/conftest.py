import os
import sys

# Provide required secrets and fast retry settings for tests if not already set
os.environ.setdefault("ENV_SECRET", "test-secret")
os.environ.setdefault("ENV_RESET_PASSWORD_TOKEN_SECRET", "test-reset-secret")
os.environ.setdefault("ENV_VERIFICATION_TOKEN_SECRET", "test-verify-secret")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("DISPATCH_BACKOFF_SECONDS", "0")
os.environ.setdefault("CALLBACK_BACKOFF_SECONDS", "0")

# Ensure project root is on sys.path so the top-level packages resolve
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import json
import time
import uuid
from typing import Any, Callable, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import auth.tables  # noqa: F401  registers the users table
from auth.tenant import TenantContext
from db.models import Base, Organization
from db.postgres import set_session_factory
from dispatch.clients import ServiceClient
from dispatch.dispatcher import ClassificationDispatcher, ExtractionDispatcher
from dispatch.enqueue import EnqueueService, get_enqueue_service
from entities.resolver import DeterministicEntityResolver
from metrics.aggregator import get_state_machine
from settings.config import settings
from settings.deps import get_tenant_context
from webhooks.callback_processor import CallbackProcessor, ClassificationCallbackProcessor
from webhooks.webhook_routes import get_callback_processor, get_classification_processor


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    # background tasks and workers open their own sessions through this factory
    set_session_factory(factory)
    yield factory


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def org(session_factory):
    async with session_factory() as s:
        organization = Organization(name="Acme Lending")
        s.add(organization)
        await s.commit()
    return organization


@pytest_asyncio.fixture
async def other_org(session_factory):
    async with session_factory() as s:
        organization = Organization(name="Other Lender")
        s.add(organization)
        await s.commit()
    return organization


@pytest.fixture
def tenant(org) -> TenantContext:
    return TenantContext(tenant_id=org.id, user_id=uuid.uuid4())


class FakeServices:
    """
    Stand-in for the classifier and extraction services behind httpx.MockTransport.

    Queued responses (or exceptions) are consumed first; afterwards every call is acknowledged.
    """

    def __init__(self) -> None:
        self.requests: List[dict] = []
        self.urls: List[str] = []
        self.queue: List[Any] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.urls.append(str(request.url))
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return httpx.Response(202, json={"job_id": f"job-{len(self.requests)}"})

    def fail_connect(self, times: int) -> None:
        for _ in range(times):
            self.queue.append(httpx.ConnectError("connection refused"))


@pytest_asyncio.fixture
async def fake_services():
    services = FakeServices()
    yield services


@pytest_asyncio.fixture
async def service_client(fake_services):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_services.handler))
    yield ServiceClient(http=http)
    await http.aclose()


@pytest.fixture
def state_machine():
    return get_state_machine()


@pytest.fixture
def extraction_dispatcher(state_machine, service_client) -> ExtractionDispatcher:
    return ExtractionDispatcher(state_machine, client=service_client, backoff_seconds=0)


@pytest.fixture
def classification_dispatcher(state_machine, service_client) -> ClassificationDispatcher:
    return ClassificationDispatcher(state_machine, client=service_client, backoff_seconds=0)


@pytest.fixture
def callback_processor(state_machine) -> CallbackProcessor:
    return CallbackProcessor(state_machine, DeterministicEntityResolver(), backoff_seconds=0)


@pytest_asyncio.fixture
async def app(session_factory, tenant, extraction_dispatcher, classification_dispatcher, callback_processor, state_machine):
    from main import app as fastapi_app

    fastapi_app.dependency_overrides[get_tenant_context] = lambda: tenant
    fastapi_app.dependency_overrides[get_enqueue_service] = lambda: EnqueueService(
        classification_dispatcher, extraction_dispatcher
    )
    fastapi_app.dependency_overrides[get_callback_processor] = lambda: callback_processor
    fastapi_app.dependency_overrides[get_classification_processor] = lambda: ClassificationCallbackProcessor(
        state_machine, extraction_dispatcher, backoff_seconds=0
    )
    yield fastapi_app
    fastapi_app.dependency_overrides = {}


@pytest_asyncio.fixture
async def client(app):
    # ASGITransport returns only after background tasks finish, in this event loop
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def webhook_headers(secret: Optional[str] = None, timestamp_ms: Optional[int] = None) -> dict:
    return {
        "X-Webhook-Secret": settings.WEBHOOK_SECRET if secret is None else secret,
        "X-Webhook-Timestamp": str(int(time.time() * 1000) if timestamp_ms is None else timestamp_ms),
    }


def pdf(name: str = "statement.pdf", size: int = 2048) -> dict:
    return {"name": name, "size": size, "mime_type": "application/pdf"}


def statement_callback(
    file_id: Any,
    submission_id: Any,
    tenant_id: Any,
    job_id: str = "job-1",
    opening: Any = "100.00",
    closing: Any = "150.00",
    transactions: Optional[List[dict]] = None,
    **summary: Any,
) -> dict:
    if transactions is None:
        transactions = [{"date": "2024-01-15", "amount": 50.00, "description": "STRIPE TRANSFER", "balance": 150.00}]
    return {
        "file_id": str(file_id),
        "submission_id": str(submission_id),
        "tenant_id": str(tenant_id),
        "document_type": "bank_statement",
        "job_id": job_id,
        "status": "succeeded",
        "extraction_payload": {
            "summary": {
                "account_number": "000123456789",
                "bank_name": "First Bank",
                "account_holder": "Acme LLC",
                "start_balance": opening,
                "end_balance": closing,
                "statement_start_date": "2024-01-01",
                "statement_end_date": "2024-01-31",
                **summary,
            },
            "transactions": transactions,
        },
    }


def application_callback(
    file_id: Any,
    submission_id: Any,
    tenant_id: Any,
    legal_name: str = "Acme LLC",
    job_id: str = "job-1",
    identifier: Optional[str] = None,
    owner_2: Optional[dict] = None,
) -> dict:
    payload: dict = {
        "company": {"legal_name": legal_name, "identifier": identifier, "industry": "Retail"},
        "funding": {"amount_requested": "50,000.00", "loan_purpose": "Inventory"},
        "owner_1": {"first_name": "Alex", "last_name": "Rivera", "ownership_pct": 60, "date_of_birth": "1980-04-02"},
        "confidence_score": 0.92,
        "uncertain_fields": ["company.industry"],
    }
    if owner_2 is not None:
        payload["owner_2"] = owner_2
    return {
        "file_id": str(file_id),
        "submission_id": str(submission_id),
        "tenant_id": str(tenant_id),
        "document_type": "application",
        "job_id": job_id,
        "status": "succeeded",
        "extraction_payload": payload,
    }


@pytest.fixture
def make_submission(client) -> Callable:
    async def _make(*files: dict) -> dict:
        response = await client.post("/submissions", json={"files": list(files) or [pdf()]})
        assert response.status_code == 201, response.text
        return response.json()

    return _make


async def seed_submission(session_factory, tenant_id, count: int = 1, status: str = "uploaded", **file_fields: Any):
    """Insert a submission with ``count`` files directly, bypassing intake."""
    from db.models import File, Submission
    from intake_service.intake_repo import build_storage_path

    async with session_factory() as s:
        submission = Submission(org_id=tenant_id, files_total=count, files_processed=0)
        s.add(submission)
        await s.flush()
        files = []
        for i in range(count):
            file_id = uuid.uuid4()
            files.append(
                File(
                    id=file_id,
                    submission_id=submission.id,
                    org_id=tenant_id,
                    filename=f"doc-{i}.pdf",
                    storage_path=build_storage_path(tenant_id, submission.id, file_id),
                    file_size_bytes=1024,
                    status=status,
                    **file_fields,
                )
            )
        s.add_all(files)
        await s.commit()
    return submission, files
