"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
import httpx
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from models.base import Base
from core.config import Settings
from migration.rate_limiter import RateLimiter
from migration.retry import RetryPolicy
from migration.paginator import SourcePaginator
from migration.identity_map import IdentityMap, MappingStore
from typing import Any, Dict, List, Optional

# In-memory database shared by every session of one test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SOURCE_API_URL = "https://source.test/api/1.1/obj"


async def _no_sleep(delay: float) -> None:
    return None


def no_wait_policy(max_attempts: int = 3) -> RetryPolicy:
    """Retry policy that never actually sleeps"""
    return RetryPolicy(max_attempts=max_attempts, backoff=lambda attempt: 0.0, sleep=_no_sleep)


class FakeSourceAPI:
    """
    In-process stand-in for the record API.

    Serves `GET /{entity}` with cursor/limit pagination over the records
    registered with `add`. `fail` queues HTTP statuses to return (in order)
    before an entity serves data again; `fail_always` makes an entity
    return the same status forever.
    """

    def __init__(self, base_url: str = SOURCE_API_URL):
        self.base_url = base_url
        self.records: Dict[str, List[Dict[str, Any]]] = {}
        self.queued_failures: Dict[str, List[int]] = {}
        self.permanent_failures: Dict[str, int] = {}
        self.requests: List[httpx.Request] = []

    def add(self, entity: str, records: List[Dict[str, Any]]) -> "FakeSourceAPI":
        self.records.setdefault(entity, []).extend(records)
        return self

    def fail(self, entity: str, *statuses: int) -> "FakeSourceAPI":
        self.queued_failures.setdefault(entity, []).extend(statuses)
        return self

    def fail_always(self, entity: str, status: int) -> "FakeSourceAPI":
        self.permanent_failures[entity] = status
        return self

    def requests_for(self, entity: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.rstrip("/").endswith(f"/{entity}")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entity = request.url.path.rstrip("/").rsplit("/", 1)[-1]

        if entity in self.permanent_failures:
            return httpx.Response(self.permanent_failures[entity], json={"error": "failure"})
        queued = self.queued_failures.get(entity)
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "failure"})

        records = self.records.get(entity, [])
        cursor = int(request.url.params.get("cursor", 0))
        limit = int(request.url.params.get("limit", 100))
        page = records[cursor:cursor + limit]
        remaining = max(len(records) - cursor - len(page), 0)
        return httpx.Response(200, json={
            "response": {"cursor": cursor, "results": page, "count": len(page), "remaining": remaining}
        })

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: no rate limiting, no backoff, small batches"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        SOURCE_API_URL=SOURCE_API_URL,
        SOURCE_API_TOKEN="test-token",
        SOURCE_PAGE_SIZE=2,
        SOURCE_MIN_REQUEST_INTERVAL=0.0,
        SOURCE_MAX_ATTEMPTS=3,
        SOURCE_RETRY_BACKOFF=0.0,
        STORE_MAX_ATTEMPTS=2,
        STORE_RETRY_BACKOFF=0.0,
        BATCH_SIZE=100,
        TRANSFORM_CONCURRENCY=4,
        PROGRESS_EVERY_BATCHES=1,
    )


@pytest.fixture
def fake_source() -> FakeSourceAPI:
    return FakeSourceAPI()


@pytest_asyncio.fixture
async def source_client(fake_source):
    client = fake_source.client()
    yield client
    await client.aclose()


@pytest.fixture
def make_paginator(source_client):
    """Build a SourcePaginator over the fake source"""
    def build(page_size: int = 2, max_attempts: int = 3, api_token: Optional[str] = "test-token") -> SourcePaginator:
        return SourcePaginator(
            base_url=SOURCE_API_URL,
            api_token=api_token,
            rate_limiter=RateLimiter(0.0),
            retry_policy=no_wait_policy(max_attempts),
            page_size=page_size,
            client=source_client
        )
    return build


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,  # one connection, so every session sees the same in-memory database
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def questionnaire_dataset() -> Dict[str, List[Dict[str, Any]]]:
    """
    A small legacy dataset covering every entity type.

    Sheets sh1 and sh2 are two revisions of "Widget A" (sh2 is latest).
    Answers exercise every projection outcome: a superseded scalar, a stale
    tabular row, two latest tabular rows, a placeholder and a missing sheet.
    One request and one sheet status hang off the migrated sheets.
    """
    return {
        "company": [
            {"_id": "c1", "Name": "Acme", "EmailSuffix": "acme.com", "Modified Date": "2024-01-01T00:00:00Z"},
            {"_id": "c2", "Name": " ", "Active": False},
        ],
        "user": [
            {
                "_id": "u1",
                "authentication": {"email": {"email": "Ann@Acme.com"}},
                "First name": "Ann",
                "Last name": "Lee",
                "user-type": "Supplier",
                "Company": "c1",
            },
        ],
        "section": [
            {"_id": "s1", "Name": "General", "Order": 1, "Created By": "u1"},
        ],
        "subsection": [
            {"_id": "ss1", "Name": "Identity", "Order": 1.4, "Section": "s1"},
        ],
        "tag": [
            {"_id": "t1", "Name": "HQ", "Description": "Headquarters"},
        ],
        "question": [
            {
                "_id": "q1", "Name": "Employees", "Content": "How many employees?", "Type": "Number",
                "Order": 1, "Required": True, "Parent Section": "s1", "Parent Subsection": "ss1", "Tags": ["t1"],
            },
            {
                "_id": "q2", "Name": "Substances", "Content": "List substances", "Type": "List table",
                "Order": 2, "Parent Section": "s1", "Parent Subsection": "ss1",
            },
            {
                "_id": "q3", "Name": "Certified", "Content": "Certified?", "Type": "Dropdown",
                "Order": 3, "Parent Section": "s1",
            },
        ],
        "choice": [
            {"_id": "ch1", "Content": "Yes", "Order": 1, "Parent Question": "q3"},
            {"_id": "ch2", "Content": "No", "Order": 2, "Parent Question": "q3"},
        ],
        "listtablecolumn": [
            {"_id": "col1", "Name": "Substance", "Order": 1, "Response type": "text", "Parent Question": "q2"},
        ],
        "sheet": [
            {"_id": "sh1", "Name": "Widget A", "Company": "c1", "Modified Date": "2024-01-01T00:00:00Z", "tags": ["t1"]},
            {"_id": "sh2", "Name": "widget a ", "Company": "c1", "Modified Date": "2024-03-01T00:00:00Z"},
            {"_id": "sh3", "Name": "Gadget", "Company": "c2", "Modified Date": "2024-02-01T00:00:00Z"},
        ],
        "answer": [
            {"_id": "a1", "Sheet": "sh1", "Parent Question": "q1", "Number": 10, "Modified Date": "2024-01-02T00:00:00Z"},
            {"_id": "a2", "Sheet": "sh2", "Parent Question": "q1", "Number": 12, "Modified Date": "2024-03-02T00:00:00Z"},
            {"_id": "a3", "Sheet": "sh1", "Parent Question": "q2", "List Table Row": "r1",
             "List Table Column": "col1", "text": "X", "Modified Date": "2024-01-02T00:00:00Z"},
            {"_id": "a4", "Sheet": "sh2", "Parent Question": "q2", "List Table Row": "r1",
             "List Table Column": "col1", "text": "Y", "List of Text Choices": ["Lead", " ", "Tin"],
             "Modified Date": "2024-03-02T00:00:00Z"},
            {"_id": "a5", "Sheet": "sh2", "Parent Question": "q2", "List Table Row": "r2",
             "List Table Column": "col1", "text": "Z", "Modified Date": "2024-03-02T00:00:00Z"},
            {"_id": "a6", "Sheet": "sh3", "Parent Question": "q1", "text": "N/A", "Modified Date": "2024-02-02T00:00:00Z"},
            {"_id": "a7", "Sheet": "sh-missing", "Parent Question": "q1", "text": "orphan"},
            {"_id": "a8", "Sheet": "sh3", "Parent Question": "q3", "Choice": "ch1", "Shareable with": ["c1", "c-unknown"],
             "Modified Date": "2024-02-02T00:00:00Z"},
        ],
        "request": [
            {
                "_id": "rq1", "Product name": "Widget A", "Requesting company": "c2", "Supplier ": "c1",
                "Sheet": "sh1", "Processed": True, "Created By": "u1", "tags": ["t1", "t-unknown"],
            },
        ],
        "sheetstatuses": [
            {
                "_id": "st1", "Sheet Name": "Widget A", "Sheet": "sh2", "Company": "c1", "Supplier": "c2",
                "Status": "Submitted", "Completed": True, "Version": 2, "Reminders count": 3,
            },
        ],
    }


@pytest.fixture
def loaded_source(fake_source, questionnaire_dataset) -> "FakeSourceAPI":
    for entity, records in questionnaire_dataset.items():
        fake_source.add(entity, records)
    return fake_source


class InMemoryMappingStore(MappingStore):
    """MappingStore backed by a dict; counts round trips to the store"""

    def __init__(self):
        self.entries: Dict[str, Dict[str, str]] = {}
        self.fetch_calls = 0

    async def fetch(self, entity_type, external_ids):
        self.fetch_calls += 1
        bucket = self.entries.get(entity_type, {})
        return {x: bucket[x] for x in external_ids if x in bucket}

    async def fetch_all(self, entity_type):
        self.fetch_calls += 1
        return dict(self.entries.get(entity_type, {}))

    async def upsert(self, entity_type, entries):
        self.entries.setdefault(entity_type, {}).update(dict(entries))

    async def delete_type(self, entity_type):
        return len(self.entries.pop(entity_type, {}))

    async def delete(self, entity_type, external_ids):
        bucket = self.entries.get(entity_type, {})
        return sum(1 for x in set(external_ids) if bucket.pop(x, None) is not None)


@pytest.fixture
def mapping_store() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture
def identity_map(mapping_store) -> IdentityMap:
    return IdentityMap(mapping_store)
