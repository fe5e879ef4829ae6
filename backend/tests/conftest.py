import os

import httpx
import pytest
from redis.exceptions import RedisError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.domain.models  # noqa: F401
from app.core.security import encrypt_secret
from app.domain.models.social_account import SocialAccount
from app.domain.thread_chain import Credentials
from app.infrastructure.db.base import Base
from app.integrations.threads.publisher import ThreadsPublisher

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
THREADS_TEST_BASE_URL = "https://graph.threads.test/v1.0"
TEST_SOCIAL_ID = "1789"
TEST_ACCESS_TOKEN = "threads-access-token"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeThreadsApi:
    """In-memory stand-in for the Threads Graph API, served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.publish_failures_remaining = 0
        self.malformed_publish_responses_remaining = 0
        self.fail_container_texts: set[str] = set()
        self.fail_publish_texts: set[str] = set()
        self._container_texts: dict[str, str | None] = {}
        self._container_seq = 0
        self._post_seq = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        if request.url.path.endswith("/threads_publish"):
            return self._publish(params)
        if request.url.path.endswith("/threads"):
            return self._create_container(params)
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    def _create_container(self, params) -> httpx.Response:
        text = params.get("text")
        if text is not None and text in self.fail_container_texts:
            return httpx.Response(400, text='{"error":{"message":"Invalid parameter"}}')
        self._container_seq += 1
        container_id = f"container_{self._container_seq}"
        self._container_texts[container_id] = text
        return httpx.Response(200, json={"id": container_id})

    def _publish(self, params) -> httpx.Response:
        if self.publish_failures_remaining > 0:
            self.publish_failures_remaining -= 1
            return httpx.Response(500, json={"error": {"message": "Media not ready"}})
        if self.malformed_publish_responses_remaining > 0:
            self.malformed_publish_responses_remaining -= 1
            return httpx.Response(200, text="")
        if self._container_texts.get(params.get("creation_id")) in self.fail_publish_texts:
            return httpx.Response(500, json={"error": {"message": "Publish rejected"}})
        self._post_seq += 1
        return httpx.Response(200, json={"id": f"post_{self._post_seq}"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def container_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith("/threads")]

    @property
    def publish_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith("/threads_publish")]


@pytest.fixture(autouse=True)
def _redis_unavailable(monkeypatch):
    def _unavailable():
        raise RedisError("redis is not available in tests")

    monkeypatch.setattr("app.infrastructure.cache.redis_client.get_redis_client", _unavailable)


@pytest.fixture
def db_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def threads_api() -> FakeThreadsApi:
    return FakeThreadsApi()


@pytest.fixture
def publisher_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sleep_recorder() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def publisher(threads_api, publisher_sleep) -> ThreadsPublisher:
    return ThreadsPublisher(base_url=THREADS_TEST_BASE_URL, transport=threads_api.transport, sleep=publisher_sleep)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(social_id=TEST_SOCIAL_ID, access_token=TEST_ACCESS_TOKEN)


@pytest.fixture
def threads_account(db) -> SocialAccount:
    account = SocialAccount(
        user_id="user-1",
        platform="threads",
        social_id=TEST_SOCIAL_ID,
        display_name="chef",
        access_token=encrypt_secret(TEST_ACCESS_TOKEN),
        is_active=True,
    )
    db.add(account)
    db.commit()
    return account
