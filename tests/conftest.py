import pathlib
import sys
import uuid

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jobmatch.models import ResumeRef, Session
from jobmatch.object_storage import ObjectStorageBackend
from jobmatch.oracle import MockScoringOracle
from jobmatch.queue_backend import InMemoryQueueBackend
from jobmatch.retry import RetryPolicy
from jobmatch.status_publisher import InMemoryStatusPublisher, StatusReporter
from jobmatch.store import InMemorySessionStore


class FakeBlobStore(ObjectStorageBackend):
    """Blob store whose keys can be told to fail a number of times."""

    backend_name = "fake"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []

    def get_object(self, *, object_key: str) -> bytes:
        self.calls.append(object_key)
        remaining = self.failures.get(object_key, 0)
        if remaining:
            self.failures[object_key] = remaining - 1
            raise ConnectionError(f"blob store unavailable: {object_key}")
        if object_key not in self.objects:
            raise FileNotFoundError(object_key)
        return self.objects[object_key]

    def put_object(self, *, object_key: str, content_bytes: bytes, content_type: str | None = None) -> None:
        self.objects[object_key] = content_bytes


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def queue():
    return InMemoryQueueBackend()


@pytest.fixture
def publisher():
    return InMemoryStatusPublisher()


@pytest.fixture
def reporter(publisher, store):
    return StatusReporter(publisher=publisher, store=store)


@pytest.fixture
def oracle():
    return MockScoringOracle()


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, base_delay_ms=0)


@pytest.fixture
def make_session(store):
    def _make(**overrides) -> Session:
        session = Session(
            id=overrides.pop("id", uuid.uuid4()),
            user_id=overrides.pop("user_id", uuid.uuid4()),
            name=overrides.pop("name", "backend hiring"),
            job_title=overrides.pop("job_title", "Backend Engineer"),
            job_description=overrides.pop(
                "job_description",
                "Python services with PostgreSQL, RabbitMQ and Docker.",
            ),
            **overrides,
        )
        store.add_session(session.model_dump(mode="json"))
        return session

    return _make


@pytest.fixture
def add_resume(store, blob_store):
    def _add(session: Session, key: str, content: bytes, *, mime: str = "text/plain") -> ResumeRef:
        blob_store.objects[key] = content
        return store.add_resume(
            ResumeRef(
                id=f"res_{uuid.uuid4().hex[:8]}",
                session_id=str(session.id),
                object_key=key,
                mime=mime,
                original_filename=key.rsplit("/", 1)[-1],
            )
        )

    return _add
