import httpx
import pytest
import pytest_asyncio

from auth.models import AccessToken
from auth.token_store import MemoryStorage
from rentapi.client import create_client
from rentapi.env import ClientConfig
from tests.backend_helpers import FakeBackend, SleepRecorder

BASE_URL = "https://rent.example.com/api"


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(base_url=BASE_URL, debug=False)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def storage() -> MemoryStorage:
    storage = MemoryStorage()
    storage.set_item("token", AccessToken("T1").to_payload())
    return storage


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def api_client(config, storage, backend, sleep):
    client = create_client(
        config,
        storage=storage,
        transport=httpx.MockTransport(backend),
        sleep=sleep,
    )
    yield client
    await client.aclose()
