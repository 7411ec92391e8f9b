import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from tuitora.main import app
from tuitora.database import get_db
from tuitora.routers.ussd import get_directory, rate_limit
from tuitora.services.africastalking_service import SmsGateway, get_sms_gateway
from tuitora.session.ussd_session import USSDSessionStore, get_session_store
from tuitora.tests.fakes import FakeDirectory, FakeRedis, FakeSession, FakeSMSClient

# ------------------------
# Fixtures
# ------------------------

@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def sms_client():
    return FakeSMSClient()


@pytest.fixture
def gateway(sms_client):
    return SmsGateway(client=sms_client, sender_id="TUITORA", retry_attempts=1)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def session_store(fake_redis):
    return USSDSessionStore(fake_redis, ttl=180)


@pytest.fixture
def db_session():
    return FakeSession()


@pytest_asyncio.fixture
async def client(directory, gateway, session_store, db_session):
    """Provides an AsyncClient attached to the FastAPI app with in-memory collaborators."""
    async def override_db():
        yield db_session

    async def no_rate_limit():
        return False

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_directory] = lambda: directory
    app.dependency_overrides[get_session_store] = lambda: session_store
    app.dependency_overrides[get_sms_gateway] = lambda: gateway
    app.dependency_overrides[rate_limit] = no_rate_limit

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
