import pytest
import pytest_asyncio
import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from fastapi_limiter import FastAPILimiter

from tuitora import main
from tuitora.main import app
from tuitora.routers import ussd
from tuitora.session.ussd_session import USSDSessionStore, get_session_store
from tuitora.tests.fakes import FakeRedis

WELCOME = "CON Welcome to Tuitora\n1. Check Attendance\n2. Check Fees\n3. School Contact"


def callback_form(text, phone="+254711000000", session_id="abc", **extra):
    data = {"sessionId": session_id, "phoneNumber": phone, "text": text, "serviceCode": "*384*38164#"}
    data.update(extra)
    return data


# ------------------------
# /ussd/callback
# ------------------------

@pytest.mark.asyncio
async def test_first_dial_shows_welcome(client):
    res = await client.post("/ussd/callback", data=callback_form(""))
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/plain")
    assert res.text == WELCOME


@pytest.mark.asyncio
async def test_fees_without_linked_student(client):
    res = await client.post("/ussd/callback", data=callback_form("2"))
    assert res.status_code == 200
    assert res.text.startswith("END ")
    assert "No records found" in res.text


@pytest.mark.asyncio
async def test_local_phone_number_is_normalised(client, directory):
    res = await client.post("/ussd/callback", data=callback_form("1", phone="0711000001"))
    assert res.text.startswith("END Attendance for Jane Wanjiru")
    assert ("linked_students", "+254711000001") in directory.calls


@pytest.mark.asyncio
async def test_json_body_is_accepted(client):
    res = await client.post("/ussd/callback", json=callback_form("9"))
    assert res.status_code == 200
    assert res.text.startswith("CON Invalid option.\nWelcome to Tuitora")


@pytest.mark.asyncio
async def test_retried_callback_gets_same_reply(client):
    first = await client.post("/ussd/callback", data=callback_form("2", phone="+254711000001"))
    second = await client.post("/ussd/callback", data=callback_form("2", phone="+254711000001"))
    assert first.text == second.text
    assert first.text.startswith("END Fees for Jane Wanjiru")


@pytest.mark.asyncio
async def test_turns_are_recorded(client, session_store):
    await client.post("/ussd/callback", data=callback_form(""))
    await client.post("/ussd/callback", data=callback_form("3"))

    saved = await session_store.load("abc")
    assert saved["text"] == "3"
    assert saved["completed"] is True
    turns = await session_store.turns("abc")
    assert [t["status"] for t in turns] == ["continue", "completed"]


@pytest.mark.asyncio
async def test_broken_session_store_does_not_affect_reply(client):
    app.dependency_overrides[get_session_store] = lambda: USSDSessionStore(FakeRedis(broken=True))
    res = await client.post("/ussd/callback", data=callback_form(""))
    assert res.status_code == 200
    assert res.text == WELCOME


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["sessionId", "phoneNumber", "text"])
async def test_missing_fields_are_rejected(client, missing):
    data = callback_form("1")
    del data[missing]
    res = await client.post("/ussd/callback", data=data)
    assert res.status_code == 400
    assert missing in res.json()["detail"]


@pytest.mark.asyncio
async def test_bad_service_code_is_rejected(client):
    res = await client.post("/ussd/callback", data=callback_form("", serviceCode="384"))
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_unexpected_error_returns_generic_end(client, monkeypatch):
    class ExplodingMenu:
        def __init__(self, directory):
            pass

        async def respond(self, text, phone_number):
            raise KeyError("boom")

    monkeypatch.setattr("tuitora.routers.ussd.USSDMenu", ExplodingMenu)
    res = await client.post("/ussd/callback", data=callback_form("1"))
    assert res.status_code == 200
    assert res.text == "END An error occurred. Please try again later."


# ------------------------
# /ussd/session and /ussd/status
# ------------------------

@pytest.mark.asyncio
async def test_initiate_session(client, session_store):
    res = await client.post("/ussd/session", json={"phoneNumber": "0711000001"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["phoneNumber"] == "+254711000001"
    assert body["instruction"] == "Dial *384*38164# on your phone to continue"
    assert await session_store.load(body["data"]["sessionId"]) is not None


@pytest.mark.asyncio
async def test_initiate_session_requires_phone(client):
    res = await client.post("/ussd/session", json={})
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Phone number is required"}


@pytest.mark.asyncio
async def test_initiate_session_store_down(client):
    app.dependency_overrides[get_session_store] = lambda: USSDSessionStore(FakeRedis(broken=True))
    res = await client.post("/ussd/session", json={"phoneNumber": "+254711000001"})
    assert res.status_code == 500
    assert res.json()["success"] is False


@pytest.mark.asyncio
async def test_status(client):
    res = await client.get("/ussd/status")
    assert res.status_code == 200
    assert res.json() == {
        "service": "Tuitora USSD Service",
        "status": "active",
        "code": "*384*38164#",
        "features": ["attendance_check", "fees_inquiry", "school_contact"],
    }


# ------------------------
# Rate limiting
# ------------------------

@pytest_asyncio.fixture
async def limiter(client):
    """Runs the real limiter dependency instead of the no-op override."""
    app.dependency_overrides.pop(ussd.rate_limit, None)
    yield FastAPILimiter
    FastAPILimiter.redis = None
    FastAPILimiter.lua_sha = None


@pytest.mark.asyncio
async def test_limiter_not_initialised_serves_menu(client, limiter):
    res = await client.post("/ussd/callback", data=callback_form(""))
    assert res.status_code == 200
    assert res.text == WELCOME


@pytest.mark.asyncio
async def test_unreachable_limiter_redis_serves_menu(client, limiter):
    unreachable = redis.from_url("redis://127.0.0.1:1", socket_connect_timeout=1, retry=Retry(NoBackoff(), 0))
    limiter.redis = unreachable
    limiter.prefix = "fastapi-limiter"
    limiter.lua_sha = "deadbeef"
    try:
        res = await client.post("/ussd/callback", data=callback_form(""))
    finally:
        await unreachable.aclose()
    assert res.status_code == 200
    assert res.text == WELCOME


@pytest.mark.asyncio
async def test_startup_survives_redis_down(client, limiter, monkeypatch):
    async def broken_redis():
        return FakeRedis(broken=True)

    monkeypatch.setattr(main, "get_redis", broken_redis)
    await main.init_rate_limiter()

    res = await client.post("/ussd/callback", data=callback_form(""))
    assert res.status_code == 200
    assert res.text == WELCOME


@pytest.mark.asyncio
async def test_limit_is_per_caller_and_ends_session(client, limiter, monkeypatch):
    await limiter.init(FakeRedis())
    monkeypatch.setattr(ussd._limiter, "times", 2)

    for _ in range(2):
        res = await client.post("/ussd/callback", data=callback_form("", phone="+254711000001"))
        assert res.text == WELCOME

    res = await client.post("/ussd/callback", data=callback_form("", phone="0711000001"))
    assert res.status_code == 200
    assert res.text == "END Too many requests. Please try again shortly."

    other = await client.post("/ussd/callback", data=callback_form("", phone="+254711000002", session_id="xyz"))
    assert other.text == WELCOME


@pytest.mark.asyncio
async def test_identifier_keys_on_caller():
    class FakeRequest:
        def __init__(self, data):
            self.headers = {"content-type": "application/json"}
            self.client = None
            self._data = data

        async def json(self):
            return self._data

    assert await ussd.caller_identifier(FakeRequest({"phoneNumber": "0711000001"})) == "ussd:phone:+254711000001"
    assert await ussd.caller_identifier(FakeRequest({"sessionId": "abc"})) == "ussd:session:abc"
    assert await ussd.caller_identifier(FakeRequest([1, 2])) == "ussd:host:unknown"


# ------------------------
# /ussd/respond
# ------------------------

@pytest.mark.asyncio
async def test_respond_returns_reply_json(client, session_store):
    res = await client.post("/ussd/respond", json={
        "session": {"sessionId": "sim-1", "phoneNumber": "0711000001"},
        "text": "2",
    })
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["status"] == "completed"
    assert body["data"]["text"].startswith("Fees for Jane Wanjiru")
    assert body["response"].startswith("END Fees for Jane Wanjiru")

    saved = await session_store.load("sim-1")
    assert saved["phoneNumber"] == "+254711000001"
    assert saved["text"] == "2"


@pytest.mark.asyncio
async def test_respond_empty_text_shows_welcome(client):
    res = await client.post("/ussd/respond", json={
        "session": {"sessionId": "sim-2", "phoneNumber": "+254711000001"},
        "text": "",
    })
    assert res.json()["response"] == WELCOME


@pytest.mark.asyncio
async def test_respond_requires_session_and_text(client):
    res = await client.post("/ussd/respond", json={"text": "1"})
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Session and text are required"}
