import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from redis.exceptions import RedisError
from tuitora.config import settings
from tuitora.redis_client import get_redis
from tuitora.schemas import USSDResponse, USSDSession

logger = logging.getLogger("tuitora.session.ussd_session")

KEY_PREFIX = "ussd:session:"


class USSDSessionStore:
    """
    Audit trail of USSD turns in Redis, expiring after ``ttl`` seconds.

    The menu never reads from here; everything it needs comes from the
    replayed ``text``. Writes therefore never raise.
    """

    def __init__(self, redis, ttl: int = None):
        self.redis = redis
        self.ttl = ttl or settings.USSD_SESSION_TTL

    @staticmethod
    def key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    async def save(self, session: USSDSession, **extra) -> None:
        payload = session.model_dump(mode="json")
        payload.update(extra)
        await self.redis.set(self.key(session.sessionId), json.dumps(payload), ex=self.ttl)

    async def load(self, session_id: str) -> Optional[dict]:
        data = await self.redis.get(self.key(session_id))
        if not data:
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.error(f"Invalid session JSON for {session_id}")
            return None
        if not all(key in parsed for key in ["sessionId", "phoneNumber"]):
            logger.warning(f"Corrupted session data for {session_id}")
            return None
        return parsed

    async def turns(self, session_id: str) -> list[dict]:
        raw = await self.redis.lrange(self.key(session_id) + ":turns", 0, -1)
        return [json.loads(item) for item in raw]

    async def create(self, phone_number: str, service_code: Optional[str] = None) -> USSDSession:
        """Start a session record ahead of the caller dialing in."""
        session = USSDSession(
            sessionId=uuid.uuid4().hex,
            phoneNumber=phone_number,
            serviceCode=service_code or settings.USSD_SERVICE_CODE,
            text="",
            createdAt=datetime.now(timezone.utc),
        )
        await self.save(session, completed=False)
        return session

    async def record_turn(self, session: USSDSession, reply: USSDResponse) -> None:
        """Best effort: log and carry on if Redis is unavailable."""
        turns_key = self.key(session.sessionId) + ":turns"
        turn = {
            "text": session.text,
            "status": reply.status.value,
            "response": reply.text,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.save(session, completed=reply.is_terminal, last_response=reply.text)
            await self.redis.rpush(turns_key, json.dumps(turn))
            await self.redis.expire(turns_key, self.ttl)
        except (RedisError, OSError) as e:
            logger.warning(f"Could not record USSD turn for {session.sessionId}: {e}")

    async def delete(self, session_id: str) -> None:
        await self.redis.delete(self.key(session_id), self.key(session_id) + ":turns")


async def get_session_store() -> USSDSessionStore:
    return USSDSessionStore(await get_redis())
