from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import ValidationError
from redis.exceptions import RedisError
import logging
from tuitora.config import settings
from tuitora.crud import SchoolDirectory
from tuitora.database import get_db
from tuitora.schemas import (
    USSDRequest,
    USSDRespondRequest,
    USSDRespondResponse,
    USSDSession,
    USSDSessionRequest,
    USSDSessionResponse,
)
from tuitora.services.africastalking_service import format_ussd_response, ussd_reply
from tuitora.services.ussd_menu import USSDMenu
from tuitora.session.ussd_session import USSDSessionStore, get_session_store
from tuitora.utils.phone_utils import mask_phone_number, normalize_phone_number
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from prometheus_client import Counter

router = APIRouter(prefix="/ussd", tags=["USSD"])
logger = logging.getLogger("tuitora.routers.ussd")

# Metrics
ussd_requests = Counter('ussd_requests_total', 'Total USSD requests')
ussd_errors = Counter('ussd_errors_total', 'USSD callbacks answered with the generic error reply')
ussd_throttled = Counter('ussd_throttled_total', 'USSD callbacks answered with the rate-limit reply')

ERROR_REPLY = "An error occurred. Please try again later."
THROTTLED_REPLY = "Too many requests. Please try again shortly."
FEATURES = ["attendance_check", "fees_inquiry", "school_contact"]


async def read_payload(request: Request) -> dict:
    """Africa's Talking posts form data; JSON is accepted for simulators."""
    content_type = request.headers.get("content-type", "")
    try:
        data = await (request.json() if "application/json" in content_type else request.form())
    except Exception as e:
        logger.warning(f"Unreadable USSD payload: {e}")
        raise HTTPException(status_code=400, detail="Malformed request body")
    if not hasattr(data, "items"):
        raise HTTPException(status_code=400, detail="Malformed request body")
    return dict(data)


# Rate limiting
class RateLimited(Exception):
    def __init__(self, retry_after_ms: int):
        super().__init__(f"rate limited for {retry_after_ms} ms")
        self.retry_after_ms = retry_after_ms


async def caller_identifier(request: Request) -> str:
    """One bucket per caller; every callback arrives from the provider's own servers."""
    try:
        data = await read_payload(request)
    except HTTPException:
        data = {}
    if data.get("phoneNumber"):
        return f"ussd:phone:{normalize_phone_number(str(data['phoneNumber']))}"
    if data.get("sessionId"):
        return f"ussd:session:{data['sessionId']}"
    return f"ussd:host:{request.client.host if request.client else 'unknown'}"


async def raise_rate_limited(request: Request, response: Response, pexpire: int):
    raise RateLimited(pexpire)


_limiter = RateLimiter(
    times=settings.USSD_RATE_LIMIT_TIMES,
    seconds=settings.USSD_RATE_LIMIT_SECONDS,
    identifier=caller_identifier,
    callback=raise_rate_limited,
)


async def rate_limit(request: Request, response: Response) -> bool:
    """
    True when the caller is over the limit.

    The limiter lives in Redis, which is optional here: when it was never
    initialised or cannot be reached the request goes through unlimited.
    """
    if FastAPILimiter.redis is None:
        return False
    try:
        if FastAPILimiter.lua_sha is None:
            FastAPILimiter.lua_sha = await FastAPILimiter.redis.script_load(FastAPILimiter.lua_script)
        await _limiter(request, response)
    except RateLimited as e:
        logger.info(f"USSD caller throttled for {e.retry_after_ms} ms")
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"Rate limiter unavailable, serving request unlimited: {e}")
    return False


async def get_directory(db: AsyncSession = Depends(get_db)) -> SchoolDirectory:
    return SchoolDirectory(db)


# Redact sensitive data for logging
def redact_sensitive(data: dict) -> dict:
    safe_data = data.copy()
    if "phoneNumber" in safe_data:
        safe_data["phoneNumber"] = mask_phone_number(str(safe_data["phoneNumber"]))
    return safe_data


@router.post("/callback", response_class=PlainTextResponse)
async def ussd_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    throttled: bool = Depends(rate_limit),
    directory: SchoolDirectory = Depends(get_directory),
    store: USSDSessionStore = Depends(get_session_store),
):
    ussd_requests.inc()
    if throttled:
        ussd_throttled.inc()
        return PlainTextResponse(content=ussd_reply(THROTTLED_REPLY, end=True))

    data = await read_payload(request)
    logger.info(f"USSD request: {redact_sensitive(data)}")

    try:
        payload = USSDRequest.model_validate(data)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise HTTPException(status_code=400, detail=f"Missing or invalid fields: {', '.join(fields)}")

    try:
        phone_number = normalize_phone_number(payload.phoneNumber)
        session = USSDSession(
            sessionId=payload.sessionId,
            phoneNumber=phone_number,
            serviceCode=payload.serviceCode,
            text=payload.text.strip(),
        )
        reply = await USSDMenu(directory).respond(session.text, phone_number)
        background_tasks.add_task(store.record_turn, session, reply)
        return PlainTextResponse(content=format_ussd_response(reply))

    except Exception as e:
        ussd_errors.inc()
        logger.error(f"USSD callback error: {e}", exc_info=True)
        return PlainTextResponse(content=ussd_reply(ERROR_REPLY, end=True))


@router.post("/session", response_model=USSDSessionResponse)
async def initiate_session(
    payload: USSDSessionRequest,
    store: USSDSessionStore = Depends(get_session_store),
):
    if not payload.phoneNumber:
        return JSONResponse(status_code=400, content={"success": False, "error": "Phone number is required"})

    try:
        session = await store.create(normalize_phone_number(payload.phoneNumber), payload.serviceCode)
    except (RedisError, OSError) as e:
        logger.error(f"USSD session error: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Could not start USSD session"})

    return USSDSessionResponse(
        data=session,
        instruction=f"Dial {settings.USSD_SERVICE_CODE} on your phone to continue",
    )


@router.post("/respond", response_model=USSDRespondResponse)
async def respond(
    payload: USSDRespondRequest,
    background_tasks: BackgroundTasks,
    directory: SchoolDirectory = Depends(get_directory),
    store: USSDSessionStore = Depends(get_session_store),
):
    """JSON twin of the callback for the dashboard simulator; ``text`` is the cumulative input."""
    if payload.session is None or payload.text is None:
        return JSONResponse(status_code=400, content={"success": False, "error": "Session and text are required"})

    try:
        phone_number = normalize_phone_number(payload.session.phoneNumber)
        session = payload.session.model_copy(update={"phoneNumber": phone_number, "text": payload.text.strip()})
        reply = await USSDMenu(directory).respond(session.text, phone_number)
    except Exception as e:
        ussd_errors.inc()
        logger.error(f"USSD respond error: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": ERROR_REPLY})

    background_tasks.add_task(store.record_turn, session, reply)
    return USSDRespondResponse(data=reply, response=format_ussd_response(reply))


@router.get("/status")
async def ussd_status():
    return {
        "service": "Tuitora USSD Service",
        "status": "active",
        "code": settings.USSD_SERVICE_CODE,
        "features": FEATURES,
    }
