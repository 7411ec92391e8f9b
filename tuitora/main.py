from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi_limiter import FastAPILimiter
from redis.exceptions import RedisError
import logging
from .database import engine, Base
from . import models  # noqa: F401  (registers tables on Base.metadata)
from .redis_client import get_redis
from .routers import alerts, messages, sms, ussd
from .config import settings

# Logging
logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


# App and CORS
app = FastAPI(
    title="Tuitora Telephony API",
    description="USSD and SMS channel for Tuitora school management: parents dial a short code to check attendance, fee balances and school contacts, and schools reach parents by SMS.",
    version="1.0.0"
)

origins = [
    "https://tuitora.vercel.app",  #  dashboard
    "http://localhost:3000",        #  local Next.js dev server
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(ussd.router)
app.include_router(sms.router)
app.include_router(alerts.router)
app.include_router(messages.router)


# Database initialization
@app.on_event("startup")
async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


# Rate limiting setup
@app.on_event("startup")
async def init_rate_limiter():
    redis = await get_redis()
    try:
        await FastAPILimiter.init(redis)
    except (RedisError, OSError) as e:
        # Limiter retries the script load on first use; until then USSD runs unlimited
        logger.warning(f"Rate limiter not initialised, Redis unavailable: {e}")


@app.get("/")
def root():
    return {"message": "Hello, Welcome to Tuitora Telephony API!"}
