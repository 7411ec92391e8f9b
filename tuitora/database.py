from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
import ssl
from .config import settings

DATABASE_URL = settings.database_url

# Hosted Postgres needs TLS; local development usually does not
connect_args = {}
if settings.database_ssl:
    connect_args["ssl"] = ssl.create_default_context()

# Async engine
engine = create_async_engine(DATABASE_URL, echo=settings.database_echo, connect_args=connect_args)

# Async session factory
AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()

# Dependency
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
