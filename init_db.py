import asyncio
from tuitora.database import Base, engine
from tuitora import models  # noqa: F401  registers every table on Base.metadata


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_tables())
    print("Tuitora tables created successfully!")
