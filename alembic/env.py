import os
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
from dotenv import load_dotenv
from tuitora.config import settings
from tuitora.database import Base
from tuitora.models import *  


# Load environment variables (.env) so Alembic picks up DATABASE_URL
load_dotenv()

config = context.config

# DATABASE_URL wins; otherwise build it from the DATABASE_* settings
DATABASE_URL = os.getenv("DATABASE_URL") or settings.database_url

# Alembic runs on the synchronous driver (psycopg2)
if "+asyncpg" in DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("+asyncpg", "+psycopg2")

config.set_main_option("sqlalchemy.url", DATABASE_URL)


# Logging setup
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


# Migration runners
def run_migrations_offline() -> None:
    """Emit SQL for the school schema without a live connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
