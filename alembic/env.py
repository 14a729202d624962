import os
from logging.config import fileConfig
from urllib.parse import quote_plus

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine, pool

load_dotenv()

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations are hand-written SQL; there is no ORM metadata to diff against.
target_metadata = None


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return "postgresql+psycopg2://{user}:{pwd}@{host}:{port}/{name}".format(
        user=os.getenv("DB_USER", "dev"),
        pwd=quote_plus(os.getenv("DB_PASSWORD", "dev")),
        host=os.getenv("DB_HOST", "127.0.0.1"),
        port=os.getenv("DB_PORT", "65432"),
        name=os.getenv("DB_NAME", "heart_squares_dev"),
    )


def run_migrations_offline():
    context.configure(url=_database_url(), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
