from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine

from posledger.app import models  # noqa: F401 - registers tables on Base.metadata
from posledger.app.db import Base, DATABASE_URL, engine

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url") or DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    # an explicit sqlalchemy.url (tests, one-off upgrades) wins over DATABASE_URL
    url = config.get_main_option("sqlalchemy.url")
    connectable = create_engine(url, future=True) if url else engine
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
    if url:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
