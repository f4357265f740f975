"""Alembic environment.

The database URL is built from application settings (POSTGRES_* variables
and config/main.yaml), so migrations target the same database as the
PostgreSQL repository.
"""

from sqlalchemy import URL, create_engine, pool

from alembic import context
from src.config.settings import get_settings

target_metadata = None


def database_url() -> URL:
    settings = get_settings()
    password = (
        settings.postgres_password.get_secret_value()
        if settings.postgres_password
        else None
    )
    return URL.create(
        "postgresql+psycopg2",
        username=settings.postgres_user,
        password=password,
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
    )


def run_migrations_offline() -> None:
    context.configure(
        url=database_url().render_as_string(hide_password=False),
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
