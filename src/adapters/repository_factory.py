"""Build the configured repository and its watermark store."""

from typing import cast

from src.adapters.postgres_repository import PostgresRepository
from src.adapters.sqlite_repository import SQLiteRepository
from src.adapters.watermark_store import GetConnectionCallable, WatermarkStore
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import ConfigurationError
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


def create_repository(settings: Settings) -> RepositoryProtocol:
    """Repository for ``settings.database_type``.

    Raises:
        ConfigurationError: If PostgreSQL is selected without a password
        StoreUnavailableError: If the database cannot be opened
    """
    if settings.database_type == "postgres":
        if settings.postgres_password is None:
            raise ConfigurationError(
                "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
            )
        logger.info(
            "repository_postgres_selected",
            host=settings.postgres_host,
            database=settings.postgres_database,
        )
        return cast(
            RepositoryProtocol,
            PostgresRepository(settings, settings.postgres_password.get_secret_value()),
        )

    logger.info("repository_sqlite_selected", path=settings.db_path)
    return cast(RepositoryProtocol, SQLiteRepository(db_path=settings.db_path))


def create_watermark_store(repository: RepositoryProtocol) -> WatermarkStore:
    """Watermark store sharing the repository's connections."""
    return WatermarkStore(cast(GetConnectionCallable, repository.connection))
