"""Shared setup for command-line entry points."""

from argparse import ArgumentParser

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokensync.api.schemas import validate_address
from tokensync.core.config import Settings, configure_logging
from tokensync.core.database import create_schema, setup_db_session
from tokensync.services.container import ServiceContainer, build_services
from tokensync.uow import create_uow_factory

logger = structlog.get_logger()


def add_common_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--contract",
        required=True,
        help="Token contract address (0x + 40 hex characters)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )


def contract_address(value: str) -> str:
    """Lower-cased contract address; raises ValueError when malformed."""
    return validate_address(value)


def load_settings(verbose: bool = False) -> Settings:
    settings = Settings()  # type: ignore[call-arg]
    if verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)
    return settings


async def open_services(
    settings: Settings,
) -> tuple[async_sessionmaker[AsyncSession], ServiceContainer]:
    """Create the session factory and the same services the web application uses."""
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    if settings.database_url.startswith("sqlite"):
        await create_schema(session_factory)

    uow_factory = create_uow_factory(session_factory, batch_size=settings.db_batch_size)
    return session_factory, build_services(settings, uow_factory)


async def close_services(
    session_factory: async_sessionmaker[AsyncSession], services: ServiceContainer
) -> None:
    await services.close()
    await session_factory.kw["bind"].dispose()
