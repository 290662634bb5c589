"""
Fixtures for integration tests against real PostgreSQL (testcontainers).

The container is started once per session. Every test gets a freshly
created schema behind ``DatabaseService``.
"""

from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer

from skillmirror.core.database.service import DatabaseService
from skillmirror.core.logging.logger import get_logger

logger = get_logger(__name__)


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL testcontainer for integration tests.

    Scope: session (container persists across all tests)
    Skipped when no Docker daemon is reachable.
    """
    logger.info("Starting PostgreSQL testcontainer...")
    container = PostgresContainer(image="postgres:17-alpine", driver="asyncpg")
    try:
        container.start()
    except Exception as exc:  # docker missing or daemon unreachable
        pytest.skip(f"PostgreSQL testcontainer unavailable: {exc}")

    logger.info("PostgreSQL testcontainer started: %s", container.get_connection_url())
    yield container

    logger.info("Stopping PostgreSQL testcontainer...")
    container.stop()


@pytest_asyncio.fixture
async def pg_database(postgres_container: PostgresContainer) -> AsyncGenerator[None, None]:
    """
    ``DatabaseService`` bound to the container with a clean schema.

    Scope: function
    """
    await DatabaseService.shutdown()
    await DatabaseService.initialize(postgres_container.get_connection_url())
    await DatabaseService.drop_schema()
    await DatabaseService.create_schema()
    yield
    await DatabaseService.shutdown()
