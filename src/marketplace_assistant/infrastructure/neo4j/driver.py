"""Neo4j driver and schema management."""

from neo4j import AsyncDriver, AsyncGraphDatabase

from marketplace_assistant.core.base import ErrorCode, ErrorLevel, ServiceErrorDetails
from marketplace_assistant.core.config import settings
from marketplace_assistant.core.decorators import with_error_handling
from marketplace_assistant.core.errors import ServiceError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.infrastructure.neo4j.queries import SchemaQueries

logger = get_logger(__name__)


@with_error_handling(error_level=ErrorLevel.ERROR)
async def create_neo4j_driver(
    max_connection_pool_size: int | None = None,
    max_connection_lifetime: int | None = None,
) -> AsyncDriver:
    """Create a Neo4j driver and verify connectivity.

    The caller owns the driver and closes it on shutdown.

    Raises:
        ServiceError: If the database cannot be reached
    """
    pool_size = max_connection_pool_size or 50
    conn_lifetime = max_connection_lifetime or 3600

    logger.info(
        "Creating Neo4j driver",
        extra={
            "uri": settings.neo4j_uri,
            "pool_size": pool_size,
            "connection_lifetime": conn_lifetime,
        },
    )

    driver = AsyncGraphDatabase.driver(
        settings.neo4j_uri,
        auth=(settings.neo4j_user, settings.neo4j_password),
        max_connection_pool_size=pool_size,
        max_connection_lifetime=conn_lifetime,
    )

    try:
        await driver.verify_connectivity()
    except Exception as e:
        await driver.close()
        raise ServiceError(
            message=f"Could not connect to Neo4j at {settings.neo4j_uri}: {e!s}",
            details=ServiceErrorDetails(
                source="neo4j_driver",
                operation="verify_connectivity",
                service_name="Neo4j",
                endpoint=settings.neo4j_uri,
            ),
            code=ErrorCode.DB_CONNECTION,
        ) from e

    logger.info("Neo4j connection established")
    return driver


async def ensure_schema(driver: AsyncDriver) -> None:
    """Create the uniqueness constraints and owner indexes the repositories rely on."""
    async with driver.session() as session:
        for statement in SchemaQueries.statements():
            await session.run(statement)
    logger.info("Neo4j schema ensured")
