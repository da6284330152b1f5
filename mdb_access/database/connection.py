"""
MongoDB client lifecycle.

Builds the motor client from an ``AccessLayerConfig`` and verifies it with a
ping before handing it out. There is no process-wide shared client:
whoever creates a client owns it and closes it.
"""

import time

from motor.motor_asyncio import AsyncIOMotorClient

from ..config import AccessLayerConfig
from ..constants import DEFAULT_MAX_IDLE_TIME_MS
from ..exceptions import AccessLayerError
from ..observability import get_logger as get_contextual_logger
from ..observability import record_operation
from .errors import map_store_errors

contextual_logger = get_contextual_logger(__name__)

APP_NAME = "mdb-access"


def create_mongo_client(config: AccessLayerConfig) -> AsyncIOMotorClient:
    """
    Create a motor client with the configured pool settings.

    The client connects lazily; call ``ping`` to verify it.

    Raises:
        ConfigurationError: If mongo_uri or db_name is missing
    """
    config.require_connection()
    return AsyncIOMotorClient(
        config.mongo_uri,
        serverSelectionTimeoutMS=config.server_selection_timeout_ms,
        appname=APP_NAME,
        maxPoolSize=config.max_pool_size,
        minPoolSize=config.min_pool_size,
        maxIdleTimeMS=DEFAULT_MAX_IDLE_TIME_MS,
        retryWrites=True,
        retryReads=True,
    )


async def ping(client: AsyncIOMotorClient) -> None:
    """Round-trip to the server. Raises TransientStoreError when it is unreachable."""
    with map_store_errors("connection.ping"):
        await client.admin.command("ping")


async def connect(config: AccessLayerConfig) -> AsyncIOMotorClient:
    """
    Create a client and verify the server answers.

    Raises:
        ConfigurationError: If connection settings are missing
        TransientStoreError: If the server cannot be reached
    """
    start_time = time.time()
    contextual_logger.info(
        "Initializing MongoDB connection",
        extra={
            "db_name": config.db_name,
            "max_pool_size": config.max_pool_size,
            "min_pool_size": config.min_pool_size,
        },
    )

    client = create_mongo_client(config)
    try:
        await ping(client)
    except AccessLayerError as e:
        client.close()
        duration_ms = (time.time() - start_time) * 1000
        record_operation("connection.initialize", duration_ms, success=False)
        contextual_logger.critical(
            "MongoDB connection failed",
            extra={
                "error_type": type(e.__cause__ or e).__name__,
                "error": str(e),
                "duration_ms": round(duration_ms, 2),
            },
        )
        raise

    duration_ms = (time.time() - start_time) * 1000
    record_operation("connection.initialize", duration_ms, success=True)
    contextual_logger.info(
        "MongoDB connection initialized successfully",
        extra={
            "db_name": config.db_name,
            "pool_size": f"{config.min_pool_size}-{config.max_pool_size}",
            "duration_ms": round(duration_ms, 2),
        },
    )
    return client
