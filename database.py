"""
PostgreSQL connection management for the book rental escrow service.

This module owns the asyncpg connection pool shared by the escrow ledger
and the book catalog. Table definitions live with the code that uses them
(see escrow_database.py).

Dependencies:
    - asyncpg: For async PostgreSQL operations
    - python-dotenv: For environment variable management (via config.py)
"""

import json
import logging
import os
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns into Python objects on every pooled connection."""
    for type_name in ('json', 'jsonb'):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog'
        )


class Database:
    """
    Database manager holding the asyncpg pool.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string. If not provided,
                             will be read from DATABASE_URL environment variable.
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string or os.getenv('DATABASE_URL')
        self.min_size = min_size
        self.max_size = max_size

        if not self.connection_string:
            raise DatabaseError(
                "Database connection string not provided. "
                "Set DATABASE_URL environment variable or pass connection_string parameter."
            )

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection
            )
            logger.info("Database connection pool created successfully")
        except Exception as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}")

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def health_check(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            async with self.require_pool().acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# Singleton instance for easy access
_db_instance: Optional[Database] = None


async def get_database(
    connection_string: Optional[str] = None,
    min_size: int = 2,
    max_size: int = 10
) -> Database:
    """
    Get or create the database singleton instance.

    Args:
        connection_string: PostgreSQL connection string (optional)
        min_size: Minimum pool size
        max_size: Maximum pool size

    Returns:
        Connected Database instance
    """
    global _db_instance

    if _db_instance is None:
        _db_instance = Database(connection_string, min_size, max_size)
        await _db_instance.connect()

    return _db_instance


async def close_database() -> None:
    """Close the database singleton instance."""
    global _db_instance

    if _db_instance:
        await _db_instance.disconnect()
        _db_instance = None
