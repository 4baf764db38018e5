from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

import asyncpg
from asyncpg.pool import Pool

from utils.logger import get_logger

log = get_logger(__name__)


class AsyncDatabase:
    """
    Thin asyncpg pool wrapper. Managers either use the one-shot helpers below
    or take a connection from `transaction()` when several statements must
    commit together.
    """

    def __init__(
            self,
            db_name: str,
            user: str,
            password: str,
            host: str = "localhost",
            port: int = 5432,
            min_size: int = 2,
            max_size: int = 20
    ):
        self.db_name = db_name
        self.user = user
        self.password = password
        self.host = host
        self.port = port
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[Pool] = None

    async def connect(self) -> None:
        """
        Opens the connection pool. Startup cannot continue without it, so the
        error is logged and re-raised.
        """
        try:
            self.pool = await asyncpg.create_pool(
                database=self.db_name,
                user=self.user,
                password=self.password,
                host=self.host,
                port=self.port,
                min_size=self.min_size,
                max_size=self.max_size
            )
            log.debug("[DB] Connection pool created")
        except (OSError, asyncpg.PostgresError) as e:
            log.exception(f"[DB] Could not connect to the database: {e}")
            raise

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            log.debug("[DB] Connection pool closed.")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args: Any) -> str:
        """
        INSERT / UPDATE / DELETE without a result set.
        """
        async with self.transaction() as connection:
            return await connection.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.transaction() as connection:
            return await connection.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self.transaction() as connection:
            return await connection.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        async with self.transaction() as connection:
            return await connection.fetchval(query, *args, column=column)
