"""Shared Prisma client and connection helpers."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator


class LazyPrisma:
    """Build the generated Prisma client on first attribute access.

    ``prisma generate`` has to run against ``schema.prisma`` before the client
    class can be imported, so the import is deferred until the application
    actually talks to the database.
    """

    def __init__(self) -> None:
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is None:
            from prisma import Prisma

            self._client = Prisma()
        return self._client

    def __getattr__(self, name: str) -> Any:
        return getattr(self._get_client(), name)


db = LazyPrisma()


@asynccontextmanager
async def prisma_session(client: Any) -> AsyncIterator[Any]:
    """Yield ``client`` connected, disconnecting only if this call connected it."""

    should_disconnect = False
    if not client.is_connected():
        await client.connect()
        should_disconnect = True
    try:
        yield client
    finally:
        if should_disconnect:
            await client.disconnect()
