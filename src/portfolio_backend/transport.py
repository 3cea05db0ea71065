"""Transport adapters the connection manager drives to reach the document store."""

from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

from motor.motor_asyncio import AsyncIOMotorClient

from .configuration import StoreSettings


@runtime_checkable
class StoreTransport(Protocol):
    """Protocol implemented by store transports."""

    async def open(self, settings: StoreSettings) -> Any:
        """Create a client for the configured target."""

    async def ping(self, client: Any) -> Dict[str, Any]:
        """Round-trip a liveness command and return the server reply."""

    async def close(self, client: Any) -> None:
        """Release the client and its sockets."""

    def get_database(self, client: Any, name: str) -> Any:
        """Return the logical database used by route handlers."""


class MotorTransport:
    """Transport backed by motor's asyncio MongoDB client."""

    async def open(self, settings: StoreSettings) -> AsyncIOMotorClient:
        # Constructing the client does no I/O; the ping below does.
        return AsyncIOMotorClient(settings.uri, **settings.client_options)

    async def ping(self, client: AsyncIOMotorClient) -> Dict[str, Any]:
        return await client.admin.command("ping")

    async def close(self, client: AsyncIOMotorClient) -> None:
        client.close()

    def get_database(self, client: AsyncIOMotorClient, name: str) -> Any:
        return client[name]
