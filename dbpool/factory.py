"""
Connection factory interface.

The pool never talks to a database itself. It asks a factory to open,
close and probe physical connections, and treats the returned handles as
opaque objects.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from .config import Credentials


class ConnectionFactory(ABC):
    """Abstract base class for physical connection factories."""

    @abstractmethod
    async def open(self, endpoint: str, credentials: Credentials) -> Any:
        """Open a new physical connection.

        Args:
            endpoint: The endpoint to connect to
            credentials: The credentials to authenticate with

        Returns:
            A physical connection handle

        Raises:
            ConnectError: If the connection could not be opened
        """
        pass

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Close a physical connection.

        Must be idempotent and should not raise.

        Args:
            handle: The connection handle to close
        """
        pass

    @abstractmethod
    async def probe(self, handle: Any, validation_query: str) -> bool:
        """Check that a physical connection is still usable.

        Args:
            handle: The connection handle to probe
            validation_query: The query to run against the connection

        Returns:
            True if the connection is healthy
        """
        pass


class CallableConnectionFactory(ConnectionFactory):
    """Connection factory built from three coroutine functions."""

    def __init__(
        self,
        opener: Callable[[str, Credentials], Awaitable[Any]],
        closer: Callable[[Any], Awaitable[None]],
        prober: Callable[[Any, str], Awaitable[bool]]
    ):
        """Initialize the factory.

        Args:
            opener: Function to open a new connection
            closer: Function to close a connection
            prober: Function to validate a connection
        """
        self.opener = opener
        self.closer = closer
        self.prober = prober

    async def open(self, endpoint: str, credentials: Credentials) -> Any:
        return await self.opener(endpoint, credentials)

    async def close(self, handle: Any) -> None:
        await self.closer(handle)

    async def probe(self, handle: Any, validation_query: str) -> bool:
        return await self.prober(handle, validation_query)
