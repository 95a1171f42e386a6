"""
Message-broker transport for registration finalization.

The intake service only ever performs request/reply: publish one request
on a subject, wait up to a timeout for one reply. The Broker protocol
captures exactly that, so the finalizer can be exercised against an
in-memory double.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from nats.aio.client import Client as NatsClient
from nats.errors import Error as NatsError
from nats.errors import NoRespondersError
from nats.errors import TimeoutError as NatsTimeoutError

from intake.app.core.errors import BrokerTimeoutError, DependencyError

logger = logging.getLogger("intake.broker")

DEFAULT_NATS_URL = "nats://localhost:4222"
CONNECT_TIMEOUT_SECONDS = 10.0


class Broker(Protocol):
    """
    Request/reply transport.

    Implementations must raise BrokerTimeoutError when no reply arrives
    within `timeout` seconds and DependencyError for any other transport
    failure.
    """

    async def request(self, subject: str, payload: bytes, timeout: float) -> bytes:
        ...

    async def close(self) -> None:
        ...


class NatsBroker:
    """Broker backed by a single shared NATS connection."""

    def __init__(self, connection: NatsClient) -> None:
        self._nc = connection

    @classmethod
    async def connect(
        cls,
        url: Optional[str] = None,
        timeout: float = CONNECT_TIMEOUT_SECONDS,
    ) -> "NatsBroker":
        """
        Open the shared connection.

        The client reconnects without limit once established, which also
        applies to the first attempt, so the initial connect is bounded by
        `timeout`. Failure raises DependencyError: the service must not
        start without a broker.
        """
        target = url or DEFAULT_NATS_URL
        connection = NatsClient()
        try:
            await asyncio.wait_for(
                connection.connect(
                    servers=[target],
                    allow_reconnect=True,
                    max_reconnect_attempts=-1,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            await connection.close()
            raise DependencyError(
                "Failed to connect to NATS",
                errors=f"nats: no connection to {target} within {timeout:g}s",
            ) from exc
        except NatsError as exc:
            raise DependencyError(
                "Failed to connect to NATS",
                errors=str(exc) or type(exc).__name__,
            ) from exc
        logger.info("nats_connected", extra={"url": target})
        return cls(connection)

    async def request(self, subject: str, payload: bytes, timeout: float) -> bytes:
        try:
            message = await self._nc.request(subject, payload, timeout=timeout)
        except NatsTimeoutError as exc:
            raise BrokerTimeoutError(
                "Failed to send NATS message",
                errors=f"nats: timeout waiting for reply on {subject}",
            ) from exc
        except NoRespondersError as exc:
            raise DependencyError(
                "Failed to send NATS message",
                errors=f"nats: no responders available for {subject}",
            ) from exc
        except NatsError as exc:
            raise DependencyError(
                "Failed to send NATS message",
                errors=str(exc) or type(exc).__name__,
            ) from exc
        return message.data

    async def close(self) -> None:
        if self._nc.is_closed:
            return
        try:
            await self._nc.drain()
        except NatsError:
            logger.warning("nats_drain_failed")
            await self._nc.close()
