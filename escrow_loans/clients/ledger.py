"""XRPL ledger client.

Wraps xrpl-py's ``AsyncWebsocketClient``: requests go through the SDK, and
``transaction`` stream messages are handed to registered listeners from a
separate consumer task. Account subscriptions are reference counted so
several watchers can share one connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Callable

from xrpl import XRPLException
from xrpl.asyncio.clients import AsyncWebsocketClient
from xrpl.models.requests import Subscribe, Tx, Unsubscribe
from xrpl.models.requests.request import Request

from escrow_loans.exceptions import LedgerError

logger = logging.getLogger(__name__)

StreamListener = Callable[[dict[str, Any]], Awaitable[None]]


class LedgerClient:
    """Lazily connected client for one rippled endpoint."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._client: AsyncWebsocketClient | None = None
        self._consumer: asyncio.Task | None = None
        self._listeners: list[StreamListener] = []
        self._accounts: Counter[str] = Counter()

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_open()

    def subscribers(self, account: str) -> int:
        """Number of active subscriptions held for ``account``."""
        return self._accounts[account]

    async def connect(self) -> None:
        """Open the WebSocket unless already open."""
        if self.is_connected:
            return
        client = AsyncWebsocketClient(self.url)
        try:
            await client.open()
        except (XRPLException, OSError) as e:
            raise LedgerError(f"Could not connect to {self.url}: {e}") from e
        self._client = client
        self._consumer = asyncio.create_task(self._consume(client))
        logger.info("Connected to XRPL at %s", self.url)

    async def request(self, request: Request) -> dict[str, Any]:
        """Send ``request`` and return the response's ``result`` object.

        Raises
        ------
        LedgerError
            When the connection fails or rippled answers with an error.
        """
        await self.connect()
        command = request.method.value
        try:
            response = await self._client.request(request)
        except XRPLException as e:
            raise LedgerError(f"{command} failed: {e}") from e
        if not response.is_successful():
            result = response.result or {}
            message = result.get("error_message") or result.get("error") or "unknown error"
            raise LedgerError(f"{command} failed: {message}")
        return response.result

    async def subscribe_accounts(self, accounts: list[str]) -> None:
        """Subscribe to ``accounts``; only the first holder of each hits the wire."""
        fresh = [account for account in accounts if self._accounts[account] == 0]
        self._accounts.update(accounts)
        if not fresh:
            return
        try:
            await self.request(Subscribe(accounts=fresh))
        except LedgerError:
            self._release(accounts)
            raise

    async def unsubscribe_accounts(self, accounts: list[str]) -> None:
        """Release ``accounts``; the stream stops once the last holder leaves."""
        released = self._release(accounts)
        if released:
            await self.request(Unsubscribe(accounts=released))

    def _release(self, accounts: list[str]) -> list[str]:
        released = []
        for account in accounts:
            if self._accounts[account] <= 0:
                continue
            self._accounts[account] -= 1
            if self._accounts[account] == 0:
                del self._accounts[account]
                released.append(account)
        return released

    async def transaction_sequence(self, tx_id: str) -> int:
        """Look up the account sequence a confirmed transaction consumed."""
        result = await self.request(Tx(transaction=tx_id))
        sequence = result.get("Sequence")
        if sequence is None:
            # API v2 nests the transaction fields under tx_json
            sequence = result.get("tx_json", {}).get("Sequence")
        if sequence is None:
            raise LedgerError(f"Transaction {tx_id} has no sequence")
        return int(sequence)

    def add_listener(self, listener: StreamListener) -> None:
        """Receive every ``transaction`` stream message."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StreamListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _consume(self, client: AsyncWebsocketClient) -> None:
        async for message in client:
            if message.get("type") != "transaction":
                continue
            for listener in list(self._listeners):
                try:
                    await listener(message)
                except Exception:
                    logger.exception("Stream listener failed")
        logger.info("XRPL connection to %s closed", self.url)

    async def close(self) -> None:
        """Stop the stream consumer and close the socket."""
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._client is not None and self._client.is_open():
            await self._client.close()
        self._client = None
        self._accounts.clear()


_clients: dict[str, LedgerClient] = {}


def get_ledger_client(url: str) -> LedgerClient:
    """Shared client per endpoint, created on first use."""
    client = _clients.get(url)
    if client is None:
        client = LedgerClient(url)
        _clients[url] = client
    return client
