"""Wallet signing through the Xumm (Xaman) platform API.

A signature request is a three-step exchange: create a payload, show its
deep link or QR code to the user, then wait until the payload resolves as
signed or declined. Signed payloads are submitted to the ledger by the
wallet.

Requires XUMM_API_KEY (and XUMM_API_SECRET) in the environment.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import aiohttp

from escrow_loans.config import XummConfig
from escrow_loans.exceptions import ConfigurationError, SignatureDeclinedError, WalletError
from escrow_loans.models import SignOutcome

logger = logging.getLogger(__name__)

SETUP_NOTICE = "Missing XUMM_API_KEY; wallet signing is disabled and loans are read-only."


@dataclass(frozen=True)
class PendingSignature:
    """A created payload waiting for the user, shown as a link or QR code."""

    uuid: str
    deep_link: str
    qr_url: str | None = None
    websocket_url: str | None = None


@dataclass(frozen=True)
class SignResult:
    """Resolution of a signature request."""

    outcome: SignOutcome
    uuid: str
    tx_id: str | None = None
    account: str | None = None
    dispatched_result: str | None = None  # engine result of the wallet's submission

    @property
    def signed(self) -> bool:
        return self.outcome is SignOutcome.SIGNED and bool(self.tx_id or self.account)

    @property
    def rejected(self) -> bool:
        """Signed, but the ledger refused the submission."""
        return bool(self.dispatched_result) and self.dispatched_result != "tesSUCCESS"


class XummSigner:
    """Create and follow signature requests on the Xumm platform."""

    def __init__(self, config: XummConfig, session: aiohttp.ClientSession | None = None) -> None:
        self.config = config
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=30)

        if not config.is_configured:
            logger.info("Xumm API key not configured; signing is disabled")

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self.is_configured:
            raise ConfigurationError(SETUP_NOTICE)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers=self.config.headers(),
            )
        return self._session

    async def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        session = await self._get_session()
        url = f"{self.config.api_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            async with session.request(method, url, json=payload) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise WalletError(f"Xumm {method} {path} failed ({resp.status}): response is not JSON") from e
                if resp.status >= 400:
                    error = (data or {}).get("error", {}) if isinstance(data, dict) else {}
                    raise WalletError(
                        f"Xumm {method} {path} failed ({resp.status}): "
                        f"{error.get('reference') or error.get('code') or data}"
                    )
        except aiohttp.ClientError as e:
            raise WalletError(f"Xumm {method} {path} failed: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise WalletError(f"Xumm {method} {path} returned an unexpected body: {data!r}")
        return data

    async def create(self, txjson: dict[str, Any]) -> PendingSignature:
        """Create a payload for ``txjson`` on the configured network."""
        body = {
            "txjson": txjson,
            "options": {"force_network": self.config.network},
        }
        data = await self._call("POST", "payload", body)
        if not data.get("uuid"):
            raise WalletError(f"Xumm did not return a payload id: {data}")
        refs = data.get("refs") or {}
        pending = PendingSignature(
            uuid=data["uuid"],
            deep_link=(data.get("next") or {}).get("always", ""),
            qr_url=refs.get("qr_png"),
            websocket_url=refs.get("websocket_status"),
        )
        logger.info("Created %s payload %s", txjson.get("TransactionType"), pending.uuid)
        return pending

    async def status(self, uuid: str) -> dict[str, Any]:
        return await self._call("GET", f"payload/{uuid}")

    async def cancel(self, uuid: str) -> None:
        """Cancel a payload that is still open in the wallet."""
        await self._call("DELETE", f"payload/{uuid}")
        logger.info("Cancelled payload %s", uuid)

    async def wait(self, pending: PendingSignature) -> SignResult:
        """Wait, without a timeout, until the payload resolves.

        Cancelling the awaiting task cancels the payload too.
        """
        try:
            while True:
                data = await self.status(pending.uuid)
                meta = data.get("meta") or {}
                if meta.get("resolved") or meta.get("expired") or meta.get("cancelled"):
                    response = data.get("response") or {}
                    outcome = SignOutcome.SIGNED if meta.get("signed") is True else SignOutcome.DECLINED
                    logger.info("Payload %s resolved: %s", pending.uuid, outcome.value)
                    return SignResult(
                        outcome=outcome,
                        uuid=pending.uuid,
                        tx_id=response.get("txid"),
                        account=response.get("account"),
                        dispatched_result=response.get("dispatched_result"),
                    )
                await asyncio.sleep(self.config.poll_interval)
        except asyncio.CancelledError:
            try:
                await self.cancel(pending.uuid)
            except WalletError as e:
                logger.warning("Could not cancel payload %s: %s", pending.uuid, e)
            raise

    async def sign(
        self,
        txjson: dict[str, Any],
        on_pending: Callable[[PendingSignature], None] | None = None,
    ) -> SignResult:
        """Request a signature and wait for the outcome.

        Parameters
        ----------
        txjson : dict[str, Any]
            Unsigned transaction.
        on_pending : Callable[[PendingSignature], None] | None
            Called with the deep link/QR reference while the request is open.
        """
        pending = await self.create(txjson)
        if on_pending is not None:
            on_pending(pending)
        return await self.wait(pending)

    async def authorize(self, on_pending: Callable[[PendingSignature], None] | None = None) -> str:
        """Connect a wallet through a SignIn payload and return its account."""
        result = await self.sign({"TransactionType": "SignIn"}, on_pending)
        if result.outcome is not SignOutcome.SIGNED or not result.account:
            raise SignatureDeclinedError("Wallet authorization failed.")
        return result.account

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
