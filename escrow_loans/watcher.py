"""Repayment watcher.

Subscribes to the lender's account on the validated transaction stream and
reports the first payment that matches the loan's expected repayment. The
lifecycle controller, not the watcher, guarantees the repayment is applied
at most once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from escrow_loans.clients.ledger import LedgerClient
from escrow_loans.exceptions import LedgerError
from escrow_loans.lifecycle import matches_repayment
from escrow_loans.models import LedgerPayment, Loan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepaymentDetected:
    """A validated payment matching a loan's repayment terms."""

    loan_id: str
    payment: LedgerPayment


RepaymentCallback = Callable[[RepaymentDetected], Awaitable[None]]


def parse_payment(message: dict[str, Any]) -> LedgerPayment | None:
    """Extract the transaction from a ``transaction`` stream message.

    Returns ``None`` unless the message is validated.
    """
    if message.get("validated") is not True:
        return None
    tx = message.get("transaction") or message.get("tx_json")
    if not tx:
        return None
    amount = tx.get("Amount", tx.get("DeliverMax"))
    return LedgerPayment(
        tx_id=tx.get("hash") or message.get("hash") or "",
        transaction_type=tx.get("TransactionType", ""),
        sender=tx.get("Account", ""),
        destination=tx.get("Destination", ""),
        amount=amount,
    )


class _Subscription:
    def __init__(self, loan: Loan, watcher: "RepaymentWatcher") -> None:
        self.loan = loan
        self.cancelled = False
        self.matched = False
        self._watcher = watcher

    @property
    def key(self) -> tuple[str, str, str, str]:
        return _watch_key(self.loan)

    async def listener(self, message: dict[str, Any]) -> None:
        await self._watcher._handle(self, message)


def _watch_key(loan: Loan) -> tuple[str, str, str, str]:
    return (loan.id, loan.lender_address, loan.borrower_address, loan.repay_amount)


class RepaymentWatcher:
    """Keep one stream subscription for the loan currently in view."""

    def __init__(self, client: LedgerClient, on_repayment: RepaymentCallback) -> None:
        self.client = client
        self.on_repayment = on_repayment
        self._subscription: _Subscription | None = None
        self._unsubscribing: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._subscription is not None and not self._subscription.cancelled

    @property
    def watched_account(self) -> str | None:
        return self._subscription.loan.lender_address if self.active else None

    async def watch(self, loan: Loan | None) -> None:
        """Follow ``loan``; ``None`` or a loan without both parties tears down.

        A change of lender, borrower or repay amount replaces the
        subscription; the old one is torn down first.
        """
        if loan is not None and loan.has_parties:
            if self.active and self._subscription.key == _watch_key(loan):
                return
        await self.stop()
        if loan is None or not loan.has_parties:
            return

        subscription = _Subscription(loan, self)
        self._subscription = subscription
        self.client.add_listener(subscription.listener)
        try:
            await self.client.subscribe_accounts([loan.lender_address])
        except LedgerError:
            subscription.cancelled = True
            self.client.remove_listener(subscription.listener)
            self._subscription = None
            raise
        logger.info(
            "Watching %s for repayment of loan %s",
            loan.lender_address,
            loan.id,
            extra={"loan_id": loan.id},
        )

    def cancel(self) -> None:
        """Stop delivering events immediately.

        The unsubscribe request is scheduled on the running loop; await
        :meth:`stop` to wait for it.
        """
        subscription = self._subscription
        if subscription is None:
            return
        subscription.cancelled = True
        self._subscription = None
        self.client.remove_listener(subscription.listener)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping unsubscribe for %s", subscription.loan.lender_address)
            return
        self._unsubscribing = loop.create_task(self._unsubscribe(subscription.loan.lender_address))

    async def stop(self) -> None:
        """Cancel and wait until the ledger acknowledged the unsubscribe."""
        self.cancel()
        task, self._unsubscribing = self._unsubscribing, None
        if task is not None:
            await task

    async def _unsubscribe(self, account: str) -> None:
        try:
            await self.client.unsubscribe_accounts([account])
        except LedgerError as e:
            logger.warning("Unsubscribe from %s failed: %s", account, e)

    async def _handle(self, subscription: _Subscription, message: dict[str, Any]) -> None:
        if subscription.cancelled or subscription.matched:
            return
        payment = parse_payment(message)
        if payment is None or not matches_repayment(subscription.loan, payment):
            return
        subscription.matched = True
        logger.info(
            "Repayment %s detected for loan %s",
            payment.tx_id,
            subscription.loan.id,
            extra={"loan_id": subscription.loan.id, "tx_id": payment.tx_id},
        )
        await self.on_repayment(RepaymentDetected(loan_id=subscription.loan.id, payment=payment))
