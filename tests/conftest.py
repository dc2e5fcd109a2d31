"""Pytest configuration and fixtures."""

import asyncio
from dataclasses import replace
from typing import Any, Callable

import pytest
from xrpl.models.response import Response, ResponseStatus

from escrow_loans.clients.xumm import PendingSignature, SignResult
from escrow_loans.exceptions import LedgerError, SignatureDeclinedError
from escrow_loans.models import EscrowRef, LedgerPayment, Loan, LoanStatus, LoanTerms, SignOutcome, new_offer

LENDER = "rPEPPER7kfTD9w2To4CQk6UCfuHM9c6GDY"
BORROWER = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
STRANGER = "rGWrZyQqhTp9Xu7G5Pkayo7bXjH4k4QYpf"

# 2023-11-14T22:13:20Z
NOW = 1_700_000_000.0
LEDGER_NOW = 1_700_000_000 - 946_684_800


class FakeLedgerClient:
    """In-process stand-in for the XRPL WebSocket client."""

    def __init__(self, sequence: int = 7) -> None:
        self.sequence = sequence
        self.listeners: list = []
        self.subscribed: list[list[str]] = []
        self.unsubscribed: list[list[str]] = []
        self.fail_subscribe = False

    def add_listener(self, listener) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def subscribe_accounts(self, accounts: list[str]) -> dict[str, Any]:
        if self.fail_subscribe:
            raise LedgerError("subscribe failed: noNetwork")
        self.subscribed.append(list(accounts))
        return {}

    async def unsubscribe_accounts(self, accounts: list[str]) -> dict[str, Any]:
        self.unsubscribed.append(list(accounts))
        return {}

    async def transaction_sequence(self, tx_id: str) -> int:
        return self.sequence

    async def emit(self, message: dict[str, Any]) -> None:
        for listener in list(self.listeners):
            await listener(message)

    async def close(self) -> None:
        pass


class FakeXrplClient:
    """Stands in for xrpl-py's AsyncWebsocketClient."""

    def __init__(self, responses: dict | None = None, fail_open: bool = False) -> None:
        self.responses = responses or {}
        self.fail_open = fail_open
        self.requests: list = []
        self.messages: asyncio.Queue | None = None
        self._open = False

    async def open(self) -> None:
        if self.fail_open:
            raise OSError("Connection refused")
        self.messages = asyncio.Queue()
        self._open = True

    def is_open(self) -> bool:
        return self._open

    async def close(self) -> None:
        self._open = False

    async def request(self, request):
        self.requests.append(request)
        return self.responses.get(type(request), Response(status=ResponseStatus.SUCCESS, result={}))

    async def __aiter__(self):
        while self._open:
            yield await self.messages.get()


class FakeSigner:
    """Wallet signer that resolves every request immediately."""

    def __init__(self, account: str | None = None, configured: bool = True) -> None:
        self.account = account
        self.is_configured = configured
        self.outcome = SignOutcome.SIGNED
        self.dispatched_result = "tesSUCCESS"
        self.requests: list[dict[str, Any]] = []

    async def sign(self, txjson: dict[str, Any], on_pending: Callable | None = None) -> SignResult:
        self.requests.append(txjson)
        uuid = f"payload-{len(self.requests)}"
        if on_pending is not None:
            on_pending(PendingSignature(uuid=uuid, deep_link=f"https://xumm.app/sign/{uuid}"))
        if self.outcome is SignOutcome.DECLINED:
            return SignResult(outcome=SignOutcome.DECLINED, uuid=uuid)
        return SignResult(
            outcome=SignOutcome.SIGNED,
            uuid=uuid,
            tx_id=f"TX{len(self.requests):04d}",
            account=self.account,
            dispatched_result=self.dispatched_result,
        )

    async def authorize(self, on_pending: Callable | None = None) -> str:
        if self.account is None:
            raise SignatureDeclinedError("Wallet authorization failed.")
        return self.account


def make_loan(status: LoanStatus = LoanStatus.OFFERED, /, **overrides: Any) -> Loan:
    """Build a loan with both parties set, advanced to ``status``."""
    loan = new_offer(LoanTerms(lender_address=LENDER, borrower_address=BORROWER), now=NOW)
    loan = replace(loan, id="loan-test-001")
    if status is not LoanStatus.OFFERED:
        fields: dict[str, Any] = {"status": status, "escrow": EscrowRef(sequence=7, tx_id="ESCROWTX")}
        if status in (
            LoanStatus.CREDIT_SENT,
            LoanStatus.REPAID,
            LoanStatus.DEFAULTED,
            LoanStatus.COLLATERAL_CLAIMED,
        ):
            fields["credit_tx_id"] = "CREDITTX"
        if status is LoanStatus.REPAID:
            fields["repay_tx_id"] = "REPAYTX"
        if status.is_terminal:
            fields["settlement_tx_id"] = "SETTLETX"
        loan = replace(loan, **fields)
    return replace(loan, **overrides) if overrides else loan


@pytest.fixture
def offer() -> Loan:
    """Fresh offer between LENDER and BORROWER."""
    return make_loan()


@pytest.fixture
def credited() -> Loan:
    """Loan with collateral locked and credit issued."""
    return make_loan(LoanStatus.CREDIT_SENT)


@pytest.fixture
def repayment() -> LedgerPayment:
    """The exact repayment the default loan expects."""
    return LedgerPayment(
        tx_id="REPAYHASH",
        transaction_type="Payment",
        sender=BORROWER,
        destination=LENDER,
        amount="5200000",
    )


@pytest.fixture
def ledger_client() -> FakeLedgerClient:
    return FakeLedgerClient()
