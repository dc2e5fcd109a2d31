"""Tests for the repayment watcher."""

import asyncio
from dataclasses import replace
from unittest.mock import patch

import pytest
from conftest import BORROWER, LENDER, STRANGER, FakeLedgerClient, FakeXrplClient, make_loan
from xrpl.models.requests import Subscribe, Unsubscribe

from escrow_loans.clients.ledger import LedgerClient
from escrow_loans.exceptions import LedgerError
from escrow_loans.models import Loan, LoanStatus
from escrow_loans.watcher import RepaymentDetected, RepaymentWatcher, parse_payment


def stream_message(
    sender: str = BORROWER,
    destination: str = LENDER,
    amount="5200000",
    tx_type: str = "Payment",
    validated: bool = True,
    tx_hash: str = "REPAYHASH",
) -> dict:
    return {
        "type": "transaction",
        "validated": validated,
        "engine_result": "tesSUCCESS",
        "transaction": {
            "TransactionType": tx_type,
            "Account": sender,
            "Destination": destination,
            "Amount": amount,
            "hash": tx_hash,
        },
    }


class TestParsePayment:
    """Tests for stream message parsing."""

    def test_validated_payment(self) -> None:
        payment = parse_payment(stream_message())

        assert payment.tx_id == "REPAYHASH"
        assert payment.sender == BORROWER
        assert payment.destination == LENDER
        assert payment.amount == "5200000"
        assert payment.is_xrp

    def test_unvalidated_ignored(self) -> None:
        assert parse_payment(stream_message(validated=False)) is None

    def test_api_v2_layout(self) -> None:
        """Test tx_json with DeliverMax and a top-level hash."""
        message = {
            "type": "transaction",
            "validated": True,
            "hash": "V2HASH",
            "tx_json": {
                "TransactionType": "Payment",
                "Account": BORROWER,
                "Destination": LENDER,
                "DeliverMax": "5200000",
            },
        }

        payment = parse_payment(message)

        assert payment.tx_id == "V2HASH"
        assert payment.amount == "5200000"

    def test_without_transaction(self) -> None:
        assert parse_payment({"type": "transaction", "validated": True}) is None


class Recorder:
    def __init__(self) -> None:
        self.events: list[RepaymentDetected] = []

    async def __call__(self, event: RepaymentDetected) -> None:
        self.events.append(event)


class TestRepaymentWatcher:
    """Tests for subscription lifecycle and matching."""

    def test_watch_subscribes_to_lender(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        watcher = RepaymentWatcher(ledger_client, Recorder())

        asyncio.run(watcher.watch(credited))

        assert ledger_client.subscribed == [[LENDER]]
        assert watcher.active
        assert watcher.watched_account == LENDER

    def test_reports_matching_payment(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        recorder = Recorder()
        watcher = RepaymentWatcher(ledger_client, recorder)

        async def run() -> None:
            await watcher.watch(credited)
            await ledger_client.emit(stream_message())

        asyncio.run(run())

        assert len(recorder.events) == 1
        assert recorder.events[0].loan_id == credited.id
        assert recorder.events[0].payment.tx_id == "REPAYHASH"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sender": STRANGER},
            {"destination": STRANGER},
            {"amount": "5200001"},
            {"tx_type": "EscrowCreate"},
            {"amount": {"currency": "CRD", "issuer": LENDER, "value": "5200000"}},
            {"validated": False},
        ],
    )
    def test_ignores_non_matching(self, ledger_client: FakeLedgerClient, credited: Loan, overrides: dict) -> None:
        recorder = Recorder()
        watcher = RepaymentWatcher(ledger_client, recorder)

        async def run() -> None:
            await watcher.watch(credited)
            await ledger_client.emit(stream_message(**overrides))

        asyncio.run(run())

        assert recorder.events == []

    def test_reports_first_match_only(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        recorder = Recorder()
        watcher = RepaymentWatcher(ledger_client, recorder)

        async def run() -> None:
            await watcher.watch(credited)
            await ledger_client.emit(stream_message())
            await ledger_client.emit(stream_message(tx_hash="SECONDHASH"))

        asyncio.run(run())

        assert [e.payment.tx_id for e in recorder.events] == ["REPAYHASH"]

    def test_same_loan_not_resubscribed(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        watcher = RepaymentWatcher(ledger_client, Recorder())

        async def run() -> None:
            await watcher.watch(credited)
            await watcher.watch(replace(credited, status=LoanStatus.REPAID, repay_tx_id="REPAYHASH"))

        asyncio.run(run())

        assert ledger_client.subscribed == [[LENDER]]
        assert ledger_client.unsubscribed == []

    def test_address_change_replaces_subscription(self, ledger_client: FakeLedgerClient) -> None:
        """Test the old subscription is torn down before the new one."""
        recorder = Recorder()
        watcher = RepaymentWatcher(ledger_client, recorder)
        offer = make_loan()
        moved = replace(offer, lender_address=STRANGER)

        async def run() -> None:
            await watcher.watch(offer)
            await watcher.watch(moved)
            await ledger_client.emit(stream_message(destination=STRANGER))

        asyncio.run(run())

        assert ledger_client.subscribed == [[LENDER], [STRANGER]]
        assert ledger_client.unsubscribed == [[LENDER]]
        assert len(ledger_client.listeners) == 1
        assert len(recorder.events) == 1

    def test_needs_both_parties(self, ledger_client: FakeLedgerClient, offer: Loan) -> None:
        watcher = RepaymentWatcher(ledger_client, Recorder())

        asyncio.run(watcher.watch(replace(offer, borrower_address="")))

        assert ledger_client.subscribed == []
        assert not watcher.active
        assert watcher.watched_account is None

    def test_cancel_stops_delivery(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        """Test an event arriving after cancel has no effect."""
        recorder = Recorder()
        watcher = RepaymentWatcher(ledger_client, recorder)

        async def run() -> None:
            await watcher.watch(credited)
            listener = ledger_client.listeners[0]
            watcher.cancel()
            # in-flight delivery to the stale listener
            await listener(stream_message())
            await watcher.stop()

        asyncio.run(run())

        assert recorder.events == []
        assert ledger_client.listeners == []
        assert ledger_client.unsubscribed == [[LENDER]]

    def test_watch_none_tears_down(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        watcher = RepaymentWatcher(ledger_client, Recorder())

        async def run() -> None:
            await watcher.watch(credited)
            await watcher.watch(None)

        asyncio.run(run())

        assert not watcher.active
        assert ledger_client.unsubscribed == [[LENDER]]

    def test_subscribe_failure(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        ledger_client.fail_subscribe = True
        watcher = RepaymentWatcher(ledger_client, Recorder())

        with pytest.raises(LedgerError):
            asyncio.run(watcher.watch(credited))

        assert not watcher.active
        assert ledger_client.listeners == []

    def test_cancel_without_loop(self, ledger_client: FakeLedgerClient, credited: Loan) -> None:
        watcher = RepaymentWatcher(ledger_client, Recorder())
        asyncio.run(watcher.watch(credited))

        watcher.cancel()

        assert not watcher.active
        assert ledger_client.listeners == []


class TestSharedConnection:
    """Watchers sharing one ledger connection."""

    def test_stopping_one_watcher_keeps_the_other(self) -> None:
        """Two loans from one lender keep receiving until both watchers stop."""
        fake = FakeXrplClient()
        first, second = Recorder(), Recorder()
        loan_a = make_loan(LoanStatus.CREDIT_SENT)
        loan_b = replace(loan_a, id="loan-test-002")
        delivered = {}

        async def run() -> None:
            delivered["event"] = asyncio.Event()
            client = LedgerClient("wss://s.altnet.rippletest.net:51233/")

            async def on_second(event: RepaymentDetected) -> None:
                await second(event)
                delivered["event"].set()

            watcher_a = RepaymentWatcher(client, first)
            watcher_b = RepaymentWatcher(client, on_second)
            await watcher_a.watch(loan_a)
            await watcher_b.watch(loan_b)
            await watcher_a.stop()

            fake.messages.put_nowait(stream_message())
            await asyncio.wait_for(delivered["event"].wait(), timeout=1)
            await watcher_b.stop()
            await client.close()

        with patch("escrow_loans.clients.ledger.AsyncWebsocketClient", return_value=fake):
            asyncio.run(run())

        assert first.events == []
        assert [event.loan_id for event in second.events] == ["loan-test-002"]
        assert [type(r) for r in fake.requests] == [Subscribe, Unsubscribe]
        assert fake.requests[1].accounts == [LENDER]
