"""Loan lifecycle state machine.

States::

    OFFERED -> COLLATERAL_LOCKED -> CREDIT_SENT -> REPAID | DEFAULTED
                                                     |
                            COLLATERAL_CLAIMED <-----+
    DEFAULTED -> REPAID when a late repayment lands before settlement
    any escrowed, unsettled state -> ESCROW_CANCELLED

The module-level transition functions are pure: they take a record and a
confirmed ledger outcome and return the next record. Each one is idempotent
on the field it populates, so re-observing the same confirmation returns the
record unchanged. :class:`LifecycleController` applies them against the store
one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Protocol

from escrow_loans.conversions import ledger_now
from escrow_loans.exceptions import AuthorizationError, InvalidLoanStateError, LoanNotFoundError
from escrow_loans.models import EscrowRef, LedgerPayment, Loan, LoanEvent, LoanStatus, Role
from escrow_loans.store import LoanStore
from escrow_loans.transactions import STEP_STATES, Step

logger = logging.getLogger(__name__)

Transition = Callable[[Loan], Loan]

_FINISHABLE = STEP_STATES[Step.ESCROW_FINISH]
_CANCELLABLE = STEP_STATES[Step.ESCROW_CANCEL]


def _check_signed_by(loan: Loan, signer: str, role: Role) -> None:
    expected = loan.lender_address if role is Role.LENDER else loan.borrower_address
    if signer != expected:
        raise AuthorizationError(
            f"Loan {loan.id}: step must be signed by the {role.value} {expected}, got {signer}"
        )


def _check_status(loan: Loan, allowed: tuple[LoanStatus, ...], action: str) -> None:
    if loan.status not in allowed:
        raise InvalidLoanStateError(
            f"Loan {loan.id}: cannot {action} while {loan.status.value}"
        )


def matches_repayment(loan: Loan, payment: LedgerPayment) -> bool:
    """Whether ``payment`` is exactly the repayment ``loan`` expects.

    XRP payment, from the recorded borrower, to the recorded lender, for
    exactly ``repay_amount`` drops (string equality).
    """
    return (
        payment.transaction_type == "Payment"
        and payment.sender == loan.borrower_address
        and payment.destination == loan.lender_address
        and payment.is_xrp
        and payment.amount == loan.repay_amount
    )


def escrow_created(loan: Loan, tx_id: str, sequence: int, signer: str) -> Loan:
    """OFFERED -> COLLATERAL_LOCKED once the EscrowCreate is confirmed."""
    if loan.escrow is not None:
        return loan
    _check_status(loan, (LoanStatus.OFFERED,), "lock collateral")
    _check_signed_by(loan, signer, Role.BORROWER)
    return replace(
        loan,
        escrow=EscrowRef(sequence=sequence, tx_id=tx_id),
        status=LoanStatus.COLLATERAL_LOCKED,
    )


def credit_issued(loan: Loan, tx_id: str, signer: str) -> Loan:
    """COLLATERAL_LOCKED -> CREDIT_SENT once the credit payment is confirmed."""
    if loan.credit_tx_id:
        return loan
    _check_status(loan, (LoanStatus.COLLATERAL_LOCKED,), "issue credit")
    _check_signed_by(loan, signer, Role.LENDER)
    return replace(loan, credit_tx_id=tx_id, status=LoanStatus.CREDIT_SENT)


def repayment_observed(loan: Loan, payment: LedgerPayment) -> Loan:
    """CREDIT_SENT or DEFAULTED -> REPAID when the matching payment is validated.

    A late repayment still counts while the escrow is unsettled, so a loan
    marked defaulted by the clock moves to REPAID. A payment that differs
    from the loan in any field leaves it unchanged.
    """
    if loan.repay_tx_id or not matches_repayment(loan, payment):
        return loan
    _check_status(loan, STEP_STATES[Step.REPAYMENT], "record repayment")
    return replace(loan, repay_tx_id=payment.tx_id, status=LoanStatus.REPAID)


def mark_defaulted(loan: Loan, now: int | None = None) -> Loan:
    """CREDIT_SENT -> DEFAULTED once ``due_at`` has passed unpaid.

    ``now`` is Ripple-epoch seconds. Loans in any other state are returned
    unchanged.
    """
    current = ledger_now() if now is None else now
    if loan.status is not LoanStatus.CREDIT_SENT or current < loan.due_at:
        return loan
    return replace(loan, status=LoanStatus.DEFAULTED)


def escrow_finished(loan: Loan, tx_id: str, signer: str, closed_at: int | None = None) -> Loan:
    """Lender claimed the collateral: -> COLLATERAL_CLAIMED.

    ``closed_at`` is the Ripple-epoch close time of the validating ledger,
    when known; an escrow cannot finish before ``due_at``.
    """
    if loan.settlement_tx_id:
        return loan
    _check_status(loan, _FINISHABLE, "claim collateral")
    _check_signed_by(loan, signer, Role.LENDER)
    if closed_at is not None and closed_at <= loan.due_at:
        raise InvalidLoanStateError(f"Loan {loan.id}: escrow cannot finish before due_at")
    return replace(loan, settlement_tx_id=tx_id, status=LoanStatus.COLLATERAL_CLAIMED)


def escrow_cancelled(loan: Loan, tx_id: str, signer: str, closed_at: int | None = None) -> Loan:
    """Borrower reclaimed unclaimed collateral: -> ESCROW_CANCELLED."""
    if loan.settlement_tx_id:
        return loan
    _check_status(loan, _CANCELLABLE, "cancel escrow")
    _check_signed_by(loan, signer, Role.BORROWER)
    if closed_at is not None and closed_at <= loan.cancel_at:
        raise InvalidLoanStateError(f"Loan {loan.id}: escrow cannot be cancelled before cancel_at")
    return replace(loan, settlement_tx_id=tx_id, status=LoanStatus.ESCROW_CANCELLED)


class EventSink(Protocol):
    def write(self, event: LoanEvent) -> None: ...


class LifecycleController:
    """Serialize record replacement for a store.

    User actions and the repayment watcher both go through :meth:`apply`,
    which reads the current record, computes the next one and replaces it
    while holding a lock.
    """

    def __init__(
        self,
        store: LoanStore,
        sinks: list[EventSink] | None = None,
        source: str = "escrow-loans",
    ) -> None:
        self.store = store
        self.sinks = sinks or []
        self.source = source
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[Loan], None]] = []

    def add_listener(self, listener: Callable[[Loan], None]) -> None:
        """Register a callback invoked with every changed record."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Loan], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def create(self, loan: Loan) -> Loan:
        """Persist a new offer."""
        self.store.put(loan)
        logger.info("Loan %s offered", loan.id, extra={"loan_id": loan.id, "status": loan.status.value})
        self._publish(loan, None)
        return loan

    def get(self, loan_id: str) -> Loan:
        loan = self.store.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    async def apply(self, loan_id: str, transition: Transition) -> Loan:
        """Apply ``transition`` to the stored record and persist the result.

        Returns the current record; unchanged when the transition was a
        no-op. Exceptions from the transition propagate and leave the stored
        record untouched. Store reads and writes run in a worker thread so a
        blocking backend (Postgres, the JSON file) does not stall the ledger
        stream.
        """
        async with self._lock:
            current = await asyncio.to_thread(self.get, loan_id)
            updated = transition(current)
            if updated == current:
                logger.debug("Loan %s unchanged", loan_id, extra={"loan_id": loan_id})
                return current
            await asyncio.to_thread(self.store.put, updated)

        if updated.status is not current.status:
            logger.info(
                "Loan %s: %s -> %s",
                loan_id,
                current.status.value,
                updated.status.value,
                extra={"loan_id": loan_id, "status": updated.status.value},
            )
        self._publish(updated, current)
        return updated

    def _publish(self, loan: Loan, previous: Loan | None) -> None:
        event = LoanEvent(
            event_id=str(uuid.uuid4()),
            event_type=f"loan.{loan.status.value.lower()}",
            event_time=datetime.now(timezone.utc),
            source=self.source,
            subject=loan.id,
            data=loan.to_record(),
            metadata={"previous_status": previous.status.value if previous else None},
        )
        for sink in self.sinks:
            sink.write(event)
        for listener in list(self._listeners):
            listener(loan)
