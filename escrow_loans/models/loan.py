"""Loan record model and persistence key scheme."""

import time
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any

from escrow_loans.conversions import (
    ledger_epoch_from_now_plus_minutes,
    ledger_now,
    normalize_drops,
    to_ledger_amount,
)
from escrow_loans.exceptions import InvalidLoanStateError, LoanTermsError
from escrow_loans.models.enums import LoanStatus

KEY_PREFIX = "loan:"

_ESCROWED = frozenset(
    {
        LoanStatus.COLLATERAL_LOCKED,
        LoanStatus.CREDIT_SENT,
        LoanStatus.REPAID,
        LoanStatus.DEFAULTED,
        LoanStatus.COLLATERAL_CLAIMED,
        LoanStatus.ESCROW_CANCELLED,
    }
)
_CREDITED = frozenset(
    {
        LoanStatus.CREDIT_SENT,
        LoanStatus.REPAID,
        LoanStatus.DEFAULTED,
        LoanStatus.COLLATERAL_CLAIMED,
    }
)
_SETTLED = frozenset({LoanStatus.COLLATERAL_CLAIMED, LoanStatus.ESCROW_CANCELLED})


def loan_key(loan_id: str) -> str:
    """Persistence key for a loan record."""
    return f"{KEY_PREFIX}{loan_id}"


@dataclass(frozen=True)
class EscrowRef:
    """Reference to the escrow holding the collateral.

    The sequence of the EscrowCreate transaction is what EscrowFinish and
    EscrowCancel use as ``OfferSequence``.
    """

    sequence: int
    tx_id: str


@dataclass(frozen=True)
class LedgerPayment:
    """A validated transaction as seen on the account stream."""

    tx_id: str
    transaction_type: str
    sender: str
    destination: str
    amount: Any  # drops string for XRP, dict for issued currencies

    @property
    def is_xrp(self) -> bool:
        return isinstance(self.amount, str)


@dataclass
class LoanTerms:
    """Offer terms as entered by the lender."""

    lender_address: str
    borrower_address: str = ""
    currency_code: str = "CRD"
    credit_amount: str = "100"
    collateral_xrp: str = "5"
    repay_xrp: str = "5.2"
    due_minutes: int = 10
    grace_minutes: int = 10


@dataclass(frozen=True)
class Loan:
    """Collateralized loan record.

    Instances are immutable; every lifecycle change produces a new record
    so readers never see a half-applied update.
    """

    id: str
    lender_address: str
    borrower_address: str
    currency_code: str
    credit_amount: str
    collateral_amount: str  # drops
    repay_amount: str  # drops
    offered_at: int  # Ripple-epoch seconds
    due_at: int
    cancel_at: int
    status: LoanStatus = LoanStatus.OFFERED
    escrow: EscrowRef | None = None
    credit_tx_id: str | None = None
    repay_tx_id: str | None = None
    settlement_tx_id: str | None = None

    def __post_init__(self) -> None:
        if not (self.cancel_at > self.due_at > self.offered_at):
            raise LoanTermsError(
                f"Loan {self.id}: expected cancel_at > due_at > offered_at, "
                f"got {self.cancel_at}, {self.due_at}, {self.offered_at}"
            )
        status = LoanStatus(self.status)
        if status is not self.status:
            object.__setattr__(self, "status", status)

        if status in _ESCROWED and self.escrow is None:
            raise InvalidLoanStateError(f"Loan {self.id}: {status.value} requires an escrow reference")
        if status is LoanStatus.OFFERED and self.escrow is not None:
            raise InvalidLoanStateError(f"Loan {self.id}: OFFERED loan cannot carry an escrow")
        if status in _CREDITED and not self.credit_tx_id:
            raise InvalidLoanStateError(f"Loan {self.id}: {status.value} requires credit_tx_id")
        if status is LoanStatus.REPAID and not self.repay_tx_id:
            raise InvalidLoanStateError(f"Loan {self.id}: REPAID requires repay_tx_id")
        if status in _SETTLED and not self.settlement_tx_id:
            raise InvalidLoanStateError(f"Loan {self.id}: {status.value} requires settlement_tx_id")

    @property
    def key(self) -> str:
        return loan_key(self.id)

    @property
    def escrow_sequence(self) -> int | None:
        return self.escrow.sequence if self.escrow else None

    @property
    def escrow_tx_id(self) -> str | None:
        return self.escrow.tx_id if self.escrow else None

    @property
    def has_parties(self) -> bool:
        return bool(self.lender_address and self.borrower_address)

    def to_record(self) -> dict[str, Any]:
        """Flatten to the persisted layout."""
        return {
            "id": self.id,
            "lender_address": self.lender_address,
            "borrower_address": self.borrower_address,
            "currency_code": self.currency_code,
            "credit_amount": self.credit_amount,
            "collateral_amount": self.collateral_amount,
            "repay_amount": self.repay_amount,
            "offered_at": self.offered_at,
            "due_at": self.due_at,
            "cancel_at": self.cancel_at,
            "status": self.status.value,
            "escrow_sequence": self.escrow_sequence,
            "escrow_tx_id": self.escrow_tx_id,
            "credit_tx_id": self.credit_tx_id,
            "repay_tx_id": self.repay_tx_id,
            "settlement_tx_id": self.settlement_tx_id,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Loan":
        """Rebuild a loan from its persisted layout."""
        try:
            sequence = record.get("escrow_sequence")
            escrow_tx_id = record.get("escrow_tx_id")
            escrow = None
            if sequence is not None and escrow_tx_id:
                escrow = EscrowRef(sequence=int(sequence), tx_id=escrow_tx_id)
            due_at = int(record["due_at"])
            return cls(
                id=record["id"],
                lender_address=record.get("lender_address") or "",
                borrower_address=record.get("borrower_address") or "",
                currency_code=record["currency_code"],
                credit_amount=str(record["credit_amount"]),
                collateral_amount=normalize_drops(record["collateral_amount"]),
                repay_amount=normalize_drops(record["repay_amount"]),
                # Records written before offered_at existed fall back to one second before due.
                offered_at=int(record.get("offered_at") or due_at - 1),
                due_at=due_at,
                cancel_at=int(record["cancel_at"]),
                status=LoanStatus(record.get("status", LoanStatus.OFFERED.value)),
                escrow=escrow,
                credit_tx_id=record.get("credit_tx_id"),
                repay_tx_id=record.get("repay_tx_id"),
                settlement_tx_id=record.get("settlement_tx_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidLoanStateError(f"Malformed loan record: {e}") from e


def _positive_decimal(value: str, name: str) -> Decimal:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LoanTermsError(f"{name} must be a number, got {value!r}") from None
    if not number.is_finite() or number <= 0:
        raise LoanTermsError(f"{name} must be positive, got {value!r}")
    return number


def new_offer(terms: LoanTerms, now: float | None = None) -> Loan:
    """Create a loan offer from lender-entered terms.

    Parameters
    ----------
    terms : LoanTerms
        Offer terms.
    now : float | None
        Unix time of the offer (defaults to the wall clock).

    Returns
    -------
    Loan
        A new record in ``OFFERED`` status with a fresh random id.
    """
    if not terms.lender_address:
        raise LoanTermsError("Connect as lender first or paste a lender address.")
    if not terms.currency_code:
        raise LoanTermsError("currency_code is required")
    if not isinstance(terms.due_minutes, int) or not isinstance(terms.grace_minutes, int):
        raise LoanTermsError("due_minutes and grace_minutes must be whole minutes")
    if terms.due_minutes <= 0 or terms.grace_minutes <= 0:
        raise LoanTermsError("due_minutes and grace_minutes must be positive")

    _positive_decimal(terms.credit_amount, "credit_amount")
    _positive_decimal(terms.collateral_xrp, "collateral_xrp")
    _positive_decimal(terms.repay_xrp, "repay_xrp")

    unix_now = time.time() if now is None else now
    offered_at = ledger_now(unix_now)
    due_at = ledger_epoch_from_now_plus_minutes(terms.due_minutes, unix_now)
    cancel_at = ledger_epoch_from_now_plus_minutes(terms.due_minutes + terms.grace_minutes, unix_now)

    return Loan(
        id=str(uuid.uuid4()),
        lender_address=terms.lender_address,
        borrower_address=terms.borrower_address,
        currency_code=terms.currency_code,
        credit_amount=terms.credit_amount,
        collateral_amount=to_ledger_amount(terms.collateral_xrp),
        repay_amount=to_ledger_amount(terms.repay_xrp),
        offered_at=offered_at,
        due_at=due_at,
        cancel_at=cancel_at,
    )


def _check_parties_editable(loan: Loan) -> None:
    if loan.escrow is not None:
        raise InvalidLoanStateError(
            f"Loan {loan.id}: addresses are fixed once collateral is locked"
        )


def with_lender(loan: Loan, address: str) -> Loan:
    """Return a copy with a new lender address."""
    _check_parties_editable(loan)
    return replace(loan, lender_address=address.strip())


def with_borrower(loan: Loan, address: str) -> Loan:
    """Return a copy with a new borrower address."""
    _check_parties_editable(loan)
    return replace(loan, borrower_address=address.strip())
