"""Enumeration types for the loan lifecycle."""

from enum import Enum


class LoanStatus(str, Enum):
    OFFERED = "OFFERED"
    COLLATERAL_LOCKED = "COLLATERAL_LOCKED"
    CREDIT_SENT = "CREDIT_SENT"
    REPAID = "REPAID"
    DEFAULTED = "DEFAULTED"
    COLLATERAL_CLAIMED = "COLLATERAL_CLAIMED"
    ESCROW_CANCELLED = "ESCROW_CANCELLED"

    @property
    def label(self) -> str:
        """Human-readable status."""
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.COLLATERAL_CLAIMED, LoanStatus.ESCROW_CANCELLED)


_STATUS_LABELS = {
    LoanStatus.OFFERED: "Offer created",
    LoanStatus.COLLATERAL_LOCKED: "Collateral locked in escrow",
    LoanStatus.CREDIT_SENT: "Credit issued",
    LoanStatus.REPAID: "Repayment detected",
    LoanStatus.DEFAULTED: "Defaulted",
    LoanStatus.COLLATERAL_CLAIMED: "Collateral claimed",
    LoanStatus.ESCROW_CANCELLED: "Collateral returned to borrower",
}


class Role(str, Enum):
    LENDER = "lender"
    BORROWER = "borrower"


class SignOutcome(str, Enum):
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
