"""Domain models for the loan lifecycle."""

from escrow_loans.models.base import LoanEvent
from escrow_loans.models.enums import LoanStatus, Role, SignOutcome
from escrow_loans.models.loan import (
    EscrowRef,
    LedgerPayment,
    Loan,
    LoanTerms,
    loan_key,
    new_offer,
    with_borrower,
    with_lender,
)

__all__ = [
    "EscrowRef",
    "LedgerPayment",
    "Loan",
    "LoanEvent",
    "LoanStatus",
    "LoanTerms",
    "Role",
    "SignOutcome",
    "loan_key",
    "new_offer",
    "with_borrower",
    "with_lender",
]
