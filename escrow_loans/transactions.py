"""Transaction builders for each loan step.

Every builder is a pure function of the loan record and returns an
unsigned XRPL ``txjson`` dict ready to hand to a wallet signer. Builders
never read the clock; time bounds come from the record itself.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from escrow_loans.exceptions import InvalidLoanStateError
from escrow_loans.models import Loan, LoanStatus, Role

# Trustline limit as a multiple of the credit amount. Headroom for display
# and rounding, not a protocol requirement.
TRUSTLINE_LIMIT_MULTIPLIER = Decimal("2")


class Step(str, Enum):
    """Ledger transactions a loan goes through."""

    TRUSTLINE = "TRUSTLINE"
    ESCROW_CREATE = "ESCROW_CREATE"
    CREDIT_ISSUE = "CREDIT_ISSUE"
    REPAYMENT = "REPAYMENT"
    ESCROW_FINISH = "ESCROW_FINISH"
    ESCROW_CANCEL = "ESCROW_CANCEL"

    @property
    def role(self) -> Role:
        """Party that signs this step."""
        if self in (Step.CREDIT_ISSUE, Step.ESCROW_FINISH):
            return Role.LENDER
        return Role.BORROWER

    @property
    def label(self) -> str:
        return _STEP_LABELS[self]


_STEP_LABELS = {
    Step.TRUSTLINE: "Trustline",
    Step.ESCROW_CREATE: "EscrowCreate",
    Step.CREDIT_ISSUE: "Issue CREDIT",
    Step.REPAYMENT: "Repay XRP",
    Step.ESCROW_FINISH: "EscrowFinish",
    Step.ESCROW_CANCEL: "EscrowCancel",
}


# Statuses in which each step may be signed. The lifecycle transitions
# accept the same source states.
STEP_STATES: dict[Step, tuple[LoanStatus, ...]] = {
    Step.TRUSTLINE: (LoanStatus.OFFERED, LoanStatus.COLLATERAL_LOCKED),
    Step.ESCROW_CREATE: (LoanStatus.OFFERED,),
    Step.CREDIT_ISSUE: (LoanStatus.COLLATERAL_LOCKED,),
    Step.REPAYMENT: (LoanStatus.CREDIT_SENT, LoanStatus.DEFAULTED),
    Step.ESCROW_FINISH: (LoanStatus.CREDIT_SENT, LoanStatus.REPAID, LoanStatus.DEFAULTED),
    Step.ESCROW_CANCEL: (
        LoanStatus.COLLATERAL_LOCKED,
        LoanStatus.CREDIT_SENT,
        LoanStatus.REPAID,
        LoanStatus.DEFAULTED,
    ),
}


def recorded_tx_id(loan: Loan, step: Step) -> str | None:
    """Transaction id the record already holds for ``step``, if any."""
    if step is Step.ESCROW_CREATE:
        return loan.escrow_tx_id
    if step is Step.CREDIT_ISSUE:
        return loan.credit_tx_id
    if step is Step.REPAYMENT:
        return loan.repay_tx_id
    if step in (Step.ESCROW_FINISH, Step.ESCROW_CANCEL):
        return loan.settlement_tx_id
    return None


def check_step_ready(loan: Loan, step: Step) -> None:
    """Raise ``InvalidLoanStateError`` unless ``step`` may be signed now.

    A step whose transaction is already recorded is never issued again.
    """
    recorded = recorded_tx_id(loan, step)
    if recorded:
        raise InvalidLoanStateError(f"{step.label} not sent: transaction {recorded} is already recorded.")
    if loan.status not in STEP_STATES[step]:
        raise InvalidLoanStateError(f"{step.label} is not available: {loan.status.label}.")


def signer_address(loan: Loan, step: Step) -> str:
    """Address expected to sign ``step``."""
    if step.role is Role.LENDER:
        return loan.lender_address
    return loan.borrower_address


def _require_parties(loan: Loan) -> None:
    if not loan.has_parties:
        raise InvalidLoanStateError("Missing lender or borrower address.")


def _require_escrow(loan: Loan) -> int:
    if loan.escrow is None:
        raise InvalidLoanStateError("Missing escrow sequence.")
    return loan.escrow.sequence


def _format_value(value: Decimal) -> str:
    return format(value.normalize(), "f")


def trust_set(loan: Loan, limit_multiplier: Decimal = TRUSTLINE_LIMIT_MULTIPLIER) -> dict[str, Any]:
    """Borrower opens a trustline to the lender's credit token."""
    _require_parties(loan)
    limit = Decimal(loan.credit_amount) * limit_multiplier
    return {
        "TransactionType": "TrustSet",
        "Account": loan.borrower_address,
        "LimitAmount": {
            "currency": loan.currency_code,
            "issuer": loan.lender_address,
            "value": _format_value(limit),
        },
    }


def escrow_create(loan: Loan) -> dict[str, Any]:
    """Borrower locks the collateral in an escrow payable to the lender."""
    _require_parties(loan)
    return {
        "TransactionType": "EscrowCreate",
        "Account": loan.borrower_address,
        "Amount": loan.collateral_amount,
        "Destination": loan.lender_address,
        "FinishAfter": loan.due_at,
        "CancelAfter": loan.cancel_at,
    }


def credit_issue(loan: Loan) -> dict[str, Any]:
    """Lender issues the credit token to the borrower.

    The ledger rejects this unless the borrower's trustline exists; that is
    not checked here.
    """
    _require_parties(loan)
    return {
        "TransactionType": "Payment",
        "Account": loan.lender_address,
        "Destination": loan.borrower_address,
        "Amount": {
            "currency": loan.currency_code,
            "issuer": loan.lender_address,
            "value": loan.credit_amount,
        },
    }


def repayment(loan: Loan) -> dict[str, Any]:
    """Borrower pays back ``repay_amount`` drops to the lender.

    The repayment does not release the escrow.
    """
    _require_parties(loan)
    return {
        "TransactionType": "Payment",
        "Account": loan.borrower_address,
        "Destination": loan.lender_address,
        "Amount": loan.repay_amount,
    }


def escrow_finish(loan: Loan) -> dict[str, Any]:
    """Lender claims the collateral after ``due_at``."""
    _require_parties(loan)
    sequence = _require_escrow(loan)
    return {
        "TransactionType": "EscrowFinish",
        "Account": loan.lender_address,
        "Owner": loan.borrower_address,
        "OfferSequence": sequence,
    }


def escrow_cancel(loan: Loan) -> dict[str, Any]:
    """Borrower reclaims unclaimed collateral after ``cancel_at``."""
    if not loan.borrower_address:
        raise InvalidLoanStateError("Missing borrower address.")
    sequence = _require_escrow(loan)
    return {
        "TransactionType": "EscrowCancel",
        "Account": loan.borrower_address,
        "Owner": loan.borrower_address,
        "OfferSequence": sequence,
    }


BUILDERS: dict[Step, Callable[[Loan], dict[str, Any]]] = {
    Step.TRUSTLINE: trust_set,
    Step.ESCROW_CREATE: escrow_create,
    Step.CREDIT_ISSUE: credit_issue,
    Step.REPAYMENT: repayment,
    Step.ESCROW_FINISH: escrow_finish,
    Step.ESCROW_CANCEL: escrow_cancel,
}


def build_transaction(loan: Loan, step: Step) -> dict[str, Any]:
    """Build the unsigned transaction for ``step``."""
    return BUILDERS[step](loan)
