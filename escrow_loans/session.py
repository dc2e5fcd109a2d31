"""Session facade for one party's view of a loan.

``LoanSession`` is what a user interface calls: it holds the loan in view and
the connected wallet, runs the role guard before every signature request,
feeds confirmed outcomes into the lifecycle controller and keeps the
repayment watcher pointed at the current loan. Every action returns an
:class:`ActionResult`; failures carry a message and leave the record
unchanged.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from escrow_loans.clients.ledger import LedgerClient
from escrow_loans.clients.xumm import SETUP_NOTICE, PendingSignature, SignResult
from escrow_loans.config import EscrowLoansConfig
from escrow_loans.conversions import format_ledger_time, ledger_now
from escrow_loans.exceptions import (
    ConfigurationError,
    EscrowLoansError,
    InvalidLoanStateError,
    LedgerError,
    SignatureDeclinedError,
    WalletError,
)
from escrow_loans.guard import require_signer, short_address
from escrow_loans.lifecycle import (
    LifecycleController,
    credit_issued,
    escrow_cancelled,
    escrow_created,
    escrow_finished,
    mark_defaulted,
    repayment_observed,
)
from escrow_loans.models import (
    LedgerPayment,
    Loan,
    LoanTerms,
    Role,
    SignOutcome,
    new_offer,
    with_borrower,
    with_lender,
)
from escrow_loans.transactions import Step, build_transaction, check_step_ready, signer_address
from escrow_loans.watcher import RepaymentDetected, RepaymentWatcher

logger = logging.getLogger(__name__)

INVITE_PARAM = "loan"
LOG_SIZE = 6


def invite_url(base_url: str, loan_id: str) -> str:
    """Link that opens ``loan_id`` in the other party's session."""
    parts = urlparse(base_url)
    query = parse_qs(parts.query)
    query[INVITE_PARAM] = [loan_id]
    return urlunparse(parts._replace(query=urlencode(query, doseq=True)))


def loan_id_from_url(url: str) -> str | None:
    values = parse_qs(urlparse(url).query).get(INVITE_PARAM)
    return values[0] if values else None


class Signer(Protocol):
    """Wallet signing capability."""

    @property
    def is_configured(self) -> bool: ...

    async def sign(
        self,
        txjson: dict[str, Any],
        on_pending: Callable[[PendingSignature], None] | None = None,
    ) -> SignResult: ...

    async def authorize(self, on_pending: Callable[[PendingSignature], None] | None = None) -> str: ...


@dataclass
class ActionResult:
    """Outcome of a user action."""

    ok: bool
    message: str
    loan: Loan | None = None
    tx_id: str | None = None


Confirm = Callable[[Loan, SignResult, str], Awaitable[Loan]]


class LoanSession:
    """One party's session: current loan, connected wallet, watcher."""

    def __init__(
        self,
        controller: LifecycleController,
        signer: Signer,
        client: LedgerClient,
        config: EscrowLoansConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.controller = controller
        self.signer = signer
        self.client = client
        self.config = config or EscrowLoansConfig()
        self.clock = clock

        self.loan: Loan | None = None
        self.connected_account: str | None = None
        self.pending: PendingSignature | None = None
        self.status_message = ""
        self.log: deque[str] = deque(maxlen=LOG_SIZE)

        self._signing = False
        self._connect_listeners: list[Callable[[str], None]] = []
        self._logout_listeners: list[Callable[[], None]] = []
        self._pending_listeners: list[Callable[[PendingSignature], None]] = []
        self.watcher = RepaymentWatcher(client, self._on_repayment)
        self.controller.add_listener(self._on_loan_changed)

        if self.read_only:
            logger.warning(SETUP_NOTICE)
            self.status_message = SETUP_NOTICE

    @property
    def read_only(self) -> bool:
        return not self.signer.is_configured

    @property
    def setup_notice(self) -> str | None:
        return SETUP_NOTICE if self.read_only else None

    def add_log(self, entry: str) -> None:
        """Prepend to the bounded activity log."""
        self.log.appendleft(entry)

    def on_connect(self, listener: Callable[[str], None]) -> None:
        self._connect_listeners.append(listener)

    def on_logout(self, listener: Callable[[], None]) -> None:
        self._logout_listeners.append(listener)

    def on_pending(self, listener: Callable[[PendingSignature], None]) -> None:
        """Receive the link/QR reference of each open signature request."""
        self._pending_listeners.append(listener)

    def _ok(self, message: str, tx_id: str | None = None) -> ActionResult:
        self.status_message = message
        return ActionResult(ok=True, message=message, loan=self.loan, tx_id=tx_id)

    def _fail(self, message: str) -> ActionResult:
        self.status_message = message
        logger.info("Action blocked: %s", message)
        return ActionResult(ok=False, message=message, loan=self.loan)

    def _show_pending(self, pending: PendingSignature) -> None:
        self.pending = pending
        for listener in list(self._pending_listeners):
            listener(pending)

    # Loan in view

    def default_terms(self, lender_address: str, borrower_address: str = "") -> LoanTerms:
        defaults = self.config.defaults
        return LoanTerms(
            lender_address=lender_address,
            borrower_address=borrower_address,
            currency_code=defaults.currency_code,
            credit_amount=defaults.credit_amount,
            collateral_xrp=defaults.collateral_xrp,
            repay_xrp=defaults.repay_xrp,
            due_minutes=defaults.due_minutes,
            grace_minutes=defaults.grace_minutes,
        )

    async def _set_loan(self, loan: Loan | None) -> None:
        self.loan = loan
        try:
            await self.watcher.watch(loan)
        except LedgerError as e:
            logger.warning("Repayment watcher unavailable: %s", e)
            self.add_log("Repayment watcher unavailable.")

    async def create_offer(self, terms: LoanTerms) -> ActionResult:
        """Create and persist a new offer."""
        try:
            loan = new_offer(terms, now=self.clock())
        except EscrowLoansError as e:
            return self._fail(str(e))
        self.controller.create(loan)
        await self._set_loan(loan)
        self.add_log("Loan offer created.")
        return self._ok("Loan offer created. Share the link with the borrower.")

    async def load(self, loan_id: str) -> ActionResult:
        """Load a persisted loan; unknown ids leave the session unchanged."""
        loan = self.controller.store.get(loan_id)
        if loan is None:
            return self._fail("Loan not found. Ask the lender for a fresh link.")
        await self._set_loan(loan)
        return self._ok("Loaded loan.")

    async def load_from_url(self, url: str) -> ActionResult:
        loan_id = loan_id_from_url(url)
        if not loan_id:
            return self._fail("Link does not reference a loan.")
        return await self.load(loan_id)

    def invite_url(self, base_url: str | None = None) -> str | None:
        if self.loan is None:
            return None
        return invite_url(base_url or self.config.app_url, self.loan.id)

    async def _update_party(self, updater: Callable[[Loan, str], Loan], address: str) -> ActionResult:
        if self.loan is None:
            return self._fail("Create or load a loan first.")
        try:
            loan = await self.controller.apply(self.loan.id, lambda current: updater(current, address))
        except EscrowLoansError as e:
            return self._fail(str(e))
        await self._set_loan(loan)
        return self._ok("Loan updated.")

    async def set_lender(self, address: str) -> ActionResult:
        return await self._update_party(with_lender, address)

    async def set_borrower(self, address: str) -> ActionResult:
        return await self._update_party(with_borrower, address)

    # Wallet

    async def connect_wallet(self, role: Role) -> ActionResult:
        """Authorize a wallet and, while editable, record it as ``role``."""
        if self.read_only:
            return self._fail(SETUP_NOTICE)
        try:
            account = await self.signer.authorize(self._show_pending)
        except (SignatureDeclinedError, WalletError):
            return self._fail("Wallet authorization failed.")
        finally:
            self.pending = None

        self.connected_account = account
        for listener in list(self._connect_listeners):
            listener(account)

        if self.loan is not None and self.loan.escrow is None:
            updater = with_lender if role is Role.LENDER else with_borrower
            await self._update_party(updater, account)
        return self._ok(f"Connected {role.value} wallet {short_address(account)}.")

    def disconnect(self) -> None:
        self.connected_account = None
        for listener in list(self._logout_listeners):
            listener()

    # Signing steps

    async def _request_signature(self, txjson: dict[str, Any], label: str) -> SignResult:
        if self.read_only:
            raise ConfigurationError(SETUP_NOTICE)
        if self._signing:
            raise WalletError("Another signature request is still pending.")
        self._signing = True
        self.status_message = f"Awaiting signature: {label}"
        try:
            result = await self.signer.sign(txjson, self._show_pending)
        finally:
            self._signing = False
            self.pending = None
        if result.outcome is not SignOutcome.SIGNED or not result.tx_id:
            raise SignatureDeclinedError("Signature declined.")
        if result.rejected:
            raise SignatureDeclinedError(f"{label} rejected by the ledger: {result.dispatched_result}")
        return result

    async def _perform(self, step: Step, log_entry: str, confirm: Confirm | None = None) -> ActionResult:
        if self.loan is None:
            return self._fail("Create or load a loan first.")
        try:
            loan = self.controller.get(self.loan.id)
            check_step_ready(loan, step)
            require_signer(signer_address(loan, step), self.connected_account, step.role)
            txjson = build_transaction(loan, step)
            result = await self._request_signature(txjson, step.label)
            signer = result.account or self.connected_account or ""
            if confirm is not None:
                self.loan = await confirm(loan, result, signer)
        except EscrowLoansError as e:
            return self._fail(str(e))
        self.add_log(log_entry)
        return self._ok(f"{step.label} signed and submitted.", tx_id=result.tx_id)

    async def open_trustline(self) -> ActionResult:
        return await self._perform(Step.TRUSTLINE, "Trustline opened.")

    async def lock_collateral(self) -> ActionResult:
        async def confirm(loan: Loan, result: SignResult, signer: str) -> Loan:
            sequence = await self.client.transaction_sequence(result.tx_id)
            return await self.controller.apply(
                loan.id, lambda current: escrow_created(current, result.tx_id, sequence, signer)
            )

        return await self._perform(Step.ESCROW_CREATE, "Escrow created on XRPL.", confirm)

    async def issue_credit(self) -> ActionResult:
        async def confirm(loan: Loan, result: SignResult, signer: str) -> Loan:
            return await self.controller.apply(
                loan.id, lambda current: credit_issued(current, result.tx_id, signer)
            )

        return await self._perform(Step.CREDIT_ISSUE, "Credit issued to borrower.", confirm)

    async def repay(self) -> ActionResult:
        async def confirm(loan: Loan, result: SignResult, signer: str) -> Loan:
            payment = LedgerPayment(
                tx_id=result.tx_id,
                transaction_type="Payment",
                sender=signer,
                destination=loan.lender_address,
                amount=loan.repay_amount,
            )
            return await self.controller.apply(loan.id, lambda current: repayment_observed(current, payment))

        return await self._perform(Step.REPAYMENT, "Repayment submitted.", confirm)

    async def claim_collateral(self) -> ActionResult:
        if self.loan is not None and ledger_now(self.clock()) <= self.loan.due_at:
            return self._fail(f"Collateral can be claimed after {format_ledger_time(self.loan.due_at)}.")

        async def confirm(loan: Loan, result: SignResult, signer: str) -> Loan:
            return await self.controller.apply(
                loan.id, lambda current: escrow_finished(current, result.tx_id, signer)
            )

        return await self._perform(Step.ESCROW_FINISH, "Collateral claim submitted.", confirm)

    async def cancel_escrow(self) -> ActionResult:
        if self.loan is not None and ledger_now(self.clock()) <= self.loan.cancel_at:
            return self._fail(f"Escrow can be cancelled after {format_ledger_time(self.loan.cancel_at)}.")

        async def confirm(loan: Loan, result: SignResult, signer: str) -> Loan:
            return await self.controller.apply(
                loan.id, lambda current: escrow_cancelled(current, result.tx_id, signer)
            )

        return await self._perform(Step.ESCROW_CANCEL, "Escrow cancel submitted.", confirm)

    async def check_default(self) -> ActionResult:
        """Mark the loan defaulted when it is past due and unpaid."""
        if self.loan is None:
            return self._fail("Create or load a loan first.")
        now = ledger_now(self.clock())
        loan = await self.controller.apply(self.loan.id, lambda current: mark_defaulted(current, now))
        self.loan = loan
        return self._ok(loan.status.label)

    # Watcher and controller callbacks

    def _on_loan_changed(self, loan: Loan) -> None:
        if self.loan is not None and loan.id == self.loan.id:
            self.loan = loan

    async def _on_repayment(self, event: RepaymentDetected) -> None:
        try:
            loan = await self.controller.apply(
                event.loan_id, lambda current: repayment_observed(current, event.payment)
            )
        except InvalidLoanStateError as e:
            logger.warning("Ignoring repayment %s: %s", event.payment.tx_id, e)
            return
        if loan.repay_tx_id == event.payment.tx_id:
            self.add_log("Repayment detected on XRPL.")
            self.status_message = loan.status.label

    async def close(self) -> None:
        """Tear down the watcher subscription."""
        await self.watcher.stop()
        self.controller.remove_listener(self._on_loan_changed)
