#!/usr/bin/env python3
"""Drive the escrow loan lifecycle from the command line.

Subcommands:
- offer: create a loan offer and print the invite link.
- show: print a stored loan.
- watch: follow the lender's account until the repayment lands.
- sign: request a wallet signature for one lifecycle step.

Configuration comes from the environment (see escrow_loans.config). Use
LOAN_STORE=json or LOAN_STORE=postgres so loans survive between runs.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from escrow_loans.clients import LedgerClient, PendingSignature, XummSigner
from escrow_loans.config import EscrowLoansConfig
from escrow_loans.conversions import drops_to_xrp, format_ledger_time
from escrow_loans.exceptions import EscrowLoansError
from escrow_loans.lifecycle import LifecycleController
from escrow_loans.logging import get_logger, setup_logging
from escrow_loans.models import Loan, Role
from escrow_loans.session import LoanSession
from escrow_loans.sinks import create_sinks
from escrow_loans.store import create_store

logger = get_logger("escrow_loans.cli")

ACTIONS = {
    "trustline": "open_trustline",
    "escrow-create": "lock_collateral",
    "credit": "issue_credit",
    "repay": "repay",
    "escrow-finish": "claim_collateral",
    "escrow-cancel": "cancel_escrow",
}


def print_loan(loan: Loan) -> None:
    """Print a loan in a readable layout."""
    print("=" * 60)
    print(f"Loan {loan.id}")
    print("=" * 60)
    print(f"  Status:      {loan.status.label} ({loan.status.value})")
    print(f"  Lender:      {loan.lender_address or '-'}")
    print(f"  Borrower:    {loan.borrower_address or '-'}")
    print(f"  Credit:      {loan.credit_amount} {loan.currency_code}")
    print(f"  Collateral:  {drops_to_xrp(loan.collateral_amount)} XRP")
    print(f"  Repay:       {drops_to_xrp(loan.repay_amount)} XRP")
    print(f"  Due:         {format_ledger_time(loan.due_at)}")
    print(f"  Cancel:      {format_ledger_time(loan.cancel_at)}")
    if loan.escrow is not None:
        print(f"  Escrow:      seq {loan.escrow.sequence} ({loan.escrow.tx_id})")
    for label, tx_id in (
        ("Credit tx", loan.credit_tx_id),
        ("Repay tx", loan.repay_tx_id),
        ("Settlement", loan.settlement_tx_id),
    ):
        if tx_id:
            print(f"  {label + ':':<12} {tx_id}")
    print("=" * 60)


def build_session(config: EscrowLoansConfig, console: bool) -> LoanSession:
    store = create_store(config)
    controller = LifecycleController(store, sinks=create_sinks(config, console=console))
    signer = XummSigner(config.xumm)
    client = LedgerClient(config.ledger.url)
    return LoanSession(controller, signer, client, config=config)


async def shutdown(session: LoanSession) -> None:
    await session.close()
    await session.signer.close()
    await session.client.close()
    for sink in session.controller.sinks:
        sink.close()
    close_store = getattr(session.controller.store, "close", None)
    if close_store is not None:
        close_store()


def show_pending(pending: PendingSignature) -> None:
    print(f"Open in wallet: {pending.deep_link}")
    if pending.qr_url:
        print(f"QR code:        {pending.qr_url}")


async def run(args: argparse.Namespace, config: EscrowLoansConfig) -> int:
    session = build_session(config, console=args.events)
    session.on_pending(show_pending)

    try:
        if args.command == "offer":
            terms = session.default_terms(args.lender, args.borrower or "")
            for name in ("currency_code", "credit_amount", "collateral_xrp", "repay_xrp", "due_minutes", "grace_minutes"):
                value = getattr(args, name)
                if value is not None:
                    setattr(terms, name, value)
            result = await session.create_offer(terms)
            print(result.message)
            if result.ok:
                print_loan(result.loan)
                print(f"Invite link: {session.invite_url()}")
            return 0 if result.ok else 1

        result = await session.load(args.loan_id)
        if not result.ok:
            print(result.message)
            return 1

        if args.command == "show":
            if args.json:
                print(json.dumps(session.loan.to_record(), indent=2))
            else:
                print_loan(session.loan)
            return 0

        if args.command == "watch":
            if not session.watcher.active:
                print("Loan needs both lender and borrower addresses to watch for repayment.")
                return 1
            print(f"Watching {session.watcher.watched_account} for repayment (Ctrl+C to stop)...")
            while session.loan.repay_tx_id is None:
                await asyncio.sleep(1)
            print_loan(session.loan)
            return 0

        # sign
        role = Role(args.role)
        connected = await session.connect_wallet(role)
        print(connected.message)
        if not connected.ok:
            return 1
        result = await getattr(session, ACTIONS[args.step])()
        print(result.message)
        if result.ok:
            print_loan(session.loan)
        return 0 if result.ok else 1
    finally:
        for entry in reversed(session.log):
            logger.debug("activity: %s", entry)
        await shutdown(session)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Collateralized XRPL loans: offers, signing and repayment watching"
    )
    parser.add_argument(
        "--events",
        action="store_true",
        help="Print lifecycle events to stdout",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    offer = subparsers.add_parser("offer", help="Create a loan offer")
    offer.add_argument("--lender", type=str, required=True, help="Lender r-address")
    offer.add_argument("--borrower", type=str, default=None, help="Borrower r-address")
    offer.add_argument("--currency", dest="currency_code", type=str, default=None, help="Credit currency code")
    offer.add_argument("--credit", dest="credit_amount", type=str, default=None, help="Credit amount")
    offer.add_argument("--collateral", dest="collateral_xrp", type=str, default=None, help="Collateral in XRP")
    offer.add_argument("--repay", dest="repay_xrp", type=str, default=None, help="Repayment in XRP")
    offer.add_argument("--due-minutes", type=int, default=None, help="Minutes until due")
    offer.add_argument("--grace-minutes", type=int, default=None, help="Minutes after due until cancel")

    show = subparsers.add_parser("show", help="Show a stored loan")
    show.add_argument("loan_id", type=str)
    show.add_argument("--json", action="store_true", help="Print the raw record")

    watch = subparsers.add_parser("watch", help="Wait for the repayment on the ledger")
    watch.add_argument("loan_id", type=str)

    sign = subparsers.add_parser("sign", help="Sign one lifecycle step")
    sign.add_argument("loan_id", type=str)
    sign.add_argument("step", choices=sorted(ACTIONS))
    sign.add_argument("--role", choices=[r.value for r in Role], required=True, help="Wallet to connect")

    args = parser.parse_args()

    try:
        config = EscrowLoansConfig.from_env()
    except EscrowLoansError as e:
        parser.error(str(e))
    setup_logging(config.log_level, config.log_format)

    try:
        sys.exit(asyncio.run(run(args, config)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
