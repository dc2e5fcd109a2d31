"""Clients for the ledger and the wallet signing platform."""

from escrow_loans.clients.ledger import LedgerClient, get_ledger_client
from escrow_loans.clients.xumm import PendingSignature, SignResult, XummSigner

__all__ = ["LedgerClient", "PendingSignature", "SignResult", "XummSigner", "get_ledger_client"]
